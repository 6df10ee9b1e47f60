"""External integrations for payment processing."""
from .gateway_client import GatewayError, GatewayErrorType, PaymentGatewayClient

__all__ = ["GatewayError", "GatewayErrorType", "PaymentGatewayClient"]
