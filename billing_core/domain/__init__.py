"""Domain layer - payment and fee-targeting values."""

from billing_core.domain.models import (
    EventRegistrationSubject,
    FeeTargeting,
    GatewayInitiation,
    GatewayStatus,
    GatewayStatusReport,
    Lookups,
    MobileNetwork,
    OutstandingBalance,
    PaymentState,
    PaymentSubject,
    PaymentTransaction,
    ProgressEvent,
    SchoolBillSubject,
)

__all__ = [
    "EventRegistrationSubject",
    "FeeTargeting",
    "GatewayInitiation",
    "GatewayStatus",
    "GatewayStatusReport",
    "Lookups",
    "MobileNetwork",
    "OutstandingBalance",
    "PaymentState",
    "PaymentSubject",
    "PaymentTransaction",
    "ProgressEvent",
    "SchoolBillSubject",
]
