"""Monitoring and observability package."""
from .logging import payment_context, setup_logging
from .metrics import metrics

__all__ = ["metrics", "payment_context", "setup_logging"]
