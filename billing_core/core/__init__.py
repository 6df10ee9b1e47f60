"""Core payment reconciliation logic."""
from .flows import (
    NoOutstandingBalanceError,
    PaymentBlockedError,
    SchoolBillPayment,
    event_registration_orchestrator,
)
from .orchestrator import (
    PaymentError,
    PaymentInProgressError,
    PaymentOrchestrator,
    PaymentStateError,
    PaymentValidationError,
)
from .scheduler import Clock, MonotonicClock, PollingScheduler, SchedulerOutcome

__all__ = [
    "Clock",
    "MonotonicClock",
    "NoOutstandingBalanceError",
    "PaymentBlockedError",
    "PaymentError",
    "PaymentInProgressError",
    "PaymentOrchestrator",
    "PaymentStateError",
    "PaymentValidationError",
    "PollingScheduler",
    "SchedulerOutcome",
    "SchoolBillPayment",
    "event_registration_orchestrator",
]
