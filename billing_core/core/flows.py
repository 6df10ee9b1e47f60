"""
The two places that embed the payment orchestrator.

Both share the same polling interval and deadline from settings; they only
differ in the subject fields sent with the initiation and, for school bills,
in the balance pre-flight check.
"""
from decimal import Decimal
from typing import AsyncIterator, Optional

import structlog

from billing_core.config import Settings
from billing_core.core.orchestrator import (
    PaymentError,
    PaymentOrchestrator,
    PaymentValidationError,
)
from billing_core.core.scheduler import Clock
from billing_core.domain.models import (
    EventRegistrationSubject,
    MobileNetwork,
    OutstandingBalance,
    PaymentTransaction,
    ProgressEvent,
    SchoolBillSubject,
)
from billing_core.integrations.gateway_client import PaymentGatewayClient

logger = structlog.get_logger(__name__)

BLOCKED_MESSAGE = "This school is not enrolled for billing. Contact the finance office."
NOTHING_OWED_MESSAGE = "There is no outstanding balance on this bill."


class PaymentBlockedError(PaymentError):
    """Raised when the payer is not enrolled in billing."""

    pass


class NoOutstandingBalanceError(PaymentError):
    """Raised when there is nothing left to pay."""

    pass


def event_registration_orchestrator(
    gateway: PaymentGatewayClient,
    registration_code: str,
    school_id: int,
    number_of_attendees: int = 1,
    event_id: Optional[int] = None,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> PaymentOrchestrator:
    """Orchestrator for the public event registration fee."""
    subject = EventRegistrationSubject(
        registration_code=registration_code,
        school_id=school_id,
        number_of_attendees=number_of_attendees,
        event_id=event_id,
    )
    return PaymentOrchestrator(gateway, subject, settings=settings, clock=clock)


class SchoolBillPayment:
    """
    Authenticated school bill payment.

    Flow:
    1. Fetch the outstanding balance for the bill
    2. Refuse blocked payers and settled bills
    3. Refuse amounts above the balance
    4. Hand over to the orchestrator
    """

    def __init__(
        self,
        gateway: PaymentGatewayClient,
        school_id: int,
        school_bill_id: int,
        school_name: Optional[str] = None,
        payment_note: Optional[str] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.gateway = gateway
        self.school_id = school_id
        self.school_bill_id = school_bill_id
        self.balance: Optional[OutstandingBalance] = None
        self.orchestrator = PaymentOrchestrator(
            gateway,
            SchoolBillSubject(
                school_id=school_id,
                school_bill_id=school_bill_id,
                school_name=school_name,
                payment_note=payment_note,
            ),
            settings=settings,
            clock=clock,
        )

    async def check_balance(self) -> OutstandingBalance:
        """
        Fetch the balance and make sure a payment may be attempted.

        Raises:
            PaymentBlockedError: If the school is not enrolled in billing
            NoOutstandingBalanceError: If nothing is owed
        """
        balance = await self.gateway.get_school_balance(self.school_id, self.school_bill_id)
        self.balance = balance

        if balance.blocked:
            logger.warning("school_payment_blocked", school_id=self.school_id)
            raise PaymentBlockedError(balance.message or BLOCKED_MESSAGE)
        if not balance.has_balance:
            logger.info("school_payment_nothing_owed", school_id=self.school_id)
            raise NoOutstandingBalanceError(balance.message or NOTHING_OWED_MESSAGE)
        return balance

    def validate_amount(self, amount: Decimal) -> None:
        """Reject amounts above the outstanding balance."""
        if self.balance is not None and amount > self.balance.amount:
            raise PaymentValidationError(
                f"Amount {amount} exceeds the outstanding balance of {self.balance.amount}"
            )

    async def _prepare(self, amount: Decimal | str | int | float) -> None:
        # A retry after a failed attempt re-checks the balance: the earlier
        # charge may have landed out-of-band
        await self.check_balance()
        try:
            value = Decimal(str(amount))
        except ArithmeticError as e:
            raise PaymentValidationError(f"Invalid amount: {amount}") from e
        self.validate_amount(value)

    async def start(
        self,
        amount: Decimal | str | int | float,
        phone: str,
        network: str | MobileNetwork,
    ) -> PaymentTransaction:
        """Check the balance then start a payment attempt."""
        await self._prepare(amount)
        return await self.orchestrator.start(amount, phone, network)

    async def run(
        self,
        amount: Decimal | str | int | float,
        phone: str,
        network: str | MobileNetwork,
    ) -> AsyncIterator[ProgressEvent]:
        """Check the balance then yield progress events of a new attempt."""
        await self._prepare(amount)
        async for event in self.orchestrator.run(amount, phone, network):
            yield event

    def cancel(self) -> bool:
        return self.orchestrator.cancel()

    async def aclose(self) -> None:
        await self.orchestrator.aclose()
