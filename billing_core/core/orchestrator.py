"""
Mobile-money payment reconciliation.

The gateway has no push channel, so after initiation the payer approves the
charge on their phone while we poll for the outcome:

1. Created: call initiate, fail immediately on rejection
2. AwaitingApproval: poll status every interval until the deadline
3. Deadline: one last status check before declaring a timeout
4. Cancel: stop polling, no final check

Each start() is a new gateway transaction; nothing is resumed from an
earlier attempt.
"""
import asyncio
import contextlib
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator, Callable, List, Optional

import structlog

from billing_core.config import Settings, get_settings
from billing_core.core.scheduler import (
    Clock,
    MonotonicClock,
    PollingScheduler,
    SchedulerOutcome,
)
from billing_core.domain.models import (
    ALLOWED_TRANSITIONS,
    GatewayStatusReport,
    MobileNetwork,
    PaymentState,
    PaymentSubject,
    PaymentTransaction,
    ProgressEvent,
)
from billing_core.integrations.gateway_client import GatewayError, PaymentGatewayClient
from billing_core.monitoring.logging import payment_context
from billing_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ProgressListener = Callable[[ProgressEvent], None]
CountdownListener = Callable[[int], None]

INITIATING_MESSAGE = "Initiating payment"
AWAITING_MESSAGE = "Approve the payment prompt on your phone"
SUCCEEDED_MESSAGE = "Payment successful"
FAILED_MESSAGE = "Payment failed"
INITIATION_FAILED_MESSAGE = "Payment could not be initiated"
TIMED_OUT_MESSAGE = (
    "We did not receive a confirmation in time. "
    "The payment may still complete, check its status later."
)
CANCELLED_MESSAGE = "Payment cancelled"
ABANDONED_MESSAGE = "Payment abandoned before the gateway answered the initiation"


class PaymentError(Exception):
    """Base exception for payment orchestration errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    pass


class PaymentInProgressError(PaymentError):
    """Raised when start() is called while an attempt is still running."""

    pass


class PaymentStateError(PaymentError):
    """Raised on a transition the state machine does not allow."""

    pass


class PaymentOrchestrator:
    """
    Drives one payment attempt at a time from initiation to a terminal state.

    Progress is observable three ways: `subscribe()` callbacks, the `run()`
    async iterator, and the `seconds_remaining` countdown.
    """

    def __init__(
        self,
        gateway: PaymentGatewayClient,
        subject: PaymentSubject,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            gateway: Gateway client used for initiation and status checks
            subject: What the payment is for (merged into the initiation body)
            settings: Optional settings (polling interval and deadline)
            clock: Optional time source
        """
        self.gateway = gateway
        self.subject = subject
        self.settings = settings or get_settings()
        self.clock: Clock = clock or MonotonicClock()

        self.poll_interval = self.settings.payment_poll_interval_seconds
        self.deadline = self.settings.payment_deadline_seconds
        self.countdown_tick = self.settings.countdown_tick_seconds

        self.transaction: Optional[PaymentTransaction] = None
        self._seconds_remaining = int(self.deadline)
        self._started_at: Optional[float] = None

        self._listeners: List[ProgressListener] = []
        self._countdown_listeners: List[CountdownListener] = []
        self._queues: List[asyncio.Queue] = []

        self._task: Optional[asyncio.Task] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self._poller: Optional[PollingScheduler] = None
        self._countdown: Optional[PollingScheduler] = None

    @property
    def state(self) -> Optional[PaymentState]:
        return self.transaction.state if self.transaction else None

    @property
    def seconds_remaining(self) -> int:
        return self._seconds_remaining

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """
        Register a progress callback.

        Returns:
            Callable[[], None]: Unsubscribe function
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_countdown(self, listener: CountdownListener) -> Callable[[], None]:
        """Register a callback receiving seconds remaining once per tick."""
        self._countdown_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._countdown_listeners:
                self._countdown_listeners.remove(listener)

        return unsubscribe

    @staticmethod
    def _build_transaction(
        amount: Decimal | str | int | float, phone: str, network: str | MobileNetwork
    ) -> PaymentTransaction:
        try:
            return PaymentTransaction(
                amount=Decimal(str(amount)),
                phone=phone,
                network=MobileNetwork.parse(network),
            )
        except (ValueError, InvalidOperation) as e:
            raise PaymentValidationError(str(e)) from e

    async def start(
        self,
        amount: Decimal | str | int | float,
        phone: str,
        network: str | MobileNetwork,
    ) -> PaymentTransaction:
        """
        Begin a new payment attempt.

        Args:
            amount: Positive amount to charge
            phone: Payer's mobile-money number
            network: Payer's carrier

        Returns:
            PaymentTransaction: The new transaction (state Created)

        Raises:
            PaymentValidationError: If the input is invalid
            PaymentInProgressError: If the current transaction is not terminal yet
        """
        if self.transaction is not None and not self.transaction.state.is_terminal:
            raise PaymentInProgressError("A payment attempt is already in progress")
        await self._discard_finished_attempt()

        transaction = self._build_transaction(amount, phone, network)

        self.transaction = transaction
        self._seconds_remaining = int(self.deadline)
        self._started_at = self.clock.now()

        logger.info(
            "payment_attempt_started",
            subject=self.subject.kind,
            amount=str(transaction.amount),
            network=transaction.network.value,
        )
        self._emit(INITIATING_MESSAGE)

        self._task = asyncio.create_task(self._run_attempt(transaction))
        return transaction

    async def run(
        self,
        amount: Decimal | str | int | float,
        phone: str,
        network: str | MobileNetwork,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Start an attempt and yield its progress events up to the terminal one.

        Example:
            >>> async for event in orchestrator.run("50.00", "0241234567", "MTN"):
            ...     render(event)
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            await self.start(amount, phone, network)
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    break
        finally:
            self._queues.remove(queue)

    async def wait(self) -> Optional[PaymentTransaction]:
        """Wait for the current attempt to reach a terminal state."""
        if self._task is not None:
            await self._task
        return self.transaction

    def cancel(self) -> bool:
        """
        Abandon the attempt while awaiting approval.

        The state flips to Cancelled before this returns. No final status
        check is made.

        Returns:
            bool: True if the attempt was cancelled
        """
        transaction = self.transaction
        if transaction is None or transaction.state is not PaymentState.AWAITING_APPROVAL:
            logger.info("payment_cancel_ignored", state=self.state.value if self.state else None)
            return False

        self._transition(PaymentState.CANCELLED, CANCELLED_MESSAGE)
        return True

    async def aclose(self) -> None:
        """Release every task and timer, cancelling an attempt in flight."""
        self.cancel()
        transaction = self.transaction
        if transaction is not None and not transaction.state.is_terminal:
            # Initiation still in flight: end the attempt so consumers see a terminal event
            self._transition(PaymentState.FAILED, ABANDONED_MESSAGE)
        self._stop_schedulers()
        await self._discard_finished_attempt()

    async def _discard_finished_attempt(self) -> None:
        # A terminal attempt may still be releasing timers or awaiting a stale status call
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None

    async def __aenter__(self) -> "PaymentOrchestrator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _emit(self, message: str) -> None:
        transaction = self.transaction
        event = ProgressEvent(
            state=transaction.state,
            message=message,
            seconds_remaining=self._seconds_remaining,
            transaction_id=transaction.id,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("progress_listener_failed", state=event.state.value)
        for queue in self._queues:
            queue.put_nowait(event)

    def _transition(self, state: PaymentState, message: str) -> None:
        transaction = self.transaction
        if state not in ALLOWED_TRANSITIONS[transaction.state]:
            raise PaymentStateError(
                f"Cannot move payment from {transaction.state.value} to {state.value}"
            )

        transaction.state = state
        transaction.message = message

        if state.is_terminal:
            self._stop_schedulers()
            duration = self.clock.now() - (self._started_at or self.clock.now())
            metrics.record_payment_outcome(self.subject.kind, state.value, duration)
            logger.info(
                "payment_attempt_finished",
                subject=self.subject.kind,
                transaction_id=transaction.id,
                state=state.value,
                gateway_message=message,
            )

        self._emit(message)

    def _stop_schedulers(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
        if self._countdown is not None:
            self._countdown.cancel()

    def _set_seconds_remaining(self, seconds: int) -> None:
        if seconds == self._seconds_remaining:
            return
        self._seconds_remaining = seconds
        for listener in list(self._countdown_listeners):
            try:
                listener(seconds)
            except Exception:
                logger.exception("countdown_listener_failed")

    async def _run_attempt(self, transaction: PaymentTransaction) -> None:
        with payment_context(payment_subject=self.subject.kind):
            try:
                await self._initiate(transaction)
                if transaction.state is PaymentState.AWAITING_APPROVAL:
                    await self._await_approval(transaction)
            except Exception:
                logger.exception("payment_attempt_crashed", transaction_id=transaction.id)
                if not transaction.state.is_terminal:
                    self._transition(PaymentState.FAILED, FAILED_MESSAGE)
            finally:
                await self._release()

    async def _initiate(self, transaction: PaymentTransaction) -> None:
        try:
            initiation = await self.gateway.initiate_payment(
                amount=transaction.amount,
                phone=transaction.phone,
                network=transaction.network,
                subject=self.subject,
            )
        except GatewayError as e:
            logger.warning("payment_initiation_failed", error=e.message)
            self._transition(PaymentState.FAILED, e.message or INITIATION_FAILED_MESSAGE)
            return

        if initiation.error or initiation.payment_transaction_id is None:
            logger.warning("payment_initiation_rejected", gateway_message=initiation.message)
            self._transition(
                PaymentState.FAILED, initiation.message or INITIATION_FAILED_MESSAGE
            )
            return

        transaction.id = initiation.payment_transaction_id
        self._transition(
            PaymentState.AWAITING_APPROVAL, initiation.message or AWAITING_MESSAGE
        )

    async def _await_approval(self, transaction: PaymentTransaction) -> None:
        self._poller = PollingScheduler(
            self.poll_interval, self.deadline, self.clock, name="payment_status"
        )
        self._countdown = PollingScheduler(
            self.countdown_tick, self.deadline, self.clock, name="payment_countdown"
        )
        self._countdown_task = asyncio.create_task(self._run_countdown(self._countdown))

        logger.info(
            "payment_awaiting_approval",
            transaction_id=transaction.id,
            poll_interval=self.poll_interval,
            deadline=self.deadline,
        )

        outcome = await self._poller.run(lambda: self._poll_once(transaction))

        if outcome is SchedulerOutcome.EXPIRED:
            await self._grace_check(transaction)

    async def _run_countdown(self, scheduler: PollingScheduler) -> None:
        async def tick() -> bool:
            self._set_seconds_remaining(max(0, round(self.deadline - scheduler.elapsed)))
            return False

        outcome = await scheduler.run(tick)
        if outcome is SchedulerOutcome.EXPIRED:
            self._set_seconds_remaining(0)

    async def _poll_once(self, transaction: PaymentTransaction) -> bool:
        try:
            report = await self.gateway.get_payment_status(transaction.id)
        except GatewayError as e:
            metrics.record_poll_error()
            logger.warning(
                "payment_status_poll_failed",
                transaction_id=transaction.id,
                error=e.message,
                error_type=e.error_type.value,
            )
            return False

        if transaction.state.is_terminal:
            logger.info(
                "payment_status_discarded",
                transaction_id=transaction.id,
                state=transaction.state.value,
            )
            return True

        return self._apply_report(report)

    def _apply_report(self, report: GatewayStatusReport) -> bool:
        if report.is_successful:
            self._transition(PaymentState.SUCCEEDED, report.message or SUCCEEDED_MESSAGE)
            return True
        if report.is_failed:
            self._transition(PaymentState.FAILED, report.message or FAILED_MESSAGE)
            return True
        self._transition(PaymentState.AWAITING_APPROVAL, report.message or AWAITING_MESSAGE)
        return False

    async def _grace_check(self, transaction: PaymentTransaction) -> None:
        logger.info("payment_deadline_reached", transaction_id=transaction.id)
        self._set_seconds_remaining(0)

        report: Optional[GatewayStatusReport] = None
        try:
            report = await self.gateway.get_payment_status(transaction.id)
        except GatewayError as e:
            logger.warning(
                "payment_grace_check_failed", transaction_id=transaction.id, error=e.message
            )

        if transaction.state.is_terminal:
            return

        if report is not None and report.is_successful:
            metrics.record_grace_check("succeeded")
            self._transition(PaymentState.SUCCEEDED, report.message or SUCCEEDED_MESSAGE)
        else:
            metrics.record_grace_check("timed_out")
            self._transition(PaymentState.TIMED_OUT, TIMED_OUT_MESSAGE)

    async def _release(self) -> None:
        self._stop_schedulers()
        countdown_task = self._countdown_task
        if countdown_task is not None and countdown_task is not asyncio.current_task():
            await countdown_task
        self._countdown_task = None
        self._poller = None
        self._countdown = None
