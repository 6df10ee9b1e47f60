"""
Mobile-money gateway client with error classification.

Implements:
- Payment initiation (never retried: a retry could charge twice)
- Payment status lookup (never retried: the poller's next tick is the retry)
- School balance lookup with exponential backoff on transport errors
"""
import time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from billing_core.config import Settings, get_settings
from billing_core.domain.models import (
    GatewayInitiation,
    GatewayStatusReport,
    MobileNetwork,
    OutstandingBalance,
    PaymentSubject,
)
from billing_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class GatewayErrorType(Enum):
    """Classification of gateway errors."""

    TRANSPORT = "transport"  # Connection, timeout, 5xx
    REJECTED = "rejected"  # 4xx, the backend refused the request
    INVALID_RESPONSE = "invalid_response"  # Body is not the expected JSON


class GatewayError(Exception):
    """Base exception for gateway-related errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message (surfaced to the payer for rejections)
            error_type: Classification of error
            status_code: HTTP status code when a response was received
            original_error: Original httpx exception
        """
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error

    @property
    def is_transport(self) -> bool:
        return self.error_type is GatewayErrorType.TRANSPORT


def _is_transport_error(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.is_transport


def _error_message(response: httpx.Response) -> str:
    """Best-effort human-readable message from an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {response.status_code}"


class PaymentGatewayClient:
    """
    HTTP client for the payment backend.

    The client is the only place that knows URLs and wire field names; the
    orchestrator works with the parsed domain values.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize gateway client.

        Args:
            settings: Optional settings (defaults to cached settings)
            http_client: Optional preconfigured httpx client
        """
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.gateway_base_url,
            timeout=self.settings.gateway_timeout_seconds,
            headers=self._default_headers(),
        )
        self.balance_retry_wait = wait_exponential(multiplier=0.5, min=0.5, max=4)

        logger.info(
            "gateway_client_initialized",
            base_url=self.settings.gateway_base_url,
        )

    def _default_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.gateway_api_token:
            headers["Authorization"] = f"Bearer {self.settings.gateway_api_token}"
        return headers

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "PaymentGatewayClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        """
        Issue one request and classify every failure.

        Args:
            operation: Metric/log label (initiate, status, balance)
            method: HTTP method
            path: Path relative to the base URL
            **kwargs: Passed to httpx

        Returns:
            Any: Decoded JSON body

        Raises:
            GatewayError: Classified error
        """
        start = time.perf_counter()
        try:
            response = await self.http_client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            metrics.record_gateway_call(operation, "timeout", time.perf_counter() - start)
            logger.warning("gateway_timeout", operation=operation, path=path)
            raise GatewayError(
                "Payment service timed out", GatewayErrorType.TRANSPORT, original_error=e
            ) from e
        except httpx.TransportError as e:
            metrics.record_gateway_call(operation, "transport_error", time.perf_counter() - start)
            logger.warning(
                "gateway_transport_error", operation=operation, path=path, error=str(e)
            )
            raise GatewayError(
                "Payment service unreachable", GatewayErrorType.TRANSPORT, original_error=e
            ) from e

        duration = time.perf_counter() - start

        if response.status_code >= 500:
            metrics.record_gateway_call(operation, "server_error", duration)
            message = _error_message(response)
            logger.error(
                "gateway_server_error",
                operation=operation,
                status_code=response.status_code,
                error_message=message,
            )
            raise GatewayError(
                message, GatewayErrorType.TRANSPORT, status_code=response.status_code
            )

        if response.status_code >= 400:
            metrics.record_gateway_call(operation, "rejected", duration)
            message = _error_message(response)
            logger.warning(
                "gateway_request_rejected",
                operation=operation,
                status_code=response.status_code,
                error_message=message,
            )
            raise GatewayError(
                message, GatewayErrorType.REJECTED, status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError as e:
            metrics.record_gateway_call(operation, "invalid_response", duration)
            logger.error("gateway_invalid_response", operation=operation, path=path)
            raise GatewayError(
                "Payment service returned an unreadable response",
                GatewayErrorType.INVALID_RESPONSE,
                status_code=response.status_code,
                original_error=e,
            ) from e

        metrics.record_gateway_call(operation, "ok", duration)
        return body

    @staticmethod
    def _parse(body: Any, operation: str, build: Callable[[Dict[str, Any]], T]) -> T:
        if not isinstance(body, dict):
            logger.error("gateway_unexpected_shape", operation=operation)
            raise GatewayError(
                f"Unexpected {operation} response shape",
                GatewayErrorType.INVALID_RESPONSE,
            )
        try:
            return build(body)
        except (ValidationError, InvalidOperation) as e:
            logger.error("gateway_unparseable_fields", operation=operation, error=str(e))
            raise GatewayError(
                f"Unexpected {operation} response fields",
                GatewayErrorType.INVALID_RESPONSE,
                original_error=e,
            ) from e

    async def initiate_payment(
        self,
        amount: Decimal,
        phone: str,
        network: MobileNetwork,
        subject: PaymentSubject,
    ) -> GatewayInitiation:
        """
        Ask the gateway to push a mobile-money prompt to the payer.

        Args:
            amount: Amount to charge
            phone: Payer's mobile-money number
            network: Payer's carrier
            subject: Subject-specific fields merged into the body

        Returns:
            GatewayInitiation: Parsed response (may carry error=True)

        Raises:
            GatewayError: If the request fails or is rejected
        """
        payload: Dict[str, Any] = {
            **subject.to_payload(),
            "amount": float(amount),
            "phone_number": phone,
            "network": network.value,
        }

        logger.info(
            "initiating_payment",
            subject=subject.kind,
            amount=str(amount),
            network=network.value,
        )

        body = await self._request(
            "initiate", "POST", self.settings.initiate_payment_path, json=payload
        )
        initiation = self._parse(body, "initiate", GatewayInitiation.model_validate)

        logger.info(
            "payment_initiation_response",
            error=initiation.error,
            transaction_id=initiation.payment_transaction_id,
        )
        return initiation

    async def get_payment_status(self, transaction_id: int) -> GatewayStatusReport:
        """
        Fetch the current status of a transaction.

        Args:
            transaction_id: Gateway transaction id

        Returns:
            GatewayStatusReport: Parsed status

        Raises:
            GatewayError: If the request fails
        """
        path = f"{self.settings.payment_status_path}/{transaction_id}"
        body = await self._request("status", "GET", path)
        report = self._parse(body, "status", GatewayStatusReport.model_validate)

        logger.debug(
            "payment_status_received",
            transaction_id=transaction_id,
            status=report.status,
        )
        return report

    async def _fetch_school_balance(
        self, school_id: int, bill_id: Optional[int]
    ) -> OutstandingBalance:
        path = f"{self.settings.school_balance_path}/{school_id}"
        params = {"bill_id": bill_id} if bill_id is not None else None
        body = await self._request("balance", "GET", path, params=params)
        return self._parse(body, "balance", OutstandingBalance.from_response)

    async def get_school_balance(
        self, school_id: int, bill_id: Optional[int] = None
    ) -> OutstandingBalance:
        """
        Fetch what a school still owes, retrying transport errors.

        Args:
            school_id: School id
            bill_id: Optional bill to scope the balance to

        Returns:
            OutstandingBalance: Parsed balance

        Raises:
            GatewayError: If every attempt fails or the request is rejected
        """
        logger.info("fetching_school_balance", school_id=school_id, bill_id=bill_id)

        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transport_error),
            stop=stop_after_attempt(self.settings.balance_retry_attempts),
            wait=self.balance_retry_wait,
            reraise=True,
        ):
            with attempt:
                balance = await self._fetch_school_balance(school_id, bill_id)

        logger.info(
            "school_balance_fetched",
            school_id=school_id,
            balance=str(balance.amount),
            blocked=balance.blocked,
        )
        return balance
