"""
Pytest configuration and fixtures.
"""
import asyncio
import heapq
import itertools
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest

from billing_core.config import Settings
from billing_core.domain.models import GatewayInitiation, GatewayStatusReport
from billing_core.integrations.gateway_client import PaymentGatewayClient


async def settle(rounds: int = 25) -> None:
    """Let every ready task run until the loop is idle."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualClock:
    """
    Virtual time source for schedulers.

    `sleep()` parks the caller until `advance()` moves time past its wake-up
    point, so a 120 second polling window runs instantly and deterministically.
    """

    def __init__(self) -> None:
        self._now = 0.0
        self._seq = itertools.count()
        self._waiters: list[tuple[float, int, asyncio.Future]] = []

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (self._now + seconds, next(self._seq), future))
        await future

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking sleepers in order."""
        target = self._now + seconds
        await settle()
        while self._waiters and self._waiters[0][0] <= target:
            when, _, future = heapq.heappop(self._waiters)
            if future.done():
                continue
            self._now = when
            future.set_result(None)
            await settle()
        self._now = target
        await settle()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        app_name="billing-core-test",
        app_env="test",
        log_level="DEBUG",
        gateway_base_url="http://gateway.test/api",
        gateway_api_token="test-token",
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def gateway() -> AsyncMock:
    """Gateway client double; configure per test."""
    return AsyncMock(spec=PaymentGatewayClient)


def initiation(
    transaction_id: Optional[int] = 42,
    error: bool = False,
    message: str = "Prompt sent to your phone",
) -> GatewayInitiation:
    """Helper to create an initiate-payment response."""
    return GatewayInitiation(
        error=error, message=message, payment_transaction_id=transaction_id
    )


def status(value: str, message: str = "") -> GatewayStatusReport:
    """Helper to create a payment-status response."""
    return GatewayStatusReport(status=value, message=message or f"Payment {value}")


def sequence(*responses: Any, then: Any = None):
    """
    Side effect returning `responses` in order, then `then` forever.

    Exceptions in the sequence are raised instead of returned.
    """
    remaining = list(responses)
    fallback = then if then is not None else status("pending")

    async def _next(*args: Any, **kwargs: Any) -> Any:
        item = remaining.pop(0) if remaining else fallback
        if isinstance(item, BaseException):
            raise item
        return item

    return _next
