"""
Tests for the payment gateway client against an in-memory HTTP transport.
"""
import json
from decimal import Decimal
from typing import Callable

import httpx
import pytest
from tenacity import wait_none

from billing_core.config import Settings
from billing_core.domain.models import (
    EventRegistrationSubject,
    MobileNetwork,
    SchoolBillSubject,
)
from billing_core.integrations.gateway_client import (
    GatewayError,
    GatewayErrorType,
    PaymentGatewayClient,
)

Handler = Callable[[httpx.Request], httpx.Response]


def make_client(settings: Settings, handler: Handler) -> PaymentGatewayClient:
    http_client = httpx.AsyncClient(
        base_url=settings.gateway_base_url,
        transport=httpx.MockTransport(handler),
    )
    client = PaymentGatewayClient(settings=settings, http_client=http_client)
    client.balance_retry_wait = wait_none()
    return client


class TestInitiatePayment:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_posts_subject_fields_with_payer(self, test_settings: Settings) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(
                200,
                json={
                    "error": False,
                    "message": "Prompt sent",
                    "payment_transaction_id": 42,
                },
            )

        subject = EventRegistrationSubject(
            registration_code="REG-9", school_id=3, number_of_attendees=4
        )
        async with make_client(test_settings, handler) as client:
            result = await client.initiate_payment(
                amount=Decimal("50.00"),
                phone="0241234567",
                network=MobileNetwork.TELECEL,
                subject=subject,
            )

        assert result.payment_transaction_id == 42
        assert not result.error

        request = captured[0]
        assert request.method == "POST"
        assert request.url.path == "/api/initiate-payment"
        assert json.loads(request.content) == {
            "registration_code": "REG-9",
            "school_id": 3,
            "number_of_attendees": 4,
            "amount": 50.0,
            "phone_number": "0241234567",
            "network": "TELECEL",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_school_bill_payload_carries_bill_fields(
        self, test_settings: Settings
    ) -> None:
        captured: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(json.loads(request.content))
            return httpx.Response(200, json={"payment_transaction_id": 7})

        subject = SchoolBillSubject(
            school_id=3, school_bill_id=11, payment_note="Term 1 dues"
        )
        async with make_client(test_settings, handler) as client:
            await client.initiate_payment(
                amount=Decimal("20"),
                phone="0241234567",
                network=MobileNetwork.MTN,
                subject=subject,
            )

        body = captured[0]
        assert body["school_bill_id"] == 11
        assert body["payment_note"] == "Term 1 dues"
        assert body["payment_date"] == subject.payment_date.isoformat()
        assert "school_name" not in body
        assert "kind" not in body

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_error_flag_is_returned_not_raised(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"error": True, "message": "Insufficient funds"})

        async with make_client(test_settings, handler) as client:
            result = await client.initiate_payment(
                amount=Decimal("50"),
                phone="0241234567",
                network=MobileNetwork.MTN,
                subject=EventRegistrationSubject(registration_code="R", school_id=1),
            )

        assert result.error
        assert result.message == "Insufficient funds"
        assert result.payment_transaction_id is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiation_is_never_retried(self, test_settings: Settings) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503, json={"message": "Service unavailable"})

        async with make_client(test_settings, handler) as client:
            with pytest.raises(GatewayError) as exc_info:
                await client.initiate_payment(
                    amount=Decimal("50"),
                    phone="0241234567",
                    network=MobileNetwork.MTN,
                    subject=EventRegistrationSubject(registration_code="R", school_id=1),
                )

        assert calls == 1
        assert exc_info.value.is_transport
        assert exc_info.value.status_code == 503


class TestPaymentStatus:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reads_status_by_transaction_id(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/payment-status/42"
            return httpx.Response(200, json={"status": "SUCCESSFUL", "message": "Paid"})

        async with make_client(test_settings, handler) as client:
            report = await client.get_payment_status(42)

        assert report.is_successful
        assert report.message == "Paid"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bearer_token_is_sent(self, test_settings: Settings) -> None:
        headers: list[httpx.Headers] = []

        def handler(request: httpx.Request) -> httpx.Response:
            headers.append(request.headers)
            return httpx.Response(200, json={"status": "pending"})

        async with PaymentGatewayClient(settings=test_settings) as client:
            default_client = client.http_client
            client.http_client = httpx.AsyncClient(
                base_url=test_settings.gateway_base_url,
                headers=default_client.headers,
                transport=httpx.MockTransport(handler),
            )
            await default_client.aclose()
            await client.get_payment_status(1)

        assert headers[0]["Authorization"] == "Bearer test-token"
        assert headers[0]["Accept"] == "application/json"


class TestErrorClassification:
    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response, error_type, message",
        [
            (
                httpx.Response(422, json={"message": "Invalid phone number"}),
                GatewayErrorType.REJECTED,
                "Invalid phone number",
            ),
            (
                httpx.Response(401, json={"detail": "Unauthenticated"}),
                GatewayErrorType.REJECTED,
                "Unauthenticated",
            ),
            (
                httpx.Response(500, text="Internal Server Error"),
                GatewayErrorType.TRANSPORT,
                "Internal Server Error",
            ),
            (
                httpx.Response(200, text="<html>maintenance</html>"),
                GatewayErrorType.INVALID_RESPONSE,
                "Payment service returned an unreadable response",
            ),
            (
                httpx.Response(200, json=["not", "an", "object"]),
                GatewayErrorType.INVALID_RESPONSE,
                "Unexpected status response shape",
            ),
        ],
    )
    async def test_responses_are_classified(
        self,
        test_settings: Settings,
        response: httpx.Response,
        error_type: GatewayErrorType,
        message: str,
    ) -> None:
        async with make_client(test_settings, lambda request: response) as client:
            with pytest.raises(GatewayError) as exc_info:
                await client.get_payment_status(1)

        assert exc_info.value.error_type is error_type
        assert exc_info.value.message == message

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_connection_error_is_transport(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(test_settings, handler) as client:
            with pytest.raises(GatewayError) as exc_info:
                await client.get_payment_status(1)

        assert exc_info.value.is_transport
        assert isinstance(exc_info.value.original_error, httpx.ConnectError)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_timeout_is_transport(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(test_settings, handler) as client:
            with pytest.raises(GatewayError) as exc_info:
                await client.get_payment_status(1)

        assert exc_info.value.is_transport
        assert exc_info.value.message == "Payment service timed out"


class TestSchoolBalance:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_parses_balance_for_bill(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/school-balance/3"
            assert request.url.params["bill_id"] == "11"
            return httpx.Response(
                200,
                json={
                    "balance": "150.50",
                    "has_balance": True,
                    "blocked": False,
                    "bill_id": 11,
                    "bill_name": "Annual dues",
                },
            )

        async with make_client(test_settings, handler) as client:
            balance = await client.get_school_balance(3, bill_id=11)

        assert balance.amount == Decimal("150.50")
        assert balance.has_balance
        assert balance.bill_name == "Annual dues"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retries_transport_errors(self, test_settings: Settings) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls < 3:
                return httpx.Response(502, text="Bad Gateway")
            return httpx.Response(200, json={"balance": 10})

        async with make_client(test_settings, handler) as client:
            balance = await client.get_school_balance(3)

        assert calls == 3
        assert balance.amount == Decimal("10")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gives_up_after_configured_attempts(self, test_settings: Settings) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("down", request=request)

        async with make_client(test_settings, handler) as client:
            with pytest.raises(GatewayError) as exc_info:
                await client.get_school_balance(3)

        assert calls == test_settings.balance_retry_attempts
        assert exc_info.value.is_transport

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rejections_are_not_retried(self, test_settings: Settings) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(404, json={"message": "School not found"})

        async with make_client(test_settings, handler) as client:
            with pytest.raises(GatewayError) as exc_info:
                await client.get_school_balance(99)

        assert calls == 1
        assert exc_info.value.error_type is GatewayErrorType.REJECTED
        assert exc_info.value.message == "School not found"


class TestResponseFields:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_null_message_is_read_as_empty(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "pending", "message": None})

        async with make_client(test_settings, handler) as client:
            report = await client.get_payment_status(42)

        assert report.status == "pending"
        assert report.message == ""

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"status": "pending", "message": {"text": "nested"}},
            {"status": "pending", "message": ["a", "b"]},
        ],
    )
    async def test_mistyped_status_fields_are_invalid_response(
        self, test_settings: Settings, body: dict
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=body)

        async with make_client(test_settings, handler) as client:
            with pytest.raises(GatewayError) as exc_info:
                await client.get_payment_status(42)

        assert exc_info.value.error_type is GatewayErrorType.INVALID_RESPONSE
        assert not exc_info.value.is_transport

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_numeric_transaction_id_is_invalid_response(
        self, test_settings: Settings
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"error": False, "message": None, "payment_transaction_id": "abc"}
            )

        async with make_client(test_settings, handler) as client:
            with pytest.raises(GatewayError) as exc_info:
                await client.initiate_payment(
                    amount=Decimal("5"),
                    phone="0241234567",
                    network=MobileNetwork.MTN,
                    subject=SchoolBillSubject(school_id=1, school_bill_id=2),
                )

        assert exc_info.value.error_type is GatewayErrorType.INVALID_RESPONSE

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unparseable_balance_is_not_retried(self, test_settings: Settings) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"balance": "lots"})

        async with make_client(test_settings, handler) as client:
            with pytest.raises(GatewayError) as exc_info:
                await client.get_school_balance(3)

        assert calls == 1
        assert exc_info.value.error_type is GatewayErrorType.INVALID_RESPONSE
