"""
Domain values for mobile-money payments and fee targeting.

Every value here is a request-scoped copy of backend data: the backend owns
balances, bill assignments and gateway transactions, the core only holds
them for the duration of one polling session or one render.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = structlog.get_logger(__name__)


class PaymentState(str, Enum):
    """
    Payment attempt lifecycle.

    State machine:
    CREATED → AWAITING_APPROVAL → SUCCEEDED | FAILED | TIMED_OUT | CANCELLED
       ↓
     FAILED
    """

    CREATED = "created"
    AWAITING_APPROVAL = "awaiting_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        PaymentState.SUCCEEDED,
        PaymentState.FAILED,
        PaymentState.TIMED_OUT,
        PaymentState.CANCELLED,
    }
)

ALLOWED_TRANSITIONS: dict[PaymentState, frozenset[PaymentState]] = {
    PaymentState.CREATED: frozenset({PaymentState.AWAITING_APPROVAL, PaymentState.FAILED}),
    PaymentState.AWAITING_APPROVAL: frozenset(
        {
            PaymentState.AWAITING_APPROVAL,
            PaymentState.SUCCEEDED,
            PaymentState.FAILED,
            PaymentState.TIMED_OUT,
            PaymentState.CANCELLED,
        }
    ),
    PaymentState.SUCCEEDED: frozenset(),
    PaymentState.FAILED: frozenset(),
    PaymentState.TIMED_OUT: frozenset(),
    PaymentState.CANCELLED: frozenset(),
}


class MobileNetwork(str, Enum):
    """Carriers accepted by the mobile-money gateway."""

    MTN = "MTN"
    TELECEL = "TELECEL"
    AIRTELTIGO = "AIRTELTIGO"

    @classmethod
    def parse(cls, value: str | MobileNetwork) -> MobileNetwork:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            valid = ", ".join(n.value for n in cls)
            raise ValueError(f"Unsupported network '{value}'. Must be one of: {valid}")


class GatewayStatus(str, Enum):
    """Status values reported by the payment-status endpoint."""

    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    ERROR = "error"


# Local (0XXXXXXXXX) or international (+233XXXXXXXXX / 233XXXXXXXXX) numbers
_PHONE_PATTERN = re.compile(r"^(?:0\d{9}|\+?233\d{9})$")


def normalize_phone(phone: str) -> str:
    """Strip separators and validate a mobile-money number."""
    cleaned = re.sub(r"[\s\-()]", "", phone or "")
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError(f"Invalid mobile money number: '{phone}'")
    return cleaned


class PaymentTransaction(BaseModel):
    """
    One mobile-money charge attempt.

    `id` stays None until the gateway accepts the initiation. The state is
    only ever changed through the orchestrator's transition table.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: Optional[int] = None
    amount: Decimal = Field(..., gt=0)
    phone: str
    network: MobileNetwork
    state: PaymentState = PaymentState.CREATED
    message: str = ""

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return normalize_phone(v)


class ProgressEvent(BaseModel):
    """A state snapshot pushed to progress subscribers."""

    model_config = ConfigDict(frozen=True)

    state: PaymentState
    message: str
    seconds_remaining: int
    transaction_id: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class GatewayInitiation(BaseModel):
    """Response of the initiate-payment endpoint."""

    error: bool = False
    message: str = ""
    payment_transaction_id: Optional[int] = None

    @field_validator("message", mode="before")
    @classmethod
    def blank_message(cls, v: Any) -> Any:
        return "" if v is None else v


class GatewayStatusReport(BaseModel):
    """Response of the payment-status endpoint."""

    status: str = GatewayStatus.PENDING.value
    message: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def lower_status(cls, v: Any) -> str:
        return str(v or "").strip().lower()

    @field_validator("message", mode="before")
    @classmethod
    def blank_message(cls, v: Any) -> Any:
        return "" if v is None else v

    @property
    def is_successful(self) -> bool:
        return self.status == GatewayStatus.SUCCESSFUL.value

    @property
    def is_failed(self) -> bool:
        return self.status == GatewayStatus.FAILED.value


class OutstandingBalance(BaseModel):
    """
    What a school still owes on a bill.

    `has_balance` is derived from `amount` so the pair can never disagree.
    When `blocked` is set the payer is not enrolled in billing at all and
    the amount carries no meaning.
    """

    model_config = ConfigDict(frozen=True)

    amount: Decimal = Field(default=Decimal("0"), ge=0)
    blocked: bool = False
    bill_id: Optional[int] = None
    bill_name: Optional[str] = None
    message: Optional[str] = None

    @property
    def has_balance(self) -> bool:
        return not self.blocked and self.amount > 0

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> OutstandingBalance:
        """Build from the school-balance wire shape."""
        amount = Decimal(str(payload.get("balance") or 0))
        if amount < 0:
            amount = Decimal("0")
        reported = payload.get("has_balance")
        if reported is not None and bool(reported) != (amount > 0):
            logger.warning(
                "balance_flag_mismatch",
                balance=str(amount),
                has_balance=reported,
            )
        return cls(
            amount=amount,
            blocked=bool(payload.get("blocked", False)),
            bill_id=payload.get("bill_id"),
            bill_name=payload.get("bill_name"),
            message=payload.get("message"),
        )


def _id_tuple(values: Optional[Iterable[Any]]) -> tuple[int, ...]:
    if not values:
        return ()
    return tuple(int(v) for v in values)


class FeeTargeting(BaseModel):
    """The four independent targeting dimensions of a bill item."""

    model_config = ConfigDict(frozen=True)

    school_ids: tuple[int, ...] = ()
    group_ids: tuple[int, ...] = ()
    zone_ids: tuple[int, ...] = ()
    region_ids: tuple[int, ...] = ()

    @field_validator("school_ids", "group_ids", "zone_ids", "region_ids", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> tuple[int, ...]:
        return _id_tuple(v)

    @classmethod
    def from_bill_item(cls, item: Mapping[str, Any]) -> FeeTargeting:
        """Build from a bill item record (`school_group_ids` holds the groups)."""
        return cls(
            school_ids=item.get("school_ids"),
            group_ids=item.get("school_group_ids"),
            zone_ids=item.get("zone_ids"),
            region_ids=item.get("region_ids"),
        )


def _name_table(records: Optional[Iterable[Mapping[str, Any]]]) -> dict[int, str]:
    table: dict[int, str] = {}
    for record in records or ():
        if record.get("is_deleted"):
            continue
        name = record.get("name")
        if name:
            table[int(record["id"])] = str(name)
    return table


class Lookups(BaseModel):
    """id → display name tables for every targeting dimension."""

    model_config = ConfigDict(frozen=True)

    schools: dict[int, str] = Field(default_factory=dict)
    groups: dict[int, str] = Field(default_factory=dict)
    zones: dict[int, str] = Field(default_factory=dict)
    regions: dict[int, str] = Field(default_factory=dict)

    @classmethod
    def from_records(
        cls,
        schools: Optional[Iterable[Mapping[str, Any]]] = None,
        groups: Optional[Iterable[Mapping[str, Any]]] = None,
        zones: Optional[Iterable[Mapping[str, Any]]] = None,
        regions: Optional[Iterable[Mapping[str, Any]]] = None,
    ) -> Lookups:
        """Build from backend records; soft-deleted records are left out."""
        return cls(
            schools=_name_table(schools),
            groups=_name_table(groups),
            zones=_name_table(zones),
            regions=_name_table(regions),
        )


class PaymentSubject(BaseModel):
    """What a payment is for. Subclasses add the subject-specific wire fields."""

    model_config = ConfigDict(frozen=True)

    kind: str = "generic"

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude={"kind"}, exclude_none=True, mode="json")


class EventRegistrationSubject(PaymentSubject):
    """A public event registration paid for by a school."""

    kind: str = "event_registration"
    registration_code: str = Field(..., min_length=1)
    school_id: int
    number_of_attendees: int = Field(default=1, ge=1)
    event_id: Optional[int] = None


class SchoolBillSubject(PaymentSubject):
    """A payment towards a school's outstanding bill."""

    kind: str = "school_bill"
    school_id: int
    school_bill_id: int
    school_name: Optional[str] = None
    payment_date: date = Field(default_factory=date.today)
    payment_note: Optional[str] = None
