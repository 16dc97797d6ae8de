"""Razorpay webhook envelope decoding.

Two steps:
1. parse_envelope: JSON + event id + event type. Failures here are parse
   errors (400), nothing is recorded.
2. decode_event: validate the payload into a closed set of event variants.
   Types outside the set become UnknownEvent (acknowledged no-op); a known
   type whose payload does not validate raises DataIntegrityViolation.
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from subscription_engine.core.exceptions import DataIntegrityViolation


class EventType:
    """Processor event names this engine acts on."""

    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CHARGED = "subscription.charged"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_COMPLETED = "subscription.completed"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"


@dataclass(frozen=True)
class Envelope:
    event_id: str
    event_type: str
    data: dict


def parse_envelope(raw_body: bytes, event_id_header: str | None = None) -> Envelope:
    """Parse the verified body far enough to claim the event.

    Raises:
        ValueError: body is not a JSON object, or has no event id / type
    """
    try:
        data = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Invalid JSON payload: {exc}") from exc

    if not isinstance(data, dict):
        raise ValueError("Webhook payload must be a JSON object")

    event_id = data.get("id") or event_id_header
    event_type = data.get("event")
    if not isinstance(event_id, str) or not event_id:
        raise ValueError("Webhook payload has no event id")
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("Webhook payload has no event type")

    return Envelope(event_id=event_id, event_type=event_type, data=data)


# 9999-12-31T23:59:59Z, the last instant a datetime can hold
MAX_UNIX_TIMESTAMP = 253402300799

UnixTimestamp = Annotated[int, Field(ge=0, le=MAX_UNIX_TIMESTAMP)]


def from_unix(ts: int | None) -> datetime | None:
    """Epoch seconds to an aware UTC datetime.

    Raises:
        DataIntegrityViolation: the value cannot be represented as a datetime
    """
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(ts, tz=UTC)
    except (OverflowError, OSError, ValueError) as exc:
        raise DataIntegrityViolation(f"Timestamp {ts!r} is out of range") from exc


def _coerce_notes(value: Any) -> dict[str, str]:
    # Razorpay sends notes as [] when empty
    if not value:
        return {}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    raise ValueError("notes must be an object")


class SubscriptionEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    plan_id: str | None = None
    status: str | None = None
    notes: dict[str, str] = Field(default_factory=dict)
    current_start: UnixTimestamp | None = None
    current_end: UnixTimestamp | None = None
    ended_at: UnixTimestamp | None = None

    @field_validator("notes", mode="before")
    @classmethod
    def normalize_notes(cls, value: Any) -> dict[str, str]:
        return _coerce_notes(value)

    @property
    def user_id(self) -> str | None:
        return self.notes.get("user_id") or None

    @property
    def plan_type_hint(self) -> str | None:
        return self.notes.get("plan_type") or None

    def period(self) -> tuple[datetime, datetime]:
        """(start, end) of the current billing period.

        Raises:
            DataIntegrityViolation: period missing or end before start
        """
        if self.current_start is None or self.current_end is None:
            raise DataIntegrityViolation(f"Subscription {self.id} has no billing period")
        start, end = from_unix(self.current_start), from_unix(self.current_end)
        if end < start:
            raise DataIntegrityViolation(
                f"Subscription {self.id} period ends before it starts ({start} > {end})"
            )
        return start, end


class PaymentEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    amount: int = Field(ge=0)
    currency: str = "INR"
    status: str | None = None
    subscription_id: str | None = None
    order_id: str | None = None
    method: str | None = None
    notes: dict[str, str] = Field(default_factory=dict)
    error_description: str | None = None
    created_at: UnixTimestamp | None = None

    @field_validator("notes", mode="before")
    @classmethod
    def normalize_notes(cls, value: Any) -> dict[str, str]:
        return _coerce_notes(value)

    @property
    def user_id(self) -> str | None:
        return self.notes.get("user_id") or None


class _ProcessorEvent(BaseModel):
    """Common envelope fields; lifts payload.<name>.entity up to top-level fields."""

    model_config = ConfigDict(extra="ignore")

    event_id: str
    created_at: UnixTimestamp | None = None

    @model_validator(mode="before")
    @classmethod
    def lift_entities(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        lifted = dict(data)
        payload = data.get("payload") or {}
        for name in ("subscription", "payment"):
            wrapper = payload.get(name)
            if isinstance(wrapper, dict) and name not in lifted:
                lifted[name] = wrapper.get("entity", wrapper)
        return lifted


class SubscriptionActivated(_ProcessorEvent):
    event: Literal["subscription.activated"]
    subscription: SubscriptionEntity


class SubscriptionCharged(_ProcessorEvent):
    event: Literal["subscription.charged"]
    subscription: SubscriptionEntity
    payment: PaymentEntity | None = None


class SubscriptionCancelled(_ProcessorEvent):
    event: Literal["subscription.cancelled"]
    subscription: SubscriptionEntity


class SubscriptionCompleted(_ProcessorEvent):
    event: Literal["subscription.completed"]
    subscription: SubscriptionEntity


class PaymentCaptured(_ProcessorEvent):
    event: Literal["payment.captured"]
    payment: PaymentEntity


class PaymentFailed(_ProcessorEvent):
    event: Literal["payment.failed"]
    payment: PaymentEntity


class UnknownEvent(BaseModel):
    """Any event type outside the known set; handled as an acknowledged no-op."""

    event_id: str
    raw_type: str


KnownEvent = Annotated[
    Union[
        SubscriptionActivated,
        SubscriptionCharged,
        SubscriptionCancelled,
        SubscriptionCompleted,
        PaymentCaptured,
        PaymentFailed,
    ],
    Field(discriminator="event"),
]

ProcessorEvent = Union[
    SubscriptionActivated,
    SubscriptionCharged,
    SubscriptionCancelled,
    SubscriptionCompleted,
    PaymentCaptured,
    PaymentFailed,
    UnknownEvent,
]

KNOWN_EVENT_TYPES = frozenset({
    EventType.SUBSCRIPTION_ACTIVATED,
    EventType.SUBSCRIPTION_CHARGED,
    EventType.SUBSCRIPTION_CANCELLED,
    EventType.SUBSCRIPTION_COMPLETED,
    EventType.PAYMENT_CAPTURED,
    EventType.PAYMENT_FAILED,
})

_known_event_adapter: TypeAdapter = TypeAdapter(KnownEvent)


def decode_event(envelope: Envelope) -> ProcessorEvent:
    """Validate an envelope into its event variant.

    Raises:
        DataIntegrityViolation: known event type with a malformed payload
    """
    if envelope.event_type not in KNOWN_EVENT_TYPES:
        return UnknownEvent(event_id=envelope.event_id, raw_type=envelope.event_type)

    try:
        return _known_event_adapter.validate_python({**envelope.data, "event_id": envelope.event_id})
    except ValidationError as exc:
        raise DataIntegrityViolation(
            f"Malformed {envelope.event_type} payload: {exc.error_count()} validation error(s): "
            f"{exc.errors(include_url=False)[:3]}"
        ) from exc
