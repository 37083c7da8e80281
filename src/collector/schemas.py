"""Event schema definitions for the collector.

Inbound track requests are loose (most fields optional); the normalizer turns
each one into a CanonicalEvent, the immutable record that travels over the
bus and the broker. Wire names are camelCase, Python attributes snake_case.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

EVENT_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_.:-]{0,127}$")


class EventName(str, Enum):
    # lifecycle
    APP_INSTALLED = "app_installed"
    APP_OPENED = "app_opened"
    APP_BACKGROUNDED = "app_backgrounded"
    APP_UPDATED = "app_updated"
    # device
    DEVICE_REGISTERED = "device_registered"
    DEVICE_LINKED = "device_linked"
    # session
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    # interaction
    PAGE_VIEW = "page_view"
    SCREEN_VIEW = "screen_view"
    CLICK = "click"
    SEARCH = "search"
    # commerce
    ADD_TO_CART = "add_to_cart"
    CHECKOUT_STARTED = "checkout_started"
    PURCHASE = "purchase"
    REFUND = "refund"
    CUSTOM = "custom"


KNOWN_EVENT_NAMES = frozenset(e.value for e in EventName)


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _blank_to_none(v: str | None) -> str | None:
    if v is None:
        return None
    v = v.strip()
    return v or None


def _as_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class TenantContext(BaseModel):
    """What the identity context knows about the caller's project."""

    tenant_id: str
    default_platform: str = "web"


class TrackEventRequest(_WireModel):
    """A single event as submitted by a client SDK."""

    event_name: str
    user_id: str | None = None
    device_id: str | None = None
    session_id: str | None = None
    timestamp: datetime | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    platform: str | None = None
    version: str | None = None
    metadata: dict[str, Any] | None = None
    project_key: str | None = Field(default=None, exclude=True)

    @field_validator("event_name")
    @classmethod
    def event_name_well_formed(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("event_name must not be empty")
        if not EVENT_NAME_PATTERN.match(v):
            raise ValueError(f"event_name {v!r} is not well formed")
        return v

    @field_validator("user_id", "device_id", "session_id", "platform", "version")
    @classmethod
    def strip_optional(cls, v: str | None) -> str | None:
        return _blank_to_none(v)

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None

    @model_validator(mode="after")
    def needs_an_identity(self) -> "TrackEventRequest":
        if self.user_id is None and self.device_id is None:
            raise ValueError("at least one of user_id or device_id is required")
        return self


class LinkDeviceRequest(_WireModel):
    """Associates an anonymous device with a now-known user."""

    user_id: str
    device_id: str
    session_id: str | None = None
    timestamp: datetime | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    platform: str | None = None
    version: str | None = None
    project_key: str | None = Field(default=None, exclude=True)

    @field_validator("user_id", "device_id")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("user_id and device_id must not be empty")
        return v.strip()

    def to_track_request(self) -> TrackEventRequest:
        return TrackEventRequest(
            event_name=EventName.DEVICE_LINKED.value,
            user_id=self.user_id,
            device_id=self.device_id,
            session_id=self.session_id,
            timestamp=self.timestamp,
            properties=self.properties,
            platform=self.platform,
            version=self.version,
        )


class CanonicalEvent(_WireModel):
    """The normalized event envelope. Frozen once minted at ingress."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    tenant_id: str
    event_name: str
    user_id: str | None = None
    device_id: str | None = None
    session_id: str | None = None
    timestamp: datetime
    properties: dict[str, Any] = Field(default_factory=dict)
    platform: str
    version: str | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @model_validator(mode="after")
    def needs_an_identity(self) -> "CanonicalEvent":
        if self.user_id is None and self.device_id is None:
            raise ValueError("at least one of user_id or device_id is required")
        return self

    @property
    def is_device_link(self) -> bool:
        return (
            self.event_name == EventName.DEVICE_LINKED.value
            and self.user_id is not None
            and self.device_id is not None
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class BatchTrackRequest(_WireModel):
    """A batch of raw events.

    Elements stay untyped here so one malformed event does not fail the whole
    request; the normalizer validates each one on its own.
    """

    events: list[Any] = Field(..., min_length=1)
    project_key: str | None = Field(default=None, exclude=True)


class EventAck(_WireModel):
    """Acknowledgement for one accepted event."""

    id: str
    event_name: str
    user_id: str | None = None
    device_id: str | None = None
    timestamp: datetime
    success: bool = True


class RejectedEvent(_WireModel):
    index: int
    errors: list[str]


class BatchAck(_WireModel):
    accepted: list[EventAck] = Field(default_factory=list)
    rejected: list[RejectedEvent] = Field(default_factory=list)


class AdHocQueryRequest(_WireModel):
    sql: str = Field(..., min_length=1)
    project_key: str | None = Field(default=None, exclude=True)
