"""Turn inbound track requests into canonical events.

Apart from minting ids and reading the clock this is a pure transform:
nothing here touches the bus, the broker or the warehouse.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from pydantic import ValidationError

from src.collector.schemas import (
    KNOWN_EVENT_NAMES,
    CanonicalEvent,
    RejectedEvent,
    TenantContext,
    TrackEventRequest,
)
from src.core.errors import NormalizationError


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BatchResult:
    events: list[CanonicalEvent] = field(default_factory=list)
    rejected: list[RejectedEvent] = field(default_factory=list)


class EventNormalizer:
    def __init__(
        self,
        strict_event_names: bool = False,
        max_batch_size: int = 1000,
        id_factory: Callable[[], str] = _new_id,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.strict_event_names = strict_event_names
        self.max_batch_size = max_batch_size
        self._id_factory = id_factory
        self._clock = clock

    def normalize(self, request: TrackEventRequest, tenant: TenantContext) -> CanonicalEvent:
        """Validate one request against tenant rules and mint its canonical event."""
        if self.strict_event_names and request.event_name not in KNOWN_EVENT_NAMES:
            raise NormalizationError(f"unknown event_name {request.event_name!r}")

        return CanonicalEvent(
            id=self._id_factory(),
            tenant_id=tenant.tenant_id,
            event_name=request.event_name,
            user_id=request.user_id,
            device_id=request.device_id,
            session_id=request.session_id,
            timestamp=request.timestamp or self._clock(),
            properties=request.properties,
            platform=request.platform or tenant.default_platform,
            version=request.version,
            metadata=request.metadata,
        )

    def normalize_batch(self, items: list[Any], tenant: TenantContext) -> BatchResult:
        """Validate every element independently.

        Invalid elements are reported by position; the valid ones are still
        normalized so the caller can accept them.
        """
        if len(items) > self.max_batch_size:
            raise NormalizationError(
                f"batch of {len(items)} events exceeds the limit of {self.max_batch_size}"
            )

        result = BatchResult()
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                result.rejected.append(RejectedEvent(index=index, errors=["event: must be a JSON object"]))
                continue
            try:
                request = TrackEventRequest.model_validate(item)
                result.events.append(self.normalize(request, tenant))
            except ValidationError as exc:
                errors = [f"{'.'.join(str(p) for p in e['loc']) or 'event'}: {e['msg']}" for e in exc.errors()]
                result.rejected.append(RejectedEvent(index=index, errors=errors))
            except NormalizationError as exc:
                result.rejected.append(RejectedEvent(index=index, errors=[str(exc)]))
        return result
