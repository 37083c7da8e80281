"""Transport contract shared by the Kafka and in-memory backends.

Wire format, one message per event:
    key      event id (partition / ordering key)
    value    CanonicalEvent as camelCase JSON
    headers  tenantId, eventName, timestamp
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol, TypeVar

from loguru import logger

from src.collector.schemas import CanonicalEvent
from src.core.errors import TransportError

T = TypeVar("T")

EventHandler = Callable[[CanonicalEvent], Awaitable[None]]


@dataclass(frozen=True)
class TransportMessage:
    key: bytes
    value: bytes
    headers: dict[str, str] = field(default_factory=dict)


def encode_event(event: CanonicalEvent, extra_headers: dict[str, str] | None = None) -> TransportMessage:
    payload = event.to_wire()
    headers = {
        "tenantId": event.tenant_id,
        "eventName": event.event_name,
        "timestamp": payload["timestamp"],
    }
    if extra_headers:
        headers.update(extra_headers)
    return TransportMessage(
        key=event.id.encode("utf-8"),
        value=json.dumps(payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8"),
        headers=headers,
    )


def decode_event(value: bytes | str | None) -> CanonicalEvent:
    """Parse a message value back into a CanonicalEvent.

    Raises ValueError (json.JSONDecodeError or pydantic.ValidationError) when
    the payload is not a valid event.
    """
    if value is None:
        raise ValueError("empty message value")
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return CanonicalEvent.model_validate(json.loads(value))


@dataclass(frozen=True)
class RetryPolicy:
    initial_retry_ms: int = 100
    retries: int = 8
    max_delay_ms: int = 30_000

    def delay_s(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based), doubling each time."""
        return min(self.initial_retry_ms * (2**attempt), self.max_delay_ms) / 1000.0


async def connect_with_retry(connect: Callable[[], T], policy: RetryPolicy, what: str) -> T:
    """Run the blocking `connect` callable until it succeeds or retries run out.

    The final failure is raised as TransportError so the caller that
    triggered the connect sees it.
    """
    attempt = 0
    while True:
        try:
            return await asyncio.to_thread(connect)
        except Exception as exc:
            if attempt >= policy.retries:
                logger.error("Giving up connecting {} after {} attempts: {}", what, attempt + 1, exc)
                raise TransportError(f"could not connect {what}: {exc}") from exc
            delay = policy.delay_s(attempt)
            logger.warning(
                "Connecting {} failed (attempt {}/{}), retrying in {:.2f}s: {}",
                what,
                attempt + 1,
                policy.retries + 1,
                delay,
                exc,
            )
            attempt += 1
            await asyncio.sleep(delay)


class EventProducer(Protocol):
    async def connect(self) -> None: ...

    async def create_topic(self, topic: str, partitions: int = 3, replication_factor: int = 1) -> None: ...

    async def send(
        self,
        topic: str,
        events: list[CanonicalEvent],
        headers: dict[str, str] | None = None,
    ) -> None: ...

    async def close(self) -> None: ...


class EventConsumer(Protocol):
    group_id: str

    async def connect(self) -> None: ...

    async def run(self, topic: str, handler: EventHandler) -> None: ...

    def stop(self) -> None: ...

    async def close(self) -> None: ...
