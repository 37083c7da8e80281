"""Consumer-side handling of one canonical event.

ensure the tenant store -> append the row -> count it -> backfill on device
links. Nothing raised here stops the consumer: failed writes are logged (or
dead-lettered under FAILURE_POLICY=dead_letter) and failed backfills are
logged.
"""

from loguru import logger

from src.collector.schemas import CanonicalEvent
from src.core.errors import BackfillError, PipelineError, TransportError
from src.transport.base import EventProducer
from src.warehouse.identity import IdentityResolver
from src.warehouse.tenants import TenantStoreManager
from src.warehouse.writer import EventWriter


class EventProcessor:
    def __init__(
        self,
        tenants: TenantStoreManager,
        writer: EventWriter,
        resolver: IdentityResolver,
        failure_policy: str = "log",
        dead_letter_producer: EventProducer | None = None,
        dead_letter_topic: str = "events.dlq",
    ) -> None:
        if failure_policy == "dead_letter" and dead_letter_producer is None:
            raise ValueError("dead_letter policy needs a producer")
        self.tenants = tenants
        self.writer = writer
        self.resolver = resolver
        self.failure_policy = failure_policy
        self.dead_letter_producer = dead_letter_producer
        self.dead_letter_topic = dead_letter_topic

    async def process(self, event: CanonicalEvent) -> bool:
        """Store one event. Returns True when the row was written."""
        logger.debug("Processing event {} for tenant {}", event.id, event.tenant_id)
        try:
            await self.tenants.ensure(event.tenant_id)
            await self.writer.write(event)
        except PipelineError as exc:
            await self._on_write_failure(event, exc)
            return False

        if event.is_device_link:
            await self._backfill(event)
        return True

    async def _backfill(self, event: CanonicalEvent) -> None:
        try:
            await self.resolver.backfill(event.tenant_id, event.device_id, event.user_id)
        except (BackfillError, TransportError) as exc:
            logger.error("Backfill for event {} failed: {}", event.id, exc)

    async def _on_write_failure(self, event: CanonicalEvent, exc: PipelineError) -> None:
        logger.error("Failed to process event {} for tenant {}: {}", event.id, event.tenant_id, exc)
        if self.failure_policy != "dead_letter":
            return
        try:
            await self.dead_letter_producer.send(
                self.dead_letter_topic,
                [event],
                headers={"error": type(exc).__name__, "errorMessage": str(exc)[:256]},
            )
            logger.warning("Event {} sent to dead-letter topic {}", event.id, self.dead_letter_topic)
        except TransportError as dlq_exc:
            logger.error("Dead-lettering event {} failed, dropping it: {}", event.id, dlq_exc)
