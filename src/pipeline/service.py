"""Composition root for the ingestion pipeline.

Pipeline owns every long-lived client (warehouse connection, producer,
consumer) and wires the bus, transport and warehouse components together.
Nothing connects in a constructor: start() connects, provisions the topic and
launches the consumer; stop() drains and closes in reverse order.
"""

import asyncio

from loguru import logger

from src.collector.bus import BATCH_EVENTS_TRACKED, DEVICE_LINKED, EVENT_TRACKED, EventBus
from src.collector.identity import (
    InMemoryUsageCounter,
    ProjectKeyValidator,
    StaticProjectKeys,
    UsageCounter,
)
from src.collector.normalizer import EventNormalizer
from src.collector.schemas import CanonicalEvent
from src.core.config import Settings
from src.pipeline.processor import EventProcessor
from src.transport.base import EventConsumer, EventProducer
from src.warehouse.db import Warehouse, get_connection
from src.warehouse.identity import IdentityResolver
from src.warehouse.query_guard import QueryResult, run_adhoc_query
from src.warehouse.tenants import TenantStoreManager
from src.warehouse.writer import EventWriter


class Pipeline:
    def __init__(
        self,
        settings: Settings,
        warehouse: Warehouse,
        producer: EventProducer,
        consumer: EventConsumer,
        project_keys: ProjectKeyValidator,
        usage: UsageCounter,
    ) -> None:
        self.settings = settings
        self.topic = settings.EVENTS_TOPIC
        self.warehouse = warehouse
        self.producer = producer
        self.consumer = consumer
        self.project_keys = project_keys
        self.usage = usage

        self.bus = EventBus()
        self.normalizer = EventNormalizer(
            strict_event_names=settings.STRICT_EVENT_NAMES,
            max_batch_size=settings.MAX_BATCH_SIZE,
        )
        self.tenants = TenantStoreManager(warehouse, settings.TENANT_STORE_PREFIX, settings.EVENTS_TABLE)
        self.writer = EventWriter(warehouse, self.tenants, usage)
        self.resolver = IdentityResolver(warehouse, self.tenants)
        self.processor = EventProcessor(
            self.tenants,
            self.writer,
            self.resolver,
            failure_policy=settings.FAILURE_POLICY,
            dead_letter_producer=producer,
            dead_letter_topic=settings.DEAD_LETTER_TOPIC,
        )
        self._consumer_task: asyncio.Task | None = None

        self.bus.subscribe(EVENT_TRACKED, self._forward_one)
        self.bus.subscribe(DEVICE_LINKED, self._forward_one)
        self.bus.subscribe(BATCH_EVENTS_TRACKED, self._forward_batch)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Pipeline":
        warehouse = Warehouse(get_connection(settings.WAREHOUSE_PATH), settings.WAREHOUSE_REQUEST_TIMEOUT_S)
        if settings.TRANSPORT_BACKEND == "memory":
            from src.transport.memory import MemoryBroker, MemoryConsumer, MemoryProducer

            broker = MemoryBroker(settings.EVENTS_TOPIC_PARTITIONS)
            producer = MemoryProducer(broker)
            consumer = MemoryConsumer(broker, settings.consumer_group)
        else:
            from src.transport.kafka import KafkaEventConsumer, KafkaEventProducer

            producer = KafkaEventProducer(settings)
            consumer = KafkaEventConsumer(settings)
        return cls(
            settings,
            warehouse,
            producer,
            consumer,
            StaticProjectKeys(settings.PROJECT_KEYS),
            InMemoryUsageCounter(),
        )

    async def _forward_one(self, event: CanonicalEvent) -> None:
        await self.producer.send(self.topic, [event])
        logger.info("Event {} sent to {}", event.id, self.topic)

    async def _forward_batch(self, events: list[CanonicalEvent]) -> None:
        await self.producer.send(self.topic, events)
        logger.info("Batch of {} events sent to {}", len(events), self.topic)

    async def start(self, consume: bool = True) -> None:
        """Connect the producer, make sure the topic exists, start consuming.

        A TransportError from exhausted connect retries propagates.
        """
        await self.producer.connect()
        await self.producer.create_topic(
            self.topic,
            self.settings.EVENTS_TOPIC_PARTITIONS,
            self.settings.EVENTS_TOPIC_REPLICATION,
        )
        if self.settings.FAILURE_POLICY == "dead_letter":
            await self.producer.create_topic(
                self.settings.DEAD_LETTER_TOPIC,
                self.settings.EVENTS_TOPIC_PARTITIONS,
                self.settings.EVENTS_TOPIC_REPLICATION,
            )
        if consume:
            await self.consumer.connect()
            self._consumer_task = asyncio.create_task(self.consumer.run(self.topic, self.processor.process))
            self._consumer_task.add_done_callback(_log_consumer_exit)
        logger.info("Pipeline started (topic={}, consume={})", self.topic, consume)

    async def wait(self) -> None:
        """Block until the consumer task ends."""
        if self._consumer_task is not None:
            await self._consumer_task

    async def stop(self) -> None:
        await self.bus.join()
        if self._consumer_task is not None:
            self.consumer.stop()
            try:
                await self._consumer_task
            except Exception:
                logger.exception("Consumer exited with an error")
            self._consumer_task = None
        await self.consumer.close()
        await self.producer.close()
        logger.info("Pipeline stopped")

    async def query(self, tenant_id: str, sql: str) -> QueryResult:
        return await run_adhoc_query(self.warehouse, self.tenants, tenant_id, sql)

    def close(self) -> None:
        self.warehouse.close()


def _log_consumer_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error("Consumer stopped: {}", exc)
