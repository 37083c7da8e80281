"""In-process broker for local runs and tests.

Keeps an append-only log per topic partition and a committed offset per
(consumer group, topic, partition), which is enough to reproduce the Kafka
semantics the pipeline relies on: keyed partitioning, per-partition ordering,
commit-after-handle and redelivery from the last committed offset.
"""

import asyncio
import zlib
from collections import defaultdict

from loguru import logger

from src.collector.schemas import CanonicalEvent
from src.transport.base import EventHandler, TransportMessage, decode_event, encode_event


def partition_for(key: bytes, partitions: int) -> int:
    return zlib.crc32(key) % partitions


class MemoryBroker:
    def __init__(self, default_partitions: int = 3) -> None:
        self.default_partitions = default_partitions
        self._topics: dict[str, list[list[TransportMessage]]] = {}
        self._offsets: dict[tuple[str, str, int], int] = defaultdict(int)

    def create_topic(self, topic: str, partitions: int | None = None) -> bool:
        """Create `topic`; return False if it already existed."""
        if topic in self._topics:
            return False
        self._topics[topic] = [[] for _ in range(partitions or self.default_partitions)]
        return True

    def topics(self) -> list[str]:
        return sorted(self._topics)

    def partitions(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def append(self, topic: str, message: TransportMessage) -> tuple[int, int]:
        if topic not in self._topics:
            self.create_topic(topic)
        log = self._topics[topic]
        partition = partition_for(message.key, len(log))
        log[partition].append(message)
        return partition, len(log[partition]) - 1

    def messages(self, topic: str) -> list[TransportMessage]:
        return [m for part in self._topics.get(topic, ()) for m in part]

    def read(self, topic: str, partition: int, offset: int) -> list[TransportMessage]:
        return self._topics[topic][partition][offset:]

    def committed(self, group: str, topic: str, partition: int) -> int:
        return self._offsets[(group, topic, partition)]

    def commit(self, group: str, topic: str, partition: int, offset: int) -> None:
        self._offsets[(group, topic, partition)] = offset

    def lag(self, group: str, topic: str) -> int:
        log = self._topics.get(topic, ())
        return sum(len(part) - self.committed(group, topic, i) for i, part in enumerate(log))


class MemoryProducer:
    def __init__(self, broker: MemoryBroker) -> None:
        self.broker = broker
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def create_topic(self, topic: str, partitions: int = 3, replication_factor: int = 1) -> None:
        await self.connect()
        if not self.broker.create_topic(topic, partitions):
            logger.info("Topic {} already exists", topic)

    async def send(
        self,
        topic: str,
        events: list[CanonicalEvent],
        headers: dict[str, str] | None = None,
    ) -> None:
        if not self.connected:
            await self.connect()
        for event in events:
            self.broker.append(topic, encode_event(event, headers))
        logger.debug("Sent {} event(s) to topic {}", len(events), topic)

    async def close(self) -> None:
        self.connected = False


class MemoryConsumer:
    def __init__(self, broker: MemoryBroker, group_id: str, poll_interval_s: float = 0.05) -> None:
        self.broker = broker
        self.group_id = group_id
        self.poll_interval_s = poll_interval_s
        self.connected = False
        self._stopping = False

    async def connect(self) -> None:
        self.connected = True

    async def drain(self, topic: str, handler: EventHandler) -> int:
        """Process everything past the committed offsets; return the message count.

        Partitions are worked concurrently, messages within one partition in
        order. Handler failures are logged and the offset still advances.
        """
        counts = await asyncio.gather(
            *(self._drain_partition(topic, p, handler) for p in range(self.broker.partitions(topic)))
        )
        return sum(counts)

    async def _drain_partition(self, topic: str, partition: int, handler: EventHandler) -> int:
        offset = self.broker.committed(self.group_id, topic, partition)
        batch = self.broker.read(topic, partition, offset)
        for message in batch:
            await _handle(topic, message, handler)
            offset += 1
            self.broker.commit(self.group_id, topic, partition, offset)
        return len(batch)

    async def run(self, topic: str, handler: EventHandler) -> None:
        await self.connect()
        self._stopping = False
        logger.info("Consumer group {} subscribed to {}", self.group_id, topic)
        while not self._stopping:
            if not await self.drain(topic, handler):
                await asyncio.sleep(self.poll_interval_s)

    def stop(self) -> None:
        self._stopping = True

    async def close(self) -> None:
        self.stop()
        self.connected = False


async def _handle(topic: str, message: TransportMessage, handler: EventHandler) -> None:
    try:
        event = decode_event(message.value)
    except ValueError as exc:
        logger.error("Skipping undecodable message on {} key={!r}: {}", topic, message.key, exc)
        return
    try:
        await handler(event)
        logger.debug("Event processed from topic {}: {}", topic, event.id)
    except Exception:
        logger.exception("Failed to process event {} from topic {}", event.id, topic)
