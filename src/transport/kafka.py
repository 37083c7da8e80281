"""Kafka transport backend (confluent-kafka).

Clients are built lazily on first use. Building includes a metadata probe
bounded by KAFKA_CONNECTION_TIMEOUT_MS, retried with exponential backoff;
when retries run out TransportError reaches whoever triggered the connect.
"""

import asyncio
from typing import Any

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer
from confluent_kafka.admin import AdminClient, NewTopic
from loguru import logger

from src.collector.schemas import CanonicalEvent
from src.core.config import Settings
from src.core.errors import TransportError
from src.transport.base import EventHandler, RetryPolicy, connect_with_retry, decode_event, encode_event


def _base_conf(settings: Settings) -> dict[str, Any]:
    conf: dict[str, Any] = {
        "bootstrap.servers": ",".join(settings.kafka_brokers),
        "client.id": settings.KAFKA_CLIENT_ID,
        "security.protocol": settings.KAFKA_SECURITY_PROTOCOL,
        "socket.connection.setup.timeout.ms": settings.KAFKA_CONNECTION_TIMEOUT_MS,
    }
    if settings.KAFKA_SASL_USERNAME and settings.KAFKA_SASL_PASSWORD:
        conf["sasl.mechanism"] = settings.KAFKA_SASL_MECHANISM
        conf["sasl.username"] = settings.KAFKA_SASL_USERNAME
        conf["sasl.password"] = settings.KAFKA_SASL_PASSWORD
    return conf


def _producer_conf(settings: Settings) -> dict[str, Any]:
    return {
        **_base_conf(settings),
        "request.timeout.ms": settings.KAFKA_REQUEST_TIMEOUT_MS,
        "message.send.max.retries": settings.KAFKA_RETRIES,
        "retry.backoff.ms": max(1, settings.KAFKA_INITIAL_RETRY_MS),
        "enable.idempotence": True,
    }


def _consumer_conf(settings: Settings) -> dict[str, Any]:
    return {
        **_base_conf(settings),
        "group.id": settings.consumer_group,
        "enable.auto.commit": False,
        "auto.offset.reset": "latest",
        "session.timeout.ms": max(6000, settings.KAFKA_REQUEST_TIMEOUT_MS),
    }


def _retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(initial_retry_ms=settings.KAFKA_INITIAL_RETRY_MS, retries=settings.KAFKA_RETRIES)


def _probe(client: Any, timeout_s: float) -> None:
    # list_topics raises KafkaException when no broker answers in time
    client.list_topics(timeout=timeout_s)


class KafkaEventProducer:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._producer: Producer | None = None
        self._admin: AdminClient | None = None
        self._policy = _retry_policy(settings)
        self._connect_timeout_s = settings.KAFKA_CONNECTION_TIMEOUT_MS / 1000.0

    @property
    def connected(self) -> bool:
        return self._producer is not None

    def _build(self) -> Producer:
        producer = Producer(_producer_conf(self.settings))
        _probe(producer, self._connect_timeout_s)
        return producer

    async def connect(self) -> None:
        if self._producer is not None:
            return
        logger.info("Connecting Kafka producer to {}", self.settings.KAFKA_BROKERS)
        self._producer = await connect_with_retry(self._build, self._policy, "kafka producer")
        logger.info("Kafka producer connected")

    async def _admin_client(self) -> AdminClient:
        if self._admin is None:

            def build() -> AdminClient:
                admin = AdminClient(_base_conf(self.settings))
                _probe(admin, self._connect_timeout_s)
                return admin

            self._admin = await connect_with_retry(build, self._policy, "kafka admin")
        return self._admin

    async def create_topic(self, topic: str, partitions: int = 3, replication_factor: int = 1) -> None:
        """Create `topic`. An existing topic counts as success."""
        admin = await self._admin_client()
        futures = admin.create_topics(
            [NewTopic(topic, num_partitions=partitions, replication_factor=replication_factor)],
            request_timeout=self.settings.KAFKA_REQUEST_TIMEOUT_MS / 1000.0,
        )
        try:
            await asyncio.to_thread(futures[topic].result)
            logger.info("Topic {} created with {} partition(s)", topic, partitions)
        except KafkaException as exc:
            error = exc.args[0] if exc.args else None
            if isinstance(error, KafkaError) and error.code() == KafkaError.TOPIC_ALREADY_EXISTS:
                logger.info("Topic {} already exists", topic)
                return
            raise TransportError(f"failed to create topic {topic}: {exc}") from exc

    async def send(
        self,
        topic: str,
        events: list[CanonicalEvent],
        headers: dict[str, str] | None = None,
    ) -> None:
        """Produce one message per event and wait for every delivery report."""
        if not events:
            return
        await self.connect()
        await asyncio.to_thread(self._produce, topic, events, headers)
        logger.debug("Sent {} event(s) to topic {}", len(events), topic)

    def _produce(self, topic: str, events: list[CanonicalEvent], headers: dict[str, str] | None) -> None:
        producer = self._producer
        errors: list[str] = []

        def on_delivery(err: KafkaError | None, msg: Any) -> None:
            if err is not None:
                errors.append(str(err))

        try:
            for event in events:
                message = encode_event(event, headers)
                producer.produce(
                    topic,
                    key=message.key,
                    value=message.value,
                    headers=list(message.headers.items()),
                    on_delivery=on_delivery,
                )
                producer.poll(0)
        except (BufferError, KafkaException) as exc:
            raise TransportError(f"failed to send to topic {topic}: {exc}") from exc

        remaining = producer.flush(self.settings.KAFKA_REQUEST_TIMEOUT_MS / 1000.0)
        if remaining:
            raise TransportError(f"send to topic {topic} timed out with {remaining} message(s) undelivered")
        if errors:
            raise TransportError(f"delivery to topic {topic} failed: {errors[0]}")

    async def close(self) -> None:
        if self._producer is not None:
            await asyncio.to_thread(self._producer.flush, self.settings.KAFKA_REQUEST_TIMEOUT_MS / 1000.0)
            self._producer = None
        self._admin = None
        logger.info("Kafka producer closed")


class KafkaEventConsumer:
    """Consumer-group member that hands each partition to its own worker.

    Messages of one partition are handled strictly in order; partitions do
    not wait on each other, so one tenant's slow store only holds back the
    partition its events sit on. Offsets are committed after the handler
    returns, failed or not.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.group_id = settings.consumer_group
        self._consumer: Consumer | None = None
        self._policy = _retry_policy(settings)
        self._stopping = False
        self._workers: dict[int, tuple[asyncio.Queue, asyncio.Task]] = {}

    def _build(self) -> Consumer:
        consumer = Consumer(_consumer_conf(self.settings))
        _probe(consumer, self.settings.KAFKA_CONNECTION_TIMEOUT_MS / 1000.0)
        return consumer

    async def connect(self) -> None:
        if self._consumer is not None:
            return
        logger.info("Connecting Kafka consumer group {}", self.group_id)
        self._consumer = await connect_with_retry(self._build, self._policy, "kafka consumer")

    async def run(self, topic: str, handler: EventHandler) -> None:
        await self.connect()
        consumer = self._consumer
        consumer.subscribe([topic])
        logger.info("Consumer group {} subscribed to {}", self.group_id, topic)

        self._stopping = False
        poll_timeout = self.settings.KAFKA_POLL_TIMEOUT_MS / 1000.0
        try:
            while not self._stopping:
                msg = await asyncio.to_thread(consumer.poll, poll_timeout)
                if msg is None:
                    continue
                if msg.error():
                    if msg.error().code() != KafkaError._PARTITION_EOF:
                        logger.warning("Kafka poll error on {}: {}", topic, msg.error())
                    continue
                self._queue_for(msg.partition(), topic, handler).put_nowait(msg)
        finally:
            await self._shutdown_workers()

    def _queue_for(self, partition: int, topic: str, handler: EventHandler) -> asyncio.Queue:
        if partition not in self._workers:
            queue: asyncio.Queue = asyncio.Queue()
            task = asyncio.create_task(self._work(queue, topic, handler))
            self._workers[partition] = (queue, task)
        return self._workers[partition][0]

    async def _work(self, queue: asyncio.Queue, topic: str, handler: EventHandler) -> None:
        while True:
            msg = await queue.get()
            try:
                await self._handle(msg, topic, handler)
            finally:
                self._commit(msg)
                queue.task_done()

    async def _handle(self, msg: Any, topic: str, handler: EventHandler) -> None:
        try:
            event = decode_event(msg.value())
        except ValueError as exc:
            logger.error(
                "Skipping undecodable message topic={} partition={} offset={}: {}",
                topic,
                msg.partition(),
                msg.offset(),
                exc,
            )
            return
        try:
            await handler(event)
            logger.debug("Event processed from topic {}: {}", topic, event.id)
        except Exception:
            logger.exception("Failed to process event {} from topic {}", event.id, topic)

    def _commit(self, msg: Any) -> None:
        try:
            self._consumer.commit(message=msg, asynchronous=True)
        except KafkaException as exc:
            logger.warning("Offset commit failed partition={} offset={}: {}", msg.partition(), msg.offset(), exc)

    async def _shutdown_workers(self) -> None:
        for queue, _ in self._workers.values():
            await queue.join()
        for _, task in self._workers.values():
            task.cancel()
        await asyncio.gather(*(task for _, task in self._workers.values()), return_exceptions=True)
        self._workers.clear()

    def stop(self) -> None:
        self._stopping = True

    async def close(self) -> None:
        self.stop()
        if self._consumer is not None:
            await asyncio.to_thread(self._consumer.close)
            self._consumer = None
            logger.info("Kafka consumer closed")
