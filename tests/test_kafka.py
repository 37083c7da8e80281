"""Tests for the Kafka backend against fake confluent-kafka clients."""

import asyncio
import json
from concurrent.futures import Future
from datetime import datetime, timezone

import pytest
from confluent_kafka import KafkaError, KafkaException

import src.transport.kafka as kafka_module
from src.collector.schemas import CanonicalEvent
from src.core.config import Settings
from src.core.errors import TransportError
from src.transport.base import encode_event
from src.transport.kafka import KafkaEventConsumer, KafkaEventProducer


def _settings(**overrides) -> Settings:
    fields = {
        "KAFKA_BROKERS": "broker-1:9092,broker-2:9092",
        "KAFKA_CLIENT_ID": "collector-test",
        "KAFKA_RETRIES": 2,
        "KAFKA_INITIAL_RETRY_MS": 0,
        "KAFKA_POLL_TIMEOUT_MS": 10,
    }
    fields.update(overrides)
    return Settings(**fields)


def _event(event_id: str = "evt_1") -> CanonicalEvent:
    return CanonicalEvent(
        id=event_id,
        tenant_id="t1",
        event_name="click",
        device_id="d1",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        platform="android",
    )


class FakeProducer:
    instances: list["FakeProducer"] = []
    fail_connect = 0
    delivery_error: KafkaError | None = None

    def __init__(self, conf):
        self.conf = conf
        self.produced = []
        self._callbacks = []
        FakeProducer.instances.append(self)

    def list_topics(self, timeout=None):
        if FakeProducer.fail_connect:
            FakeProducer.fail_connect -= 1
            raise KafkaException(KafkaError(KafkaError._TRANSPORT))
        return {}

    def produce(self, topic, key=None, value=None, headers=None, on_delivery=None):
        self.produced.append({"topic": topic, "key": key, "value": value, "headers": headers})
        self._callbacks.append(on_delivery)

    def poll(self, timeout=None):
        return 0

    def flush(self, timeout=None):
        for callback in self._callbacks:
            callback(FakeProducer.delivery_error, None)
        self._callbacks.clear()
        return 0


class FakeAdmin:
    error_code = None

    def __init__(self, conf):
        self.conf = conf
        self.created = []

    def list_topics(self, timeout=None):
        return {}

    def create_topics(self, topics, request_timeout=None):
        futures = {}
        for topic in topics:
            self.created.append((topic.topic, topic.num_partitions))
            future = Future()
            if FakeAdmin.error_code is None:
                future.set_result(None)
            else:
                future.set_exception(KafkaException(KafkaError(FakeAdmin.error_code)))
            futures[topic.topic] = future
        return futures


class FakeMessage:
    def __init__(self, value, partition=0, offset=0):
        self._value = value
        self._partition = partition
        self._offset = offset

    def value(self):
        return self._value

    def partition(self):
        return self._partition

    def offset(self):
        return self._offset

    def error(self):
        return None


class FakeConsumer:
    def __init__(self, conf):
        self.conf = conf
        self.subscribed = []
        self.committed = []
        self.closed = False
        self.queue = []
        self.on_empty = None

    def list_topics(self, timeout=None):
        return {}

    def subscribe(self, topics):
        self.subscribed.extend(topics)

    def poll(self, timeout=None):
        if self.queue:
            return self.queue.pop(0)
        if self.on_empty:
            self.on_empty()
        return None

    def commit(self, message=None, asynchronous=True):
        self.committed.append((message.partition(), message.offset()))

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def fake_clients(monkeypatch):
    FakeProducer.instances = []
    FakeProducer.fail_connect = 0
    FakeProducer.delivery_error = None
    FakeAdmin.error_code = None
    monkeypatch.setattr(kafka_module, "Producer", FakeProducer)
    monkeypatch.setattr(kafka_module, "AdminClient", FakeAdmin)
    monkeypatch.setattr(kafka_module, "Consumer", FakeConsumer)


class TestKafkaProducer:
    def test_send_uses_event_id_as_key(self):
        producer = KafkaEventProducer(_settings())
        asyncio.run(producer.send("events", [_event("a"), _event("b")]))

        fake = FakeProducer.instances[0]
        assert fake.conf["bootstrap.servers"] == "broker-1:9092,broker-2:9092"
        assert [p["key"] for p in fake.produced] == [b"a", b"b"]
        first = fake.produced[0]
        assert first["topic"] == "events"
        assert dict(first["headers"]) == encode_event(_event("a")).headers
        assert json.loads(first["value"])["tenantId"] == "t1"

    def test_connects_once(self):
        producer = KafkaEventProducer(_settings())

        async def scenario():
            await producer.send("events", [_event()])
            await producer.send("events", [_event()])

        asyncio.run(scenario())
        assert len(FakeProducer.instances) == 1

    def test_connect_retries_then_succeeds(self):
        FakeProducer.fail_connect = 2
        producer = KafkaEventProducer(_settings(KAFKA_RETRIES=2))
        asyncio.run(producer.connect())
        assert producer.connected

    def test_connect_gives_up(self):
        FakeProducer.fail_connect = 10
        producer = KafkaEventProducer(_settings(KAFKA_RETRIES=1))
        with pytest.raises(TransportError, match="could not connect kafka producer"):
            asyncio.run(producer.send("events", [_event()]))
        assert not producer.connected

    def test_delivery_failure_raises(self):
        FakeProducer.delivery_error = KafkaError(KafkaError._MSG_TIMED_OUT)
        producer = KafkaEventProducer(_settings())
        with pytest.raises(TransportError, match="delivery to topic events failed"):
            asyncio.run(producer.send("events", [_event()]))

    def test_sasl_only_with_credentials(self):
        plain = kafka_module._producer_conf(_settings())
        assert "sasl.username" not in plain
        secured = kafka_module._producer_conf(
            _settings(KAFKA_SASL_USERNAME="u", KAFKA_SASL_PASSWORD="p", KAFKA_SECURITY_PROTOCOL="SASL_SSL")
        )
        assert secured["sasl.username"] == "u"
        assert secured["security.protocol"] == "SASL_SSL"


class TestCreateTopic:
    def test_creates_topic(self):
        producer = KafkaEventProducer(_settings())
        asyncio.run(producer.create_topic("events", partitions=6))
        assert producer._admin.created == [("events", 6)]

    def test_existing_topic_is_not_an_error(self):
        FakeAdmin.error_code = KafkaError.TOPIC_ALREADY_EXISTS
        producer = KafkaEventProducer(_settings())
        asyncio.run(producer.create_topic("events"))

    def test_other_errors_raise(self):
        FakeAdmin.error_code = KafkaError.INVALID_REPLICATION_FACTOR
        producer = KafkaEventProducer(_settings())
        with pytest.raises(TransportError, match="failed to create topic events"):
            asyncio.run(producer.create_topic("events"))


class TestKafkaConsumer:
    def test_group_id_defaults_from_client_id(self):
        consumer = KafkaEventConsumer(_settings())
        assert consumer.group_id == "collector-test-consumer-group"
        assert kafka_module._consumer_conf(_settings())["enable.auto.commit"] is False

    def test_run_handles_and_commits_every_message(self):
        handled = []
        consumer = KafkaEventConsumer(_settings())

        async def handler(event):
            if event.id == "boom":
                raise RuntimeError("write failed")
            handled.append(event.id)

        async def scenario():
            await consumer.connect()
            fake = consumer._consumer
            fake.queue = [
                FakeMessage(encode_event(_event("a")).value, partition=0, offset=0),
                FakeMessage(encode_event(_event("boom")).value, partition=1, offset=0),
                FakeMessage(b"{not json", partition=0, offset=1),
                FakeMessage(encode_event(_event("b")).value, partition=0, offset=2),
            ]
            fake.on_empty = consumer.stop
            await consumer.run("events", handler)
            return fake

        fake = asyncio.run(scenario())
        assert fake.subscribed == ["events"]
        assert handled == ["a", "b"]
        assert sorted(fake.committed) == [(0, 0), (0, 1), (0, 2), (1, 0)]

    def test_close(self):
        consumer = KafkaEventConsumer(_settings())

        async def scenario():
            await consumer.connect()
            fake = consumer._consumer
            await consumer.close()
            return fake

        assert asyncio.run(scenario()).closed
