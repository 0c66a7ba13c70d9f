"""Shared fixtures and fakes for the ingestion pipeline tests."""

import threading
from types import SimpleNamespace

import pytest
from kafka.errors import KafkaError

from src.tick_ingestor.config import KafkaConfig
from src.tick_ingestor.sequencer import TickSequencer
from src.tick_protocol.models import PriceTick, RawRecord, now_ms


class TransientBrokerError(KafkaError):
    retriable = True


class PermanentBrokerError(KafkaError):
    retriable = False


class FakeFuture:
    def __init__(self, metadata=None, error=None, gate=None):
        self.metadata = metadata
        self.error = error
        self.gate = gate

    def get(self, timeout=None):
        if self.gate is not None:
            self.gate.wait(timeout)
        if self.error is not None:
            raise self.error
        return self.metadata


class FakeProducer:
    """Stands in for KafkaProducer; ``failures`` are raised by successive sends."""

    def __init__(self, failures=None):
        self.sent = []
        self.failures = list(failures or [])
        self.gate = None
        self.closed = False
        self.init_kwargs = {}

    def send(self, topic, key=None, value=None, headers=None, timestamp_ms=None):
        self.sent.append(SimpleNamespace(
            topic=topic, key=key, value=value, headers=headers, timestamp_ms=timestamp_ms
        ))
        error = self.failures.pop(0) if self.failures else None
        metadata = SimpleNamespace(topic=topic, partition=0, offset=len(self.sent) - 1)
        return FakeFuture(metadata=metadata, error=error, gate=self.gate)

    def close(self, timeout=None):
        self.closed = True

    @property
    def published(self):
        """Sends excluding the connectivity probe."""
        return [record for record in self.sent if record.key != "TEST.CONNECTION"]


@pytest.fixture
def fake_producer():
    producer = FakeProducer()
    yield producer
    if producer.gate is not None:
        producer.gate.set()


@pytest.fixture
def producer_factory(fake_producer):
    def factory(**kwargs):
        fake_producer.init_kwargs = kwargs
        return fake_producer
    return factory


@pytest.fixture
def kafka_config():
    return KafkaConfig(
        topic="test-ticks",
        retries=3,
        retry_initial_delay_ms=1,
        retry_max_delay_ms=5,
        connect_attempts=1,
        shutdown_grace_seconds=0.5,
    )


@pytest.fixture
def make_enriched():
    sequencer = TickSequencer(start_time_ms=1_705_322_999_000)

    def build(instrument="AAPL.O", price=150.6, connection_id="client-test"):
        tick = PriceTick(instrument=instrument, price=price, timestamp=now_ms())
        return sequencer.enrich(tick, RawRecord(data="", connection_id=connection_id))

    return build


@pytest.fixture
def blocking_gate():
    return threading.Event()
