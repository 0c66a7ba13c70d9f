"""
Kafka publisher for enriched ticks.

All publishes flow through one worker task fed by an asyncio queue, so the
shared KafkaProducer sees one record at a time and per-instrument order
matches publish-call order. Each record is sent with a bounded wait and
retried with exponential backoff on transient Kafka errors; permanent
errors (serialization, non-retriable broker errors) surface immediately.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from kafka import KafkaProducer
from kafka.errors import KafkaError

from src.tick_protocol.errors import LogConnectionError, PublishError
from src.tick_protocol.models import EnrichedTick, now_ms
from src.utils.metrics import (
    record_error,
    record_message_processed,
    record_retry,
    set_queue_depth,
    track_latency,
)
from src.utils.retry import RetryConfig, retry_operation, retry_operation_async

from .config import KafkaConfig

logger = logging.getLogger(__name__)

COMPONENT = "kafka_publisher"
PROBE_INSTRUMENT = "TEST.CONNECTION"


@dataclass
class _PublishRequest:
    tick: EnrichedTick
    future: "asyncio.Future[Any]"
    is_probe: bool = False


def _consume_outcome(future: "asyncio.Future[Any]") -> None:
    # Marks the exception retrieved when the caller is no longer waiting.
    if not future.cancelled():
        future.exception()


class KafkaPublisher:
    """Publish EnrichedTicks to a Kafka topic keyed by instrument code.

    Args:
        config: Kafka settings
        producer_factory: Callable returning a KafkaProducer-like object;
            tests pass a fake
    """

    def __init__(self, config: KafkaConfig, producer_factory: Callable[..., Any] = KafkaProducer):
        self.config = config
        self._producer_factory = producer_factory
        self.producer: Optional[Any] = None
        self.is_connected = False

        self._accepting = False
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[_PublishRequest] = None

        self.publish_count = 0
        self.error_count = 0
        self.lost_count = 0

        self._retry_config = RetryConfig(
            max_retries=config.retries,
            initial_delay_ms=config.retry_initial_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
            multiplier=2.0,
            jitter_factor=0.1,
            retryable_exceptions=(PublishError,),
        )

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _create_producer(self) -> Any:
        kwargs: Dict[str, Any] = dict(
            bootstrap_servers=self.config.bootstrap_servers,
            client_id=self.config.client_id,
            acks="all" if self.config.acks == -1 else self.config.acks,
            retries=0,  # retried per record by the publisher
            linger_ms=self.config.linger_ms,
            batch_size=self.config.batch_size,
            request_timeout_ms=self.config.request_timeout_ms,
            max_block_ms=self.config.request_timeout_ms,
            max_in_flight_requests_per_connection=1,
            key_serializer=lambda k: k.encode("utf-8") if k else None,
        )
        if self.config.compression:
            kwargs["compression_type"] = self.config.compression
        return self._producer_factory(**kwargs)

    async def connect(self) -> None:
        """Create the producer, start the worker and send a probe record.

        Raises:
            LogConnectionError: If the brokers stay unreachable for every
                startup attempt or the probe cannot be delivered
        """
        brokers = ", ".join(self.config.bootstrap_servers)
        logger.info(f"Connecting to Kafka brokers: {brokers}")

        connect_policy = RetryConfig(
            max_retries=self.config.connect_attempts - 1,
            initial_delay_ms=1000,
            max_delay_ms=30000,
            multiplier=2.0,
            jitter_factor=0.1,
            retryable_exceptions=(KafkaError,),
        )

        def on_retry(attempt: int, delay_ms: int, error: Exception) -> None:
            record_retry(COMPONENT, "connect", "failed")

        loop = asyncio.get_running_loop()
        try:
            self.producer = await loop.run_in_executor(
                None,
                lambda: retry_operation(
                    self._create_producer,
                    config=connect_policy,
                    operation_name="Kafka connection",
                    on_retry=on_retry,
                ),
            )
        except Exception as e:
            record_error(COMPONENT, "connection_error", "critical")
            raise LogConnectionError(
                f"Failed to connect to Kafka: {e}",
                {"brokers": self.config.bootstrap_servers},
            ) from e

        self.is_connected = True
        self._queue = asyncio.Queue()
        self._accepting = True
        self._worker = asyncio.create_task(self._run_worker(), name="kafka-publisher")

        try:
            await self._submit(self._probe_tick(), is_probe=True)
        except PublishError as e:
            record_error(COMPONENT, "probe_failed", "critical")
            await self.shutdown(grace_seconds=0)
            raise LogConnectionError(f"Kafka connectivity probe failed: {e}") from e

        logger.info(f"Kafka publisher initialized successfully (topic: {self.config.topic})")

    def _probe_tick(self) -> EnrichedTick:
        ts = now_ms()
        return EnrichedTick(
            instrument=PROBE_INSTRUMENT,
            price=1.0,
            timestamp=ts,
            received_at=ts,
            connection_id="connection-test",
            sequence_id="test-seq-1",
            sequence_number=1,
            latency_ms=0,
        )

    def is_connected_to_kafka(self) -> bool:
        return self.is_connected and self.producer is not None

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, tick: EnrichedTick) -> Any:
        """Publish one tick and wait for the broker acknowledgement.

        Returns:
            The RecordMetadata from kafka-python

        Raises:
            PublishError: After retries are exhausted, on a permanent error,
                or when the publisher is shutting down
        """
        return await self._submit(tick)

    async def publish_batch(self, ticks: List[EnrichedTick]) -> List[Any]:
        """Publish several ticks back to back and wait for all of them.

        The records enter the worker queue together, so each instrument's
        ticks keep their list order. Every record gets the same key,
        headers and retry policy as ``publish``.

        Returns:
            RecordMetadata per tick, in list order

        Raises:
            PublishError: If the publisher is not connected, or after every
                record has settled when at least one of them failed
        """
        if not self._accepting or self._queue is None:
            raise PublishError("Kafka producer is not connected", retriable=False)
        if not ticks:
            return []

        futures = [self._enqueue(tick) for tick in ticks]
        results = await asyncio.gather(
            *[asyncio.shield(future) for future in futures],
            return_exceptions=True,
        )

        failures = [result for result in results if isinstance(result, PublishError)]
        if failures:
            raise PublishError(
                f"{len(failures)} of {len(ticks)} records in batch failed: {failures[0].message}",
                retriable=all(failure.retriable for failure in failures),
                context={"batch_size": len(ticks), "failed": len(failures)},
            ) from failures[0]

        logger.debug(f"Published batch of {len(ticks)} ticks to Kafka")
        return list(results)

    def _enqueue(self, tick: EnrichedTick, is_probe: bool = False) -> "asyncio.Future[Any]":
        if not self._accepting or self._queue is None:
            raise PublishError(
                "Kafka publisher is not accepting records",
                retriable=False,
                context={"instrument": tick.instrument, "sequence_id": tick.sequence_id},
            )
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_outcome)
        self._queue.put_nowait(_PublishRequest(tick=tick, future=future, is_probe=is_probe))
        set_queue_depth(COMPONENT, self._queue.qsize())
        return future

    async def _submit(self, tick: EnrichedTick, is_probe: bool = False) -> Any:
        future = self._enqueue(tick, is_probe)
        # A cancelled caller leaves the record queued: it is still delivered
        # within the shutdown grace period or counted as lost.
        return await asyncio.shield(future)

    async def _run_worker(self) -> None:
        while True:
            request = await self._queue.get()
            self._current = request
            try:
                try:
                    metadata = await self._deliver(request)
                except PublishError as e:
                    if not request.future.done():
                        request.future.set_exception(e)
                else:
                    if not request.future.done():
                        request.future.set_result(metadata)
            finally:
                self._current = None
                self._queue.task_done()
                set_queue_depth(COMPONENT, self._queue.qsize())

    def _build_headers(self, tick: EnrichedTick) -> List[Tuple[str, bytes]]:
        return [
            ("client-id", tick.connection_id.encode("utf-8")),
            ("sequence-id", tick.sequence_id.encode("utf-8")),
            ("received-at", str(tick.received_at).encode("utf-8")),
            ("validation-passed", str(tick.validation_passed).lower().encode("utf-8")),
            ("content-type", b"application/json"),
            ("producer", self.config.client_id.encode("utf-8")),
        ]

    async def _deliver(self, request: _PublishRequest) -> Any:
        tick = request.tick
        try:
            value = tick.to_log_value()
        except (TypeError, ValueError) as e:
            self.error_count += 1
            record_error(COMPONENT, "serialization_error", "error")
            raise PublishError(
                f"Failed to serialize tick: {e}",
                retriable=False,
                attempts=1,
                context={"instrument": tick.instrument, "sequence_id": tick.sequence_id},
            ) from e

        headers = self._build_headers(tick)
        attempts = 0

        async def attempt() -> Any:
            nonlocal attempts
            if attempts and not self._accepting:
                # Shutdown began while this record was backing off.
                raise PublishError(
                    "Retry abandoned: Kafka publisher is shutting down",
                    retriable=False,
                    context={"instrument": tick.instrument, "sequence_id": tick.sequence_id},
                )
            attempts += 1
            return await self._send_once(tick, value, headers)

        def on_retry(attempt_no: int, delay_ms: int, error: Exception) -> None:
            record_retry(COMPONENT, "publish", "failed")

        try:
            metadata = await retry_operation_async(
                attempt,
                config=self._retry_config,
                operation_name=f"Publish {tick.instrument}",
                on_retry=on_retry,
                # No new attempts once shutdown has begun.
                should_retry=lambda e: self._accepting and getattr(e, "retriable", False),
            )
        except PublishError as e:
            self.error_count += 1
            e.attempts = attempts
            if e.retriable and self.is_connected:
                self.is_connected = False
                logger.error("Kafka marked unhealthy after exhausting publish retries")
            record_message_processed(COMPONENT, self.config.topic, "error")
            record_error(COMPONENT, "kafka_publish_error", "error")
            logger.error(
                f"Failed to publish tick to Kafka: {e}",
                extra={
                    "instrument": tick.instrument,
                    "price": tick.price,
                    "sequence_id": tick.sequence_id,
                    "attempts": attempts,
                    "retriable": e.retriable,
                },
            )
            raise

        if not self.is_connected:
            logger.info("Kafka connection healthy again")
        self.is_connected = True

        if not request.is_probe:
            self.publish_count += 1
            record_message_processed(COMPONENT, self.config.topic, "success")
            if self.publish_count % 100 == 0:
                logger.info(
                    f"Published {self.publish_count} ticks to Kafka "
                    f"(latest: {tick.instrument} @ {tick.price})"
                )
            if self.publish_count <= 5:
                logger.info(
                    f"Tick published to topic: {self.config.topic}, "
                    f"partition: {getattr(metadata, 'partition', None)}, "
                    f"offset: {getattr(metadata, 'offset', None)}"
                )
        return metadata

    async def _send_once(self, tick: EnrichedTick, value: bytes, headers: List[Tuple[str, bytes]]) -> Any:
        timeout = self.config.request_timeout_ms / 1000.0

        def send_and_wait() -> Any:
            future = self.producer.send(
                self.config.topic,
                key=tick.instrument,
                value=value,
                headers=headers,
                timestamp_ms=tick.timestamp,
            )
            return future.get(timeout=timeout)

        loop = asyncio.get_running_loop()
        try:
            with track_latency(COMPONENT, "publish"):
                return await loop.run_in_executor(None, send_and_wait)
        except KafkaError as e:
            raise PublishError(
                f"{type(e).__name__}: {e}",
                retriable=bool(getattr(e, "retriable", False)),
                context={"instrument": tick.instrument, "sequence_id": tick.sequence_id},
            ) from e
        except (TypeError, ValueError) as e:
            raise PublishError(
                f"Invalid record for Kafka: {e}",
                retriable=False,
                context={"instrument": tick.instrument, "sequence_id": tick.sequence_id},
            ) from e

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self, grace_seconds: Optional[float] = None) -> int:
        """Stop accepting records, drain for up to ``grace_seconds``, close.

        Records still pending after the grace period fail with a
        PublishError and are counted as lost; nothing is retried once
        shutdown has begun.

        Returns:
            Number of records reported lost
        """
        grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._accepting = False
        lost = 0

        if self._queue is not None and self._worker is not None:
            logger.info("Flushing pending Kafka messages...")
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(f"Kafka shutdown grace period of {grace}s elapsed with records pending")

            # The worker clears _current when cancelled.
            current = self._current
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

            pending: List[_PublishRequest] = []
            if current is not None:
                pending.append(current)
            while not self._queue.empty():
                pending.append(self._queue.get_nowait())
                self._queue.task_done()

            for request in pending:
                if not request.future.done():
                    request.future.set_exception(PublishError(
                        "Record lost: publisher shut down before delivery",
                        retriable=False,
                        context={"instrument": request.tick.instrument, "sequence_id": request.tick.sequence_id},
                    ))
                if not request.is_probe:
                    lost += 1

        if lost:
            self.lost_count += lost
            record_error(COMPONENT, "records_lost_on_shutdown", "error")
            logger.error(f"{lost} records were not delivered before Kafka shutdown")

        if self.producer is not None:
            producer = self.producer
            self.producer = None
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, lambda: producer.close(timeout=max(grace, 1.0)))
                logger.info("Kafka producer closed")
            except KafkaError as e:
                logger.error(f"Error closing Kafka producer: {e}")

        self.is_connected = False
        logger.info(
            f"Final Kafka metrics - Published: {self.publish_count}, "
            f"Errors: {self.error_count}, Lost: {self.lost_count}"
        )
        return lost

    def get_metrics(self) -> Dict[str, int]:
        return {
            "messages_published": self.publish_count,
            "publish_errors": self.error_count,
            "messages_lost": self.lost_count,
            "queue_depth": self._queue.qsize() if self._queue is not None else 0,
        }
