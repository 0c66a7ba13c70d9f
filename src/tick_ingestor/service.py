"""
Ingestor service.

Wires TcpServer -> MessageValidator -> TickSequencer -> KafkaPublisher:

1. Connect Kafka (fatal if it fails)
2. Bind the TCP listener (fatal if it fails)
3. For every framed record: validate, enrich, publish
4. On SIGINT/SIGTERM: stop accepting, drain in-flight records, shut the
   publisher down within its grace period, close all sessions
"""

import asyncio
import logging
import signal
import time
from typing import Any, Dict, List, Optional

from src.tick_protocol.errors import ErrorKind, IngestorError, PublishError
from src.tick_protocol.models import RawRecord
from src.utils.metrics import (
    record_error,
    record_message_processed,
    record_validation_error,
    track_latency,
)
from src.utils.shutdown import GracefulShutdown

from .config import IngestorConfig
from .kafka_publisher import KafkaPublisher
from .sequencer import TickSequencer
from .tcp_server import TcpServer
from .validator import MessageValidator, PriceStateStore, ValidationResult

logger = logging.getLogger(__name__)

COMPONENT = "ingestor"


class IngestorService:
    """Orchestrates reception, validation, enrichment and publishing.

    Components can be injected for testing; by default they are built
    from ``config``.
    """

    def __init__(
        self,
        config: IngestorConfig,
        tcp_server: Optional[TcpServer] = None,
        validator: Optional[MessageValidator] = None,
        sequencer: Optional[TickSequencer] = None,
        publisher: Optional[KafkaPublisher] = None,
    ):
        config.validate()
        self.config = config

        self.tcp_server = tcp_server or TcpServer(config.tcp)
        self.validator = validator or MessageValidator(config.validation, PriceStateStore())
        self.sequencer = sequencer or TickSequencer()
        self.publisher = publisher or KafkaPublisher(config.kafka)

        self.tcp_server.set_message_handler(self.handle_message)

        self.is_running = False
        self.start_time = time.monotonic()
        self.graceful_shutdown = GracefulShutdown(
            graceful_shutdown_timeout=config.kafka.shutdown_grace_seconds + 2.0,
            shutdown_progress_interval=1.0,
            logger=logger,
        )
        self._stop_event: Optional[asyncio.Event] = None
        self._report_task: Optional[asyncio.Task] = None

        self.messages_received = 0
        self.messages_processed = 0
        self.messages_failed = 0
        self.publish_errors = 0
        self.average_processing_ms = 0.0
        self.validation_errors: Dict[str, int] = {}
        self.last_error: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect Kafka, then bind the TCP listener.

        Raises:
            IngestorError: LogConnectionError or BindError; both are fatal
        """
        logger.info("Starting tick ingestor service...")
        await self.publisher.connect()
        try:
            await self.tcp_server.start()
        except IngestorError:
            await self.publisher.shutdown(grace_seconds=0)
            raise

        self.is_running = True
        self.start_time = time.monotonic()
        logger.info(
            f"Ingestor started - TCP: {self.tcp_server.bound_address}, "
            f"Kafka: {', '.join(self.config.kafka.bootstrap_servers)} -> {self.config.kafka.topic}, "
            f"strict mode: {self.config.validation.strict_mode}"
        )
        self._report_task = asyncio.create_task(self._report_status(), name="status-report")

    async def stop(self) -> None:
        """Graceful shutdown in four steps; safe to call twice."""
        if not self.is_running:
            return
        self.is_running = False
        self.graceful_shutdown.start_draining()

        if self._report_task is not None:
            self._report_task.cancel()
            await asyncio.gather(self._report_task, return_exceptions=True)
            self._report_task = None

        self.tcp_server.stop_accepting()
        # Sessions waiting on a publish keep it for the whole Kafka grace period.
        await self.tcp_server.drain(timeout=self.config.kafka.shutdown_grace_seconds)
        await self.publisher.shutdown()
        await self.tcp_server.stop(drain_timeout=1.0)

        self.graceful_shutdown.mark_stopped()
        logger.info("Ingestor service stopped gracefully")
        self._log_final_metrics()

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        """Signal handler: only records the request, run() does the work."""
        if self.graceful_shutdown.request_shutdown(signum) and self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Start, wait for a shutdown signal, then stop."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handlers unavailable for {sig}")

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Record pipeline
    # ------------------------------------------------------------------

    async def handle_message(self, record: RawRecord) -> bool:
        """Validate, enrich and publish one record.

        Returns True when the record reached Kafka. Decode, validation and
        publish failures are counted and logged here and never propagate,
        so the connection stays open.
        """
        self.messages_received += 1
        record_message_processed(COMPONENT, "received", "success")

        with track_latency(COMPONENT, "validate"):
            result = self.validator.validate_message(record.data)

        if not result.is_valid or result.tick is None:
            self._handle_validation_failure(record, result)
            return False

        enriched = self.sequencer.enrich(result.tick, record, result.warnings)

        try:
            await self.publisher.publish(enriched)
        except PublishError as e:
            self._handle_publish_failure(record, e)
            return False

        self.messages_processed += 1
        record_message_processed(COMPONENT, "published", "success")
        self._update_processing_time((time.monotonic() - record.received_monotonic) * 1000)

        if self.messages_processed % 100 == 0:
            logger.info(
                f"Processed {self.messages_processed} messages "
                f"(avg: {self.average_processing_ms:.2f}ms)"
            )
        return True

    def _handle_validation_failure(self, record: RawRecord, result: ValidationResult) -> None:
        self.messages_failed += 1
        record_message_processed(COMPONENT, "validated", "failed")

        for category in result.categories:
            key = category.value
            self.validation_errors[key] = self.validation_errors.get(key, 0) + 1
            record_validation_error(key)

        # 1st, 11th, 21st ... failure
        if self.messages_failed % 10 == 1:
            logger.warning(
                f"Validation failed for client {record.connection_id}: {'; '.join(result.errors)}",
                extra={
                    "connection_id": record.connection_id,
                    "error_type": ErrorKind.VALIDATION.value,
                    "raw_message": record.data[:100],
                },
            )

    def _handle_publish_failure(self, record: RawRecord, error: PublishError) -> None:
        self.messages_failed += 1
        self.publish_errors += 1
        record_message_processed(COMPONENT, "published", "failed")
        record_error(COMPONENT, error.kind.value, "error")

        self.last_error = {
            "message": error.message,
            "timestamp": error.timestamp,
            "type": error.kind.value,
        }
        logger.error(
            f"Processing error for client {record.connection_id}: {error.message}",
            extra={"connection_id": record.connection_id, "error_type": error.kind.value},
        )

    def _update_processing_time(self, processing_ms: float) -> None:
        if self.messages_processed <= 1:
            self.average_processing_ms = processing_ms
        else:
            self.average_processing_ms = 0.9 * self.average_processing_ms + 0.1 * processing_ms

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def _report_status(self) -> None:
        interval = self.config.status_report_interval_seconds
        while self.is_running:
            await asyncio.sleep(interval)
            metrics = self.get_metrics()
            logger.info(
                f"Status report: uptime={metrics['uptime_seconds']}s, "
                f"active connections={metrics['active_connections']}, "
                f"received={metrics['messages_received']}, processed={metrics['messages_processed']}, "
                f"failed={metrics['messages_failed']}, published={metrics['messages_published']}, "
                f"publish errors={metrics['publish_errors']}",
                extra={"metrics": metrics},
            )

    def get_metrics(self) -> Dict[str, Any]:
        tcp = self.tcp_server.get_metrics()
        kafka = self.publisher.get_metrics()
        uptime = time.monotonic() - self.start_time
        return {
            "uptime_seconds": round(uptime, 1),
            "active_connections": tcp["active_connections"],
            "total_connections": tcp["total_connections"],
            "messages_received": self.messages_received,
            "messages_processed": self.messages_processed,
            "messages_failed": self.messages_failed,
            "messages_published": kafka["messages_published"],
            "messages_lost": kafka["messages_lost"],
            "publish_errors": self.publish_errors,
            "average_processing_ms": round(self.average_processing_ms, 3),
            "validation_errors": dict(self.validation_errors),
            "tracked_symbols": self.validator.get_validation_stats()["tracked_symbols"],
            "last_error": self.last_error,
        }

    def is_healthy(self) -> bool:
        return (
            self.is_running
            and self.tcp_server.is_server_listening()
            and self.publisher.is_connected_to_kafka()
        )

    def _log_final_metrics(self) -> None:
        metrics = self.get_metrics()
        lines: List[str] = [
            f"Uptime: {metrics['uptime_seconds']}s",
            f"Total connections: {metrics['total_connections']}",
            f"Messages received: {metrics['messages_received']}",
            f"Messages processed: {metrics['messages_processed']}",
            f"Messages failed: {metrics['messages_failed']}",
            f"Messages published: {metrics['messages_published']}",
            f"Publish errors: {metrics['publish_errors']}",
            f"Average processing time: {metrics['average_processing_ms']:.2f}ms",
        ]
        for category, count in sorted(metrics["validation_errors"].items()):
            lines.append(f"Validation errors [{category}]: {count}")
        logger.info("Final service metrics - " + ", ".join(lines), extra={"metrics": metrics})
