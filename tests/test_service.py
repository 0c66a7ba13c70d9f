"""
Tests for the ingestor service orchestration.

Table of Contents:
- Record Pipeline Tests (mocked transport and publisher)
- Lifecycle Tests
- End-to-End Tests (real TCP listener, fake Kafka producer)
"""

# ============================================================================
# IMPORTS AND SETUP
# ============================================================================

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.tick_ingestor.config import IngestorConfig, KafkaConfig, TcpServerConfig, ValidationConfig
from src.tick_ingestor.kafka_publisher import KafkaPublisher
from src.tick_ingestor.service import IngestorService
from src.tick_ingestor.tcp_server import TcpServer
from src.tick_protocol.errors import BindError, ConfigurationError, PublishError
from src.tick_protocol.models import EnrichedTick, RawRecord, now_ms


def valid_line(instrument="AAPL.O", price="150.60", bid="150.10", ask="150.75"):
    return f"{instrument}|{price}|{now_ms()}|1000000|{bid}|{ask}"


@pytest.fixture
def mock_tcp_server():
    server = MagicMock(spec=TcpServer)
    server.bound_address = "127.0.0.1:8080"
    server.get_metrics.return_value = {"active_connections": 0, "total_connections": 0}
    return server


@pytest.fixture
def mock_publisher():
    publisher = MagicMock(spec=KafkaPublisher)
    publisher.publish = AsyncMock(return_value=None)
    publisher.get_metrics.return_value = {"messages_published": 0, "messages_lost": 0}
    return publisher


@pytest.fixture
def service(mock_tcp_server, mock_publisher):
    return IngestorService(
        IngestorConfig(validation=ValidationConfig(strict_mode=True)),
        tcp_server=mock_tcp_server,
        publisher=mock_publisher,
    )


# ============================================================================
# RECORD PIPELINE TESTS
# ============================================================================

class TestHandleMessage:
    """Tests for validate -> enrich -> publish."""

    def test_handler_registered_on_server(self, service, mock_tcp_server):
        mock_tcp_server.set_message_handler.assert_called_once_with(service.handle_message)

    @pytest.mark.asyncio
    async def test_valid_record_published(self, service, mock_publisher):
        record = RawRecord(data=valid_line(), connection_id="client-1")

        assert await service.handle_message(record) is True

        tick = mock_publisher.publish.await_args.args[0]
        assert isinstance(tick, EnrichedTick)
        assert tick.price == 150.60
        assert tick.connection_id == "client-1"
        assert tick.validation_passed is True
        assert service.messages_received == 1
        assert service.messages_processed == 1

    @pytest.mark.asyncio
    async def test_invalid_record_not_published(self, service, mock_publisher):
        record = RawRecord(data="TOO|FEW|FIELDS", connection_id="client-1")

        assert await service.handle_message(record) is False

        mock_publisher.publish.assert_not_awaited()
        assert service.messages_failed == 1
        assert service.validation_errors == {"invalid_format": 1}

    @pytest.mark.asyncio
    async def test_validation_categories_counted(self, service):
        await service.handle_message(RawRecord(data=valid_line(bid="151", ask="150"), connection_id="c"))
        await service.handle_message(RawRecord(data="", connection_id="c"))

        assert service.validation_errors["invalid_spread"] == 2
        assert service.validation_errors["empty_message"] == 1

    @pytest.mark.asyncio
    async def test_publish_failure_counted(self, service, mock_publisher):
        mock_publisher.publish.side_effect = PublishError("broker down", retriable=True)

        result = await service.handle_message(RawRecord(data=valid_line(), connection_id="c"))

        assert result is False
        assert service.publish_errors == 1
        assert service.last_error["message"] == "broker down"
        assert service.last_error["type"] == "publish"

    @pytest.mark.asyncio
    async def test_sequence_increases_across_connections(self, service, mock_publisher):
        await service.handle_message(RawRecord(data=valid_line("AAPL.O"), connection_id="a"))
        await service.handle_message(RawRecord(data=valid_line("EUR=", "1.08", "", ""), connection_id="b"))

        numbers = [call.args[0].sequence_number for call in mock_publisher.publish.await_args_list]
        assert numbers == [1, 2]

    @pytest.mark.asyncio
    async def test_metrics_snapshot(self, service):
        await service.handle_message(RawRecord(data=valid_line(), connection_id="c"))

        metrics = service.get_metrics()

        assert metrics["messages_processed"] == 1
        assert metrics["tracked_symbols"] == 1
        assert metrics["average_processing_ms"] >= 0


# ============================================================================
# LIFECYCLE TESTS
# ============================================================================

class TestLifecycle:
    """Tests for startup, shutdown and configuration."""

    def test_invalid_config_rejected(self, mock_tcp_server, mock_publisher):
        config = IngestorConfig(
            tcp=TcpServerConfig(port=70000),
            kafka=KafkaConfig(acks=2, bootstrap_servers=[]),
        )

        with pytest.raises(ConfigurationError) as exc_info:
            IngestorService(config, tcp_server=mock_tcp_server, publisher=mock_publisher)

        assert len(exc_info.value.errors) == 3

    @pytest.mark.asyncio
    async def test_start_connects_kafka_before_tcp(self, service, mock_tcp_server, mock_publisher):
        order = []
        mock_publisher.connect.side_effect = lambda: order.append("kafka")
        mock_tcp_server.start.side_effect = lambda: order.append("tcp")

        await service.start()

        assert order == ["kafka", "tcp"]
        assert service.is_running is True
        await service.stop()

    @pytest.mark.asyncio
    async def test_bind_failure_shuts_publisher_down(self, service, mock_tcp_server, mock_publisher):
        mock_tcp_server.start.side_effect = BindError("address in use")

        with pytest.raises(BindError):
            await service.start()

        mock_publisher.shutdown.assert_awaited_once_with(grace_seconds=0)
        assert service.is_running is False

    @pytest.mark.asyncio
    async def test_stop_order(self, service, mock_tcp_server, mock_publisher):
        manager = MagicMock()
        manager.attach_mock(mock_tcp_server.stop_accepting, "stop_accepting")
        manager.attach_mock(mock_tcp_server.drain, "drain")
        manager.attach_mock(mock_publisher.shutdown, "shutdown")
        manager.attach_mock(mock_tcp_server.stop, "stop")
        await service.start()

        await service.stop()
        await service.stop()

        names = [call[0] for call in manager.mock_calls]
        assert names == ["stop_accepting", "drain", "shutdown", "stop"]

    @pytest.mark.asyncio
    async def test_sessions_drained_for_kafka_grace_period(self, mock_tcp_server, mock_publisher):
        """Test busy sessions are not cut off before the publisher's grace period."""
        config = IngestorConfig(kafka=KafkaConfig(shutdown_grace_seconds=7.5))
        service = IngestorService(config, tcp_server=mock_tcp_server, publisher=mock_publisher)
        await service.start()

        await service.stop()

        mock_tcp_server.drain.assert_awaited_once_with(timeout=7.5)

    @pytest.mark.asyncio
    async def test_request_shutdown_ends_run(self, service):
        task = asyncio.create_task(service.run())
        await asyncio.sleep(0.05)

        service.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

        assert service.graceful_shutdown.state.value == "stopped"


# ============================================================================
# END-TO-END TESTS
# ============================================================================

class TestEndToEnd:
    """Real TCP listener feeding a KafkaPublisher backed by a fake producer."""

    @pytest.mark.asyncio
    async def test_bad_line_then_valid_line(self, kafka_config, fake_producer, producer_factory):
        config = IngestorConfig(
            tcp=TcpServerConfig(host="127.0.0.1", port=0),
            kafka=kafka_config,
        )
        service = IngestorService(config, publisher=KafkaPublisher(kafka_config, producer_factory=producer_factory))
        await service.start()
        try:
            host, port = service.tcp_server.bound_host_port
            reader, writer = await asyncio.open_connection(host, port)
            writer.write(b"TOO|FEW|FIELDS\n")
            writer.write((valid_line() + "\n").encode())
            await writer.drain()

            for _ in range(200):
                if fake_producer.published:
                    break
                await asyncio.sleep(0.01)

            assert len(fake_producer.published) == 1
            value = json.loads(fake_producer.published[0].value)
            assert value["ric"] == "AAPL.O"
            assert value["price"] == 150.60
            assert value["validationPassed"] is True
            assert service.messages_failed == 1
            assert len(service.tcp_server.clients) == 1
            writer.close()
        finally:
            await service.stop()

        assert fake_producer.closed is True
