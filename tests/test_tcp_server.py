"""
Tests for the TCP connection manager and line framer.

Server tests run a real listener on 127.0.0.1 with an ephemeral port.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from src.tick_ingestor.config import TcpServerConfig
from src.tick_ingestor.tcp_server import ConnectionSession, LineFramer, TcpServer
from src.tick_protocol.errors import BindError, TransportError


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ============================================================================
# FRAMER TESTS
# ============================================================================

class TestLineFramer:
    """Tests for newline framing."""

    def test_complete_lines(self):
        framer = LineFramer()

        assert framer.feed(b"A|1|2|||\nB|1|2|||\n") == ["A|1|2|||", "B|1|2|||"]
        assert framer.pending_bytes == 0

    def test_partial_line_buffered(self):
        framer = LineFramer()

        assert framer.feed(b"AAPL.O|150") == []
        assert framer.pending_bytes == 10
        assert framer.feed(b".6|1705323000000|||\n") == ["AAPL.O|150.6|1705323000000|||"]

    def test_byte_at_a_time_matches_whole_buffer(self):
        """Test framing is independent of how the stream is chunked."""
        payload = b"AAPL.O|150.6|1|||\r\n\n  \nEUR=|1.08|2|||\nTRAIL"
        whole = LineFramer().feed(payload)

        framer = LineFramer()
        pieces = []
        for i in range(len(payload)):
            pieces.extend(framer.feed(payload[i:i + 1]))

        assert pieces == whole == ["AAPL.O|150.6|1|||", "EUR=|1.08|2|||"]
        assert framer.pending_bytes == len(b"TRAIL")

    def test_blank_lines_dropped(self):
        assert LineFramer().feed(b"\n\r\n   \n") == []

    def test_invalid_utf8_replaced(self):
        lines = LineFramer().feed(b"AB\xff|1|2|||\n")

        assert lines == ["AB\ufffd|1|2|||"]

    def test_reset_discards_partial_line(self):
        framer = LineFramer()
        framer.feed(b"partial")

        assert framer.reset() == 7
        assert framer.pending_bytes == 0


# ============================================================================
# SERVER TESTS
# ============================================================================

@pytest_asyncio.fixture
async def server():
    server = TcpServer(TcpServerConfig(host="127.0.0.1", port=0, max_connections=2, idle_timeout_seconds=5.0))
    received = []

    async def handler(record):
        received.append(record)

    server.set_message_handler(handler)
    server.received = received
    await server.start()
    yield server
    await server.stop(drain_timeout=0.5)


async def connect(server):
    host, port = server.bound_host_port
    return await asyncio.open_connection(host, port)


class TestTcpServer:
    """Tests for TcpServer sessions."""

    @pytest.mark.asyncio
    async def test_records_delivered_in_order(self, server):
        reader, writer = await connect(server)
        writer.write(b"AAPL.O|150.6|1|||\nMSFT.O|300|2|||\n")
        await writer.drain()

        await wait_until(lambda: len(server.received) == 2)

        assert [r.data for r in server.received] == ["AAPL.O|150.6|1|||", "MSFT.O|300|2|||"]
        assert server.received[0].connection_id == server.received[1].connection_id
        assert server.received[0].connection_id.startswith("client-")
        writer.close()

    @pytest.mark.asyncio
    async def test_bad_line_does_not_close_connection(self, server):
        """Test a handler failure on one record leaves the session open."""
        calls = []

        async def handler(record):
            calls.append(record.data)
            if record.data == "TOO|FEW|FIELDS":
                raise ValueError("cannot decode")

        server.set_message_handler(handler)
        reader, writer = await connect(server)
        writer.write(b"TOO|FEW|FIELDS\n")
        writer.write(b"AAPL.O|150.60|1705323000000|1000000|150.10|150.75\n")
        await writer.drain()

        await wait_until(lambda: len(calls) == 2)

        assert calls[1].startswith("AAPL.O")
        assert len(server.clients) == 1
        writer.close()

    @pytest.mark.asyncio
    async def test_partial_line_discarded_on_disconnect(self, server):
        reader, writer = await connect(server)
        writer.write(b"AAPL.O|150.6|1|||\nMSFT.O|30")
        await writer.drain()
        await wait_until(lambda: len(server.received) == 1)

        writer.close()
        await wait_until(lambda: not server.clients)

        assert len(server.received) == 1

    @pytest.mark.asyncio
    async def test_connection_cap(self, server):
        """Test connections beyond max_connections are closed immediately."""
        first = await connect(server)
        second = await connect(server)
        await wait_until(lambda: len(server.clients) == 2)

        reader, writer = await connect(server)
        data = await asyncio.wait_for(reader.read(), timeout=2.0)

        assert data == b""
        assert server.rejected_connections == 1
        assert len(server.clients) == 2
        for _, w in (first, second):
            w.close()

    @pytest.mark.asyncio
    async def test_close_session_is_idempotent(self, server):
        reader, writer = await connect(server)
        await wait_until(lambda: len(server.clients) == 1)
        session_id = next(iter(server.clients))

        assert server._close_session(session_id, "error") is True
        assert server._close_session(session_id, "timeout") is False
        assert server.get_metrics()["active_connections"] == 0

    @pytest.mark.asyncio
    async def test_idle_timeout_closes_session(self):
        server = TcpServer(TcpServerConfig(host="127.0.0.1", port=0, idle_timeout_seconds=0.1))
        await server.start()
        try:
            reader, writer = await connect(server)
            await wait_until(lambda: server.total_connections == 1)

            data = await asyncio.wait_for(reader.read(), timeout=2.0)

            assert data == b""
            assert not server.clients
        finally:
            await server.stop(drain_timeout=0.1)

    @pytest.mark.asyncio
    async def test_bind_error(self, server):
        host, port = server.bound_host_port
        other = TcpServer(TcpServerConfig(host=host, port=port))

        with pytest.raises(BindError):
            await other.start()
        assert other.is_server_listening() is False

    @pytest.mark.asyncio
    async def test_stop_closes_all_sessions(self, server):
        reader, writer = await connect(server)
        await wait_until(lambda: len(server.clients) == 1)

        await server.stop(drain_timeout=0.5)

        assert server.is_server_listening() is False
        assert not server.clients
        assert await asyncio.wait_for(reader.read(), timeout=2.0) == b""

    @pytest.mark.asyncio
    async def test_connected_clients_described(self, server):
        reader, writer = await connect(server)
        writer.write(b"AAPL.O|150.6|1|||\n")
        await writer.drain()
        await wait_until(lambda: len(server.received) == 1)

        clients = server.get_connected_clients()

        assert len(clients) == 1
        assert clients[0]["message_count"] == 1
        assert clients[0]["remote_address"] == "127.0.0.1"
        writer.close()

    @pytest.mark.asyncio
    async def test_socket_error_wrapped_as_transport_error(self, server):
        reader = asyncio.StreamReader()
        reader.set_exception(ConnectionResetError("reset by peer"))
        session = ConnectionSession(id="client-1", connected_at=0)

        with pytest.raises(TransportError) as exc_info:
            await server._read_loop(session, reader)

        assert exc_info.value.context["connection_id"] == "client-1"
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)

    @pytest.mark.asyncio
    async def test_socket_error_closes_only_that_session(self, server, caplog):
        reader = asyncio.StreamReader()
        reader.set_exception(ConnectionResetError("reset by peer"))
        writer = MagicMock()
        writer.get_extra_info.side_effect = lambda name, default=None: {
            "peername": ("10.0.0.5", 40000),
        }.get(name, default)
        writer.is_closing.return_value = False

        await server._handle_connection(reader, writer)

        writer.close.assert_called_once()
        assert not server.clients
        assert server.total_connections == 1
        assert any(getattr(r, "error_type", None) == "transport_error" for r in caplog.records)


# ============================================================================
# LISTENER RESTART TESTS
# ============================================================================

class TestListenerRestart:
    """Tests for the listener supervisor."""

    @pytest.mark.asyncio
    async def test_listener_rebinds_after_post_bind_error(self, monkeypatch):
        server = TcpServer(TcpServerConfig(host="127.0.0.1", port=0, restart_delay_seconds=0.2))
        received = []

        async def handler(record):
            received.append(record.data)

        server.set_message_handler(handler)
        original_bind = server._bind
        bound = []

        async def failing_once_bind():
            listener = await original_bind()
            bound.append(listener)
            if len(bound) == 1:
                async def broken_serve_forever():
                    await asyncio.sleep(0.05)
                    raise OSError("listener socket failed")
                listener.serve_forever = broken_serve_forever
            return listener

        monkeypatch.setattr(server, "_bind", failing_once_bind)
        await server.start()
        try:
            assert server.is_server_listening() is True

            await wait_until(lambda: not server.is_listening)
            await wait_until(lambda: len(bound) == 2 and server.is_listening)

            reader, writer = await connect(server)
            writer.write(b"AAPL.O|150.6|1|||\n")
            await writer.drain()
            await wait_until(lambda: received == ["AAPL.O|150.6|1|||"])
            writer.close()
        finally:
            await server.stop(drain_timeout=0.5)

        assert server.is_server_listening() is False


# ============================================================================
# ADMIN HELPER TESTS
# ============================================================================

class TestAdminHelpers:
    """Tests for send_to_client and broadcast."""

    @pytest.mark.asyncio
    async def test_send_to_client(self, server):
        reader, writer = await connect(server)
        await wait_until(lambda: len(server.clients) == 1)
        client_id = next(iter(server.clients))

        assert server.send_to_client(client_id, "NOTICE maintenance at 22:00") is True

        line = await asyncio.wait_for(reader.readline(), timeout=2.0)
        assert line == b"NOTICE maintenance at 22:00\n"
        writer.close()

    @pytest.mark.asyncio
    async def test_send_to_unknown_client(self, server):
        assert server.send_to_client("client-missing", "hello") is False

    @pytest.mark.asyncio
    async def test_send_to_closing_writer(self, server):
        reader, writer = await connect(server)
        await wait_until(lambda: len(server.clients) == 1)
        client_id, session = next(iter(server.clients.items()))

        session.writer.close()

        assert server.send_to_client(client_id, "hello") is False
        writer.close()

    @pytest.mark.asyncio
    async def test_broadcast_reaches_every_client(self, server):
        connections = [await connect(server) for _ in range(2)]
        await wait_until(lambda: len(server.clients) == 2)

        assert server.broadcast("HEARTBEAT") == 2

        for reader, writer in connections:
            assert await asyncio.wait_for(reader.readline(), timeout=2.0) == b"HEARTBEAT\n"
            writer.close()

    @pytest.mark.asyncio
    async def test_broadcast_skips_closing_clients(self, server):
        connections = [await connect(server) for _ in range(2)]
        await wait_until(lambda: len(server.clients) == 2)
        next(iter(server.clients.values())).writer.close()

        assert server.broadcast("HEARTBEAT") == 1

        for _, writer in connections:
            writer.close()
