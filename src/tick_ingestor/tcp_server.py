"""
TCP server for receiving price ticks from producers.

Each accepted connection gets a ConnectionSession and its own read task.
The LineFramer turns the byte stream into newline-delimited records;
records are handed to the message handler one at a time, in arrival
order, so a slow handler stalls only its own connection.

The protocol is fire-and-forget: nothing is ever written back to
producers about the fate of their records.
"""

import asyncio
import logging
import socket
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.tick_protocol.errors import BindError, TransportError
from src.tick_protocol.models import RawRecord, now_ms
from src.utils.metrics import record_connection, record_error, set_active_connections

from .config import TcpServerConfig

logger = logging.getLogger(__name__)

COMPONENT = "tcp_server"

MessageHandler = Callable[[RawRecord], Awaitable[Any]]


class LineFramer:
    """Split a byte stream into trimmed text lines at ``\\n``.

    Bytes after the last newline stay buffered for the next feed; lines
    that are empty after trimming are dropped.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._buffer = bytearray()

    def feed(self, data: bytes) -> List[str]:
        self._buffer.extend(data)
        if b"\n" not in data:
            return []

        *complete, remainder = self._buffer.split(b"\n")
        self._buffer = bytearray(remainder)

        lines = []
        for raw in complete:
            text = raw.decode(self.encoding, errors="replace").strip()
            if text:
                lines.append(text)
        return lines

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def reset(self) -> int:
        """Discard any partial line. Returns the number of bytes dropped."""
        dropped = len(self._buffer)
        self._buffer.clear()
        return dropped


@dataclass
class ConnectionSession:
    """State of one accepted connection, owned by its read task."""
    id: str
    connected_at: int
    writer: Any = None
    remote_address: Optional[str] = None
    remote_port: Optional[int] = None
    message_count: int = 0
    last_message_at: Optional[int] = None
    framer: LineFramer = field(default_factory=LineFramer)
    task: Optional[asyncio.Task] = None
    draining: bool = False
    in_flight: bool = False

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "connected_at": self.connected_at,
            "last_message_at": self.last_message_at,
            "message_count": self.message_count,
            "remote_address": self.remote_address,
            "remote_port": self.remote_port,
        }


def new_connection_id() -> str:
    return f"client-{now_ms()}-{uuid.uuid4().hex[:9]}"


class TcpServer:
    """Accept producer connections and frame their byte streams.

    Args:
        config: Bind address, soft connection cap and timeouts
    """

    def __init__(self, config: TcpServerConfig):
        self.config = config
        self.clients: Dict[str, ConnectionSession] = {}
        self.is_listening = False

        self._server: Optional[asyncio.AbstractServer] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._message_handler: Optional[MessageHandler] = None
        self._stopping = False

        self.total_connections = 0
        self.rejected_connections = 0
        self.total_messages = 0
        self.start_time = time.monotonic()

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    # ------------------------------------------------------------------
    # Listener lifecycle
    # ------------------------------------------------------------------

    async def _bind(self) -> asyncio.AbstractServer:
        return await asyncio.start_server(
            self._handle_connection,
            host=self.config.host,
            port=self.config.port,
            reuse_address=True,
        )

    async def start(self) -> None:
        """Bind the listen socket and start accepting.

        Raises:
            BindError: If the socket cannot be bound
        """
        if self.is_listening:
            return
        self._stopping = False
        try:
            self._server = await self._bind()
        except OSError as e:
            record_error(COMPONENT, "bind_error", "critical")
            raise BindError(
                f"Failed to start TCP server: {e}",
                {"host": self.config.host, "port": self.config.port},
            ) from e

        self.is_listening = True
        self.start_time = time.monotonic()
        logger.info(f"TCP server listening on {self.bound_address}")
        self._supervisor = asyncio.create_task(self._supervise(), name="tcp-listener")

    @property
    def bound_address(self) -> str:
        host, port = self.bound_host_port
        return f"{host}:{port}"

    @property
    def bound_host_port(self) -> tuple:
        if self._server is not None and self._server.sockets:
            sockname = self._server.sockets[0].getsockname()
            return sockname[0], sockname[1]
        return self.config.host, self.config.port

    async def _supervise(self) -> None:
        """Keep the listener alive; restart it after a post-bind failure."""
        while not self._stopping:
            try:
                await self._server.serve_forever()
            except asyncio.CancelledError:
                if self._stopping:
                    raise
                logger.error("TCP listener stopped unexpectedly")
            except OSError as e:
                logger.error(f"TCP server error: {e}", extra={"error_type": type(e).__name__})

            if self._stopping:
                break
            self.is_listening = False
            record_error(COMPONENT, "listener_error", "error")
            await self._restart_listener()

    async def _restart_listener(self) -> None:
        """Re-bind after ``restart_delay_seconds``, retrying indefinitely."""
        if self._server is not None:
            self._server.close()
        while not self._stopping:
            await asyncio.sleep(self.config.restart_delay_seconds)
            logger.info("Attempting to restart TCP server...")
            try:
                self._server = await self._bind()
            except OSError as e:
                logger.error(f"Failed to restart TCP server: {e}")
                continue
            self.is_listening = True
            logger.info(f"TCP server restarted on {self.bound_address}")
            return

    def stop_accepting(self) -> None:
        """Close the listen socket; existing sessions keep running."""
        self._stopping = True
        if self._supervisor is not None:
            self._supervisor.cancel()
            self._supervisor = None
        if self._server is not None:
            self._server.close()
        self.is_listening = False

    async def drain(self, timeout: float = 1.0) -> None:
        """Let records already read finish, then stop every read loop.

        Sessions idle in a socket read are cancelled right away; sessions
        in the middle of handling a record get up to ``timeout`` seconds.
        """
        busy = []
        for session in list(self.clients.values()):
            session.draining = True
            if session.task is None:
                continue
            if session.in_flight:
                busy.append(session.task)
            else:
                session.task.cancel()

        if busy:
            _, pending = await asyncio.wait(busy, timeout=timeout)
            for task in pending:
                task.cancel()

    async def close_all_sessions(self) -> None:
        tasks = []
        for session_id, session in list(self.clients.items()):
            logger.info(f"Closing connection to client {session_id}")
            if session.task is not None and not session.task.done():
                session.task.cancel()
                tasks.append(session.task)
            self._close_session(session_id, "shutdown")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self, drain_timeout: float = 1.0) -> None:
        """Stop accepting, drain in-flight records and close all sessions."""
        logger.info("Stopping TCP server...")
        self.stop_accepting()
        await self.drain(drain_timeout)
        await self.close_all_sessions()
        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for TCP listener to close")
            self._server = None
        logger.info("TCP server stopped gracefully")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _configure_socket(self, writer: asyncio.StreamWriter) -> None:
        sock = writer.get_extra_info("socket")
        if sock is None:
            return
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            if self.config.keep_alive:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        except OSError as e:
            logger.warning(f"Could not set socket options: {e}")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername") or (None, None)

        if self._stopping or len(self.clients) >= self.config.max_connections:
            self.rejected_connections += 1
            record_connection(COMPONENT, "rejected")
            logger.warning(
                f"Rejecting connection from {peer[0]}:{peer[1]} "
                f"({len(self.clients)}/{self.config.max_connections} connections in use)"
            )
            writer.close()
            return

        self._configure_socket(writer)
        session = ConnectionSession(
            id=new_connection_id(),
            connected_at=now_ms(),
            writer=writer,
            remote_address=peer[0],
            remote_port=peer[1],
            task=asyncio.current_task(),
        )
        self.clients[session.id] = session
        self.total_connections += 1
        record_connection(COMPONENT, "accepted")
        set_active_connections(COMPONENT, len(self.clients))
        logger.info(
            f"New client connected: {session.id} from {session.remote_address}:{session.remote_port} "
            f"(total: {len(self.clients)})",
            extra={"connection_id": session.id},
        )

        reason = "normal"
        try:
            await self._read_loop(session, reader)
        except asyncio.TimeoutError:
            reason = "timeout"
            logger.warning(f"Client {session.id} timed out", extra={"connection_id": session.id})
        except TransportError as e:
            reason = "error"
            record_error(COMPONENT, "connection_error", "warning")
            logger.error(
                f"Client {session.id} error: {e}",
                extra={"connection_id": session.id, "error_type": e.kind.value, "error_details": e.context},
            )
        except asyncio.CancelledError:
            reason = "shutdown"
            raise
        finally:
            self._close_session(session.id, reason)

    async def _read_loop(self, session: ConnectionSession, reader: asyncio.StreamReader) -> None:
        while not session.draining:
            try:
                data = await asyncio.wait_for(
                    reader.read(self.config.read_chunk_size),
                    timeout=self.config.idle_timeout_seconds,
                )
            except asyncio.TimeoutError:
                # A subclass of OSError on Python 3.11+.
                raise
            except (ConnectionError, OSError) as e:
                raise TransportError(
                    f"Read failed: {e}",
                    {"connection_id": session.id, "os_error": type(e).__name__},
                ) from e
            if not data:
                return
            for line in session.framer.feed(data):
                await self._dispatch(session, line)

    async def _dispatch(self, session: ConnectionSession, line: str) -> None:
        session.message_count += 1
        session.last_message_at = now_ms()
        self.total_messages += 1

        record = RawRecord(data=line, connection_id=session.id)

        if self.total_messages % 100 == 0:
            logger.info(
                f"Processed {self.total_messages} messages "
                f"(client {session.id}: {session.message_count})"
            )

        if self._message_handler is None:
            return

        session.in_flight = True
        try:
            await self._message_handler(record)
        except Exception as e:
            # One bad record must not take the connection down.
            record_error(COMPONENT, "handler_error", "error")
            logger.error(
                f"Message handler error for client {session.id}: {e}",
                extra={"connection_id": session.id, "error_type": type(e).__name__},
                exc_info=True,
            )
        finally:
            session.in_flight = False

    def _close_session(self, session_id: str, reason: str) -> bool:
        """Tear down a session. Safe to call more than once."""
        session = self.clients.pop(session_id, None)
        if session is None:
            return False

        dropped = session.framer.reset()
        if dropped:
            logger.debug(f"Discarded {dropped} bytes of partial line from {session_id}")

        duration = (now_ms() - session.connected_at) / 1000
        logger.info(
            f"Client {session_id} disconnected ({reason}) after {duration:.1f}s, "
            f"processed {session.message_count} messages",
            extra={"connection_id": session_id},
        )
        set_active_connections(COMPONENT, len(self.clients))

        writer = session.writer
        if writer is not None and not writer.is_closing():
            writer.close()
        return True

    # ------------------------------------------------------------------
    # Admin helpers and metrics
    # ------------------------------------------------------------------

    def send_to_client(self, client_id: str, message: str) -> bool:
        session = self.clients.get(client_id)
        if session is None or session.writer is None or session.writer.is_closing():
            return False
        try:
            session.writer.write((message + "\n").encode("utf-8"))
            return True
        except (ConnectionError, OSError) as e:
            logger.error(f"Failed to send message to client {client_id}: {e}")
            return False

    def broadcast(self, message: str) -> int:
        return sum(1 for client_id in list(self.clients) if self.send_to_client(client_id, message))

    def get_connected_clients(self) -> List[Dict[str, Any]]:
        return [session.describe() for session in self.clients.values()]

    def is_server_listening(self) -> bool:
        return self.is_listening

    def get_metrics(self) -> Dict[str, Any]:
        uptime = time.monotonic() - self.start_time
        return {
            "active_connections": len(self.clients),
            "total_connections": self.total_connections,
            "rejected_connections": self.rejected_connections,
            "messages_received": self.total_messages,
            "uptime_seconds": round(uptime, 1),
            "messages_per_second": round(self.total_messages / uptime, 2) if uptime > 0 else 0.0,
            "average_messages_per_client": (
                round(self.total_messages / self.total_connections) if self.total_connections else 0
            ),
        }
