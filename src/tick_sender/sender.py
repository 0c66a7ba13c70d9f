"""
Reliable TCP sender for price ticks.

TcpSender keeps one outbound connection to the ingestor. Its lifecycle is
a small state machine and ``state`` is the only source of truth:

    DISCONNECTED -> CONNECTING      start() / connect() / scheduled reconnect
    CONNECTING   -> CONNECTED       socket established; queued records flushed in order
    CONNECTING   -> DISCONNECTED    attempt failed; reconnect scheduled with backoff
    CONNECTED    -> DISCONNECTED    socket error or peer close; reconnect scheduled
    CONNECTED    -> DRAINING        stop()
    DRAINING     -> DISCONNECTED    current write drained (bounded) and socket closed

send() never blocks on connectivity: while not CONNECTED, encoded records
are appended to an in-memory FIFO queue. Records already handed to the
socket when it fails are not re-queued; the wire protocol has no
acknowledgement, so delivery is best effort, at most once per attempt.
Once the reconnect attempt cap is reached the sender stops retrying and
reports a ReconnectExhaustedError.
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from src.tick_protocol.codec import encode_line
from src.tick_protocol.errors import ReconnectExhaustedError
from src.tick_protocol.models import PriceTick
from src.utils.metrics import record_connection, record_error, set_queue_depth
from src.utils.retry import ExponentialBackoff

from .config import TcpSenderConfig

logger = logging.getLogger(__name__)

COMPONENT = "tcp_sender"

ConnectionFactory = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class SenderState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DRAINING = "draining"


_TRANSITIONS = {
    SenderState.DISCONNECTED: {SenderState.CONNECTING},
    SenderState.CONNECTING: {SenderState.CONNECTED, SenderState.DISCONNECTED},
    SenderState.CONNECTED: {SenderState.DISCONNECTED, SenderState.DRAINING},
    SenderState.DRAINING: {SenderState.DISCONNECTED},
}


async def _open_connection(host: str, port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_connection(host, port)


class TcpSender:
    """Queue-backed, reconnecting TCP client for the tick wire protocol.

    Args:
        config: Target address and reconnect policy
        connection_factory: ``async (host, port) -> (reader, writer)``;
            defaults to asyncio.open_connection
        on_terminal_failure: Called once when the reconnect cap is reached
    """

    def __init__(
        self,
        config: TcpSenderConfig,
        connection_factory: ConnectionFactory = _open_connection,
        on_terminal_failure: Optional[Callable[[ReconnectExhaustedError], None]] = None,
    ):
        self.config = config
        self.state = SenderState.DISCONNECTED
        self.queue: Deque[bytes] = deque()
        self.terminal_error: Optional[ReconnectExhaustedError] = None

        self._connection_factory = connection_factory
        self._on_terminal_failure = on_terminal_failure
        self._backoff = ExponentialBackoff(
            initial_delay_ms=config.reconnect_interval_ms,
            max_delay_ms=config.max_reconnect_delay_ms,
            multiplier=config.reconnect_multiplier,
            jitter_factor=config.jitter_factor,
            max_attempts=config.max_reconnect_attempts,
        )
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._stopped = False

        self.sent_count = 0
        self.queued_total = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, new_state: SenderState) -> None:
        if new_state is self.state:
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid sender transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Sender state {self.state.value} -> {new_state.value}")
        self.state = new_state

    def is_connection_active(self) -> bool:
        return self.state is SenderState.CONNECTED

    @property
    def queued_count(self) -> int:
        return len(self.queue)

    @property
    def reconnect_attempts(self) -> int:
        return self._backoff.attempt_count

    @property
    def has_failed(self) -> bool:
        return self.terminal_error is not None

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Begin delivering; returns whether the first attempt connected.

        A failed first attempt is not an error: records keep queueing and
        reconnects are scheduled in the background.
        """
        self._stopped = False
        self.terminal_error = None
        self._backoff.reset()
        return await self.connect()

    async def connect(self) -> bool:
        """Attempt a connection now, pre-empting any scheduled reconnect.

        Has no effect while already connected, connecting or draining.
        """
        if self.state is not SenderState.DISCONNECTED:
            return self.state is SenderState.CONNECTED
        self._cancel_reconnect()
        return await self._attempt_connect()

    async def _attempt_connect(self) -> bool:
        self._set_state(SenderState.CONNECTING)
        logger.info(f"Connecting to TCP server at {self.config.host}:{self.config.port}...")
        try:
            reader, writer = await asyncio.wait_for(
                self._connection_factory(self.config.host, self.config.port),
                timeout=self.config.connect_timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError) as e:
            record_connection(COMPONENT, "failed")
            record_error(COMPONENT, "connection_error", "warning")
            logger.error(
                f"TCP connection error: {e}",
                extra={"error_type": type(e).__name__, "host": self.config.host, "port": self.config.port},
            )
            self._set_state(SenderState.DISCONNECTED)
            self._schedule_reconnect()
            return False

        if self._stopped:
            writer.close()
            self._set_state(SenderState.DISCONNECTED)
            return False

        self._reader, self._writer = reader, writer
        self._backoff.reset()
        self._set_state(SenderState.CONNECTED)
        record_connection(COMPONENT, "connected")
        logger.info("TCP connection established")

        # Queued records go out before any send() issued after this point.
        self._flush_queue()
        self._monitor_task = asyncio.create_task(self._monitor_connection(reader, writer))
        try:
            await writer.drain()
        except (ConnectionError, OSError) as e:
            self._handle_disconnection(writer, f"write failed during flush: {e}")
            return False
        return True

    def _flush_queue(self) -> None:
        if not self.queue:
            return
        count = len(self.queue)
        logger.info(f"Sending {count} queued messages...")
        writer = self._writer
        while self.queue:
            writer.write(self.queue.popleft())
            self.sent_count += 1
        set_queue_depth(COMPONENT, 0)
        logger.info("Message queue flushed")

    def _schedule_reconnect(self) -> None:
        if self._stopped:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if self._backoff.exhausted:
            self._fail_terminal()
            return

        delay_ms = self._backoff.next_delay_ms()
        logger.info(
            f"Attempting reconnection {self._backoff.attempt_count}/{self.config.max_reconnect_attempts} "
            f"in {delay_ms}ms..."
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay_ms / 1000.0))

    async def _reconnect_after(self, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        self._reconnect_task = None
        if self._stopped or self.state is not SenderState.DISCONNECTED:
            return
        await self._attempt_connect()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _fail_terminal(self) -> None:
        if self.terminal_error is not None:
            return
        self.terminal_error = ReconnectExhaustedError(
            self.config.max_reconnect_attempts, self.config.host, self.config.port
        )
        record_error(COMPONENT, "reconnect_exhausted", "critical")
        logger.error(
            f"Max reconnection attempts ({self.config.max_reconnect_attempts}) reached. Giving up. "
            f"{len(self.queue)} records remain queued",
            extra={"error_type": self.terminal_error.kind.value, "queued": len(self.queue)},
        )
        if self._on_terminal_failure is not None:
            self._on_terminal_failure(self.terminal_error)

    async def _monitor_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Watch the socket for peer close or errors while CONNECTED."""
        reason = "peer closed connection"
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                logger.debug(f"Received from server: {data.decode('utf-8', errors='replace').strip()}")
        except (ConnectionError, OSError) as e:
            reason = f"socket error: {e}"
        self._handle_disconnection(writer, reason)

    def _handle_disconnection(self, writer: asyncio.StreamWriter, reason: str) -> None:
        # Ignore stale signals from a connection that was already replaced.
        if writer is not self._writer or self.state is not SenderState.CONNECTED:
            return
        logger.warning(f"TCP connection closed: {reason}")
        record_error(COMPONENT, "connection_lost", "warning")
        self._close_writer()
        self._set_state(SenderState.DISCONNECTED)
        self._schedule_reconnect()

    def _close_writer(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is not None and not writer.is_closing():
            writer.close()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, tick: PriceTick) -> bool:
        """Send a tick, or queue it while not connected.

        Returns:
            True if the record was handed to the socket, False if queued
        """
        line = encode_line(tick)
        writer = self._writer

        if self.state is SenderState.CONNECTED and writer is not None and not writer.is_closing():
            writer.write(line)
            self.sent_count += 1
            logger.debug(f"Sent tick: {tick.instrument} @ {tick.price}")
            try:
                await writer.drain()
            except (ConnectionError, OSError) as e:
                # Already handed to the transport: not re-queued.
                self._handle_disconnection(writer, f"write failed: {e}")
            return True

        if self.state is SenderState.CONNECTED:
            self._handle_disconnection(writer, "transport closing")

        self.queue.append(line)
        self.queued_total += 1
        set_queue_depth(COMPONENT, len(self.queue))
        logger.debug(f"Queuing tick (connection unavailable): {tick.instrument} @ {tick.price}")
        return False

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop reconnecting, drain the current write (bounded) and close."""
        self._stopped = True
        self._cancel_reconnect()

        writer = self._writer
        if self.state is SenderState.CONNECTED and writer is not None:
            self._set_state(SenderState.DRAINING)
            logger.info("Closing TCP connection...")
            try:
                await asyncio.wait_for(writer.drain(), timeout=self.config.drain_timeout_seconds)
            except (asyncio.TimeoutError, ConnectionError, OSError) as e:
                logger.warning(f"Could not drain pending writes before close: {e!r}")
            self._close_writer()
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=self.config.drain_timeout_seconds)
            except (asyncio.TimeoutError, ConnectionError, OSError):
                pass

        if self._monitor_task is not None:
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None

        if self.state is not SenderState.DISCONNECTED:
            self._set_state(SenderState.DISCONNECTED)
        if self.queue:
            logger.warning(f"{len(self.queue)} queued records were not delivered")
        logger.info("TCP sender stopped")

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "sent": self.sent_count,
            "queued": len(self.queue),
            "queued_total": self.queued_total,
            "reconnect_attempts": self._backoff.attempt_count,
            "failed": self.has_failed,
        }
