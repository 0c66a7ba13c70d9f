"""
Graceful shutdown state tracking.

GracefulShutdown records when a stop was requested and which phase the
process is in, so long-running services can finish in-flight work before
exiting and log progress while they do.
"""

import logging
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class ShutdownState(Enum):
    RUNNING = "running"
    SHUTDOWN_REQUESTED = "shutdown_requested"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class ShutdownEvent:
    """One state transition during shutdown."""
    state: ShutdownState
    timestamp: float
    reason: str = ""


@dataclass
class GracefulShutdown:
    """Shutdown coordinator.

    Args:
        graceful_shutdown_timeout: Seconds allowed for draining before work is abandoned
        shutdown_progress_interval: Seconds between progress log lines while draining
        logger: Logger used for shutdown messages
    """
    graceful_shutdown_timeout: float = 30.0
    shutdown_progress_interval: float = 5.0
    logger: Optional[logging.Logger] = None
    state: ShutdownState = ShutdownState.RUNNING
    events: List[ShutdownEvent] = field(default_factory=list)
    requested_at: Optional[float] = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = logging.getLogger(__name__)

    @property
    def shutdown_requested(self) -> bool:
        return self.state is not ShutdownState.RUNNING

    def _transition(self, state: ShutdownState, reason: str = "") -> None:
        self.state = state
        self.events.append(ShutdownEvent(state=state, timestamp=time.time(), reason=reason))
        self.logger.info(f"Shutdown state -> {state.value}" + (f" ({reason})" if reason else ""))

    def request_shutdown(self, signum: Optional[int] = None) -> bool:
        """Request shutdown. Returns False if one was already requested."""
        if self.shutdown_requested:
            self.logger.info("Shutdown already in progress")
            return False
        reason = signal.Signals(signum).name if signum is not None else "requested"
        self.requested_at = time.monotonic()
        self._transition(ShutdownState.SHUTDOWN_REQUESTED, reason)
        return True

    def start_draining(self) -> None:
        if self.requested_at is None:
            self.requested_at = time.monotonic()
        self._transition(ShutdownState.DRAINING)

    def mark_stopped(self) -> None:
        self._transition(ShutdownState.STOPPED)

    def remaining_seconds(self) -> float:
        """Seconds left in the drain window (full timeout if not started)."""
        if self.requested_at is None:
            return self.graceful_shutdown_timeout
        elapsed = time.monotonic() - self.requested_at
        return max(0.0, self.graceful_shutdown_timeout - elapsed)

    def timed_out(self) -> bool:
        return self.requested_at is not None and self.remaining_seconds() <= 0.0
