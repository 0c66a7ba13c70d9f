"""
Tick Sender: reliable producer-side TCP client for the tick wire protocol.

Queues encoded ticks while disconnected, flushes them in order on
reconnect and gives up after a bounded number of reconnect attempts.
"""

from .config import TcpSenderConfig
from .sender import SenderState, TcpSender

__all__ = [
    "TcpSenderConfig",
    "SenderState",
    "TcpSender",
]
