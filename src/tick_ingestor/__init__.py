"""
Tick Ingestor: TCP price tick ingestion into Kafka.

Components:
- TcpServer / LineFramer: connection management and newline framing
- MessageValidator / PriceStateStore: stateful per-instrument validation
- TickSequencer: arrival metadata and process-wide sequence ids
- KafkaPublisher: ordered, retrying publish to the durable log
- IngestorService: orchestration and graceful shutdown
"""

__version__ = "0.1.0"

from .config import IngestorConfig, KafkaConfig, TcpServerConfig, ValidationConfig
from .kafka_publisher import KafkaPublisher
from .sequencer import TickSequencer
from .service import IngestorService
from .tcp_server import ConnectionSession, LineFramer, TcpServer
from .validator import (
    MessageValidator,
    PriceStateStore,
    ValidationCategory,
    ValidationFailure,
    ValidationResult,
)
from src.utils.logging import setup_logging, get_logger

__all__ = [
    "IngestorConfig",
    "KafkaConfig",
    "TcpServerConfig",
    "ValidationConfig",
    "KafkaPublisher",
    "TickSequencer",
    "IngestorService",
    "ConnectionSession",
    "LineFramer",
    "TcpServer",
    "MessageValidator",
    "PriceStateStore",
    "ValidationCategory",
    "ValidationFailure",
    "ValidationResult",
    "setup_logging",
    "get_logger",
]
