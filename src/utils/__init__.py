"""
Shared utilities for the tick ingestion pipeline.

Modules:
- config: Type-safe environment variable helpers
- logging: Structured JSON logging setup
- retry: Exponential backoff and retry helpers
- metrics: Prometheus metric helpers
- shutdown: Graceful shutdown state tracking
"""

from src.utils.config import (
    get_env_str,
    get_env_int,
    get_env_float,
    get_env_bool,
    get_env_list,
)
from src.utils.logging import setup_logging, get_logger, StructuredFormatter
from src.utils.retry import ExponentialBackoff, RetryConfig, retry_operation, retry_operation_async
from src.utils.shutdown import GracefulShutdown, ShutdownState, ShutdownEvent

__all__ = [
    "get_env_str",
    "get_env_int",
    "get_env_float",
    "get_env_bool",
    "get_env_list",
    "setup_logging",
    "get_logger",
    "StructuredFormatter",
    "ExponentialBackoff",
    "RetryConfig",
    "retry_operation",
    "retry_operation_async",
    "GracefulShutdown",
    "ShutdownState",
    "ShutdownEvent",
]
