"""
Error taxonomy for the tick pipeline.

Callers branch on ``IngestorError.kind`` rather than on message text.
Per-record failures (DECODE, VALIDATION, PUBLISH) are isolated to one
record; TRANSPORT failures end one connection; FATAL and CONFIGURATION
failures stop the process.
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ErrorKind(str, Enum):
    TRANSPORT = "transport_error"
    DECODE = "decode_error"
    VALIDATION = "validation_error"
    PUBLISH = "publish_error"
    CONNECTION = "connection_error"
    CONFIGURATION = "configuration_error"
    FATAL = "fatal_error"
    INTERNAL = "internal_error"


class IngestorError(Exception):
    """Base error carrying a kind, optional context and creation time."""

    def __init__(self, kind: ErrorKind, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.context = context or {}
        self.timestamp = int(time.time() * 1000)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class DecodeError(IngestorError):
    """A wire line violated the arity or field-format rules.

    ``violations`` holds (field, message) pairs in field order; the field
    is "format" for arity violations.
    """

    def __init__(self, violations: List[Tuple[str, str]], line: str = ""):
        super().__init__(
            ErrorKind.DECODE,
            "; ".join(message for _, message in violations),
            {"line": line[:100]},
        )
        self.violations = list(violations)
        self.line = line

    @property
    def messages(self) -> List[str]:
        return [message for _, message in self.violations]


class TransportError(IngestorError):
    """A connection's socket failed; only that connection is torn down."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.TRANSPORT, message, context)


class BindError(IngestorError):
    """The listen socket could not be bound. Fatal at startup."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.FATAL, message, context)


class PublishError(IngestorError):
    """Delivery to the durable log failed.

    ``retriable`` is False for permanent failures such as serialization
    errors; those are surfaced without retry.
    """

    def __init__(
        self,
        message: str,
        retriable: bool = False,
        attempts: int = 0,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorKind.PUBLISH, message, context)
        self.retriable = retriable
        self.attempts = attempts


class LogConnectionError(IngestorError):
    """The log client could not be connected or failed its probe."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.CONNECTION, message, context)


class ConfigurationError(IngestorError):
    def __init__(self, errors: List[str]):
        super().__init__(
            ErrorKind.CONFIGURATION,
            "Configuration validation failed: " + "; ".join(errors),
            {"errors": list(errors)},
        )
        self.errors = list(errors)


class ReconnectExhaustedError(IngestorError):
    """The producer client reached its reconnect attempt cap."""

    def __init__(self, attempts: int, host: str, port: int):
        super().__init__(
            ErrorKind.TRANSPORT,
            f"Max reconnection attempts ({attempts}) reached for {host}:{port}",
            {"attempts": attempts, "host": host, "port": port},
        )
        self.attempts = attempts
