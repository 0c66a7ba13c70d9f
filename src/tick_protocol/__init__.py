"""Tick wire protocol: models, codec and error taxonomy shared by both sides."""

from .codec import (
    DELIMITER,
    FIELD_COUNT,
    decode_line,
    encode_line,
    encode_tick,
    split_fields,
)
from .errors import (
    BindError,
    ConfigurationError,
    DecodeError,
    ErrorKind,
    IngestorError,
    LogConnectionError,
    PublishError,
    ReconnectExhaustedError,
    TransportError,
)
from .models import DecodedFields, EnrichedTick, PriceTick, RawRecord, now_ms

__all__ = [
    "DELIMITER",
    "FIELD_COUNT",
    "decode_line",
    "encode_line",
    "encode_tick",
    "split_fields",
    "BindError",
    "ConfigurationError",
    "DecodeError",
    "ErrorKind",
    "IngestorError",
    "LogConnectionError",
    "PublishError",
    "ReconnectExhaustedError",
    "TransportError",
    "DecodedFields",
    "EnrichedTick",
    "PriceTick",
    "RawRecord",
    "now_ms",
]
