"""
Wire codec for price ticks.

Format: one newline-terminated line of six pipe-delimited fields

    INSTRUMENT|PRICE|TIMESTAMP_MS|VOLUME|BID|ASK

Optional fields (volume, bid, ask) are empty when absent. Examples:

    AAPL.O|150.60|1705323000000|1000000|150.10|150.75
    EUR=|1.0850|1705323002000|||

The codec checks shape and type only. Range and business rules belong to
the ingestor's validator.
"""

import math
import re
from typing import List, Optional, Tuple

from .errors import DecodeError
from .models import DecodedFields, PriceTick

DELIMITER = "|"
FIELD_COUNT = 6
LINE_TERMINATOR = "\n"

INSTRUMENT_PATTERN = re.compile(r"^[A-Za-z0-9.=]{2,20}$")
# ASCII digits only: float() and int() also take "_" separators and non-ASCII digits.
DECIMAL_PATTERN = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")

FIELD_NAMES = ("instrument", "price", "timestamp", "volume", "bid", "ask")


def _format_number(value: Optional[float]) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    return repr(value) if isinstance(value, float) else str(value)


def encode_tick(tick: PriceTick) -> str:
    """Encode a tick as one wire line, without the trailing newline."""
    return DELIMITER.join([
        tick.instrument,
        _format_number(tick.price),
        str(int(tick.timestamp)),
        _format_number(tick.volume),
        _format_number(tick.bid),
        _format_number(tick.ask),
    ])


def encode_line(tick: PriceTick) -> bytes:
    """Encode a tick as newline-terminated UTF-8 bytes ready for the socket."""
    return (encode_tick(tick) + LINE_TERMINATOR).encode("utf-8")


def _parse_decimal(raw: str, name: str, required: bool, violations: List[Tuple[str, str]]) -> Optional[float]:
    if raw == "":
        if required:
            violations.append((name, f"{name} is required and cannot be empty"))
        return None
    if not DECIMAL_PATTERN.fullmatch(raw):
        violations.append((name, f"Invalid {name}: {raw!r}. Must be a valid decimal number"))
        return None
    value = float(raw)
    if not math.isfinite(value):
        violations.append((name, f"Invalid {name}: {raw!r}. Must be a finite number"))
        return None
    return value


def _parse_timestamp(raw: str, violations: List[Tuple[str, str]]) -> Optional[int]:
    if raw == "":
        violations.append(("timestamp", "timestamp is required and cannot be empty"))
        return None
    if not INTEGER_PATTERN.fullmatch(raw):
        violations.append(("timestamp", f"Invalid timestamp: {raw!r}. Must be integer milliseconds since epoch"))
        return None
    return int(raw)


def _parse_instrument(raw: str, violations: List[Tuple[str, str]]) -> Optional[str]:
    if raw == "":
        violations.append(("instrument", "instrument is required and cannot be empty"))
        return None
    if not INSTRUMENT_PATTERN.match(raw):
        violations.append((
            "instrument",
            f"Invalid instrument format: {raw!r}. Expected 2-20 characters "
            f"of letters, digits, '.' or '='",
        ))
        return None
    return raw.upper()


def split_fields(line: str) -> List[str]:
    """Split a trimmed line into exactly six stripped fields.

    Raises:
        DecodeError: If the line does not have exactly six fields
    """
    parts = line.strip().split(DELIMITER)
    if len(parts) != FIELD_COUNT:
        raise DecodeError(
            [("format", f"Invalid message format. Expected {FIELD_COUNT} fields, got {len(parts)}")],
            line,
        )
    return [part.strip() for part in parts]


def decode_line(line: str) -> DecodedFields:
    """Decode one wire line.

    Every field is checked so the error lists all violations at once;
    nothing is returned unless the whole line is well formed.

    Raises:
        DecodeError: On an arity violation or any field format violation
    """
    parts = split_fields(line)
    violations: List[Tuple[str, str]] = []

    instrument = _parse_instrument(parts[0], violations)
    price = _parse_decimal(parts[1], "price", True, violations)
    timestamp = _parse_timestamp(parts[2], violations)
    volume = _parse_decimal(parts[3], "volume", False, violations)
    bid = _parse_decimal(parts[4], "bid", False, violations)
    ask = _parse_decimal(parts[5], "ask", False, violations)

    if violations:
        raise DecodeError(violations, line)

    return DecodedFields(
        instrument=instrument,
        price=price,
        timestamp=timestamp,
        volume=volume,
        bid=bid,
        ask=ask,
    )
