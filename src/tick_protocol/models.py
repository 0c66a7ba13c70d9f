"""
Domain models shared by the producer and the ingestor.

PriceTick is the decoded price update. EnrichedTick adds the server-side
metadata published to Kafka; its JSON form (``to_log_value``) is the
contract downstream consumers read, so its keys are fixed by the
serialization aliases below.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


class DecodedFields(NamedTuple):
    """Shape- and type-checked fields of one wire line, in wire order."""
    instrument: str
    price: float
    timestamp: int
    volume: Optional[float]
    bid: Optional[float]
    ask: Optional[float]


@dataclass(frozen=True)
class RawRecord:
    """One framed line plus transport metadata.

    Attributes:
        data: Trimmed line without its newline
        connection_id: Session that received the line
        received_at: Receipt time in epoch milliseconds
        received_monotonic: time.monotonic() at receipt, for durations
    """
    data: str
    connection_id: str
    received_at: int = field(default_factory=now_ms)
    received_monotonic: float = field(default_factory=time.monotonic)


class PriceTick(BaseModel):
    """A single price update for one instrument."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    instrument: str = Field(min_length=1, serialization_alias="ric")
    price: float = Field(gt=0)
    timestamp: int
    volume: Optional[float] = Field(default=None, ge=0)
    bid: Optional[float] = Field(default=None, ge=0)
    ask: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_spread(self) -> "PriceTick":
        if self.bid is not None and self.ask is not None:
            if not self.bid <= self.price <= self.ask:
                raise ValueError(
                    f"bid {self.bid} <= price {self.price} <= ask {self.ask} does not hold"
                )
        return self

    @classmethod
    def from_fields(cls, fields: DecodedFields) -> "PriceTick":
        return cls(
            instrument=fields.instrument,
            price=fields.price,
            timestamp=fields.timestamp,
            volume=fields.volume,
            bid=fields.bid,
            ask=fields.ask,
        )


class EnrichedTick(PriceTick):
    """PriceTick plus arrival metadata, sequence and validation outcome."""

    received_at: int = Field(serialization_alias="receivedAt")
    connection_id: str = Field(serialization_alias="clientId")
    sequence_id: str = Field(serialization_alias="sequenceId")
    sequence_number: int = Field(ge=1, serialization_alias="sequenceNumber")
    latency_ms: int = Field(serialization_alias="latencyMs")
    validation_passed: bool = Field(default=True, serialization_alias="validationPassed")
    validation_errors: Tuple[str, ...] = Field(default=(), serialization_alias="validationErrors")
    validation_warnings: Tuple[str, ...] = Field(default=(), serialization_alias="validationWarnings")

    def to_log_record(self) -> Dict[str, Any]:
        """Dict form of the outbound log message; absent optionals are omitted."""
        record = self.model_dump(by_alias=True, exclude_none=True)
        record["validationErrors"] = list(self.validation_errors)
        record["validationWarnings"] = list(self.validation_warnings)
        return record

    def to_log_value(self) -> bytes:
        """UTF-8 JSON bytes for the Kafka message value."""
        return json.dumps(self.to_log_record(), allow_nan=False).encode("utf-8")
