"""
Tick enrichment and sequencing.

Stamps accepted ticks with arrival metadata and a process-wide sequence.
Sequence ids are ``<process start ms>-<counter>`` with a zero-padded
counter, so they are unique for the process lifetime and sort the same way
numerically and lexicographically.
"""

import itertools
import threading
from typing import List, Optional

from src.tick_protocol.models import EnrichedTick, PriceTick, RawRecord, now_ms
from src.utils.metrics import observe_tick_latency

SEQUENCE_WIDTH = 12


class TickSequencer:
    """Attach receipt time, connection id, sequence id and latency.

    No I/O, no failure modes: a bad input here is a programming error and
    surfaces as the model's own ValidationError.
    """

    def __init__(self, start_time_ms: Optional[int] = None):
        self.start_time_ms = start_time_ms if start_time_ms is not None else now_ms()
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self._last_sequence = 0

    def next_sequence(self) -> int:
        with self._lock:
            self._last_sequence = next(self._counter)
            return self._last_sequence

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    def format_sequence_id(self, sequence: int) -> str:
        return f"{self.start_time_ms}-{sequence:0{SEQUENCE_WIDTH}d}"

    def enrich(
        self,
        tick: PriceTick,
        record: RawRecord,
        warnings: Optional[List[str]] = None,
    ) -> EnrichedTick:
        """Build the EnrichedTick for an accepted tick.

        Latency is receipt time minus event time and may be negative when
        the producer clock runs ahead; it is reported as-is.
        """
        sequence = self.next_sequence()
        latency_ms = record.received_at - tick.timestamp
        observe_tick_latency(latency_ms)

        return EnrichedTick(
            instrument=tick.instrument,
            price=tick.price,
            timestamp=tick.timestamp,
            volume=tick.volume,
            bid=tick.bid,
            ask=tick.ask,
            received_at=record.received_at,
            connection_id=record.connection_id,
            sequence_id=self.format_sequence_id(sequence),
            sequence_number=sequence,
            latency_ms=latency_ms,
            validation_passed=True,
            validation_errors=(),
            validation_warnings=tuple(warnings or ()),
        )
