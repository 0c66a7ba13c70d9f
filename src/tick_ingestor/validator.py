"""
Message Validator Module

Turns a raw wire line into either a PriceTick or an ordered list of
categorised failures. Checks run in a fixed order:

1. Shape and type (wire codec)
2. Ranges: price, timestamp window, optional fields
3. Cross-field: bid <= ask, price inside [bid, ask]
4. Anomaly: relative deviation from the last accepted price

The last accepted price per instrument lives in PriceStateStore. The
read-check-write of step 4 holds that instrument's lock, so concurrent
connections reporting the same instrument cannot interleave, while
different instruments never contend.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError as ModelValidationError

from src.tick_protocol.codec import decode_line
from src.tick_protocol.errors import DecodeError
from src.tick_protocol.models import DecodedFields, PriceTick, now_ms

from .config import ValidationConfig

logger = logging.getLogger(__name__)


class ValidationCategory(str, Enum):
    EMPTY_MESSAGE = "empty_message"
    INVALID_FORMAT = "invalid_format"
    INVALID_INSTRUMENT = "invalid_instrument"
    INVALID_PRICE = "invalid_price"
    INVALID_TIMESTAMP = "invalid_timestamp"
    INVALID_VOLUME = "invalid_volume"
    INVALID_BID = "invalid_bid"
    INVALID_ASK = "invalid_ask"
    INVALID_SPREAD = "invalid_spread"
    PRICE_DEVIATION = "price_deviation"
    ZERO_VOLUME = "zero_volume"


# Codec violation field -> category
_DECODE_CATEGORIES = {
    "format": ValidationCategory.INVALID_FORMAT,
    "instrument": ValidationCategory.INVALID_INSTRUMENT,
    "price": ValidationCategory.INVALID_PRICE,
    "timestamp": ValidationCategory.INVALID_TIMESTAMP,
    "volume": ValidationCategory.INVALID_VOLUME,
    "bid": ValidationCategory.INVALID_BID,
    "ask": ValidationCategory.INVALID_ASK,
}


@dataclass
class ValidationFailure:
    """One failed rule."""
    category: ValidationCategory
    message: str


@dataclass
class ValidationResult:
    """Outcome of validating one message.

    On success ``tick`` is set and ``failures`` is empty; on rejection
    ``tick`` is None and ``failures`` lists every broken rule in order.
    ``warnings`` carries non-fatal findings (permissive-mode deviation).
    """
    is_valid: bool
    tick: Optional[PriceTick] = None
    failures: List[ValidationFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def errors(self) -> List[str]:
        return [failure.message for failure in self.failures]

    @property
    def categories(self) -> List[ValidationCategory]:
        return [failure.category for failure in self.failures]

    def __str__(self) -> str:
        if self.is_valid:
            return f"PASSED: {self.tick.instrument} @ {self.tick.price}"
        return f"FAILED: {'; '.join(self.errors)}"


class PriceStateStore:
    """Last accepted price per instrument, guarded by per-instrument locks.

    Entries are never evicted; the instrument universe is expected to be
    small (tens to low hundreds of codes).
    """

    def __init__(self):
        self._prices: Dict[str, float] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, instrument: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(instrument)
            if lock is None:
                lock = threading.Lock()
                self._locks[instrument] = lock
            return lock

    def get(self, instrument: str) -> Optional[float]:
        return self._prices.get(instrument)

    def set(self, instrument: str, price: float) -> None:
        self._prices[instrument] = price

    def snapshot(self) -> Dict[str, float]:
        with self._registry_lock:
            return dict(self._prices)

    def clear(self) -> None:
        with self._registry_lock:
            self._prices.clear()

    def __len__(self) -> int:
        return len(self._prices)

    def __contains__(self, instrument: str) -> bool:
        return instrument in self._prices


class MessageValidator:
    """Stateful validator for incoming price tick lines.

    Args:
        config: Validation thresholds and strict/permissive mode
        state: Shared last-price store (a fresh one is created if omitted)
        clock: Returns "now" in epoch milliseconds; injectable for tests
    """

    def __init__(
        self,
        config: Optional[ValidationConfig] = None,
        state: Optional[PriceStateStore] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or ValidationConfig()
        self.state = state if state is not None else PriceStateStore()
        self.clock = clock

    def validate_message(self, raw_message: str) -> ValidationResult:
        """Parse and validate one wire line.

        Never raises for malformed input; rejection is reported through
        the returned ValidationResult.
        """
        clean = raw_message.replace("\r", "").replace("\n", "").strip()
        if not clean:
            return self._reject([
                ValidationFailure(ValidationCategory.EMPTY_MESSAGE, "Empty message received")
            ])

        try:
            fields = decode_line(clean)
        except DecodeError as e:
            return self._reject([
                ValidationFailure(_DECODE_CATEGORIES.get(name, ValidationCategory.INVALID_FORMAT), message)
                for name, message in e.violations
            ])

        failures = self._check_ranges(fields)
        if failures:
            return self._reject(failures)

        failures = self._check_cross_fields(fields)
        warnings: List[str] = []

        with self.state.lock_for(fields.instrument):
            deviation_failure = self._check_deviation(fields, warnings)
            if deviation_failure is not None:
                failures.append(deviation_failure)
            if failures:
                return self._reject(failures)

            try:
                tick = PriceTick.from_fields(fields)
            except ModelValidationError as e:
                return self._reject([
                    ValidationFailure(ValidationCategory.INVALID_FORMAT, f"Invalid tick: {e}")
                ])
            self.state.set(tick.instrument, tick.price)

        return ValidationResult(is_valid=True, tick=tick, warnings=warnings)

    def _reject(self, failures: List[ValidationFailure]) -> ValidationResult:
        return ValidationResult(is_valid=False, tick=None, failures=failures)

    def _check_ranges(self, fields: DecodedFields) -> List[ValidationFailure]:
        failures: List[ValidationFailure] = []
        cfg = self.config

        if fields.price <= 0:
            failures.append(ValidationFailure(
                ValidationCategory.INVALID_PRICE,
                f"Invalid price: {fields.price}. Must be greater than 0",
            ))
        elif fields.price > cfg.max_price:
            failures.append(ValidationFailure(
                ValidationCategory.INVALID_PRICE,
                f"Invalid price: {fields.price}. Suspiciously high value",
            ))

        now = self.clock()
        age = now - fields.timestamp
        if age > cfg.max_timestamp_age_ms:
            failures.append(ValidationFailure(
                ValidationCategory.INVALID_TIMESTAMP,
                f"Timestamp too old: {fields.timestamp}. Age: {age}ms, "
                f"Max allowed: {cfg.max_timestamp_age_ms}ms",
            ))
        elif fields.timestamp > now + cfg.max_future_skew_ms:
            failures.append(ValidationFailure(
                ValidationCategory.INVALID_TIMESTAMP,
                f"Timestamp too far in future: {fields.timestamp}. Current time: {now}",
            ))

        optional_limits = (
            ("volume", fields.volume, cfg.max_volume, ValidationCategory.INVALID_VOLUME),
            ("bid", fields.bid, cfg.max_price, ValidationCategory.INVALID_BID),
            ("ask", fields.ask, cfg.max_price, ValidationCategory.INVALID_ASK),
        )
        for name, value, ceiling, category in optional_limits:
            if value is None:
                continue
            if value < 0:
                failures.append(ValidationFailure(category, f"Invalid {name}: {value}. Cannot be negative"))
            elif value > ceiling:
                failures.append(ValidationFailure(category, f"Invalid {name}: {value}. Suspiciously high value"))

        if cfg.strict_mode and fields.volume == 0:
            failures.append(ValidationFailure(
                ValidationCategory.ZERO_VOLUME,
                "Zero volume trades are not allowed in strict mode",
            ))

        return failures

    def _check_cross_fields(self, fields: DecodedFields) -> List[ValidationFailure]:
        failures: List[ValidationFailure] = []
        if fields.bid is None or fields.ask is None:
            return failures

        if fields.bid > fields.ask:
            failures.append(ValidationFailure(
                ValidationCategory.INVALID_SPREAD,
                f"Invalid bid/ask spread: bid {fields.bid} > ask {fields.ask}",
            ))
        if fields.price < fields.bid or fields.price > fields.ask:
            failures.append(ValidationFailure(
                ValidationCategory.INVALID_SPREAD,
                f"Price {fields.price} outside bid/ask spread [{fields.bid}, {fields.ask}]",
            ))
        return failures

    def _check_deviation(self, fields: DecodedFields, warnings: List[str]) -> Optional[ValidationFailure]:
        # Caller holds the instrument lock.
        last_price = self.state.get(fields.instrument)
        if last_price is None:
            return None

        deviation = abs(fields.price - last_price) / last_price
        if deviation <= self.config.max_price_deviation:
            return None

        percent = f"{deviation * 100:.2f}"
        if self.config.strict_mode:
            return ValidationFailure(
                ValidationCategory.PRICE_DEVIATION,
                f"Suspicious price deviation: {percent}% from last price {last_price} to {fields.price}",
            )

        message = f"Large price deviation for {fields.instrument}: {percent}% ({last_price} -> {fields.price})"
        warnings.append(message)
        logger.warning(
            message,
            extra={"instrument": fields.instrument, "deviation_pct": float(percent)},
        )
        return None

    def get_validation_stats(self) -> Dict[str, int]:
        return {"tracked_symbols": len(self.state)}

    def clear_price_history(self) -> None:
        self.state.clear()

    def get_last_prices(self) -> Dict[str, float]:
        return self.state.snapshot()
