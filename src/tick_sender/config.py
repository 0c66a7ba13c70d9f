"""Producer-side transport configuration."""

from dataclasses import dataclass
from typing import List

from src.tick_protocol.errors import ConfigurationError
from src.utils.config import get_env_bool, get_env_float, get_env_int, get_env_str


@dataclass
class TcpSenderConfig:
    host: str = "localhost"
    port: int = 8080
    reconnect_interval_ms: int = 5000
    reconnect_multiplier: float = 1.0
    max_reconnect_delay_ms: int = 60000
    max_reconnect_attempts: int = 10
    jitter_factor: float = 0.0
    connect_timeout_seconds: float = 10.0
    drain_timeout_seconds: float = 5.0
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "TcpSenderConfig":
        return cls(
            host=get_env_str("SENDER_HOST", "localhost"),
            port=get_env_int("SENDER_PORT", 8080),
            reconnect_interval_ms=get_env_int("SENDER_RECONNECT_INTERVAL_MS", 5000),
            reconnect_multiplier=get_env_float("SENDER_RECONNECT_MULTIPLIER", 1.0),
            max_reconnect_delay_ms=get_env_int("SENDER_MAX_RECONNECT_DELAY_MS", 60000),
            max_reconnect_attempts=get_env_int("SENDER_MAX_RECONNECT_ATTEMPTS", 10),
            connect_timeout_seconds=get_env_float("SENDER_CONNECT_TIMEOUT_SECONDS", 10.0),
            drain_timeout_seconds=get_env_float("SENDER_DRAIN_TIMEOUT_SECONDS", 5.0),
            log_level=get_env_str("LOG_LEVEL", "INFO"),
            log_json=get_env_bool("LOG_JSON", True),
        )

    def validate(self) -> None:
        errors: List[str] = []
        if not self.host:
            errors.append("Sender host is required")
        if not 1 <= self.port <= 65535:
            errors.append(f"Invalid sender port: {self.port}. Must be between 1 and 65535")
        if self.reconnect_interval_ms < 0:
            errors.append("Reconnect interval must be non-negative")
        if self.reconnect_multiplier < 1.0:
            errors.append("Reconnect multiplier must be >= 1.0")
        if self.max_reconnect_attempts < 0:
            errors.append("Max reconnect attempts must be non-negative")
        if errors:
            raise ConfigurationError(errors)
