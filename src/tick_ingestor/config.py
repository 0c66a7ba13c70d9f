"""
Ingestor configuration.

Dataclass configs loaded from environment variables via the utils config
helpers. ``IngestorConfig.validate()`` collects every problem before
raising, so a bad deployment reports all of them at once.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from src.tick_protocol.errors import ConfigurationError
from src.utils.config import (
    get_env_bool,
    get_env_float,
    get_env_int,
    get_env_list,
    get_env_str,
)

VALID_ACKS = (0, 1, -1)
VALID_COMPRESSION = ("gzip", "snappy", "lz4", "zstd")


@dataclass
class TcpServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    max_connections: int = 100
    keep_alive: bool = False
    idle_timeout_seconds: float = 300.0
    restart_delay_seconds: float = 5.0
    read_chunk_size: int = 65536

    @classmethod
    def from_env(cls) -> "TcpServerConfig":
        return cls(
            host=get_env_str("TCP_HOST", "0.0.0.0"),
            port=get_env_int("TCP_PORT", 8080),
            max_connections=get_env_int("TCP_MAX_CONNECTIONS", 100),
            keep_alive=get_env_bool("TCP_KEEP_ALIVE", False),
            idle_timeout_seconds=get_env_float("TCP_IDLE_TIMEOUT_SECONDS", 300.0),
            restart_delay_seconds=get_env_float("TCP_RESTART_DELAY_SECONDS", 5.0),
        )


@dataclass
class KafkaConfig:
    bootstrap_servers: List[str] = field(default_factory=lambda: ["localhost:9092"])
    client_id: str = "tick-ingestor"
    topic: str = "price-ticks"
    acks: int = 1
    retries: int = 3
    compression: Optional[str] = None
    linger_ms: int = 10
    batch_size: int = 16384
    request_timeout_ms: int = 10000
    retry_initial_delay_ms: int = 100
    retry_max_delay_ms: int = 5000
    connect_attempts: int = 5
    shutdown_grace_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "KafkaConfig":
        compression = get_env_str("KAFKA_COMPRESSION", "").lower() or None
        acks_raw = get_env_str("KAFKA_ACKS", "1").lower()
        acks = -1 if acks_raw == "all" else get_env_int("KAFKA_ACKS", 1)
        return cls(
            bootstrap_servers=get_env_list("KAFKA_BOOTSTRAP_SERVERS", ["localhost:9092"]),
            client_id=get_env_str("KAFKA_CLIENT_ID", "tick-ingestor"),
            topic=get_env_str("KAFKA_TOPIC", "price-ticks"),
            acks=acks,
            retries=get_env_int("KAFKA_RETRIES", 3),
            compression=compression,
            linger_ms=get_env_int("KAFKA_LINGER_MS", 10),
            batch_size=get_env_int("KAFKA_BATCH_SIZE", 16384),
            request_timeout_ms=get_env_int("KAFKA_REQUEST_TIMEOUT_MS", 10000),
            connect_attempts=get_env_int("KAFKA_CONNECT_ATTEMPTS", 5),
            shutdown_grace_seconds=get_env_float("KAFKA_SHUTDOWN_GRACE_SECONDS", 5.0),
        )


@dataclass
class ValidationConfig:
    strict_mode: bool = False
    max_price_deviation: float = 0.1
    max_timestamp_age_ms: int = 300_000
    max_future_skew_ms: int = 60_000
    max_price: float = 1_000_000.0
    max_volume: float = 1_000_000_000.0

    @classmethod
    def from_env(cls) -> "ValidationConfig":
        return cls(
            strict_mode=get_env_bool("VALIDATION_STRICT_MODE", False),
            max_price_deviation=get_env_float("VALIDATION_MAX_PRICE_DEVIATION", 0.1),
            max_timestamp_age_ms=get_env_int("VALIDATION_MAX_TIMESTAMP_AGE_MS", 300_000),
            max_future_skew_ms=get_env_int("VALIDATION_MAX_FUTURE_SKEW_MS", 60_000),
        )


@dataclass
class IngestorConfig:
    """Top-level ingestor configuration."""
    tcp: TcpServerConfig = field(default_factory=TcpServerConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    log_level: str = "INFO"
    log_json: bool = True
    status_report_interval_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "IngestorConfig":
        return cls(
            tcp=TcpServerConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            validation=ValidationConfig.from_env(),
            log_level=get_env_str("LOG_LEVEL", "INFO"),
            log_json=get_env_bool("LOG_JSON", True),
        )

    def validate(self) -> None:
        """Validate settings.

        Raises:
            ConfigurationError: Listing every invalid setting
        """
        errors: List[str] = []

        if not 0 <= self.tcp.port <= 65535:
            errors.append(f"Invalid TCP port: {self.tcp.port}. Must be between 0 and 65535")
        if self.tcp.max_connections < 1:
            errors.append(f"Invalid max connections: {self.tcp.max_connections}. Must be at least 1")
        if self.tcp.idle_timeout_seconds <= 0:
            errors.append("TCP idle timeout must be positive")

        if not self.kafka.bootstrap_servers:
            errors.append("At least one Kafka broker must be specified")
        if not self.kafka.topic.strip():
            errors.append("Kafka topic cannot be empty")
        if self.kafka.acks not in VALID_ACKS:
            errors.append(f"Invalid Kafka acks value: {self.kafka.acks}. Must be 0, 1, or -1")
        if self.kafka.retries < 0:
            errors.append("Kafka retries must be non-negative")
        if self.kafka.compression and self.kafka.compression not in VALID_COMPRESSION:
            errors.append(
                f"Invalid Kafka compression: {self.kafka.compression}. "
                f"Must be one of {', '.join(VALID_COMPRESSION)}"
            )
        if self.kafka.connect_attempts < 1:
            errors.append("Kafka connect attempts must be at least 1")

        if not 0 <= self.validation.max_price_deviation <= 1:
            errors.append(
                f"Invalid max price deviation: {self.validation.max_price_deviation}. "
                "Must be between 0 and 1"
            )
        if self.validation.max_timestamp_age_ms < 0:
            errors.append(
                f"Invalid max timestamp age: {self.validation.max_timestamp_age_ms}. "
                "Must be non-negative"
            )
        if self.validation.max_future_skew_ms < 0:
            errors.append("Max future skew must be non-negative")

        if errors:
            raise ConfigurationError(errors)
