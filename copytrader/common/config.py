"""Configuration management for the copy-trading engine."""

from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PacificaConfig(BaseModel):
    """Pacifica exchange API configuration."""

    api_url: str = "https://api.pacifica.fi/api/v1"
    ws_url: str = "wss://ws.pacifica.fi/ws"
    testnet_api_url: str = "https://test-api.pacifica.fi/api/v1"
    testnet_ws_url: str = "wss://test-ws.pacifica.fi/ws"
    testnet: bool = False

    # Signed requests
    expiry_window_ms: int = 5000

    # Rate limiting (exchange ceiling is 100/min, keep a buffer)
    requests_per_window: int = 90
    rate_window_seconds: float = 60.0
    rate_limit_retries: int = 1
    rate_limit_retry_delay: float = 1.0
    queue_poll_interval: float = 0.1
    request_timeout: float = 30.0

    # WebSocket settings
    ping_interval: float = 30.0
    max_reconnect_attempts: int = 10
    reconnect_base_delay: float = 1.0
    connection_timeout: float = 30.0


class ReplicationConfig(BaseModel):
    """Trade replication configuration."""

    slippage_percent: str = "0.5"

    # Used when the market metadata lookup fails
    default_lot_size: Decimal = Decimal("0.00001")

    # Subscription reconciliation
    reconcile_interval: float = 60.0

    # Per-master fill channels
    channel_size: int = 1000

    # Operator warning after N consecutive failed submissions for one relationship
    failure_warning_threshold: int = 5


class VaultConfig(BaseModel):
    """Credential vault configuration."""

    # 64-char hex string (32 bytes, AES-256)
    encryption_key: Optional[str] = None


class DuckDBConfig(BaseModel):
    """DuckDB configuration."""

    database_path: str = "data/copytrader.db"
    memory_limit: str = "512MB"
    threads: int = 2


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # File settings
    log_file: str = "logs/copytrader.log"
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    # Structured logging
    use_json: bool = True
    add_caller_info: bool = False


class MonitoringConfig(BaseModel):
    """Monitoring and metrics configuration."""

    prometheus_port: int = 9090
    enable_metrics_server: bool = True


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    debug: bool = False

    # Component configurations
    pacifica: PacificaConfig = Field(default_factory=PacificaConfig)
    replication: ReplicationConfig = Field(default_factory=ReplicationConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    duckdb: DuckDBConfig = Field(default_factory=DuckDBConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    def get_pacifica_urls(self) -> Dict[str, str]:
        """Get Pacifica URLs based on environment."""
        if self.pacifica.testnet:
            return {
                "rest": self.pacifica.testnet_api_url,
                "websocket": self.pacifica.testnet_ws_url,
            }
        return {
            "rest": self.pacifica.api_url,
            "websocket": self.pacifica.ws_url,
        }

    def ensure_directories(self) -> None:
        """Create necessary directories."""
        directories = [
            Path(self.duckdb.database_path).parent,
            Path(self.logging.log_file).parent,
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()
