"""Application settings loaded from environment variables and config files.

Configuration is loaded from (highest priority first):
1. Environment variables (prefix: ``TAPCHANNEL_``, nested via ``__``)
2. YAML config file (``TAPCHANNEL_CONFIG_PATH`` env var or ``AppConfig.from_yaml``)
3. Defaults defined here
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Any, Self

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Enums for validated choices
# ---------------------------------------------------------------------------


class DatabaseEngine(enum.StrEnum):
    """Supported database engines."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class Network(enum.StrEnum):
    """Bitcoin networks the channel can operate on."""

    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


# ---------------------------------------------------------------------------
# Sub-config models
# ---------------------------------------------------------------------------


class ServerConfig(BaseSettings):
    """HTTP server settings."""

    model_config = SettingsConfigDict(
        env_prefix="TAPCHANNEL_SERVER__",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 5000


class DatabaseConfig(BaseSettings):
    """Database settings."""

    model_config = SettingsConfigDict(
        env_prefix="TAPCHANNEL_DB__",
        case_sensitive=False,
    )

    engine: DatabaseEngine = Field(
        default=DatabaseEngine.SQLITE,
        description="Database backend: sqlite or postgresql",
    )
    dsn: str = Field(
        default="sqlite+aiosqlite:///./tapchannel.db",
        description="Async database connection string",
    )
    max_idle_connections: int = 5
    max_open_connections: int = 10
    debug_sql: bool = False


_INDEXER_URLS: dict[Network, str] = {
    Network.MAINNET: "https://mempool.space/api",
    Network.TESTNET: "https://mempool.space/testnet/api",
    Network.SIGNET: "https://mempool.space/signet/api",
    Network.REGTEST: "http://localhost:3002/api",
}


class IndexerConfig(BaseSettings):
    """Esplora-compatible chain indexer settings."""

    model_config = SettingsConfigDict(
        env_prefix="TAPCHANNEL_INDEXER__",
        case_sensitive=False,
    )

    url: str = Field(default="", description="Base URL; empty selects the public mempool.space API")
    timeout: float = 30.0

    def base_url(self, network: Network) -> str:
        """Resolve the indexer base URL for *network*."""
        return (self.url or _INDEXER_URLS[network]).rstrip("/")


class HubConfig(BaseSettings):
    """Operator key material, loaded once at startup."""

    model_config = SettingsConfigDict(
        env_prefix="TAPCHANNEL_HUB__",
        case_sensitive=False,
    )

    private_key: str = Field(default="", description="Hub signing key (hex or WIF)")
    public_key: str = Field(
        default="",
        description="Published hub key (x-only or compressed hex); derived when empty",
    )
    internal_private_key: str = Field(
        default="",
        description="Scalar for the Taproot internal key (hex or WIF)",
    )
    csv_delay: int = Field(default=5, ge=1, description="Relative delay of the hub refund leaf")


class ChannelConfig(BaseSettings):
    """Payment channel economics."""

    model_config = SettingsConfigDict(
        env_prefix="TAPCHANNEL_CHANNEL__",
        case_sensitive=False,
    )

    network: Network = Network.TESTNET
    dust_threshold: int = Field(default=540, ge=0, description="Smallest output kept, in sats")
    fixed_fee: int = Field(default=450, ge=0, description="Fee of every funding spend, in sats")


class SettlementConfig(BaseSettings):
    """Settlement confirmation polling."""

    model_config = SettingsConfigDict(
        env_prefix="TAPCHANNEL_SETTLEMENT__",
        case_sensitive=False,
    )

    poll_interval: float = 10.0
    max_attempts: int = 60

    @property
    def poll_budget(self) -> float:
        """Seconds a settlement may stay in flight before it is considered stale."""
        return self.poll_interval * self.max_attempts


class MetricsConfig(BaseSettings):
    """Prometheus metrics settings."""

    model_config = SettingsConfigDict(
        env_prefix="TAPCHANNEL_METRICS__",
        case_sensitive=False,
    )

    enabled: bool = True


class TaskConfig(BaseSettings):
    """Background cron settings."""

    model_config = SettingsConfigDict(
        env_prefix="TAPCHANNEL_TASK__",
        case_sensitive=False,
    )

    enabled: bool = True
    settlement_reconcile_period: float = 60.0


class LoggingConfig(BaseSettings):
    """Root logger settings."""

    model_config = SettingsConfigDict(
        env_prefix="TAPCHANNEL_LOGGING__",
        case_sensitive=False,
    )

    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


def _load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file and return its contents as a dict.

    Returns an empty dict if the file doesn't exist or is empty.
    """
    p = Path(path)
    if not p.exists():
        return {}
    data = yaml.safe_load(p.read_text(encoding="utf-8"))
    return data if isinstance(data, dict) else {}


class AppConfig(BaseSettings):
    """Top-level application configuration.

    Loads settings from environment variables (``TAPCHANNEL_`` prefix),
    an optional YAML file, and built-in defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="TAPCHANNEL_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    debug: bool = False
    version: str = "0.1.0"
    config_path: str = ""

    server: ServerConfig = Field(default_factory=ServerConfig)
    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    hub: HubConfig = Field(default_factory=HubConfig)
    channel: ChannelConfig = Field(default_factory=ChannelConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    task: TaskConfig = Field(default_factory=TaskConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="before")
    @classmethod
    def _merge_yaml(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Merge YAML config file contents under the env var overrides."""
        config_path = values.get("config_path", "")
        if not config_path:
            return values
        for key, val in _load_yaml(config_path).items():
            if key not in values or values[key] is None:
                values[key] = val
            elif isinstance(val, dict) and isinstance(values.get(key), dict):
                values[key] = {**val, **values[key]}
        return values

    @classmethod
    def from_yaml(cls, path: str | Path) -> Self:
        """Construct ``AppConfig`` loading defaults from a YAML file.

        Environment variables still override YAML values.
        """
        return cls(config_path=str(path))
