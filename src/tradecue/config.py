"""Configuration for the work queue, its worker and the Alpaca gateway."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from tradecue.errors import ConfigError
from tradecue.models import WorkItemType

PAPER_TRADING_URL = "https://paper-api.alpaca.markets"
DATA_URL = "https://data.alpaca.markets"


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class WorkerConfig:
    """Worker loop timing."""

    interval: float = 5.0  # Seconds between ticks
    drain_timeout: float = 30.0
    drain_poll_interval: float = 0.1
    lease_seconds: float = 300.0  # A RUNNING item is reclaimable after this
    worker_id: str = field(default_factory=_default_worker_id)
    recent_order_limit: int = 100

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ConfigError("interval must be > 0")
        if self.drain_timeout < 0:
            raise ConfigError("drain_timeout must be >= 0")
        if self.lease_seconds <= 0:
            raise ConfigError("lease_seconds must be > 0")


@dataclass
class QueueConfig:
    """Top-level configuration for a queue process."""

    db_path: str = "tradecue.db"
    default_max_attempts: int = 3
    retry_delays: dict[WorkItemType, Sequence[int]] = field(default_factory=dict)
    worker: WorkerConfig = field(default_factory=WorkerConfig)

    def __post_init__(self) -> None:
        if self.default_max_attempts < 1:
            raise ConfigError("default_max_attempts must be >= 1")
        for item_type, delays in self.retry_delays.items():
            if not delays:
                raise ConfigError(f"retry_delays for {item_type} must not be empty")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> QueueConfig:
        """Build config from TRADECUE_* environment variables."""
        env = os.environ if env is None else env
        worker = WorkerConfig(
            interval=_env_float(env, "TRADECUE_WORKER_INTERVAL", 5.0),
            drain_timeout=_env_float(env, "TRADECUE_DRAIN_TIMEOUT", 30.0),
            lease_seconds=_env_float(env, "TRADECUE_LEASE_SECONDS", 300.0),
        )
        return cls(
            db_path=env.get("TRADECUE_DB_PATH") or "tradecue.db",
            default_max_attempts=int(_env_float(env, "TRADECUE_MAX_ATTEMPTS", 3)),
            worker=worker,
        )


@dataclass
class AlpacaConfig:
    """Credentials and endpoints for the Alpaca REST API."""

    api_key: str
    secret_key: str
    trading_url: str = PAPER_TRADING_URL
    data_url: str = DATA_URL
    timeout: float = 15.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> AlpacaConfig:
        env = os.environ if env is None else env
        api_key = env.get("ALPACA_API_KEY")
        secret_key = env.get("ALPACA_SECRET_KEY")
        if not api_key or not secret_key:
            raise ConfigError("ALPACA_API_KEY and ALPACA_SECRET_KEY must be set")
        return cls(
            api_key=api_key,
            secret_key=secret_key,
            trading_url=env.get("ALPACA_TRADING_URL") or PAPER_TRADING_URL,
            data_url=env.get("ALPACA_DATA_URL") or DATA_URL,
            timeout=_env_float(env, "ALPACA_TIMEOUT", 15.0),
        )
