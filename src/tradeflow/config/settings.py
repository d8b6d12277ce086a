"""TOML config loading, profiles and environment overrides."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Mapping

from tradeflow.errors import ConfigError
from tradeflow.models.trade import normalize_pair, pair_to_symbol

# Default config search path (project root or cwd)
_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent.parent / "config"
_CWD_CONFIG = Path.cwd() / "config"

ENV_PREFIX = "TRADEFLOW__"


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Override values take precedence."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _parse_env_value(raw: str) -> Any:
    """Parse an env value as a TOML scalar ('5', '0.5', 'true', '"x"'); fall back to the raw string."""
    try:
        return tomllib.loads(f"v = {raw}")["v"]
    except tomllib.TOMLDecodeError:
        return raw


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect TRADEFLOW__SECTION__KEY=value variables into a nested dict."""
    env = os.environ if environ is None else environ
    out: dict[str, Any] = {}
    for name, raw in env.items():
        if not name.startswith(ENV_PREFIX):
            continue
        parts = [p.lower() for p in name[len(ENV_PREFIX):].split("__") if p]
        if len(parts) != 2:
            continue
        section, key = parts
        out.setdefault(section, {})[key] = _parse_env_value(raw)
    return out


def _find_config_dir(config_dir: Path | None = None) -> Path:
    if config_dir is not None:
        return config_dir
    if _CWD_CONFIG.exists():
        return _CWD_CONFIG
    return _CONFIG_DIR


def load_config(
    profile: str | None = None,
    config_dir: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load merged config: default.toml, optional profile overlay, then environment overrides."""
    directory = _find_config_dir(config_dir)
    default_path = directory / "default.toml"
    base: dict[str, Any] = _load_toml(default_path) if default_path.exists() else {}
    if profile:
        profile_path = directory / f"{profile}.toml"
        if not profile_path.exists():
            raise ConfigError(f"profile {profile!r} not found in {directory}")
        base = _deep_merge(base, _load_toml(profile_path))
    return _deep_merge(base, env_overrides(environ))


def get_settings(
    profile: str | None = None,
    config_dir: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Return Settings instance from merged config."""
    raw = load_config(profile, config_dir=config_dir, environ=environ)
    return Settings.from_dict(raw)


class Settings:
    """Application settings from TOML config."""

    SECTIONS = ("feed", "broker", "subscriber", "storage", "logging", "api", "metrics")

    def __init__(
        self,
        *,
        feed: dict[str, Any] | None = None,
        broker: dict[str, Any] | None = None,
        subscriber: dict[str, Any] | None = None,
        storage: dict[str, Any] | None = None,
        logging: dict[str, Any] | None = None,
        api: dict[str, Any] | None = None,
        metrics: dict[str, Any] | None = None,
    ):
        self.feed = feed or {}
        self.broker = broker or {}
        self.subscriber = subscriber or {}
        self.storage = storage or {}
        self.logging = logging or {}
        self.api = api or {}
        self.metrics = metrics or {}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        return cls(**{section: raw.get(section) for section in cls.SECTIONS})

    def override(self, section: str, **values: Any) -> Settings:
        """Return a copy with non-None values replaced in one section (CLI flags)."""
        raw = {s: dict(getattr(self, s)) for s in self.SECTIONS}
        raw[section].update({k: v for k, v in values.items() if v is not None})
        return Settings.from_dict(raw)

    # Feed
    @property
    def feed_url(self) -> str:
        return self.feed.get("url", "wss://stream.binance.com:9443/ws")

    @property
    def pair(self) -> str:
        return normalize_pair(self.feed.get("pair", "BTC-USDT"))

    @property
    def symbol(self) -> str:
        return pair_to_symbol(self.pair)

    @property
    def liveness_timeout_sec(self) -> float:
        return float(self.feed.get("liveness_timeout_sec", 30.0))

    @property
    def open_timeout_sec(self) -> float:
        return float(self.feed.get("open_timeout_sec", 10.0))

    @property
    def reconnect_base_delay_sec(self) -> float:
        return float(self.feed.get("reconnect_base_delay_sec", 1.0))

    @property
    def reconnect_max_delay_sec(self) -> float:
        return float(self.feed.get("reconnect_max_delay_sec", 60.0))

    @property
    def reconnect_max_attempts(self) -> int:
        return int(self.feed.get("reconnect_max_attempts", 20))

    @property
    def stable_after_sec(self) -> float:
        return float(self.feed.get("stable_after_sec", 30.0))

    @property
    def queue_size(self) -> int:
        return int(self.feed.get("queue_size", 10_000))

    # Broker
    @property
    def broker_backend(self) -> str:
        return str(self.broker.get("backend", "kafka")).lower()

    @property
    def bootstrap_servers(self) -> str:
        return self.broker.get("bootstrap_servers", "localhost:9092")

    @property
    def topic(self) -> str:
        return self.broker.get("topic", "btc-usdt")

    @property
    def group_id(self) -> str:
        return self.broker.get("group_id", "btc-consumer-group")

    @property
    def partitions(self) -> int:
        return int(self.broker.get("partitions", 1))

    @property
    def request_timeout_ms(self) -> int:
        return int(self.broker.get("request_timeout_ms", 5000))

    @property
    def session_timeout_ms(self) -> int:
        return int(self.broker.get("session_timeout_ms", 6000))

    @property
    def publish_max_attempts(self) -> int:
        return int(self.broker.get("publish_max_attempts", 5))

    @property
    def publish_base_delay_sec(self) -> float:
        return float(self.broker.get("publish_base_delay_sec", 0.2))

    @property
    def publish_max_delay_sec(self) -> float:
        return float(self.broker.get("publish_max_delay_sec", 5.0))

    @property
    def publish_cooldown_sec(self) -> float:
        return float(self.broker.get("publish_cooldown_sec", 5.0))

    @property
    def publish_max_rounds(self) -> int:
        return int(self.broker.get("publish_max_rounds", 12))

    @property
    def drain_grace_sec(self) -> float:
        return float(self.broker.get("drain_grace_sec", 10.0))

    # Subscriber
    @property
    def max_batch(self) -> int:
        return int(self.subscriber.get("max_batch", 500))

    @property
    def poll_timeout_ms(self) -> int:
        return int(self.subscriber.get("poll_timeout_ms", 1000))

    @property
    def dedup_window_size(self) -> int:
        return int(self.subscriber.get("dedup_window_size", 100_000))

    @property
    def dedup_window_ttl_sec(self) -> float:
        return float(self.subscriber.get("dedup_window_ttl_sec", 900.0))

    @property
    def write_max_attempts(self) -> int:
        return int(self.subscriber.get("write_max_attempts", 5))

    @property
    def write_base_delay_sec(self) -> float:
        return float(self.subscriber.get("write_base_delay_sec", 0.5))

    @property
    def write_max_delay_sec(self) -> float:
        return float(self.subscriber.get("write_max_delay_sec", 10.0))

    # Storage
    @property
    def db_path(self) -> str:
        return self.storage.get("db_path", "data/tradeflow.duckdb")

    @property
    def max_batch_rows(self) -> int:
        return int(self.storage.get("max_batch_rows", 1000))

    # API / metrics
    @property
    def api_host(self) -> str:
        return self.api.get("host", "127.0.0.1")

    @property
    def api_port(self) -> int:
        return int(self.api.get("port", 8000))

    @property
    def metrics_log_interval_sec(self) -> float:
        return float(self.metrics.get("log_interval_sec", 60.0))

    # Logging
    @property
    def logging_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    @property
    def logging_format(self) -> str:
        return self.logging.get("format", "console")

    @property
    def logging_level_num(self) -> int:
        return getattr(logging, self.logging_level, logging.INFO)

    def validate(self) -> Settings:
        """Raise ConfigError on values no component can run with. Returns self."""
        try:
            self.pair
        except ValueError as e:
            raise ConfigError(str(e)) from e
        if not self.feed_url.startswith(("ws://", "wss://")):
            raise ConfigError(f"feed.url must be a ws:// or wss:// URL, got {self.feed_url!r}")
        if self.broker_backend not in ("kafka", "memory"):
            raise ConfigError(f"broker.backend must be 'kafka' or 'memory', got {self.broker_backend!r}")
        if not self.topic:
            raise ConfigError("broker.topic must not be empty")
        if not self.group_id:
            raise ConfigError("broker.group_id must not be empty")
        if self.logging_format not in ("console", "json"):
            raise ConfigError(f"logging.format must be 'console' or 'json', got {self.logging_format!r}")
        positive = {
            "feed.queue_size": self.queue_size,
            "feed.reconnect_max_attempts": self.reconnect_max_attempts,
            "feed.liveness_timeout_sec": self.liveness_timeout_sec,
            "broker.partitions": self.partitions,
            "broker.publish_max_attempts": self.publish_max_attempts,
            "broker.publish_max_rounds": self.publish_max_rounds,
            "subscriber.max_batch": self.max_batch,
            "subscriber.poll_timeout_ms": self.poll_timeout_ms,
            "subscriber.dedup_window_size": self.dedup_window_size,
            "subscriber.write_max_attempts": self.write_max_attempts,
            "storage.max_batch_rows": self.max_batch_rows,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigError(f"{name} must be > 0, got {value}")
        if self.reconnect_base_delay_sec > self.reconnect_max_delay_sec:
            raise ConfigError("feed.reconnect_base_delay_sec must not exceed feed.reconnect_max_delay_sec")
        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog with settings. Call once at application entry."""
    import structlog

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.logging_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.logging_level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
