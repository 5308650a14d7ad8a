"""TOML config loading and profiles."""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

# Default config search path (project root or cwd)
_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent.parent / "config"
_CWD_CONFIG = Path.cwd() / "config"


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


def _find_config_dir(config_dir: Path | None = None) -> Path:
    if config_dir is not None:
        return config_dir
    if _CWD_CONFIG.exists():
        return _CWD_CONFIG
    return _CONFIG_DIR


def load_config(profile: str | None = None, config_dir: Path | None = None) -> dict[str, Any]:
    """Load merged config from default.toml and optional profile overlay."""
    directory = _find_config_dir(config_dir)
    default_path = directory / "default.toml"
    if not default_path.exists():
        return {}
    base = _load_toml(default_path)
    if profile:
        profile_path = directory / f"{profile}.toml"
        if profile_path.exists():
            overlay = _load_toml(profile_path)
            base = _deep_merge(base, overlay)
    return base


def get_settings(profile: str | None = None, config_dir: Path | None = None) -> Settings:
    """Return Settings instance from merged config."""
    raw = load_config(profile, config_dir)
    return Settings.from_dict(raw)


class Settings:
    """Client settings from TOML config. One instance per exchange is typical."""

    def __init__(
        self,
        *,
        http: dict[str, Any] | None = None,
        rate_limit: dict[str, Any] | None = None,
        nonce: dict[str, Any] | None = None,
        stream: dict[str, Any] | None = None,
        logging: dict[str, Any] | None = None,
    ):
        self.http = http or {}
        self.rate_limit = rate_limit or {}
        self.nonce = nonce or {}
        self.stream = stream or {}
        self.logging = logging or {}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        return cls(
            http=raw.get("http"),
            rate_limit=raw.get("rate_limit"),
            nonce=raw.get("nonce"),
            stream=raw.get("stream"),
            logging=raw.get("logging"),
        )

    # HTTP
    @property
    def http_timeout_sec(self) -> float:
        return float(self.http.get("timeout_sec", 30.0))

    @property
    def user_agent(self) -> str:
        return self.http.get("user_agent", "exchangekit")

    @property
    def rate_limit_retries(self) -> int:
        return int(self.http.get("rate_limit_retries", 0))

    @property
    def rate_gate_timeout_sec(self) -> float | None:
        value = self.http.get("rate_gate_timeout_sec", 60.0)
        return None if value is None or float(value) < 0 else float(value)

    # Rate gate
    @property
    def rate_limit_requests(self) -> int:
        return int(self.rate_limit.get("requests", 60))

    @property
    def rate_limit_window_sec(self) -> float:
        return float(self.rate_limit.get("window_sec", 60.0))

    # Nonce
    @property
    def nonce_style(self) -> str:
        return str(self.nonce.get("style", "unix_milliseconds")).upper()

    @property
    def nonce_offset_ms(self) -> int:
        return int(self.nonce.get("offset_ms", 0))

    @property
    def nonce_expires_in_sec(self) -> int:
        return int(self.nonce.get("expires_in_sec", 60))

    # Streaming
    @property
    def reconnect_base_delay_sec(self) -> float:
        return float(self.stream.get("reconnect_base_delay_sec", 1.0))

    @property
    def reconnect_max_delay_sec(self) -> float:
        return float(self.stream.get("reconnect_max_delay_sec", 60.0))

    @property
    def reconnect_max_retries(self) -> int:
        return int(self.stream.get("reconnect_max_retries", 0))

    @property
    def ping_interval_sec(self) -> float:
        return float(self.stream.get("ping_interval_sec", 20.0))

    @property
    def recv_timeout_sec(self) -> float:
        return float(self.stream.get("recv_timeout_sec", 30.0))

    @property
    def max_auth_failures(self) -> int:
        return int(self.stream.get("max_auth_failures", 3))

    @property
    def subscriber_queue_size(self) -> int:
        return int(self.stream.get("subscriber_queue_size", 100))

    def stream_options(self) -> dict[str, Any]:
        """Keyword arguments for StreamMultiplexer."""
        return {
            "reconnect_base_delay_sec": self.reconnect_base_delay_sec,
            "reconnect_max_delay_sec": self.reconnect_max_delay_sec,
            "reconnect_max_retries": self.reconnect_max_retries,
            "ping_interval_sec": self.ping_interval_sec,
            "recv_timeout_sec": self.recv_timeout_sec,
            "max_auth_failures": self.max_auth_failures,
        }

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


def configure_logging(settings: Settings) -> None:
    """Configure structlog with settings. Call once at application entry."""
    import structlog

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.logging_format == "json":
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
