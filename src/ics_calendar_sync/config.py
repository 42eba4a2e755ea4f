"""
INI configuration loading and validation.

Example::

    [source]
    url = https://example.com/calendar.ics
    timeout = 30

    [source.headers]
    Authorization = Bearer ${ICS_TOKEN}

    [destination]
    calendar_name = Subscribed Events

    [sync]
    delete_orphans = true
    window_days_past = 30
    window_days_future = 365
"""

import os
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from pathlib import Path
from urllib.parse import urlparse

from ics_calendar_sync.models import DEFAULT_STATE_DB
from ics_calendar_sync.models import ConfigError
from ics_calendar_sync.models import SyncConfig

LOG_LEVELS = ("debug", "info", "warning", "error")

_TRUE = {"1", "yes", "true", "on"}
_FALSE = {"0", "no", "false", "off"}


def _expand(value: str) -> str:
    return os.path.expanduser(os.path.expandvars(value.strip()))


def _read(path: Path, case_sensitive: bool = False) -> ConfigParser:
    parser = ConfigParser(interpolation=None)
    if case_sensitive:
        parser.optionxform = str
    try:
        parser.read(path, encoding="utf-8")
    except ConfigParserError as e:
        raise ConfigError(f"Cannot parse config file {path}: {e}") from e
    return parser


def _get(parser: ConfigParser, section: str, key: str) -> str | None:
    if not parser.has_option(section, key):
        return None
    value = _expand(parser.get(section, key))
    return value or None


def _int(parser: ConfigParser, section: str, key: str, default: int | None) -> int | None:
    raw = _get(parser, section, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"[{section}] {key} must be an integer, got {raw!r}") from None


def _float(parser: ConfigParser, section: str, key: str, default: float) -> float:
    raw = _get(parser, section, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"[{section}] {key} must be a number, got {raw!r}") from None


def _bool(parser: ConfigParser, section: str, key: str, default: bool) -> bool:
    raw = _get(parser, section, key)
    if raw is None:
        return default
    if raw.lower() in _TRUE:
        return True
    if raw.lower() in _FALSE:
        return False
    raise ConfigError(f"[{section}] {key} must be true or false, got {raw!r}")


def load_config(path: Path, **overrides) -> SyncConfig:
    """Build a SyncConfig from ``path`` (which may not exist).

    Keyword overrides that are not None replace file values; the result is
    validated before it is returned.
    """
    parser = _read(path) if path.exists() else ConfigParser(interpolation=None)
    headers: dict[str, str] = {}
    if path.exists():
        raw = _read(path, case_sensitive=True)
        if raw.has_section("source.headers"):
            headers = {k: _expand(v) for k, v in raw.items("source.headers")}

    defaults = SyncConfig(source_url="")
    state_path = _get(parser, "state", "path")
    values = {
        "source_url": _get(parser, "source", "url") or "",
        "headers": headers,
        "timeout": _int(parser, "source", "timeout", defaults.timeout),
        "max_retries": _int(parser, "source", "max_retries", defaults.max_retries),
        "retry_delay": _float(parser, "source", "retry_delay", defaults.retry_delay),
        "verify_ssl": _bool(parser, "source", "verify_ssl", defaults.verify_ssl),
        "calendar_name": _get(parser, "destination", "calendar_name") or defaults.calendar_name,
        "create_if_missing": _bool(
            parser, "destination", "create_if_missing", defaults.create_if_missing
        ),
        "delete_orphans": _bool(parser, "sync", "delete_orphans", defaults.delete_orphans),
        "summary_prefix": parser.get("sync", "summary_prefix", fallback="").strip().strip('"'),
        "window_days_past": _int(parser, "sync", "window_days_past", None),
        "window_days_future": _int(parser, "sync", "window_days_future", None),
        "sync_alarms": _bool(parser, "sync", "sync_alarms", defaults.sync_alarms),
        "include_source_info": _bool(
            parser, "sync", "include_source_info", defaults.include_source_info
        ),
        "state_db_path": Path(state_path) if state_path else DEFAULT_STATE_DB,
        "log_level": (_get(parser, "logging", "level") or defaults.log_level).lower(),
        "interval_minutes": _int(parser, "daemon", "interval_minutes", defaults.interval_minutes),
    }
    values.update({k: v for k, v in overrides.items() if v is not None})

    config = SyncConfig(**values)
    validate_config(config)
    return config


def validate_config(config: SyncConfig) -> None:
    """Raise ConfigError describing the first invalid setting."""
    if not config.source_url:
        raise ConfigError("No source URL configured ([source] url or --url)")
    parsed = urlparse(config.source_url)
    if parsed.scheme not in ("http", "https", "webcal") or not parsed.netloc:
        raise ConfigError(f"Invalid source URL: {config.source_url}")
    if not config.calendar_name.strip():
        raise ConfigError("Destination calendar name must not be empty")
    if not 1 <= config.timeout <= 300:
        raise ConfigError("Timeout must be between 1 and 300 seconds")
    if config.max_retries < 1:
        raise ConfigError("max_retries must be at least 1")
    if config.retry_delay < 0:
        raise ConfigError("retry_delay must not be negative")
    if config.interval_minutes < 1:
        raise ConfigError("Daemon interval must be at least 1 minute")
    for name in ("window_days_past", "window_days_future"):
        value = getattr(config, name)
        if value is not None and value < 0:
            raise ConfigError(f"{name} must not be negative")
    if config.log_level not in LOG_LEVELS:
        raise ConfigError(f"Log level must be one of: {', '.join(LOG_LEVELS)}")
