"""DayPulse configuration loading and validation.

Reads daypulse.toml from a config directory, parses all sections, and returns
a validated DayPulseConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_FILENAME = "daypulse.toml"

DEFAULT_CALENDAR_IDS_PATH = "~/.daypulse/calendar_ids.json"
DEFAULT_REDIRECT_URI = "http://localhost:8765/"
DEFAULT_SYNC_WINDOW_DAYS = 30
DEFAULT_MAX_RESULTS = 20

# Matches ${VAR_NAME} with alphanumeric and underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_VALID_LOG_FORMATS = {"text", "json"}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [daypulse.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class DatabaseConfig:
    """Database configuration from [daypulse.db] section."""

    name: str = "daypulse"
    schema: str | None = None


@dataclass
class CalendarSettings:
    """Google Calendar settings from [daypulse.calendar] section."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    window_days: int = DEFAULT_SYNC_WINDOW_DAYS
    max_results: int = DEFAULT_MAX_RESULTS
    calendar_ids_path: str = DEFAULT_CALENDAR_IDS_PATH

    @property
    def enabled(self) -> bool:
        return bool(self.client_id)


@dataclass
class DayPulseConfig:
    """Parsed representation of a daypulse.toml file."""

    user_id: str
    timezone: str = "UTC"
    cipher: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    calendar: CalendarSettings = field(default_factory=CalendarSettings)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _optional_str(section: dict[str, Any], key: str, prefix: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{prefix}.{key} must be a string when set")
    return value.strip() or None


def _positive_int(section: dict[str, Any], key: str, default: int, prefix: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{prefix}.{key} must be a positive integer, got {value!r}")
    return value


def _subsection(section: dict[str, Any], key: str) -> dict[str, Any]:
    value = section.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[daypulse.{key}] must be a table")
    return value


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).strip().upper()
    fmt = str(section.get("format", "text")).strip().lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(
            f"daypulse.logging.format must be one of {sorted(_VALID_LOG_FORMATS)}, got {fmt!r}"
        )
    return LoggingConfig(
        level=level,
        format=fmt,
        log_file=_optional_str(section, "log_file", "daypulse.logging"),
    )


def _parse_db(section: dict[str, Any]) -> DatabaseConfig:
    name = str(section.get("name", "daypulse")).strip()
    if not name:
        raise ConfigError("daypulse.db.name must be a non-empty string")
    schema = _optional_str(section, "schema", "daypulse.db")
    if schema is not None and _DB_SCHEMA_PATTERN.fullmatch(schema) is None:
        raise ConfigError(
            f"Invalid daypulse.db.schema: {schema!r}. Expected a valid SQL identifier-style value."
        )
    return DatabaseConfig(name=name, schema=schema)


def _parse_calendar(section: dict[str, Any]) -> CalendarSettings:
    prefix = "daypulse.calendar"
    return CalendarSettings(
        client_id=_optional_str(section, "client_id", prefix),
        client_secret=_optional_str(section, "client_secret", prefix),
        redirect_uri=_optional_str(section, "redirect_uri", prefix) or DEFAULT_REDIRECT_URI,
        window_days=_positive_int(section, "window_days", DEFAULT_SYNC_WINDOW_DAYS, prefix),
        max_results=_positive_int(section, "max_results", DEFAULT_MAX_RESULTS, prefix),
        calendar_ids_path=(
            _optional_str(section, "calendar_ids_path", prefix) or DEFAULT_CALENDAR_IDS_PATH
        ),
    )


def load_config(config_dir: Path) -> DayPulseConfig:
    """Load and validate ``daypulse.toml`` from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    section = data.get("daypulse")
    if not isinstance(section, dict):
        raise ConfigError("Missing [daypulse] section in config")

    user_id = section.get("user_id")
    if not isinstance(user_id, str) or not user_id.strip():
        raise ConfigError("Missing required field: daypulse.user_id")

    timezone = str(section.get("timezone", "UTC")).strip() or "UTC"
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown daypulse.timezone: {timezone!r}") from exc

    return DayPulseConfig(
        user_id=user_id.strip(),
        timezone=timezone,
        cipher=_optional_str(section, "cipher", "daypulse"),
        logging=_parse_logging(_subsection(section, "logging")),
        db=_parse_db(_subsection(section, "db")),
        calendar=_parse_calendar(_subsection(section, "calendar")),
    )
