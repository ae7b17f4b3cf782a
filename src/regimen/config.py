"""Regimen configuration loading and validation.

Reads ``regimen.toml`` from a config directory, resolves ``${VAR}``
references against the environment, and returns a validated
``RegimenSettings`` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_FILENAME = "regimen.toml"

DEFAULT_GRACE_PERIOD_MINUTES = 120
DEFAULT_ADJACENT_WINDOW_MINUTES = 30
DEFAULT_DB_NAME = "regimen"

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when regimen configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [regimen.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class RegimenSettings:
    """Parsed and validated engine configuration."""

    grace_period_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES
    adjacent_window_minutes: int = DEFAULT_ADJACENT_WINDOW_MINUTES
    timezone: str = "UTC"
    db_name: str = DEFAULT_DB_NAME
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values (int, bool,
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


def _non_negative_int(section: dict, key: str, default: int) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"regimen.{key} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"Invalid regimen.{key}: {value!r}. Must be >= 0.")
    return value


def parse_settings(data: dict[str, Any]) -> RegimenSettings:
    """Build ``RegimenSettings`` from an already-parsed TOML document."""
    data = resolve_env_vars(data)

    regimen_section = data.get("regimen", {})
    if not isinstance(regimen_section, dict):
        raise ConfigError("[regimen] must be a TOML table")

    grace = _non_negative_int(regimen_section, "grace_period_minutes", DEFAULT_GRACE_PERIOD_MINUTES)
    adjacent = _non_negative_int(
        regimen_section, "adjacent_window_minutes", DEFAULT_ADJACENT_WINDOW_MINUTES
    )

    timezone = str(regimen_section.get("timezone", "UTC")).strip() or "UTC"
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown regimen.timezone: {timezone!r}") from exc

    # --- [regimen.db] sub-section ---
    db_section = regimen_section.get("db", {})
    db_name = str(db_section.get("name", DEFAULT_DB_NAME)).strip()
    if not db_name:
        raise ConfigError("regimen.db.name must be a non-empty string")

    # --- [regimen.logging] sub-section ---
    logging_section = regimen_section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid regimen.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )

    return RegimenSettings(
        grace_period_minutes=grace,
        adjacent_window_minutes=adjacent,
        timezone=timezone,
        db_name=db_name,
        logging=LoggingConfig(
            level=log_level,
            format=log_format,
            log_root=logging_section.get("log_root"),
        ),
    )


def load_config(config_dir: Path) -> RegimenSettings:
    """Load and validate ``regimen.toml`` from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_settings(data)
