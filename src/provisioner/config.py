"""Provisioner configuration loading and validation.

Reads ``provisioner.toml``, resolves ``${VAR}`` environment references, and
returns a validated :class:`ProvisionerConfig` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from provisioner.orchestrator import DEFAULT_EMBEDDING_MODEL
from provisioner.resource_api import DEFAULT_TIMEOUT_SECONDS, RATE_LIMIT_MAX_RETRIES

CONFIG_FILENAME = "provisioner.toml"
DEFAULT_TENANT = "default"
DEFAULT_LEDGER_PATH = "data/assistants.json"

# Pattern matching ${VAR_NAME} (alphanumeric and underscore names).
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when provisioner configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [provisioner.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"


@dataclass
class ApiConfig:
    """Resource API connection settings from [provisioner.api]."""

    base_url: str
    api_key: str
    tenant: str = DEFAULT_TENANT
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    timeout_s: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = RATE_LIMIT_MAX_RETRIES

    def __repr__(self) -> str:
        return (
            f"ApiConfig(base_url={self.base_url!r}, tenant={self.tenant!r}, "
            f"api_key='{self.api_key[:4]}...', embedding_model={self.embedding_model!r})"
        )


@dataclass
class ProvisionerConfig:
    """Parsed and validated provisioner configuration."""

    api: ApiConfig
    ledger_path: Path = field(default_factory=lambda: Path(DEFAULT_LEDGER_PATH))
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

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
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _require_str(section: dict[str, Any], key: str, qualified: str) -> str:
    value = section.get(key)
    if value is None:
        raise ConfigError(f"Missing required field: {qualified}")
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{qualified} must be a non-empty string")
    return value.strip()


def _parse_api(section: Any) -> ApiConfig:
    if not isinstance(section, dict):
        raise ConfigError("Missing [provisioner.api] section in config")

    base_url = _require_str(section, "base_url", "provisioner.api.base_url").rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(
            f"provisioner.api.base_url must be an http(s) URL, got {base_url!r}"
        )
    api_key = _require_str(section, "api_key", "provisioner.api.api_key")
    tenant = str(section.get("tenant", DEFAULT_TENANT)).strip()
    if not tenant:
        raise ConfigError("provisioner.api.tenant must be a non-empty string when set")
    embedding_model = str(section.get("embedding_model", DEFAULT_EMBEDDING_MODEL)).strip()
    if not embedding_model:
        raise ConfigError("provisioner.api.embedding_model must be a non-empty string when set")

    try:
        timeout_s = float(section.get("timeout_s", DEFAULT_TIMEOUT_SECONDS))
        max_retries = int(section.get("max_retries", RATE_LIMIT_MAX_RETRIES))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric value in [provisioner.api]: {exc}") from exc
    if timeout_s <= 0:
        raise ConfigError("provisioner.api.timeout_s must be positive")
    if max_retries < 0:
        raise ConfigError("provisioner.api.max_retries must be zero or positive")

    return ApiConfig(
        base_url=base_url,
        api_key=api_key,
        tenant=tenant,
        embedding_model=embedding_model,
        timeout_s=timeout_s,
        max_retries=max_retries,
    )


def load_config(path: Path) -> ProvisionerConfig:
    """Load and validate a provisioner config.

    Parameters
    ----------
    path:
        Either the TOML file itself or a directory containing
        ``provisioner.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    section = data.get("provisioner")
    if not isinstance(section, dict):
        raise ConfigError("Missing [provisioner] section in config")

    api = _parse_api(section.get("api"))

    ledger_raw = section.get("ledger_path", DEFAULT_LEDGER_PATH)
    if not isinstance(ledger_raw, str) or not ledger_raw.strip():
        raise ConfigError("provisioner.ledger_path must be a non-empty string")
    ledger_path = Path(ledger_raw)
    if not ledger_path.is_absolute():
        ledger_path = toml_path.parent / ledger_path

    logging_section = section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid provisioner.logging.format: {log_format!r}. Must be 'text' or 'json'."
        )

    return ProvisionerConfig(
        api=api,
        ledger_path=ledger_path,
        logging=LoggingConfig(level=log_level, format=log_format),
    )
