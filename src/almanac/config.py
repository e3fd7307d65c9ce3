"""Almanac configuration loading and validation.

Reads an optional ``almanac.toml``, resolves ``${VAR}`` references from the
environment, and returns a validated :class:`AlmanacConfig` dataclass.  When
no file is given, every value comes from environment variables with the
defaults below.

Example ``almanac.toml``::

    [almanac]
    timezone = "Europe/Berlin"

    [almanac.db]
    name = "almanac"

    [almanac.google]
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
    client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"
    redirect_uri = "http://localhost:8000/api/integrations/google/callback"

    [almanac.llm]
    model = "gpt-4o-mini"
    api_key = "${OPENAI_API_KEY}"

    [almanac.logging]
    level = "INFO"
    format = "json"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_ENV_VAR = "ALMANAC_CONFIG"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_DB_NAME = "almanac"
DEFAULT_REDIRECT_URI = "http://localhost:8000/api/integrations/google/callback"
DEFAULT_LLM_MODEL = "gpt-4o-mini"
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 10.0
DEFAULT_EXTERNAL_READ_BUDGET_SECONDS = 15.0
DEFAULT_DB_COMMAND_TIMEOUT_SECONDS = 5.0
DEFAULT_EXTERNAL_MAX_RESULTS = 50

# Pattern matching ${VAR_NAME} (alphanumeric and underscore names).
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = {"text", "json"}
_SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})


class ConfigError(Exception):
    """Raised when almanac configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [almanac.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class DatabaseConfig:
    """PostgreSQL connection settings from the [almanac.db] section."""

    name: str = DEFAULT_DB_NAME
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10
    command_timeout_seconds: float = DEFAULT_DB_COMMAND_TIMEOUT_SECONDS

    def __repr__(self) -> str:
        return (
            f"DatabaseConfig(name={self.name!r}, host={self.host!r}, port={self.port!r}, "
            f"user={self.user!r}, password=<REDACTED>)"
        )


@dataclass
class GoogleConfig:
    """Google OAuth app credentials and Calendar API call settings."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = DEFAULT_REDIRECT_URI
    provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    # Upper bound for one whole external read, retries and token refresh included.
    read_budget_seconds: float = DEFAULT_EXTERNAL_READ_BUDGET_SECONDS
    max_results: int = DEFAULT_EXTERNAL_MAX_RESULTS
    default_calendar_id: str = "primary"

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def __repr__(self) -> str:
        return (
            f"GoogleConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"redirect_uri={self.redirect_uri!r})"
        )


@dataclass
class LLMConfig:
    """Settings for the natural-language event parser."""

    model: str = DEFAULT_LLM_MODEL
    api_key: str | None = None
    temperature: float = 0.1

    def __repr__(self) -> str:
        key_state = "<REDACTED>" if self.api_key else None
        return f"LLMConfig(model={self.model!r}, api_key={key_state})"


@dataclass
class AlmanacConfig:
    """Top-level almanac configuration."""

    timezone: str = DEFAULT_TIMEZONE
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


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

    def _replace(match: re.Match[str]) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Environment variable(s) not set: {', '.join(sorted(set(missing)))}"
        )
    return result


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _require_positive(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{name} must be a number")
    if value <= 0:
        raise ConfigError(f"{name} must be positive")
    return value


def _validate_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown timezone: {value!r}") from exc
    return value


def normalize_ssl_mode(value: str | None) -> str | None:
    """Return a libpq ``sslmode`` for asyncpg, or None to let asyncpg negotiate."""
    mode = (value or "").strip().lower()
    if not mode:
        return None
    if mode not in _SSL_MODES:
        raise ConfigError(f"Unsupported PostgreSQL sslmode: {value!r}")
    return mode


def _database_config_from_env() -> DatabaseConfig:
    """``DATABASE_URL`` wins over the individual ``POSTGRES_*`` variables."""
    url = _env_str("DATABASE_URL", "")
    if url:
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as exc:
            raise ConfigError(f"DATABASE_URL is not a valid URL: {exc}") from exc
        host, user, password = parts.hostname, parts.username, parts.password
        ssl = parse_qs(parts.query).get("sslmode", [None])[0]
    else:
        host = os.environ.get("POSTGRES_HOST")
        user = os.environ.get("POSTGRES_USER")
        password = os.environ.get("POSTGRES_PASSWORD")
        ssl = os.environ.get("POSTGRES_SSLMODE")
        raw_port = _env_str("POSTGRES_PORT", "")
        try:
            port = int(raw_port) if raw_port else None
        except ValueError as exc:
            raise ConfigError(f"POSTGRES_PORT must be an integer, got {raw_port!r}") from exc

    defaults = DatabaseConfig()
    return DatabaseConfig(
        name=_env_str("ALMANAC_DB_NAME", DEFAULT_DB_NAME),
        host=host or defaults.host,
        port=port or defaults.port,
        user=user or defaults.user,
        password=password or defaults.password,
        ssl=normalize_ssl_mode(ssl),
        command_timeout_seconds=_env_float(
            "ALMANAC_DB_COMMAND_TIMEOUT", DEFAULT_DB_COMMAND_TIMEOUT_SECONDS
        ),
    )


def config_from_env() -> AlmanacConfig:
    """Build configuration purely from environment variables."""
    db = _database_config_from_env()
    google = GoogleConfig(
        client_id=_env_str("GOOGLE_OAUTH_CLIENT_ID", ""),
        client_secret=_env_str("GOOGLE_OAUTH_CLIENT_SECRET", ""),
        redirect_uri=_env_str("GOOGLE_OAUTH_REDIRECT_URI", DEFAULT_REDIRECT_URI),
        provider_timeout_seconds=_env_float(
            "ALMANAC_PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT_SECONDS
        ),
        read_budget_seconds=_env_float(
            "ALMANAC_EXTERNAL_READ_BUDGET", DEFAULT_EXTERNAL_READ_BUDGET_SECONDS
        ),
    )
    llm = LLMConfig(
        model=_env_str("ALMANAC_LLM_MODEL", DEFAULT_LLM_MODEL),
        api_key=os.environ.get("OPENAI_API_KEY") or None,
    )
    log_format = _env_str("ALMANAC_LOG_FORMAT", "text").lower()
    if log_format not in _VALID_LOG_FORMATS:
        raise ConfigError(f"ALMANAC_LOG_FORMAT must be one of {sorted(_VALID_LOG_FORMATS)}")
    logging_config = LoggingConfig(
        level=_env_str("ALMANAC_LOG_LEVEL", "INFO").upper(),
        format=log_format,
        log_file=os.environ.get("ALMANAC_LOG_FILE") or None,
    )
    return AlmanacConfig(
        timezone=_validate_timezone(_env_str("ALMANAC_TIMEZONE", DEFAULT_TIMEZONE)),
        db=db,
        google=google,
        llm=llm,
        logging=logging_config,
    )


def load_config(path: Path | None = None) -> AlmanacConfig:
    """Load almanac configuration.

    Parameters
    ----------
    path:
        Path to an ``almanac.toml``.  Falls back to ``$ALMANAC_CONFIG``; when
        neither is set the configuration is built from the environment alone.
        Values absent from the file keep their environment-derived defaults.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, references unset
        environment variables, or holds invalid values.
    """
    config = config_from_env()

    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if not env_path:
            return config
        path = Path(env_path)

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    data = resolve_env_vars(data)

    section = data.get("almanac", {})
    if not isinstance(section, dict):
        raise ConfigError("[almanac] must be a table")

    if "timezone" in section:
        config.timezone = _validate_timezone(str(section["timezone"]))
    if "cors_origins" in section:
        origins = section["cors_origins"]
        if not isinstance(origins, list) or not all(isinstance(o, str) for o in origins):
            raise ConfigError("almanac.cors_origins must be a list of strings")
        config.cors_origins = origins

    db_section = section.get("db", {})
    for key in ("name", "host", "user", "password"):
        if key in db_section:
            setattr(config.db, key, str(db_section[key]))
    if "ssl" in db_section:
        config.db.ssl = normalize_ssl_mode(str(db_section["ssl"]))
    for key in ("port", "min_pool_size", "max_pool_size"):
        if key in db_section:
            setattr(config.db, key, int(_require_positive(f"almanac.db.{key}", db_section[key])))
    if "command_timeout_seconds" in db_section:
        config.db.command_timeout_seconds = float(
            _require_positive(
                "almanac.db.command_timeout_seconds", db_section["command_timeout_seconds"]
            )
        )

    google_section = section.get("google", {})
    for key in ("client_id", "client_secret", "redirect_uri", "default_calendar_id"):
        if key in google_section:
            setattr(config.google, key, str(google_section[key]).strip())
    for key in ("provider_timeout_seconds", "read_budget_seconds"):
        if key in google_section:
            setattr(
                config.google,
                key,
                float(_require_positive(f"almanac.google.{key}", google_section[key])),
            )
    if "max_results" in google_section:
        config.google.max_results = int(
            _require_positive("almanac.google.max_results", google_section["max_results"])
        )

    llm_section = section.get("llm", {})
    if "model" in llm_section:
        model = str(llm_section["model"]).strip()
        if not model:
            raise ConfigError("almanac.llm.model must be a non-empty string")
        config.llm.model = model
    if "api_key" in llm_section:
        config.llm.api_key = str(llm_section["api_key"]) or None
    if "temperature" in llm_section:
        config.llm.temperature = float(llm_section["temperature"])

    logging_section = section.get("logging", {})
    if "level" in logging_section:
        config.logging.level = str(logging_section["level"]).upper()
    if "format" in logging_section:
        log_format = str(logging_section["format"]).lower()
        if log_format not in _VALID_LOG_FORMATS:
            raise ConfigError(
                f"almanac.logging.format must be one of {sorted(_VALID_LOG_FORMATS)}"
            )
        config.logging.format = log_format
    if "log_file" in logging_section:
        config.logging.log_file = str(logging_section["log_file"]) or None

    return config
