"""calsync configuration loading and validation.

Reads ``calsync.toml``, resolves ``${VAR}`` references from the environment,
parses all sections, and returns a validated ``CalsyncConfig`` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "calsync.toml"
CONFIG_PATH_ENV = "CALSYNC_CONFIG"
WEBHOOK_PATH = "/google/calendar/notifications"

# Pattern matching ${VAR_NAME}; alphanumeric and underscore names only.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [calsync.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class HttpConfig:
    timeout_seconds: float = 30.0


@dataclass
class RetryConfig:
    """Backoff for transient provider failures from [calsync.retry]."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0


@dataclass
class SyncConfig:
    full_sync_window_days: int = 30
    claim_timeout_seconds: int = 300
    token_refresh_margin_seconds: int = 60

    @property
    def claim_timeout(self) -> timedelta:
        return timedelta(seconds=self.claim_timeout_seconds)

    @property
    def token_refresh_margin(self) -> timedelta:
        return timedelta(seconds=self.token_refresh_margin_seconds)


@dataclass
class SubscriptionConfig:
    """Push-channel lease settings from [calsync.subscriptions].

    ``expired_channel_grace_hours`` bounds how long after expiry a lease still
    authenticates notifications; unset means expired leases always validate.
    """

    renewal_lead_hours: float = 24.0
    channel_ttl_hours: float = 24.0 * 7
    expired_channel_grace_hours: float | None = None

    @property
    def renewal_lead_time(self) -> timedelta:
        return timedelta(hours=self.renewal_lead_hours)

    @property
    def channel_ttl(self) -> timedelta:
        return timedelta(hours=self.channel_ttl_hours)

    @property
    def expired_channel_grace(self) -> timedelta | None:
        if self.expired_channel_grace_hours is None:
            return None
        return timedelta(hours=self.expired_channel_grace_hours)


@dataclass
class GoogleProviderConfig:
    client_id: str
    client_secret: str


@dataclass
class CalsyncConfig:
    """Parsed and validated calsync configuration."""

    public_url: str
    name: str = "calsync"
    port: int = 8080
    db_name: str = "calsync"
    db_schema: str | None = None
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    subscriptions: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    google: GoogleProviderConfig | None = None

    @property
    def webhook_url(self) -> str:
        return f"{self.public_url.rstrip('/')}{WEBHOOK_PATH}"


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        Listing every referenced environment variable that is not set.
    """
    missing: list[str] = []
    resolved = _resolve(value, missing)
    if missing:
        vars_str = ", ".join(dict.fromkeys(missing))
        raise ConfigError(f"Unresolved environment variable(s) in config: {vars_str}")
    return resolved


def _resolve(value: Any, missing: list[str]) -> Any:
    if isinstance(value, dict):
        return {k: _resolve(v, missing) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve(item, missing) for item in value]

    if isinstance(value, str):

        def _replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                missing.append(var_name)
                return match.group(0)  # keep placeholder for error reporting
            return env_value

        return _ENV_VAR_PATTERN.sub(_replace, value)

    # Scalars pass through unchanged.
    return value


def _section(parent: dict[str, Any], key: str, label: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{label}] must be a table")
    return value


def _number(section: dict[str, Any], key: str, default: float, label: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"{label}.{key} must be a number, got {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label}.{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {label}.{key}: {raw!r}. Must be positive.")
    return value


def _integer(section: dict[str, Any], key: str, default: int, label: str) -> int:
    value = _number(section, key, default, label)
    if value != int(value):
        raise ConfigError(f"{label}.{key} must be an integer, got {section.get(key)!r}")
    return int(value)


def resolve_config_path(path: Path | str | None = None) -> Path:
    """Return the config file path: explicit argument, then ``$CALSYNC_CONFIG``, then cwd."""
    if path is not None:
        candidate = Path(path)
    elif os.environ.get(CONFIG_PATH_ENV):
        candidate = Path(os.environ[CONFIG_PATH_ENV])
    else:
        candidate = Path.cwd() / DEFAULT_CONFIG_FILENAME
    if candidate.is_dir():
        candidate = candidate / DEFAULT_CONFIG_FILENAME
    return candidate


def load_config(path: Path | str | None = None) -> CalsyncConfig:
    """Load and validate ``calsync.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = resolve_config_path(path)

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-decoded TOML document."""
    # --- Resolve env var references before any validation ---
    data = resolve_env_vars(data)

    # --- [calsync] section (required) ---
    section = data.get("calsync")
    if not isinstance(section, dict):
        raise ConfigError("Missing [calsync] section in config")

    public_url = section.get("public_url")
    if not isinstance(public_url, str) or not public_url.strip():
        raise ConfigError("Missing required field: calsync.public_url")
    if not public_url.startswith(("http://", "https://")):
        raise ConfigError(f"calsync.public_url must be an http(s) URL, got {public_url!r}")

    name = str(section.get("name", "calsync")).strip() or "calsync"
    port = _integer(section, "port", 8080, "calsync")

    # --- [calsync.db] sub-section ---
    db_section = _section(section, "db", "calsync.db")
    db_name = str(db_section.get("name", name)).strip()
    if not db_name:
        raise ConfigError("calsync.db.name must be a non-empty string")
    db_schema_raw = db_section.get("schema")
    db_schema: str | None = None
    if db_schema_raw is not None:
        if not isinstance(db_schema_raw, str) or not db_schema_raw.strip():
            raise ConfigError("calsync.db.schema must be a non-empty string when set")
        normalized_schema = db_schema_raw.strip()
        if _DB_SCHEMA_PATTERN.fullmatch(normalized_schema) is None:
            raise ConfigError(
                "Invalid calsync.db.schema: "
                f"{db_schema_raw!r}. Expected a valid SQL identifier-style value."
            )
        db_schema = normalized_schema
    db_pool_min_size = _integer(db_section, "pool_min_size", 2, "calsync.db")
    db_pool_max_size = _integer(db_section, "pool_max_size", 10, "calsync.db")
    if db_pool_min_size > db_pool_max_size:
        raise ConfigError(
            f"calsync.db.pool_min_size ({db_pool_min_size}) exceeds "
            f"calsync.db.pool_max_size ({db_pool_max_size})"
        )

    # --- [calsync.logging] sub-section ---
    logging_section = _section(section, "logging", "calsync.logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid calsync.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    # --- [calsync.http] sub-section ---
    http_section = _section(section, "http", "calsync.http")
    http_config = HttpConfig(
        timeout_seconds=_number(http_section, "timeout_seconds", 30.0, "calsync.http"),
    )

    # --- [calsync.retry] sub-section ---
    retry_section = _section(section, "retry", "calsync.retry")
    retry_config = RetryConfig(
        max_attempts=_integer(retry_section, "max_attempts", 3, "calsync.retry"),
        base_delay_seconds=_number(retry_section, "base_delay_seconds", 0.5, "calsync.retry"),
        max_delay_seconds=_number(retry_section, "max_delay_seconds", 8.0, "calsync.retry"),
    )

    # --- [calsync.sync] sub-section ---
    sync_section = _section(section, "sync", "calsync.sync")
    sync_config = SyncConfig(
        full_sync_window_days=_integer(sync_section, "full_sync_window_days", 30, "calsync.sync"),
        claim_timeout_seconds=_integer(sync_section, "claim_timeout_seconds", 300, "calsync.sync"),
        token_refresh_margin_seconds=_integer(
            sync_section, "token_refresh_margin_seconds", 60, "calsync.sync"
        ),
    )

    # --- [calsync.subscriptions] sub-section ---
    subs_section = _section(section, "subscriptions", "calsync.subscriptions")
    grace_hours: float | None = None
    if subs_section.get("expired_channel_grace_hours") is not None:
        grace_hours = _number(
            subs_section, "expired_channel_grace_hours", 24.0, "calsync.subscriptions"
        )
    subscription_config = SubscriptionConfig(
        renewal_lead_hours=_number(
            subs_section, "renewal_lead_hours", 24.0, "calsync.subscriptions"
        ),
        channel_ttl_hours=_number(
            subs_section, "channel_ttl_hours", 168.0, "calsync.subscriptions"
        ),
        expired_channel_grace_hours=grace_hours,
    )

    # --- [providers.google] section ---
    providers_section = _section(data, "providers", "providers")
    google_config: GoogleProviderConfig | None = None
    if "google" in providers_section:
        google_section = _section(providers_section, "google", "providers.google")
        client_id = str(google_section.get("client_id", "")).strip()
        client_secret = str(google_section.get("client_secret", "")).strip()
        if not client_id or not client_secret:
            raise ConfigError(
                "providers.google requires non-empty client_id and client_secret"
            )
        google_config = GoogleProviderConfig(client_id=client_id, client_secret=client_secret)

    return CalsyncConfig(
        public_url=public_url.strip(),
        name=name,
        port=port,
        db_name=db_name,
        db_schema=db_schema,
        db_pool_min_size=db_pool_min_size,
        db_pool_max_size=db_pool_max_size,
        logging=logging_config,
        http=http_config,
        retry=retry_config,
        sync=sync_config,
        subscriptions=subscription_config,
        google=google_config,
    )
