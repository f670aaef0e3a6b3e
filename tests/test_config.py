"""Tests for calsync.toml loading, env var resolution and validation."""

from __future__ import annotations

import textwrap
from datetime import timedelta
from pathlib import Path

import pytest

from calsync.config import (
    ConfigError,
    load_config,
    parse_config,
    resolve_config_path,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

MINIMAL_TOML = """\
[calsync]
public_url = "https://calsync.example.com/"
"""

FULL_TOML = """\
[calsync]
name = "calsync-eu"
port = 9000
public_url = "${CALSYNC_PUBLIC_URL}"

[calsync.db]
name = "calendars"
schema = "calsync"

[calsync.logging]
level = "debug"
format = "JSON"
log_root = "/var/log/calsync"

[calsync.http]
timeout_seconds = 10

[calsync.retry]
max_attempts = 5
base_delay_seconds = 0.25
max_delay_seconds = 4

[calsync.sync]
full_sync_window_days = 90
claim_timeout_seconds = 120
token_refresh_margin_seconds = 30

[calsync.subscriptions]
renewal_lead_hours = 12
channel_ttl_hours = 48
expired_channel_grace_hours = 6

[providers.google]
client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"
"""


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "calsync.toml"
    path.write_text(textwrap.dedent(content))
    return path


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_minimal_config_uses_defaults(self, tmp_path: Path):
        config = load_config(_write(tmp_path, MINIMAL_TOML))

        assert config.name == "calsync"
        assert config.port == 8080
        assert config.db_name == "calsync"
        assert config.db_schema is None
        assert (config.db_pool_min_size, config.db_pool_max_size) == (2, 10)
        assert config.logging.format == "text"
        assert config.retry.max_attempts == 3
        assert config.sync.claim_timeout == timedelta(seconds=300)
        assert config.subscriptions.renewal_lead_time == timedelta(hours=24)
        assert config.subscriptions.channel_ttl == timedelta(days=7)
        assert config.subscriptions.expired_channel_grace is None
        assert config.google is None

    def test_webhook_url_joins_without_double_slash(self, tmp_path: Path):
        config = load_config(_write(tmp_path, MINIMAL_TOML))
        assert config.webhook_url == "https://calsync.example.com/google/calendar/notifications"

    def test_full_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CALSYNC_PUBLIC_URL", "https://sync.example.org")
        monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", "client-id")
        monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_SECRET", "client-secret")

        config = load_config(_write(tmp_path, FULL_TOML))

        assert config.name == "calsync-eu"
        assert config.port == 9000
        assert config.public_url == "https://sync.example.org"
        assert config.db_name == "calendars"
        assert config.db_schema == "calsync"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.logging.log_root == "/var/log/calsync"
        assert config.http.timeout_seconds == 10.0
        assert config.retry.max_attempts == 5
        assert config.retry.base_delay_seconds == 0.25
        assert config.sync.full_sync_window_days == 90
        assert config.sync.token_refresh_margin == timedelta(seconds=30)
        assert config.subscriptions.channel_ttl == timedelta(hours=48)
        assert config.subscriptions.expired_channel_grace == timedelta(hours=6)
        assert config.google is not None
        assert config.google.client_id == "client-id"

    def test_db_name_defaults_to_service_name(self, tmp_path: Path):
        config = load_config(
            _write(tmp_path, '[calsync]\nname = "calsync-us"\npublic_url = "http://localhost"\n')
        )
        assert config.db_name == "calsync-us"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[calsync\n"))


class TestResolveConfigPath:
    def test_explicit_directory_appends_filename(self, tmp_path: Path):
        assert resolve_config_path(tmp_path) == tmp_path / "calsync.toml"

    def test_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        target = tmp_path / "custom.toml"
        monkeypatch.setenv("CALSYNC_CONFIG", str(target))
        assert resolve_config_path() == target

    def test_defaults_to_cwd(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("CALSYNC_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        assert resolve_config_path() == tmp_path / "calsync.toml"


# ---------------------------------------------------------------------------
# Env var resolution
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("HOST", "db.internal")
        resolved = resolve_env_vars({"a": ["postgres://${HOST}/x", 5], "b": {"c": None}})
        assert resolved == {"a": ["postgres://db.internal/x", 5], "b": {"c": None}}

    def test_reports_every_missing_variable_once(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("MISSING_ONE", raising=False)
        monkeypatch.delenv("MISSING_TWO", raising=False)
        with pytest.raises(ConfigError) as exc_info:
            resolve_env_vars(["${MISSING_ONE}", "${MISSING_TWO}", "${MISSING_ONE}"])
        assert str(exc_info.value).endswith("MISSING_ONE, MISSING_TWO")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _config(**calsync: object) -> dict:
    return {"calsync": {"public_url": "https://calsync.example.com", **calsync}}


class TestValidation:
    def test_missing_section(self):
        with pytest.raises(ConfigError, match=r"Missing \[calsync\] section"):
            parse_config({})

    def test_missing_public_url(self):
        with pytest.raises(ConfigError, match="calsync.public_url"):
            parse_config({"calsync": {}})

    def test_public_url_must_be_http(self):
        with pytest.raises(ConfigError, match="http"):
            parse_config({"calsync": {"public_url": "calsync.example.com"}})

    @pytest.mark.parametrize("port", [0, -1, "abc", True, 80.5])
    def test_invalid_port(self, port):
        with pytest.raises(ConfigError):
            parse_config(_config(port=port))

    def test_invalid_log_format(self):
        with pytest.raises(ConfigError, match="logging.format"):
            parse_config(_config(logging={"format": "xml"}))

    def test_invalid_schema(self):
        with pytest.raises(ConfigError, match="calsync.db.schema"):
            parse_config(_config(db={"schema": "bad-schema"}))

    def test_pool_sizes(self):
        config = parse_config(_config(db={"pool_min_size": 1, "pool_max_size": 4}))
        assert (config.db_pool_min_size, config.db_pool_max_size) == (1, 4)

    def test_pool_min_above_max(self):
        with pytest.raises(ConfigError, match="pool_min_size"):
            parse_config(_config(db={"pool_min_size": 8, "pool_max_size": 4}))

    def test_subsection_must_be_table(self):
        with pytest.raises(ConfigError, match="must be a table"):
            parse_config(_config(retry=3))

    def test_non_positive_retry_delay(self):
        with pytest.raises(ConfigError, match="base_delay_seconds"):
            parse_config(_config(retry={"base_delay_seconds": 0}))

    def test_google_requires_credentials(self):
        data = _config()
        data["providers"] = {"google": {"client_id": "id", "client_secret": " "}}
        with pytest.raises(ConfigError, match="client_secret"):
            parse_config(data)
