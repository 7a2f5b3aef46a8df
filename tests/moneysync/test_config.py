"""Tests for profile-based configuration.

This module tests settings defaults, environment variable overrides, profile
scoped paths and credential validation.
"""

import os
from pathlib import Path

import pytest
from pytest_mock import MockerFixture

from moneysync.config import (
    JobsConfig,
    MoneySyncSettings,
    PlaidConfig,
    RemoteConfig,
    RetryPolicy,
    get_current_profile,
    get_settings,
    reload_settings,
    set_current_profile,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Run each test from an empty directory with no MoneySync or Plaid variables."""
    for name in list(os.environ):
        if name.startswith(("MONEYSYNC_", "PLAID_")):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


class TestDefaults:
    """Test suite for default settings."""

    def test_profile_scoped_paths(self):
        """Test that database and log paths live under the profile directory."""
        settings = MoneySyncSettings(profile="alice")

        assert settings.database.path == Path("data/alice/moneysync.duckdb")
        assert settings.logging.log_file_path == Path("logs/alice/moneysync.log")

    def test_sync_and_job_defaults(self):
        """Test the default retry and queue settings."""
        settings = MoneySyncSettings(profile="alice")

        assert settings.sync.max_retries == 5
        assert settings.remote.use_local_server is False
        assert settings.jobs.sync_retry.max_attempts == 5
        assert settings.jobs.notification_retry.max_attempts == 3
        assert settings.jobs.lease_duration == 30.0
        assert settings.plaid.is_configured is False

    def test_invalid_database_extension(self):
        """Test that database paths must be DuckDB files."""
        with pytest.raises(ValueError, match="must end with"):
            MoneySyncSettings(profile="alice", database={"path": "data/alice/db.txt"})


class TestEnvironmentOverrides:
    """Test suite for environment variable loading."""

    def test_nested_variables(self, mocker: MockerFixture):
        """Test that double underscores reach nested settings."""
        mocker.patch.dict(
            os.environ,
            {
                "MONEYSYNC_SYNC__MAX_RETRIES": "7",
                "MONEYSYNC_SYNC__DEVICE_ID": "laptop",
                "MONEYSYNC_JOBS__LEASE_DURATION": "60",
            },
        )

        settings = MoneySyncSettings(profile="alice")

        assert settings.sync.max_retries == 7
        assert settings.sync.device_id == "laptop"
        assert settings.jobs.lease_duration == 60.0

    def test_database_path_override(self, mocker: MockerFixture):
        """Test that MONEYSYNC_DB_PATH replaces the profile database path."""
        mocker.patch.dict(os.environ, {"MONEYSYNC_DB_PATH": "/tmp/other.duckdb"})

        settings = MoneySyncSettings(profile="alice")

        assert settings.database.path == Path("/tmp/other.duckdb")

    def test_plaid_credentials_from_plaid_variables(self, mocker: MockerFixture):
        """Test that Plaid's own variable names configure the provider."""
        mocker.patch.dict(
            os.environ,
            {
                "PLAID_CLIENT_ID": "test_client_id",
                "PLAID_SECRET": "test_secret",
                "PLAID_ENV": "development",
            },
        )

        settings = MoneySyncSettings(profile="alice")

        assert settings.plaid.is_configured is True
        assert settings.plaid.environment == "development"

    def test_profile_env_file(self, tmp_path: Path):
        """Test that .env.{profile} is read when present."""
        (tmp_path / ".env.bob").write_text("MONEYSYNC_SYNC__DEVICE_ID=bobs-phone\n")

        settings = MoneySyncSettings(profile="bob")

        assert settings.sync.device_id == "bobs-phone"


class TestValidation:
    """Test suite for cross-field validation."""

    def test_production_rejects_local_server(self):
        """Test that production cannot use the in-process server of record."""
        with pytest.raises(ValueError, match="cannot be used in production"):
            MoneySyncSettings(
                profile="alice",
                environment="production",
                remote=RemoteConfig(use_local_server=True),
            )

    def test_production_with_remote_server(self):
        """Test that production accepts an HTTP server of record."""
        settings = MoneySyncSettings(
            profile="alice",
            environment="production",
            remote=RemoteConfig(use_local_server=False, server_url="https://sync.test"),
        )

        settings.validate_required_credentials()

    def test_default_remote_requires_url(self):
        """Test that the default HTTP remote needs a server URL."""
        settings = MoneySyncSettings(profile="alice")

        with pytest.raises(ValueError, match="SERVER_URL"):
            settings.validate_required_credentials()

    def test_partial_plaid_credentials(self):
        """Test that Plaid credentials must be set together."""
        settings = MoneySyncSettings(profile="alice", plaid=PlaidConfig(client_id="x"))

        with pytest.raises(ValueError, match="PLAID_CLIENT_ID"):
            settings.validate_required_credentials()


class TestProfiles:
    """Test suite for profile selection and caching."""

    def test_set_and_get_current_profile(self):
        """Test switching the current profile."""
        set_current_profile("alice")

        assert get_current_profile() == "alice"

    @pytest.mark.parametrize("profile", ["invalid/profile", "bad profile", ""])
    def test_invalid_profile_names(self, profile: str):
        """Test that unsafe profile names are rejected."""
        with pytest.raises(ValueError):
            set_current_profile(profile)

    def test_get_settings_caches_and_creates_directories(
        self, tmp_path: Path, mocker: MockerFixture
    ):
        """Test that settings are cached per profile and directories created."""
        mocker.patch.dict(os.environ, {"MONEYSYNC_REMOTE__USE_LOCAL_SERVER": "true"})
        first = get_settings("carol")

        assert get_settings("carol") is first
        assert (tmp_path / "data" / "carol").is_dir()
        assert (tmp_path / "logs" / "carol").is_dir()
        assert reload_settings("carol") is not first

    def test_get_settings_wraps_errors(self, mocker: MockerFixture):
        """Test that configuration errors name the profile."""
        mocker.patch.dict(os.environ, {"MONEYSYNC_SYNC__MAX_RETRIES": "0"})

        with pytest.raises(ValueError, match="Configuration error for profile 'dave'"):
            get_settings("dave")


class TestRetryPolicy:
    """Test suite for job backoff policies."""

    def test_exponential_schedule(self):
        """Test that delays double from the base delay."""
        policy = RetryPolicy()

        assert [policy.delay_for(n) for n in range(1, 6)] == [2.0, 4.0, 8.0, 16.0, 32.0]

    def test_delay_is_capped(self):
        """Test that delays never exceed max_delay."""
        assert RetryPolicy().delay_for(20) == 300.0
        assert RetryPolicy(max_delay=10.0).delay_for(5) == 10.0

    def test_per_type_policies(self):
        """Test that notifications retry faster and fewer times than syncs."""
        jobs = JobsConfig()

        assert jobs.notification_retry.delay_for(1) == 1.0
        assert jobs.notification_retry.max_attempts < jobs.sync_retry.max_attempts
