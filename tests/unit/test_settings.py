"""
Unit tests for settings loading.

Tests: defaults, validators, directory selection, JSON file and
environment overrides, caching.
"""
import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from autocert.settings import (
    LETSENCRYPT_PRODUCTION,
    LETSENCRYPT_STAGING,
    AutocertSettings,
    clear_settings_cache,
    get_settings,
)


ENV_VARS = (
    "LETS_ENCRYPT_ENABLED",
    "ACME_ENVIRONMENT",
    "ACME_DIRECTORY_URL",
    "ACME_CONTACT_EMAIL",
    "AUTOCERT_DATA_DIR",
    "AUTOCERT_PRIMARY_DOMAINS",
    "AUTOCERT_CONFIG_FILE",
    "AUTOCERT_HTTP_CHALLENGE_PORT",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AUTOCERT_DATA_DIR", str(tmp_path))
    clear_settings_cache()
    yield monkeypatch
    clear_settings_cache()


class TestAutocertSettings:
    """Tests for the settings model."""

    def test_defaults(self):
        settings = AutocertSettings()
        assert settings.enabled is False
        assert settings.environment == "staging"
        assert settings.renew_days_before_expiry == 30
        assert settings.challenge_ttl == 600
        assert settings.poll_interval == 2.0
        assert settings.poll_attempts == 10

    def test_directory_selection(self):
        assert AutocertSettings().resolved_directory_url() == LETSENCRYPT_STAGING
        assert AutocertSettings(environment="production").resolved_directory_url() == LETSENCRYPT_PRODUCTION
        assert (
            AutocertSettings(environment="production", directory_url="https://ca.test/dir").resolved_directory_url()
            == "https://ca.test/dir"
        )

    def test_domains_are_normalized(self):
        settings = AutocertSettings(primary_domains=["https://Example.com/", "example.com", " ", "www.example.com."])
        assert settings.primary_domains == ["example.com", "www.example.com"]

    def test_email_is_normalized(self):
        assert AutocertSettings(contact_email=" mailto:Admin@Example.com ").contact_email == "admin@example.com"

    def test_poll_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            AutocertSettings(poll_attempts=0)

    def test_derived_paths(self):
        settings = AutocertSettings(data_dir="/srv/certs")
        assert settings.get_account_key_path() == Path("/srv/certs/acme/account_key.pem")
        assert settings.get_certs_dir() == Path("/srv/certs/live")
        assert settings.get_bootstrap_paths() == (
            Path("/srv/certs/bootstrap/cert.pem"),
            Path("/srv/certs/bootstrap/key.pem"),
        )

    def test_path_overrides(self):
        settings = AutocertSettings(certs_dir="/x/live", bootstrap_key_path="/x/key.pem")
        assert settings.get_certs_dir() == Path("/x/live")
        assert settings.get_bootstrap_paths()[1] == Path("/x/key.pem")


class TestLoadSettings:
    """Tests for get_settings() sources."""

    def test_environment_overrides(self, clean_env, tmp_path):
        clean_env.setenv("LETS_ENCRYPT_ENABLED", "true")
        clean_env.setenv("ACME_ENVIRONMENT", "production")
        clean_env.setenv("ACME_CONTACT_EMAIL", "ops@example.com")
        clean_env.setenv("AUTOCERT_PRIMARY_DOMAINS", "example.com, www.example.com")
        clean_env.setenv("AUTOCERT_HTTP_CHALLENGE_PORT", "8080")

        settings = get_settings()

        assert settings.enabled is True
        assert settings.environment == "production"
        assert settings.contact_email == "ops@example.com"
        assert settings.primary_domains == ["example.com", "www.example.com"]
        assert settings.http_challenge_port == 8080
        assert settings.data_dir == str(tmp_path)

    def test_enabled_requires_literal_true(self, clean_env):
        clean_env.setenv("LETS_ENCRYPT_ENABLED", "yes")
        assert get_settings().enabled is False

    def test_unknown_environment_falls_back_to_staging(self, clean_env):
        clean_env.setenv("ACME_ENVIRONMENT", "qa")
        assert get_settings().environment == "staging"

    def test_json_file_then_environment(self, clean_env, tmp_path):
        """Environment variables win over the JSON file."""
        (tmp_path / "autocert_settings.json").write_text(
            json.dumps({"contact_email": "file@example.com", "renew_days_before_expiry": 20})
        )
        clean_env.setenv("ACME_CONTACT_EMAIL", "env@example.com")

        settings = get_settings()

        assert settings.renew_days_before_expiry == 20
        assert settings.contact_email == "env@example.com"

    def test_broken_json_file_is_ignored(self, clean_env, tmp_path):
        config = tmp_path / "custom.json"
        config.write_text("{not json")
        clean_env.setenv("AUTOCERT_CONFIG_FILE", str(config))

        assert get_settings().renew_days_before_expiry == 30

    def test_settings_are_cached_until_cleared(self, clean_env):
        first = get_settings()
        assert get_settings() is first

        clear_settings_cache()
        assert get_settings() is not first
