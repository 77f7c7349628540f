"""
Certificate manager configuration settings.

Manages the feature flag, ACME directory selection, contact email,
filesystem locations and the timing knobs of every background loop.
Settings are read from an optional JSON file and then overridden by
environment variables.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional, Literal

from pydantic import BaseModel, field_validator


logger = logging.getLogger(__name__)

# ACME directory URLs
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"

DEFAULT_DATA_DIR = "/data/certs"


def _normalize_domain(value: str) -> str:
    value = value.strip().lower()
    # Remove protocol if accidentally included
    if value.startswith("http://"):
        value = value[7:]
    elif value.startswith("https://"):
        value = value[8:]
    return value.rstrip("/").rstrip(".")


class AutocertSettings(BaseModel):
    """Certificate lifecycle configuration."""

    # Master enable/disable for ACME provisioning
    enabled: bool = False

    # "staging" issues untrusted test certificates
    environment: Literal["staging", "production"] = "staging"
    directory_url: Optional[str] = None  # Overrides environment when set
    contact_email: str = "admin@example.com"

    # Filesystem layout (paths default to locations under data_dir)
    data_dir: str = DEFAULT_DATA_DIR
    account_key_path: Optional[str] = None
    certs_dir: Optional[str] = None
    bootstrap_cert_path: Optional[str] = None
    bootstrap_key_path: Optional[str] = None

    # Domains served with their own certificate
    primary_domains: list[str] = []

    # Renewal schedule (seconds unless noted)
    renew_days_before_expiry: int = 30
    renewal_check_interval: float = 12 * 60 * 60
    tenant_sweep_interval: float = 24 * 60 * 60
    startup_delay: float = 10.0
    retry_backoff: float = 5 * 60

    # Certificate cache
    cache_max_entries: int = 1000
    cache_sweep_interval: float = 5 * 60

    # HTTP-01 challenge store
    challenge_ttl: float = 10 * 60
    challenge_sweep_interval: float = 60.0
    # Standalone HTTP-01 listener port; None when the host app mounts the route
    http_challenge_port: Optional[int] = None

    # ACME polling and transport
    poll_interval: float = 2.0
    poll_attempts: int = 10
    challenge_propagation_delay: float = 1.0
    http_timeout: float = 30.0

    @field_validator("primary_domains")
    @classmethod
    def validate_domains(cls, v: list[str]) -> list[str]:
        """Normalize domains and drop blanks and duplicates."""
        seen: list[str] = []
        for domain in v:
            domain = _normalize_domain(domain)
            if domain and domain not in seen:
                seen.append(domain)
        return seen

    @field_validator("contact_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Validate email format."""
        v = v.strip().lower()
        if v.startswith("mailto:"):
            v = v[7:]
        return v

    @field_validator("cache_max_entries", "poll_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    def resolved_directory_url(self) -> str:
        """Get the ACME directory URL for the configured environment."""
        if self.directory_url:
            return self.directory_url
        if self.environment == "production":
            return LETSENCRYPT_PRODUCTION
        return LETSENCRYPT_STAGING

    def get_account_key_path(self) -> Path:
        if self.account_key_path:
            return Path(self.account_key_path)
        return Path(self.data_dir) / "acme" / "account_key.pem"

    def get_certs_dir(self) -> Path:
        if self.certs_dir:
            return Path(self.certs_dir)
        return Path(self.data_dir) / "live"

    def get_bootstrap_paths(self) -> tuple[Path, Path]:
        """Get the (cert_path, key_path) of the self-signed fallback."""
        base = Path(self.data_dir) / "bootstrap"
        cert_path = Path(self.bootstrap_cert_path) if self.bootstrap_cert_path else base / "cert.pem"
        key_path = Path(self.bootstrap_key_path) if self.bootstrap_key_path else base / "key.pem"
        return cert_path, key_path


# In-memory cache of settings
_cached_settings: Optional[AutocertSettings] = None


def _config_file() -> Path:
    explicit = os.environ.get("AUTOCERT_CONFIG_FILE")
    if explicit:
        return Path(explicit)
    data_dir = os.environ.get("AUTOCERT_DATA_DIR", DEFAULT_DATA_DIR)
    return Path(data_dir) / "autocert_settings.json"


def _env_overrides() -> dict:
    """Collect settings overrides from environment variables."""
    overrides: dict = {}
    env = os.environ

    if "LETS_ENCRYPT_ENABLED" in env:
        overrides["enabled"] = env["LETS_ENCRYPT_ENABLED"].strip().lower() == "true"
    if env.get("ACME_ENVIRONMENT"):
        # Anything other than "production" falls back to staging
        overrides["environment"] = (
            "production" if env["ACME_ENVIRONMENT"].strip().lower() == "production" else "staging"
        )
    if env.get("ACME_DIRECTORY_URL"):
        overrides["directory_url"] = env["ACME_DIRECTORY_URL"].strip()
    if env.get("ACME_CONTACT_EMAIL"):
        overrides["contact_email"] = env["ACME_CONTACT_EMAIL"]
    if env.get("AUTOCERT_DATA_DIR"):
        overrides["data_dir"] = env["AUTOCERT_DATA_DIR"]
    if env.get("AUTOCERT_PRIMARY_DOMAINS"):
        overrides["primary_domains"] = [
            d for d in env["AUTOCERT_PRIMARY_DOMAINS"].split(",") if d.strip()
        ]
    if env.get("AUTOCERT_HTTP_CHALLENGE_PORT"):
        overrides["http_challenge_port"] = int(env["AUTOCERT_HTTP_CHALLENGE_PORT"])
    return overrides


def load_settings() -> AutocertSettings:
    """Load settings from file and environment, or return defaults."""
    global _cached_settings

    if _cached_settings is not None:
        return _cached_settings

    data: dict = {}
    config_file = _config_file()
    if config_file.exists():
        try:
            data = json.loads(config_file.read_text())
            logger.info("[SETTINGS] Loaded settings from %s", config_file)
        except (OSError, ValueError) as e:
            logger.error("[SETTINGS] Failed to load settings file %s: %s", config_file, e)
            data = {}

    data.update(_env_overrides())
    _cached_settings = AutocertSettings(**data)
    logger.info(
        "[SETTINGS] ACME provisioning enabled: %s, environment: %s, primary domains: %s",
        _cached_settings.enabled,
        _cached_settings.environment,
        ", ".join(_cached_settings.primary_domains) or "-",
    )
    return _cached_settings


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None
    logger.info("[SETTINGS] Settings cache cleared")


def get_settings() -> AutocertSettings:
    """Get the current settings."""
    return load_settings()
