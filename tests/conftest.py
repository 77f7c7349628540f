"""
Shared test fixtures.

Certificates are generated on the fly with ``cryptography``; settings
point every path at ``tmp_path`` and zero out ACME polling delays.
"""
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from autocert.events import EventEmitter
from autocert.manager import set_certificate_manager
from autocert.settings import AutocertSettings, clear_settings_cache


def generate_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def key_to_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def make_certificate(
    common_name: str = "example.com",
    days: int = 90,
    key: rsa.RSAPrivateKey = None,
) -> tuple[str, str]:
    """Create a self-signed (cert_pem, key_pem) pair valid for ``days`` from now."""
    key = key or generate_key()
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8"), key_to_pem(key)


@pytest.fixture(scope="session")
def cert_pair():
    """One reusable (cert_pem, key_pem) pair for example.com."""
    return make_certificate("example.com")


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in tmp_path with ACME enabled and no polling delays."""
    return AutocertSettings(
        enabled=True,
        directory_url="https://acme.test/directory",
        contact_email="admin@example.com",
        data_dir=str(tmp_path),
        primary_domains=["example.com"],
        poll_interval=0,
        challenge_propagation_delay=0,
        startup_delay=0,
        retry_backoff=300,
    )


@pytest.fixture
def recorded_events():
    """An EventEmitter that records every event, plus the record list."""
    events = []
    return EventEmitter(sinks=[events.append]), events


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset module-level singletons between tests."""
    yield
    clear_settings_cache()
    set_certificate_manager(None)


@pytest.fixture
def cert_factory():
    """The ``make_certificate`` helper, for tests that need several pairs."""
    return make_certificate
