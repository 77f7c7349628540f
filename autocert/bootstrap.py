"""
Self-signed bootstrap certificate.

The HTTPS listener starts on this certificate and falls back to it for
any managed hostname whose real certificate has not been issued yet.
"""
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .exceptions import BootstrapError
from .storage import atomic_write, exclusive_lock


logger = logging.getLogger(__name__)

BOOTSTRAP_COMMON_NAME = "localhost"
BOOTSTRAP_VALIDITY_DAYS = 365
BOOTSTRAP_KEY_SIZE = 2048


def generate_self_signed(
    common_name: str = BOOTSTRAP_COMMON_NAME,
    days: int = BOOTSTRAP_VALIDITY_DAYS,
) -> tuple[bytes, bytes]:
    """
    Generate a self-signed RSA certificate.

    Returns:
        Tuple of (cert_pem, key_pem)
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=BOOTSTRAP_KEY_SIZE)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


class BootstrapCertificate:
    """Creates the fallback certificate once and serves it from disk afterwards."""

    def __init__(self, cert_path: Path, key_path: Path):
        self.cert_path = Path(cert_path)
        self.key_path = Path(key_path)
        self._material: Optional[tuple[str, str]] = None

    def exists(self) -> bool:
        return self.cert_path.exists() and self.key_path.exists()

    def ensure(self) -> tuple[Path, Path]:
        """
        Make sure the bootstrap certificate exists.

        Existing files are returned untouched.

        Returns:
            Tuple of (cert_path, key_path)

        Raises:
            BootstrapError: If the certificate cannot be generated or written
        """
        if self.exists():
            return self.cert_path, self.key_path

        lock_path = self.cert_path.with_name(self.cert_path.name + ".lock")
        try:
            with exclusive_lock(lock_path):
                # Another process may have won the race while we waited
                if self.exists():
                    return self.cert_path, self.key_path

                cert_pem, key_pem = generate_self_signed()
                atomic_write(self.key_path, key_pem, 0o600)
                atomic_write(self.cert_path, cert_pem, 0o644)
        except (OSError, ValueError) as e:
            raise BootstrapError(f"Failed to create bootstrap certificate: {e}") from e

        self._material = None
        logger.info("[BOOTSTRAP] Generated self-signed certificate at %s", self.cert_path)
        return self.cert_path, self.key_path

    def load_material(self) -> tuple[str, str]:
        """
        Get the bootstrap (cert_pem, key_pem), generating it if needed.

        Raises:
            BootstrapError: If the certificate cannot be produced or read
        """
        if self._material is not None:
            return self._material

        cert_path, key_path = self.ensure()
        try:
            self._material = (cert_path.read_text(), key_path.read_text())
        except (OSError, ValueError) as e:
            raise BootstrapError(f"Failed to read bootstrap certificate: {e}") from e
        return self._material
