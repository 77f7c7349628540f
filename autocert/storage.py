"""
Certificate storage and validation.

Persists issued certificate/key pairs per domain on disk and provides
certificate parsing plus the atomic-write and locking helpers shared by
the account key and bootstrap certificate code.
"""
import contextlib
import fcntl
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Protocol

from cryptography import x509
from cryptography.x509.oid import NameOID


logger = logging.getLogger(__name__)

CERT_FILENAME = "fullchain.pem"
KEY_FILENAME = "privkey.pem"


@dataclass
class CertificateInfo:
    """Information extracted from a certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    domains: list[str]  # Subject CN + SANs

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        """Get whole days until the certificate expires (negative once expired)."""
        now = now or datetime.now(timezone.utc)
        return (self.not_after - now).days

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now > self.not_after


@dataclass
class StoredCertificate:
    """A certificate/key pair as read from the persistent store."""

    domain: str
    cert_pem: str
    key_pem: str


class CertificateStore(Protocol):
    """Persistent certificate store interface consumed by the cache and renewal code."""

    def read(self, domain: str) -> Optional[StoredCertificate]: ...

    def write(self, domain: str, cert_pem: str, key_pem: str) -> None: ...


def _to_bytes(data: str | bytes) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return data


def parse_certificate(cert_pem: str | bytes) -> CertificateInfo:
    """
    Parse the first (leaf) certificate of a PEM bundle.

    Raises:
        ValueError: If the PEM does not contain a certificate
    """
    cert = x509.load_pem_x509_certificate(_to_bytes(cert_pem))

    subject_cn = ""
    cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if cn_attrs:
        subject_cn = str(cn_attrs[0].value)

    issuer_cn = ""
    cn_attrs = cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
    if cn_attrs:
        issuer_cn = str(cn_attrs[0].value)

    domains = [subject_cn] if subject_cn else []
    try:
        san_ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        for name in san_ext.value.get_values_for_type(x509.DNSName):
            if name not in domains:
                domains.append(name)
    except x509.ExtensionNotFound as e:
        logger.debug("[CERT-STORAGE] Suppressed SAN extension lookup: %s", e)

    return CertificateInfo(
        subject=subject_cn,
        issuer=issuer_cn,
        serial_number=format(cert.serial_number, "x"),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        domains=domains,
    )


def atomic_write(path: Path, data: str | bytes, mode: int = 0o644) -> None:
    """Write a file via a temp file in the same directory and an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(_to_bytes(data))
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


@contextlib.contextmanager
def exclusive_lock(lock_path: Path) -> Iterator[None]:
    """
    Hold an exclusive advisory lock on ``lock_path`` for the block.

    Serializes first-boot creation of shared files across processes.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "w") as fh:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


class CertificateStorage:
    """Manages per-domain certificate and key files on disk."""

    def __init__(self, certs_dir: Path):
        """Initialize storage rooted at ``certs_dir`` (one subdirectory per domain)."""
        self.certs_dir = Path(certs_dir)

    def _domain_dir(self, domain: str) -> Path:
        domain = domain.strip().lower()
        if not domain or "/" in domain or "\\" in domain or domain.startswith("."):
            raise ValueError(f"Invalid domain for storage: {domain!r}")
        return self.certs_dir / domain

    def paths(self, domain: str) -> tuple[Path, Path]:
        """Get the (cert_path, key_path) for a domain."""
        domain_dir = self._domain_dir(domain)
        return domain_dir / CERT_FILENAME, domain_dir / KEY_FILENAME

    def exists(self, domain: str) -> bool:
        """Check if a certificate and key exist for a domain."""
        cert_path, key_path = self.paths(domain)
        return cert_path.exists() and key_path.exists()

    def read(self, domain: str) -> Optional[StoredCertificate]:
        """
        Load certificate and key for a domain.

        Returns:
            StoredCertificate, or None if either file is missing or unreadable
        """
        try:
            cert_path, key_path = self.paths(domain)
        except ValueError:
            return None
        if not cert_path.exists() or not key_path.exists():
            return None

        try:
            return StoredCertificate(
                domain=domain.lower(),
                cert_pem=cert_path.read_text(),
                key_pem=key_path.read_text(),
            )
        except OSError as e:
            logger.error("[CERT-STORAGE] Failed to load certificate for %s: %s", domain, e)
            return None

    def write(self, domain: str, cert_pem: str, key_pem: str) -> None:
        """
        Save certificate and key for a domain.

        The key is written first so a reader never sees a new certificate
        paired with no key.
        """
        cert_path, key_path = self.paths(domain)
        atomic_write(key_path, key_pem, 0o600)
        atomic_write(cert_path, cert_pem, 0o640)
        logger.info("[CERT-STORAGE] Certificate saved to %s", cert_path)

    def delete(self, domain: str) -> bool:
        """Delete stored certificate and key for a domain."""
        removed = False
        for path in self.paths(domain):
            if path.exists():
                path.unlink()
                removed = True
                logger.info("[CERT-STORAGE] Deleted %s", path)
        return removed

    def get_certificate_info(self, domain: str) -> Optional[CertificateInfo]:
        """Get info about the stored certificate, or None if absent or unparseable."""
        stored = self.read(domain)
        if stored is None:
            return None
        try:
            return parse_certificate(stored.cert_pem)
        except ValueError as e:
            logger.error("[CERT-STORAGE] Failed to parse certificate for %s: %s", domain, e)
            return None
