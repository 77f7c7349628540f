"""In-memory certificate cache with LRU batch eviction."""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .exceptions import InvalidCertificate, InvalidPrivateKey
from .storage import CertificateStore
from .workers import PeriodicWorker

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000


@dataclass
class CachedCertificate:
    """A decoded certificate/key pair ready to hand to a TLS stack."""
    domain: str
    certificate_der: bytes
    private_key_der: bytes
    certificate_pem: str
    private_key_pem: str
    cached_at: float
    accessed_at: float

    def approx_size(self) -> int:
        return (
            len(self.certificate_der)
            + len(self.private_key_der)
            + len(self.certificate_pem)
            + len(self.private_key_pem)
            + len(self.domain)
        )


def decode_pair(cert_pem: str | bytes, key_pem: str | bytes) -> tuple[bytes, bytes]:
    """
    Decode a PEM certificate and private key to DER.

    Raises:
        InvalidCertificate: If the certificate PEM cannot be decoded
        InvalidPrivateKey: If the key cannot be decoded or does not match the certificate
    """
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode("utf-8")
    if isinstance(key_pem, str):
        key_pem = key_pem.encode("utf-8")

    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise InvalidCertificate(f"Cannot load certificate: {e}") from e

    try:
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError) as e:
        raise InvalidPrivateKey(f"Cannot load private key: {e}") from e

    cert_public = cert.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_public = key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    if cert_public != key_public:
        raise InvalidPrivateKey("Private key does not match certificate")

    return (
        cert.public_bytes(serialization.Encoding.DER),
        key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )


class CertificateCache:
    """
    Thread-safe hostname -> certificate cache.

    Misses fall back to the persistent store. The entry count is kept at
    or below ``max_entries``; eviction removes the least recently
    accessed entries in batches of about 10%.
    """

    def __init__(
        self,
        store: Optional[CertificateStore] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize cache.

        Args:
            store: Persistent store consulted on a miss
            max_entries: Upper bound on cached hostnames
            clock: Time source for cached_at/accessed_at
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.store = store
        self.max_entries = max_entries
        self._clock = clock
        self._cache: dict[str, CachedCertificate] = {}
        self._lock = threading.RLock()
        self._sweeper: Optional[PeriodicWorker] = None

    @property
    def eviction_target(self) -> int:
        """Size the cache is reduced to by an eviction sweep."""
        return self.max_entries - self.max_entries // 10

    def get(self, hostname: str) -> Optional[CachedCertificate]:
        """
        Get the certificate for a hostname.

        On a miss the persistent store is consulted and a hit is cached.

        Returns:
            The cached record or None
        """
        key = hostname.lower()
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                entry.accessed_at = self._clock()
                return entry

        if self.store is None:
            return None

        stored = self.store.read(key)
        if stored is None:
            return None

        try:
            entry = self.put(key, stored.cert_pem, stored.key_pem)
        except (InvalidCertificate, InvalidPrivateKey) as e:
            logger.warning("[CERT-CACHE] Stored certificate for %s is unusable: %s", key, e)
            return None
        logger.debug("[CERT-CACHE] Loaded %s from persistent store", key)
        return entry

    def put(self, hostname: str, cert_pem: str | bytes, key_pem: str | bytes) -> CachedCertificate:
        """
        Decode and cache a certificate/key pair.

        Raises:
            InvalidCertificate: Malformed certificate
            InvalidPrivateKey: Malformed or mismatched key
        """
        key = hostname.lower()
        cert_der, key_der = decode_pair(cert_pem, key_pem)
        now = self._clock()
        entry = CachedCertificate(
            domain=key,
            certificate_der=cert_der,
            private_key_der=key_der,
            certificate_pem=cert_pem.decode("utf-8") if isinstance(cert_pem, bytes) else cert_pem,
            private_key_pem=key_pem.decode("utf-8") if isinstance(key_pem, bytes) else key_pem,
            cached_at=now,
            accessed_at=now,
        )
        with self._lock:
            if key not in self._cache and len(self._cache) >= self.max_entries:
                # Never exceed the bound, even between sweeps
                self._evict_locked(self.eviction_target - 1)
            self._cache[key] = entry
        logger.debug("[CERT-CACHE] Cached certificate for %s", key)
        return entry

    def delete(self, hostname: str) -> bool:
        with self._lock:
            return self._cache.pop(hostname.lower(), None) is not None

    def clear(self) -> int:
        """Clear all cached certificates. Returns number of entries cleared."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
        logger.info("[CERT-CACHE] Cleared certificate cache (%s entries)", count)
        return count

    def _evict_locked(self, target: int) -> int:
        excess = len(self._cache) - max(target, 0)
        if excess <= 0:
            return 0
        oldest = sorted(self._cache.values(), key=lambda e: e.accessed_at)[:excess]
        for entry in oldest:
            del self._cache[entry.domain]
        return len(oldest)

    def evict(self) -> int:
        """
        Run one eviction sweep.

        Does nothing while the cache is below ``max_entries``; once it has
        reached the bound it is trimmed to ``eviction_target``.

        Returns:
            Number of entries removed
        """
        with self._lock:
            if len(self._cache) < self.max_entries:
                return 0
            removed = self._evict_locked(self.eviction_target)
        logger.info("[CERT-CACHE] Evicted %s least recently used certificates", removed)
        return removed

    def stats(self) -> dict:
        with self._lock:
            return {
                "entries": len(self._cache),
                "approx_memory_bytes": sum(e.approx_size() for e in self._cache.values()),
                "max_entries": self.max_entries,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, hostname: str) -> bool:
        with self._lock:
            return hostname.lower() in self._cache

    def start_sweeper(self, interval: float = 300.0) -> None:
        """Start the periodic eviction sweep on the running event loop."""
        if self._sweeper is None:
            self._sweeper = PeriodicWorker("cert-cache-eviction", interval, self.evict)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.stop()
