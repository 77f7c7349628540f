"""
Per-handshake certificate selection (SNI).

``SNIDispatcher.select`` runs on the TLS handshake path: it only
touches the in-memory cache and local disk, and it never raises.
Resolution order for a requested hostname:

1. A managed domain (primary or tenant): its own certificate.
2. A subdomain of a primary domain: the primary's certificate.
3. Either of the above with no certificate yet: the bootstrap certificate.
4. Anything else: an issued certificate if one happens to be stored,
   otherwise None so the listener uses its default certificate.
"""
import hashlib
import logging
import os
import ssl
import tempfile
import threading
from dataclasses import dataclass
from typing import Callable, Literal, Optional

from .bootstrap import BootstrapCertificate
from .cache import CachedCertificate, CertificateCache, decode_pair
from .domains import DomainSet, normalize_hostname


logger = logging.getLogger(__name__)

# Upper bound on memoized per-certificate SSL contexts
MAX_SSL_CONTEXTS = 1024


@dataclass(frozen=True)
class CertificateMaterial:
    """Certificate and key selected for a handshake."""

    domain: str  # Domain the certificate was issued for
    certificate_der: bytes
    private_key_der: bytes
    certificate_pem: str
    private_key_pem: str
    source: Literal["cache", "bootstrap"]

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.certificate_der + self.private_key_der).hexdigest()

    @classmethod
    def from_cached(cls, entry: CachedCertificate) -> "CertificateMaterial":
        return cls(
            domain=entry.domain,
            certificate_der=entry.certificate_der,
            private_key_der=entry.private_key_der,
            certificate_pem=entry.certificate_pem,
            private_key_pem=entry.private_key_pem,
            source="cache",
        )


class SNIDispatcher:
    """Resolves the certificate to present for a requested hostname."""

    def __init__(
        self,
        domains: DomainSet,
        cache: CertificateCache,
        bootstrap: Optional[BootstrapCertificate] = None,
    ):
        self.domains = domains
        self.cache = cache
        self.bootstrap = bootstrap
        self._bootstrap_material: Optional[CertificateMaterial] = None

    def select(self, hostname: Optional[str]) -> Optional[CertificateMaterial]:
        """
        Select certificate material for a TLS handshake.

        Args:
            hostname: The SNI server name, or None if the client sent none

        Returns:
            CertificateMaterial, or None to use the listener's default certificate
        """
        if not hostname:
            return None
        hostname = normalize_hostname(hostname)

        if self.domains.is_managed(hostname):
            return self._lookup(hostname) or self._bootstrap()

        parent = self.domains.parent_primary(hostname)
        if parent is not None:
            return self._lookup(parent) or self._bootstrap()

        return self._lookup(hostname)

    def _lookup(self, domain: str) -> Optional[CertificateMaterial]:
        try:
            entry = self.cache.get(domain)
        except Exception as e:
            logger.warning("[SNI] Certificate lookup failed for %s: %s", domain, e)
            return None
        if entry is None:
            return None
        return CertificateMaterial.from_cached(entry)

    def _bootstrap(self) -> Optional[CertificateMaterial]:
        if self.bootstrap is None:
            return None
        if self._bootstrap_material is not None:
            return self._bootstrap_material

        try:
            cert_pem, key_pem = self.bootstrap.load_material()
            cert_der, key_der = decode_pair(cert_pem, key_pem)
        except Exception as e:
            logger.error("[SNI] Bootstrap certificate unavailable: %s", e)
            return None

        self._bootstrap_material = CertificateMaterial(
            domain="localhost",
            certificate_der=cert_der,
            private_key_der=key_der,
            certificate_pem=cert_pem,
            private_key_pem=key_pem,
            source="bootstrap",
        )
        return self._bootstrap_material


def build_server_context(cert_pem: str, key_pem: str) -> ssl.SSLContext:
    """
    Build a server SSLContext from in-memory PEM.

    ``ssl`` only loads chains from files, so the PEM is written to a
    private temp file that is removed as soon as it is loaded.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    fd, path = tempfile.mkstemp(prefix="autocert-", suffix=".pem")
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(cert_pem.rstrip("\n") + "\n")
            fh.write(key_pem)
        context.load_cert_chain(certfile=path)
    finally:
        os.unlink(path)
    return context


def build_sni_callback(
    dispatcher: SNIDispatcher,
    context_factory: Callable[[str, str], ssl.SSLContext] = build_server_context,
) -> Callable[[ssl.SSLObject, Optional[str], ssl.SSLContext], None]:
    """
    Adapt a dispatcher to ``ssl.SSLContext.sni_callback``.

    One SSLContext is built per distinct certificate and reused for later
    handshakes. When the dispatcher returns None the connection stays on
    the listener's default context.
    """
    contexts: dict[str, ssl.SSLContext] = {}
    lock = threading.Lock()

    def sni_callback(ssl_sock, server_name, initial_context):
        material = dispatcher.select(server_name)
        if material is None:
            return None

        fingerprint = material.fingerprint
        with lock:
            context = contexts.get(fingerprint)
        if context is None:
            try:
                context = context_factory(material.certificate_pem, material.private_key_pem)
            except (ssl.SSLError, OSError) as e:
                logger.error("[SNI] Cannot build TLS context for %s: %s", material.domain, e)
                return None
            with lock:
                if len(contexts) >= MAX_SSL_CONTEXTS:
                    contexts.pop(next(iter(contexts)))
                contexts[fingerprint] = context

        ssl_sock.context = context
        return None

    return sni_callback
