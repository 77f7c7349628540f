"""
Certificate manager.

Wires the challenge store, ACME client, persistent storage, cache,
bootstrap certificate, SNI dispatcher and renewal orchestrator into one
object the host application starts and stops with its event loop.
"""
import asyncio
import logging
import ssl
from datetime import datetime, timezone
from typing import Iterable, Optional

import httpx

from .acme_client import ACMEClient, CertificateResult
from .bootstrap import BootstrapCertificate
from .cache import CertificateCache
from .challenges import ChallengeStore, HTTPChallengeServer
from .domains import DomainSet, normalize_hostname
from .events import EventEmitter, get_event_emitter
from .exceptions import BootstrapError
from .renewal import RenewalOrchestrator
from .settings import AutocertSettings, get_settings
from .sni import CertificateMaterial, SNIDispatcher, build_sni_callback
from .storage import CertificateStorage


logger = logging.getLogger(__name__)


class CertificateManager:
    """Owns every certificate lifecycle component for one process."""

    def __init__(
        self,
        settings: Optional[AutocertSettings] = None,
        tenant_domains: Iterable[str] = (),
        events: Optional[EventEmitter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the manager.

        Args:
            settings: Configuration (defaults to the global settings)
            tenant_domains: Verified tenant domains known at startup
            events: Event emitter (defaults to the global emitter)
            transport: Optional httpx transport for the ACME client
        """
        self.settings = settings or get_settings()
        self.events = events or get_event_emitter()

        self.challenges = ChallengeStore(ttl=self.settings.challenge_ttl)
        self.storage = CertificateStorage(self.settings.get_certs_dir())
        self.cache = CertificateCache(self.storage, max_entries=self.settings.cache_max_entries)
        self.bootstrap = BootstrapCertificate(*self.settings.get_bootstrap_paths())
        self.domains = DomainSet(self.settings.primary_domains, tenant_domains)

        self.client = ACMEClient(
            settings=self.settings,
            challenge_store=self.challenges,
            events=self.events,
            transport=transport,
        )
        self.dispatcher = SNIDispatcher(self.domains, self.cache, self.bootstrap)
        self.renewal = RenewalOrchestrator(
            client=self.client,
            store=self.storage,
            cache=self.cache,
            domains=self.domains,
            bootstrap=self.bootstrap,
            settings=self.settings,
            events=self.events,
        )
        self.sni_callback = build_sni_callback(self.dispatcher)

        self._challenge_server: Optional[HTTPChallengeServer] = None
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start sweepers, the optional challenge listener and the renewal loop."""
        if self._started:
            logger.warning("[CERT-MANAGER] Already started")
            return

        self.challenges.start_sweeper(self.settings.challenge_sweep_interval)
        self.cache.start_sweeper(self.settings.cache_sweep_interval)

        if self.settings.http_challenge_port is not None:
            self._challenge_server = HTTPChallengeServer(
                store=self.challenges,
                port=self.settings.http_challenge_port,
            )
            if not await self._challenge_server.start():
                self._challenge_server = None

        # renewal.start() then finds the files already on disk
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.bootstrap.ensure)
        except BootstrapError as e:
            logger.error("[CERT-MANAGER] Bootstrap certificate unavailable: %s", e)

        self.renewal.start()
        self._started = True
        logger.info("[CERT-MANAGER] Started (ACME enabled: %s)", self.settings.enabled)

    async def stop(self) -> None:
        """Stop every background task started by ``start``."""
        await self.renewal.stop()
        self.cache.stop_sweeper()
        self.challenges.stop_sweeper()
        if self._challenge_server is not None:
            await self._challenge_server.stop()
            self._challenge_server = None
        self._started = False
        logger.info("[CERT-MANAGER] Stopped")

    def select(self, hostname: Optional[str]) -> Optional[CertificateMaterial]:
        """Select certificate material for an SNI hostname."""
        return self.dispatcher.select(hostname)

    def create_ssl_context(self) -> ssl.SSLContext:
        """
        Build the listener's server context.

        The bootstrap certificate is the default; ``sni_callback`` switches
        each handshake to the selected certificate.

        Raises:
            BootstrapError: If the bootstrap certificate cannot be produced
        """
        cert_path, key_path = self.bootstrap.ensure()
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
        context.sni_callback = self.sni_callback
        return context

    def add_domain(self, domain: str) -> bool:
        """Start managing a verified tenant domain."""
        return self.renewal.add_tenant_domain(domain)

    def remove_domain(self, domain: str) -> bool:
        """Stop managing a tenant domain. Stored files are kept."""
        return self.renewal.remove_tenant_domain(domain)

    async def renew(self, domain: str) -> CertificateResult:
        """
        Provision a managed domain now, regardless of its expiry.

        Raises:
            KeyError: If the domain is not managed
        """
        domain = normalize_hostname(domain)
        if domain not in self.domains:
            raise KeyError(domain)
        return await self.renewal.provision_domain(domain)

    def domain_status(self, domain: str) -> dict:
        domain = normalize_hostname(domain)
        info = self.storage.get_certificate_info(domain)
        return {
            "domain": domain,
            "primary": self.domains.is_primary(domain),
            "state": self.renewal.state(domain),
            "has_certificate": info is not None,
            "expires_at": info.not_after.isoformat() if info else None,
            "days_until_expiry": info.days_until_expiry() if info else None,
            "retry_pending": self.renewal.has_pending_retry(domain),
            "last_error": self.renewal.last_error(domain),
            "error_count": self.renewal.error_count(domain),
        }

    def status(self) -> dict:
        """Get a snapshot of the manager for status endpoints."""
        return {
            "enabled": self.settings.enabled,
            "environment": self.settings.environment,
            "directory_url": self.settings.resolved_directory_url(),
            "running": self._started,
            "checked_at": datetime.now(timezone.utc).isoformat(),
            "bootstrap_ready": self.bootstrap.exists(),
            "pending_challenges": len(self.challenges),
            "cache": self.cache.stats(),
            "domains": [self.domain_status(d) for d in self.domains.all()],
        }


# Global manager instance
_manager: Optional[CertificateManager] = None


def get_certificate_manager() -> CertificateManager:
    """Get the global certificate manager, creating it on first use."""
    global _manager
    if _manager is None:
        _manager = CertificateManager()
    return _manager


def set_certificate_manager(manager: Optional[CertificateManager]) -> None:
    """Replace (or with None, reset) the global certificate manager."""
    global _manager
    _manager = manager
