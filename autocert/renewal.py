"""
Automatic certificate provisioning and renewal.

Drives each managed domain through
``missing -> provisioning -> issued -> expiring -> provisioning -> ...``.
On startup the bootstrap certificate is created first so the listener
can come up immediately; real provisioning follows after a short delay
and periodic checks re-issue certificates that are close to expiry.
Every domain is provisioned independently and failures are retried on
a fixed backoff.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Literal, Optional

from .acme_client import ACMEClient, CertificateResult
from .bootstrap import BootstrapCertificate
from .cache import CertificateCache
from .domains import DomainSet, normalize_hostname
from .events import EventEmitter, elapsed_ms, get_event_emitter
from .exceptions import AutocertError, BootstrapError
from .settings import AutocertSettings, get_settings
from .storage import CertificateStore, parse_certificate
from .workers import PeriodicWorker


logger = logging.getLogger(__name__)

CheckStatus = Literal["valid", "missing", "expiring", "error"]
DomainState = Literal["missing", "provisioning", "issued", "expiring", "failed"]

RenewalCallback = Callable[[str, CertificateResult], Awaitable[None]]


class RenewalOrchestrator:
    """Schedules first-time provisioning and renewals for a DomainSet."""

    def __init__(
        self,
        client: ACMEClient,
        store: CertificateStore,
        cache: CertificateCache,
        domains: DomainSet,
        bootstrap: Optional[BootstrapCertificate] = None,
        settings: Optional[AutocertSettings] = None,
        events: Optional[EventEmitter] = None,
        on_renewed: Optional[RenewalCallback] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            client: ACME client used for (re-)issuance
            store: Persistent store receiving issued certificates
            cache: Certificate cache refreshed after issuance
            domains: Domains to keep certificates for
            bootstrap: Fallback certificate created on start
            settings: Schedule configuration
            events: Event emitter
            on_renewed: Async callback run after each successful issuance
        """
        self.client = client
        self.store = store
        self.cache = cache
        self.domains = domains
        self.bootstrap = bootstrap
        self.settings = settings or get_settings()
        self.events = events or get_event_emitter()
        self.on_renewed = on_renewed

        self._locks: dict[str, asyncio.Lock] = {}
        self._states: dict[str, DomainState] = {}
        self._last_errors: dict[str, str] = {}
        self._error_counts: dict[str, int] = {}
        self._retry_tasks: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._workers: list[PeriodicWorker] = []
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    def state(self, domain: str) -> DomainState:
        return self._states.get(normalize_hostname(domain), "missing")

    def states(self) -> dict[str, DomainState]:
        return {domain: self.state(domain) for domain in self.domains.all()}

    def last_error(self, domain: str) -> Optional[str]:
        """Reason for the most recent failed attempt, cleared by a successful install."""
        return self._last_errors.get(normalize_hostname(domain))

    def error_count(self, domain: str) -> int:
        """Failed attempts since the last successful install."""
        return self._error_counts.get(normalize_hostname(domain), 0)

    def has_pending_retry(self, domain: str) -> bool:
        task = self._retry_tasks.get(normalize_hostname(domain))
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Per-domain operations
    # ------------------------------------------------------------------

    def check_certificate(self, domain: str) -> CheckStatus:
        """
        Check the stored certificate for a domain.

        Returns:
            "valid", "missing", "expiring" (fewer than
            ``renew_days_before_expiry`` days left) or "error"
        """
        domain = normalize_hostname(domain)
        try:
            stored = self.store.read(domain)
        except OSError as e:
            logger.warning("[RENEWAL] Error reading certificate for %s: %s", domain, e)
            return "error"
        if stored is None:
            return "missing"

        try:
            info = parse_certificate(stored.cert_pem)
        except ValueError as e:
            logger.warning("[RENEWAL] Error parsing certificate for %s: %s", domain, e)
            return "error"

        days_left = info.days_until_expiry()
        if days_left < self.settings.renew_days_before_expiry:
            logger.info("[RENEWAL] Certificate for %s expires in %s days", domain, days_left)
            return "expiring"
        return "valid"

    async def ensure_certificate(self, domain: str) -> CheckStatus:
        """
        Provision a domain unless it already has a valid certificate.

        Missing, expiring and unreadable certificates are all handled the
        same way: a new certificate is requested.
        """
        domain = normalize_hostname(domain)
        status = self.check_certificate(domain)
        self.events.emit("renewal", "check", status, None, domain=domain)

        if status == "valid":
            self._states[domain] = "issued"
            logger.debug("[RENEWAL] Certificate for %s is valid", domain)
            return status

        if status == "expiring":
            self._states[domain] = "expiring"
        logger.info("[RENEWAL] Certificate for %s is %s, provisioning", domain, status)
        await self.provision_domain(domain)
        return status

    async def provision_domain(self, domain: str) -> CertificateResult:
        """
        Run the ACME flow for a domain and install the result.

        Attempts for the same domain are serialized; different domains
        proceed concurrently.
        """
        domain = normalize_hostname(domain)
        lock = self._locks.setdefault(domain, asyncio.Lock())

        async with lock:
            previous = self._states.get(domain, "missing")
            self._states[domain] = "provisioning"
            started_at = time.monotonic()

            try:
                result = await self.client.provision(domain)
            except Exception as e:
                self._fail(domain, started_at, f"unexpected error: {e}")
                raise

            if result.disabled:
                self._states[domain] = previous
                logger.info("[RENEWAL] Provisioning disabled, %s left as %s", domain, previous)
                return result

            if result.success:
                try:
                    self.cache.put(domain, result.certificate_pem, result.private_key_pem)
                    self.store.write(domain, result.certificate_pem, result.private_key_pem)
                except (OSError, AutocertError) as e:
                    logger.error("[RENEWAL] Failed to install certificate for %s: %s", domain, e)
                    self._fail(domain, started_at, f"install failed: {e}")
                    return result

                self._states[domain] = "issued"
                self._last_errors.pop(domain, None)
                self._error_counts.pop(domain, None)
                logger.info(
                    "[RENEWAL] Certificate for %s installed, expires %s",
                    domain,
                    result.expires_at.isoformat() if result.expires_at else "unknown",
                )
                self.events.emit(
                    "renewal",
                    "provision",
                    "success",
                    elapsed_ms(started_at),
                    domain=domain,
                    expires_at=result.expires_at.isoformat() if result.expires_at else None,
                )
            else:
                logger.error("[RENEWAL] Provisioning failed for %s: %s", domain, result.error)
                self._fail(domain, started_at, str(result.error))
                return result

        if self.on_renewed is not None:
            try:
                await self.on_renewed(domain, result)
            except Exception as e:
                logger.error("[RENEWAL] Renewal callback failed for %s: %s", domain, e)
        return result

    def _fail(self, domain: str, started_at: float, reason: str) -> None:
        self._states[domain] = "failed"
        self._last_errors[domain] = reason
        self._error_counts[domain] = self._error_counts.get(domain, 0) + 1
        self.events.emit("renewal", "provision", "failure", elapsed_ms(started_at), domain=domain, reason=reason)
        self._schedule_retry(domain)

    def _schedule_retry(self, domain: str) -> None:
        if self.has_pending_retry(domain):
            return
        logger.info("[RENEWAL] Retrying %s in %s seconds", domain, self.settings.retry_backoff)
        self._retry_tasks[domain] = self._spawn(self._retry_later(domain), f"retry-{domain}")

    async def _retry_later(self, domain: str) -> None:
        await asyncio.sleep(self.settings.retry_backoff)
        # Drop our own handle so a failure below can schedule the next retry
        self._retry_tasks.pop(domain, None)
        await self.ensure_certificate(domain)

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._guarded(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro: Awaitable[None], name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[RENEWAL] Background task %s failed: %s", name, e)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def _sweep(self, domains: list[str], label: str) -> dict[str, CheckStatus]:
        if not domains:
            return {}

        results = await asyncio.gather(
            *(self.ensure_certificate(domain) for domain in domains),
            return_exceptions=True,
        )

        statuses: dict[str, CheckStatus] = {}
        for domain, outcome in zip(domains, results):
            if isinstance(outcome, BaseException):
                logger.error("[RENEWAL] Renewal check for %s raised: %s", domain, outcome)
                statuses[domain] = "error"
            else:
                statuses[domain] = outcome

        needing_work = sum(1 for s in statuses.values() if s != "valid")
        self.events.cert_status(needing_work, len(domains), scope=label)
        return statuses

    async def renew_primary(self) -> dict[str, CheckStatus]:
        """Check every primary domain and re-issue where needed."""
        logger.info("[RENEWAL] Checking primary domain certificates")
        return await self._sweep(list(self.domains.primary), "primary")

    async def renew_tenants(self) -> dict[str, CheckStatus]:
        """Check every tenant domain and re-issue where needed."""
        logger.info("[RENEWAL] Checking tenant domain certificates")
        return await self._sweep(self.domains.tenants, "tenant")

    def add_tenant_domain(self, domain: str) -> bool:
        """
        Register a verified tenant domain and provision it in the background.

        Returns:
            False if the domain was already managed
        """
        domain = normalize_hostname(domain)
        if not self.domains.register(domain):
            return False
        self._spawn(self.ensure_certificate(domain), f"provision-{domain}")
        return True

    def remove_tenant_domain(self, domain: str) -> bool:
        domain = normalize_hostname(domain)
        removed = self.domains.unregister(domain)
        if removed:
            self.cache.delete(domain)
            self._states.pop(domain, None)
            self._last_errors.pop(domain, None)
            self._error_counts.pop(domain, None)
            task = self._retry_tasks.pop(domain, None)
            if task is not None:
                task.cancel()
        return removed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _initial_provisioning(self) -> None:
        await asyncio.sleep(self.settings.startup_delay)
        await self.renew_primary()

    def start(self) -> None:
        """
        Start provisioning without blocking the caller.

        Must be called from a running event loop.
        """
        if self._started:
            logger.warning("[RENEWAL] Orchestrator already running")
            return

        if self.bootstrap is not None:
            try:
                self.bootstrap.ensure()
            except BootstrapError as e:
                logger.error("[RENEWAL] Bootstrap certificate unavailable: %s", e)

        self._spawn(self._initial_provisioning(), "initial-provisioning")
        self._workers = [
            PeriodicWorker("primary-renewal", self.settings.renewal_check_interval, self.renew_primary),
            PeriodicWorker("tenant-renewal", self.settings.tenant_sweep_interval, self.renew_tenants),
        ]
        for worker in self._workers:
            worker.start()

        self._started = True
        logger.info(
            "[RENEWAL] Orchestrator started for %s primary and %s tenant domain(s)",
            len(self.domains.primary),
            len(self.domains.tenants),
        )

    async def stop(self) -> None:
        """Cancel all workers, pending retries and in-flight background tasks."""
        for worker in self._workers:
            worker.stop()
        self._workers = []

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._retry_tasks.clear()

        self._started = False
        logger.info("[RENEWAL] Orchestrator stopped")
