"""
Unit tests for the renewal orchestrator.

Tests: certificate checks, provisioning outcomes and domain states,
retry scheduling, per-domain serialization, sweeps and lifecycle.
Mocks: ACMEClient.provision via AsyncMock.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from autocert.acme_client import CertificateResult
from autocert.bootstrap import BootstrapCertificate
from autocert.cache import CertificateCache
from autocert.domains import DomainSet
from autocert.exceptions import ChallengeTimeout
from autocert.renewal import RenewalOrchestrator
from autocert.storage import CertificateStorage, parse_certificate


def issued(domain, pair):
    cert_pem, key_pem = pair
    return CertificateResult(
        outcome="issued",
        domain=domain,
        certificate_pem=cert_pem,
        private_key_pem=key_pem,
        expires_at=parse_certificate(cert_pem).not_after,
    )


def failed(domain):
    return CertificateResult(outcome="failed", domain=domain, error=ChallengeTimeout("too slow"))


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def storage(tmp_path):
    return CertificateStorage(tmp_path / "live")


@pytest.fixture
def client():
    mock = MagicMock()
    mock.provision = AsyncMock()
    return mock


@pytest.fixture
def orchestrator(client, storage, settings, recorded_events, tmp_path):
    emitter, _ = recorded_events
    return RenewalOrchestrator(
        client=client,
        store=storage,
        cache=CertificateCache(storage),
        domains=DomainSet(primary=["example.com"], tenants=["tenant.org"]),
        bootstrap=BootstrapCertificate(tmp_path / "bootstrap" / "cert.pem", tmp_path / "bootstrap" / "key.pem"),
        settings=settings,
        events=emitter,
    )


class TestCheckCertificate:
    """Tests for check_certificate()."""

    def test_missing(self, orchestrator):
        assert orchestrator.check_certificate("example.com") == "missing"

    def test_valid(self, orchestrator, storage, cert_factory):
        storage.write("example.com", *cert_factory("example.com", days=60))
        assert orchestrator.check_certificate("example.com") == "valid"

    def test_expiring_within_threshold(self, orchestrator, storage, cert_factory):
        """Fewer than 30 days left counts as expiring."""
        storage.write("example.com", *cert_factory("example.com", days=10))
        assert orchestrator.check_certificate("example.com") == "expiring"

    def test_unparseable(self, orchestrator, storage, cert_pair):
        storage.write("example.com", "garbage", cert_pair[1])
        assert orchestrator.check_certificate("example.com") == "error"


class TestProvisionDomain:
    """Tests for provision_domain() and ensure_certificate()."""

    @pytest.mark.asyncio
    async def test_success_stores_and_caches(self, orchestrator, client, storage, cert_pair):
        client.provision.return_value = issued("example.com", cert_pair)

        result = await orchestrator.provision_domain("example.com")

        assert result.success
        assert storage.read("example.com").cert_pem == cert_pair[0]
        assert "example.com" in orchestrator.cache
        assert orchestrator.state("example.com") == "issued"
        assert orchestrator.has_pending_retry("example.com") is False

    @pytest.mark.asyncio
    async def test_failure_marks_failed_and_schedules_retry(self, orchestrator, client, recorded_events):
        _, events = recorded_events
        client.provision.return_value = failed("example.com")

        result = await orchestrator.provision_domain("example.com")

        assert result.outcome == "failed"
        assert orchestrator.state("example.com") == "failed"
        assert orchestrator.has_pending_retry("example.com") is True
        assert any(e.component == "renewal" and e.outcome == "failure" for e in events)
        await orchestrator.stop()
        assert orchestrator.has_pending_retry("example.com") is False

    @pytest.mark.asyncio
    async def test_failures_are_counted_until_success(self, orchestrator, client, cert_pair):
        """Each failed attempt records its reason; a successful install clears the record."""
        client.provision.return_value = failed("example.com")

        await orchestrator.provision_domain("example.com")
        await orchestrator.provision_domain("example.com")

        assert orchestrator.error_count("example.com") == 2
        assert "too slow" in orchestrator.last_error("example.com")

        client.provision.return_value = issued("example.com", cert_pair)
        await orchestrator.provision_domain("example.com")

        assert orchestrator.error_count("example.com") == 0
        assert orchestrator.last_error("example.com") is None
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_install_failure_is_recorded(self, orchestrator, client, cert_pair, cert_factory):
        _, other_key = cert_factory("example.com")
        client.provision.return_value = issued("example.com", (cert_pair[0], other_key))

        await orchestrator.provision_domain("example.com")

        assert orchestrator.error_count("example.com") == 1
        assert orchestrator.last_error("example.com").startswith("install failed")
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_retry_runs_after_backoff(self, orchestrator, client, settings, cert_pair):
        """A failed attempt is retried and the retry can succeed."""
        settings.retry_backoff = 0.01
        client.provision.side_effect = [failed("example.com"), issued("example.com", cert_pair)]

        await orchestrator.provision_domain("example.com")
        await wait_for(lambda: orchestrator.state("example.com") == "issued")

        assert client.provision.await_count == 2
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_disabled_leaves_state_and_does_not_retry(self, orchestrator, client):
        client.provision.return_value = CertificateResult(outcome="disabled", domain="example.com")

        result = await orchestrator.provision_domain("example.com")

        assert result.disabled
        assert orchestrator.state("example.com") == "missing"
        assert orchestrator.has_pending_retry("example.com") is False

    @pytest.mark.asyncio
    async def test_mismatched_material_is_not_installed(self, orchestrator, client, storage, cert_pair, cert_factory):
        """Issued material that fails validation never reaches storage."""
        _, other_key = cert_factory("example.com")
        client.provision.return_value = issued("example.com", (cert_pair[0], other_key))

        await orchestrator.provision_domain("example.com")

        assert storage.read("example.com") is None
        assert orchestrator.state("example.com") == "failed"
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_same_domain_attempts_are_serialized(self, orchestrator, client, cert_pair):
        active = {"now": 0, "max": 0}

        async def provision(domain):
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0.02)
            active["now"] -= 1
            return issued(domain, cert_pair)

        client.provision.side_effect = provision
        await asyncio.gather(
            orchestrator.provision_domain("example.com"),
            orchestrator.provision_domain("example.com"),
        )

        assert active["max"] == 1

    @pytest.mark.asyncio
    async def test_different_domains_run_concurrently(self, orchestrator, client, cert_pair):
        active = {"now": 0, "max": 0}

        async def provision(domain):
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0.02)
            active["now"] -= 1
            return failed(domain)

        client.provision.side_effect = provision
        await asyncio.gather(
            orchestrator.provision_domain("example.com"),
            orchestrator.provision_domain("tenant.org"),
        )

        assert active["max"] == 2
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_ensure_skips_valid_certificate(self, orchestrator, client, storage, cert_pair):
        storage.write("example.com", *cert_pair)

        assert await orchestrator.ensure_certificate("example.com") == "valid"

        client.provision.assert_not_awaited()
        assert orchestrator.state("example.com") == "issued"

    @pytest.mark.asyncio
    async def test_ensure_renews_expiring_certificate(self, orchestrator, client, storage, cert_factory, cert_pair):
        storage.write("example.com", *cert_factory("example.com", days=5))
        client.provision.return_value = issued("example.com", cert_pair)

        assert await orchestrator.ensure_certificate("example.com") == "expiring"

        client.provision.assert_awaited_once_with("example.com")
        assert storage.read("example.com").cert_pem == cert_pair[0]

    @pytest.mark.asyncio
    async def test_renewed_callback(self, orchestrator, client, cert_pair):
        callback = AsyncMock()
        orchestrator.on_renewed = callback
        client.provision.return_value = issued("example.com", cert_pair)

        result = await orchestrator.provision_domain("example.com")

        callback.assert_awaited_once_with("example.com", result)


class TestSweeps:
    """Tests for renew_primary() and renew_tenants()."""

    @pytest.mark.asyncio
    async def test_primary_sweep_reports_status(self, orchestrator, client, storage, cert_pair, recorded_events):
        _, events = recorded_events
        storage.write("example.com", *cert_pair)

        statuses = await orchestrator.renew_primary()

        assert statuses == {"example.com": "valid"}
        status_events = [e for e in events if e.component == "cert_status"]
        assert status_events[-1].metadata == {"expiring": 0, "total": 1, "scope": "primary"}

    @pytest.mark.asyncio
    async def test_one_failing_domain_does_not_stop_others(self, orchestrator, client, cert_pair, cert_factory):
        orchestrator.domains.register("other.org")
        other = cert_factory("other.org")

        async def provision(domain):
            if domain == "tenant.org":
                raise RuntimeError("unexpected")
            return issued(domain, other)

        client.provision.side_effect = provision

        statuses = await orchestrator.renew_tenants()

        assert statuses == {"other.org": "missing", "tenant.org": "error"}
        assert orchestrator.state("other.org") == "issued"
        assert orchestrator.state("tenant.org") == "failed"
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_empty_sweep(self, client, storage, settings):
        orchestrator = RenewalOrchestrator(client, storage, CertificateCache(storage), DomainSet(), settings=settings)
        assert await orchestrator.renew_tenants() == {}

    @pytest.mark.asyncio
    async def test_add_and_remove_tenant(self, orchestrator, client, cert_factory):
        client.provision.return_value = issued("new.org", cert_factory("new.org"))

        assert orchestrator.add_tenant_domain("new.org") is True
        assert orchestrator.add_tenant_domain("new.org") is False
        await wait_for(lambda: orchestrator.state("new.org") == "issued")

        assert orchestrator.remove_tenant_domain("new.org") is True
        assert "new.org" not in orchestrator.cache
        assert orchestrator.state("new.org") == "missing"


class TestLifecycle:
    """Tests for start() and stop()."""

    @pytest.mark.asyncio
    async def test_start_creates_bootstrap_and_provisions_primary(self, orchestrator, client, cert_pair):
        client.provision.return_value = issued("example.com", cert_pair)

        orchestrator.start()
        assert orchestrator.bootstrap.exists()
        assert orchestrator.is_running

        await wait_for(lambda: orchestrator.state("example.com") == "issued")
        await orchestrator.stop()

        assert orchestrator.is_running is False

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self, orchestrator, client):
        client.provision.return_value = CertificateResult(outcome="disabled", domain="example.com")
        orchestrator.start()
        workers = list(orchestrator._workers)
        orchestrator.start()
        assert orchestrator._workers == workers
        await orchestrator.stop()
