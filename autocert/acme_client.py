"""
ACME client for Let's Encrypt certificate provisioning.

Implements the ACME protocol (RFC 8555) issuance flow with HTTP-01
validation:

1. Fetch the directory
2. Load or create the account key and register the account
3. Create an order for the domain
4. Publish each HTTP-01 key authorization in the challenge store and
   wait for the CA to validate it
5. Finalize the order with a CSR for a fresh domain key
6. Download the certificate chain

Each stage raises its own ``ACMEError`` subclass; ``provision`` turns
those into a tagged ``CertificateResult`` instead of raising.
"""
import asyncio
import contextlib
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Literal, Optional

import httpx
import josepy as jose
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from josepy import JWKRSA

from .challenges import ChallengeStore, get_challenge_store
from .events import EventEmitter, elapsed_ms, get_event_emitter
from .exceptions import (
    ACMEError,
    AccountError,
    AuthorizationError,
    CertificateDownloadError,
    ChallengeError,
    ChallengeInvalid,
    ChallengeTimeout,
    DirectoryError,
    FinalizeError,
    NoHttp01Challenge,
    OrderError,
    OrderInvalid,
    OrderTimeout,
)
from .settings import AutocertSettings, get_settings
from .storage import atomic_write, exclusive_lock, parse_certificate


logger = logging.getLogger(__name__)

JOSE_CONTENT_TYPE = "application/jose+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"

# Used when the downloaded certificate cannot be parsed
DEFAULT_CERT_LIFETIME = timedelta(days=90)

DOMAIN_KEY_SIZE = 2048
ACCOUNT_KEY_SIZE = 2048


@dataclass
class CertificateResult:
    """Result of a provisioning attempt."""

    outcome: Literal["issued", "failed", "disabled"]
    domain: str
    certificate_pem: Optional[str] = None
    private_key_pem: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[ACMEError] = None

    @property
    def success(self) -> bool:
        return self.outcome == "issued"

    @property
    def disabled(self) -> bool:
        return self.outcome == "disabled"

    @property
    def error_kind(self) -> Optional[str]:
        if self.disabled:
            return "Disabled"
        return self.error.kind if self.error else None

    @property
    def stage(self) -> Optional[str]:
        return self.error.stage if self.error else None


@dataclass
class _ACMESession:
    """Per-attempt protocol state."""

    http: httpx.AsyncClient
    directory: dict[str, Any] = field(default_factory=dict)
    account_key: Optional[JWKRSA] = None
    account_url: Optional[str] = None


@contextlib.contextmanager
def _stage(error_cls: type[ACMEError], action: str) -> Iterator[None]:
    """Convert transport and decoding failures inside a stage into ``error_cls``."""
    try:
        yield
    except ACMEError:
        raise
    except httpx.TimeoutException as e:
        raise error_cls(f"{action} timed out: {e}", timeout=True) from e
    except httpx.HTTPError as e:
        raise error_cls(f"{action} failed: {e}") from e
    except (ValueError, KeyError, TypeError) as e:
        raise error_cls(f"{action} returned a malformed response: {e!r}") from e


def _json_object(resp: httpx.Response) -> dict[str, Any]:
    """Decode a response body that must be a JSON object."""
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _problem(resp: httpx.Response) -> Any:
    """Extract the CA's problem document (or a text excerpt) from a response."""
    try:
        return resp.json()
    except ValueError:
        return resp.text[:500] if resp.content else None


def b64url(data: bytes) -> str:
    """Base64url without padding."""
    return jose.json_util.encode_b64jose(data)


def account_jwk(account_key: JWKRSA) -> dict[str, str]:
    """Public JWK of the account key with exactly the RFC 7638 members."""
    fields = account_key.public_key().fields_to_partial_json()
    return {"e": fields["e"], "kty": "RSA", "n": fields["n"]}


def jwk_thumbprint(account_key: JWKRSA) -> str:
    """
    Compute the RFC 7638 JWK thumbprint.

    The canonical form (sorted keys, no whitespace) is built explicitly
    because the digest must match the CA's byte for byte.
    """
    canonical = json.dumps(account_jwk(account_key), sort_keys=True, separators=(",", ":"))
    return b64url(hashlib.sha256(canonical.encode("utf-8")).digest())


def key_authorization(token: str, account_key: JWKRSA) -> str:
    """Key authorization served for an HTTP-01 challenge."""
    return f"{token}.{jwk_thumbprint(account_key)}"


def _load_rsa_key(path: Path) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"Account key at {path} is not an RSA key")
    return key


def load_or_create_account_key(path: Path) -> rsa.RSAPrivateKey:
    """
    Load the ACME account key, generating and persisting it on first use.

    Creation runs under an exclusive file lock so concurrent first boots
    end up sharing one key.
    """
    if path.exists():
        return _load_rsa_key(path)

    with exclusive_lock(path.with_name(path.name + ".lock")):
        if path.exists():
            return _load_rsa_key(path)

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=ACCOUNT_KEY_SIZE)
        atomic_write(path, export_private_key(private_key), 0o600)
        logger.info("[ACME] Created and saved new ACME account key at %s", path)
        return private_key


def generate_domain_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=DOMAIN_KEY_SIZE)


def export_private_key(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def build_csr(domain: str, domain_key: rsa.RSAPrivateKey) -> bytes:
    """Build a DER-encoded PKCS#10 CSR with ``CN=<domain>``."""
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(domain)]),
            critical=False,
        )
        .sign(domain_key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.DER)


def extract_certificate_expiry(cert_pem: str, now: Optional[datetime] = None) -> datetime:
    """
    Get the leaf certificate's notAfter.

    An unparseable certificate is not fatal: the CA's default lifetime
    is assumed instead.
    """
    try:
        return parse_certificate(cert_pem).not_after
    except (ValueError, TypeError) as e:
        logger.warning("[ACME] Could not parse certificate expiry, assuming 90 days: %s", e)
        return (now or datetime.now(timezone.utc)) + DEFAULT_CERT_LIFETIME


class ACMEClient:
    """
    ACME client for Let's Encrypt certificate management.

    One instance may provision several domains concurrently; every
    ``provision`` call uses its own HTTP client and protocol state.
    """

    def __init__(
        self,
        settings: Optional[AutocertSettings] = None,
        challenge_store: Optional[ChallengeStore] = None,
        events: Optional[EventEmitter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize ACME client.

        Args:
            settings: Configuration (defaults to the global settings)
            challenge_store: Store the HTTP-01 responder reads from
            events: Event emitter for stage events
            transport: Optional httpx transport (used to stub the CA)
        """
        self.settings = settings or get_settings()
        self.challenge_store = challenge_store or get_challenge_store()
        self.events = events or get_event_emitter()
        self._transport = transport

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.http_timeout, transport=self._transport)

    async def provision(
        self,
        domain: str,
        contact_email: Optional[str] = None,
        directory_url: Optional[str] = None,
    ) -> CertificateResult:
        """
        Obtain a certificate for a domain.

        Args:
            domain: The domain to get a certificate for
            contact_email: ACME account contact (defaults to settings)
            directory_url: ACME directory (defaults to settings)

        Returns:
            CertificateResult with the certificate, a disabled marker, or the stage error
        """
        domain = domain.strip().lower()
        started_at = time.monotonic()

        if not self.settings.enabled:
            logger.info("[ACME] Provisioning disabled, skipping %s", domain)
            self.events.emit("acme_client", "provision", "disabled", None, domain=domain)
            return CertificateResult(outcome="disabled", domain=domain)

        directory_url = directory_url or self.settings.resolved_directory_url()
        contact_email = contact_email or self.settings.contact_email

        logger.info("[ACME] Starting certificate provisioning for %s", domain)

        try:
            async with self._http_client() as http:
                session = _ACMESession(http=http)
                session.directory = await self._get_directory(http, directory_url)
                session.account_key = await self._load_account_key()
                session.account_url = await self._register_account(session, contact_email)

                order_url, authorizations = await self._create_order(session, domain)
                for auth_url in authorizations:
                    await self._handle_authorization(session, auth_url, domain)

                # Key generation is CPU bound, keep it off the event loop
                loop = asyncio.get_running_loop()
                domain_key = await loop.run_in_executor(None, generate_domain_key)
                csr_der = build_csr(domain, domain_key)
                cert_url = await self._finalize_order(session, order_url, csr_der, domain)
                certificate_pem, expires_at = await self._download_certificate(session, cert_url, domain)

        except ACMEError as e:
            logger.error("[ACME] Certificate provisioning failed for %s: %s", domain, e)
            self.events.emit(
                "acme_client",
                "provision",
                "failure",
                elapsed_ms(started_at),
                domain=domain,
                failed_stage=e.stage,
                reason=str(e),
            )
            return CertificateResult(outcome="failed", domain=domain, error=e)

        logger.info("[ACME] Certificate issued for %s, expires %s", domain, expires_at.isoformat())
        self.events.emit(
            "acme_client",
            "provision",
            "success",
            elapsed_ms(started_at),
            domain=domain,
            expires_at=expires_at.isoformat(),
        )
        return CertificateResult(
            outcome="issued",
            domain=domain,
            certificate_pem=certificate_pem,
            private_key_pem=export_private_key(domain_key),
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Directory and account
    # ------------------------------------------------------------------

    async def _get_directory(self, http: httpx.AsyncClient, directory_url: str) -> dict[str, Any]:
        with _stage(DirectoryError, "Directory fetch"):
            resp = await http.get(directory_url)
            if resp.status_code != 200:
                raise DirectoryError("Directory fetch failed", status_code=resp.status_code)
            directory = _json_object(resp)
            for endpoint in ("newAccount", "newOrder", "newNonce"):
                if not isinstance(directory.get(endpoint), str):
                    raise DirectoryError(f"Directory is missing {endpoint}")
        logger.debug("[ACME] Fetched ACME directory from %s", directory_url)
        return directory

    async def _load_account_key(self) -> JWKRSA:
        path = self.settings.get_account_key_path()
        try:
            # May block on the creation lock and on key generation
            loop = asyncio.get_running_loop()
            private_key = await loop.run_in_executor(None, load_or_create_account_key, path)
        except (OSError, ValueError) as e:
            raise AccountError(f"Account key unavailable: {e}") from e
        return JWKRSA(key=private_key)

    async def _register_account(self, session: _ACMESession, contact_email: str) -> str:
        payload = {
            "termsOfServiceAgreed": True,
            "contact": [f"mailto:{contact_email}"],
        }
        with _stage(AccountError, "Account registration"):
            resp = await self._acme_post(session, session.directory["newAccount"], payload, use_jwk=True)
            if resp.status_code not in (200, 201):
                raise AccountError("Account registration failed", status_code=resp.status_code, problem=_problem(resp))
            account_url = resp.headers.get("Location")
            if not account_url:
                raise AccountError("Account response has no Location header", status_code=resp.status_code)
        logger.info("[ACME] ACME account registered/retrieved: %s", account_url)
        return account_url

    # ------------------------------------------------------------------
    # Orders and challenges
    # ------------------------------------------------------------------

    async def _create_order(self, session: _ACMESession, domain: str) -> tuple[str, list[str]]:
        payload = {"identifiers": [{"type": "dns", "value": domain}]}
        with _stage(OrderError, "Order creation"):
            resp = await self._acme_post(session, session.directory["newOrder"], payload)
            if resp.status_code != 201:
                raise OrderError("Order creation failed", status_code=resp.status_code, problem=_problem(resp))
            order_url = resp.headers.get("Location")
            authorizations = _json_object(resp)["authorizations"]
            if (
                not order_url
                or not isinstance(authorizations, list)
                or not all(isinstance(url, str) for url in authorizations)
            ):
                raise OrderError("Order response is missing Location or authorizations")
        logger.info("[ACME] Created order for %s with %s authorization(s)", domain, len(authorizations))
        return order_url, authorizations

    async def _handle_authorization(self, session: _ACMESession, auth_url: str, domain: str) -> None:
        with _stage(AuthorizationError, "Authorization fetch"):
            resp = await self._post_as_get(session, auth_url)
            if resp.status_code != 200:
                raise AuthorizationError("Authorization fetch failed", status_code=resp.status_code, problem=_problem(resp))
            auth = _json_object(resp)

            if auth.get("status") == "valid":
                logger.info("[ACME] Authorization already valid for %s", domain)
                return

            challenge = next(
                (c for c in auth.get("challenges", []) if isinstance(c, dict) and c.get("type") == "http-01"),
                None,
            )
            if challenge is None:
                raise NoHttp01Challenge(f"No http-01 challenge offered for {domain}")
            token = challenge["token"]
            challenge_url = challenge["url"]

        await self._complete_http01_challenge(session, token, challenge_url, domain)

    async def _complete_http01_challenge(
        self,
        session: _ACMESession,
        token: str,
        challenge_url: str,
        domain: str,
    ) -> None:
        started_at = time.monotonic()
        self.challenge_store.put(token, key_authorization(token, session.account_key))

        try:
            # Give the store a moment before the CA comes knocking
            await asyncio.sleep(self.settings.challenge_propagation_delay)

            with _stage(ChallengeError, "Challenge response"):
                resp = await self._acme_post(session, challenge_url, {})
                if resp.status_code not in (200, 202):
                    raise ChallengeError("Challenge response rejected", status_code=resp.status_code, problem=_problem(resp))

            await self._poll_challenge(session, challenge_url)

        except ACMEError as e:
            self.events.emit(
                "acme_client", "challenge", "failure", elapsed_ms(started_at), domain=domain, reason=str(e)
            )
            raise
        finally:
            self.challenge_store.delete(token)

        logger.info("[ACME] HTTP-01 challenge valid for %s", domain)
        self.events.emit("acme_client", "challenge", "success", elapsed_ms(started_at), domain=domain)

    async def _poll_challenge(self, session: _ACMESession, challenge_url: str) -> None:
        attempts = self.settings.poll_attempts
        for _ in range(attempts):
            await asyncio.sleep(self.settings.poll_interval)

            with _stage(ChallengeError, "Challenge poll"):
                resp = await self._post_as_get(session, challenge_url)
                if resp.status_code != 200:
                    raise ChallengeError("Challenge poll failed", status_code=resp.status_code, problem=_problem(resp))
                challenge = _json_object(resp)
                status = challenge.get("status")

            if status == "valid":
                return
            if status in ("pending", "processing"):
                continue
            if status == "invalid":
                raise ChallengeInvalid("Challenge rejected by CA", problem=challenge.get("error"))
            raise ChallengeTimeout(f"Unexpected challenge status: {status}")

        raise ChallengeTimeout(f"Challenge not validated after {attempts} attempts")

    # ------------------------------------------------------------------
    # Finalization and download
    # ------------------------------------------------------------------

    async def _finalize_order(
        self,
        session: _ACMESession,
        order_url: str,
        csr_der: bytes,
        domain: str,
    ) -> str:
        started_at = time.monotonic()
        try:
            with _stage(FinalizeError, "Order fetch"):
                resp = await self._post_as_get(session, order_url)
                if resp.status_code != 200:
                    raise FinalizeError("Order fetch failed", status_code=resp.status_code, problem=_problem(resp))
                finalize_url = _json_object(resp)["finalize"]

            logger.info("[ACME] Finalizing certificate order for %s", domain)
            with _stage(FinalizeError, "Finalize"):
                resp = await self._acme_post(session, finalize_url, {"csr": b64url(csr_der)})
                if resp.status_code != 200:
                    raise FinalizeError("Finalize rejected", status_code=resp.status_code, problem=_problem(resp))
                order = _json_object(resp)
                status = order.get("status")
                if status == "valid":
                    cert_url = order["certificate"]

            if status == "processing":
                cert_url = await self._poll_order(session, order_url)
            elif status != "valid":
                raise FinalizeError(f"Unexpected order status after finalize: {status}")

        except ACMEError as e:
            self.events.emit(
                "acme_client", "finalize", "failure", elapsed_ms(started_at), domain=domain, reason=str(e)
            )
            raise

        self.events.emit("acme_client", "finalize", "success", elapsed_ms(started_at), domain=domain)
        return cert_url

    async def _poll_order(self, session: _ACMESession, order_url: str) -> str:
        attempts = self.settings.poll_attempts
        for _ in range(attempts):
            await asyncio.sleep(self.settings.poll_interval)

            with _stage(FinalizeError, "Order poll"):
                resp = await self._post_as_get(session, order_url)
                if resp.status_code != 200:
                    raise FinalizeError("Order poll failed", status_code=resp.status_code, problem=_problem(resp))
                order = _json_object(resp)
                status = order.get("status")
                if status == "valid":
                    return order["certificate"]

            if status == "processing":
                continue
            if status == "invalid":
                raise OrderInvalid("Order rejected by CA", problem=order.get("error"))
            raise FinalizeError(f"Unexpected order status: {status}")

        raise OrderTimeout(f"Order not valid after {attempts} attempts")

    async def _download_certificate(
        self,
        session: _ACMESession,
        cert_url: str,
        domain: str,
    ) -> tuple[str, datetime]:
        started_at = time.monotonic()
        try:
            with _stage(CertificateDownloadError, "Certificate download"):
                resp = await self._post_as_get(session, cert_url, accept=PEM_CHAIN_CONTENT_TYPE)
                if resp.status_code != 200:
                    raise CertificateDownloadError(
                        "Certificate download failed", status_code=resp.status_code, problem=_problem(resp)
                    )
                certificate_pem = resp.text
        except ACMEError as e:
            self.events.emit(
                "acme_client", "download", "failure", elapsed_ms(started_at), domain=domain, reason=str(e)
            )
            raise

        expires_at = extract_certificate_expiry(certificate_pem)
        self.events.emit("acme_client", "download", "success", elapsed_ms(started_at), domain=domain)
        return certificate_pem, expires_at

    # ------------------------------------------------------------------
    # Signed requests
    # ------------------------------------------------------------------

    async def _get_nonce(self, session: _ACMESession) -> str:
        """Get a fresh nonce from the ACME server. Nonces are never reused."""
        resp = await session.http.head(session.directory["newNonce"])
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise ValueError(f"newNonce returned no Replay-Nonce (HTTP {resp.status_code})")
        return nonce

    def _sign_request(
        self,
        session: _ACMESession,
        url: str,
        nonce: str,
        payload: Optional[dict],
        use_jwk: bool = False,
    ) -> dict[str, str]:
        """
        Build the flattened JWS for a request.

        Args:
            url: The URL being requested
            nonce: Fresh replay nonce
            payload: JSON payload, or None for POST-as-GET
            use_jwk: Include full JWK instead of kid (for registration)
        """
        protected: dict[str, Any] = {
            "alg": "RS256",
            "nonce": nonce,
            "url": url,
        }
        if use_jwk:
            protected["jwk"] = account_jwk(session.account_key)
        else:
            protected["kid"] = session.account_url

        protected_b64 = b64url(json.dumps(protected).encode("utf-8"))
        payload_b64 = "" if payload is None else b64url(json.dumps(payload).encode("utf-8"))

        signing_input = f"{protected_b64}.{payload_b64}".encode("ascii")
        signature = session.account_key.key.sign(
            signing_input,
            padding.PKCS1v15(),
            hashes.SHA256(),
        )

        return {
            "protected": protected_b64,
            "payload": payload_b64,
            "signature": b64url(signature),
        }

    async def _acme_post(
        self,
        session: _ACMESession,
        url: str,
        payload: Optional[dict],
        use_jwk: bool = False,
        accept: str = "application/json",
    ) -> httpx.Response:
        nonce = await self._get_nonce(session)
        body = self._sign_request(session, url, nonce, payload, use_jwk)
        return await session.http.post(
            url,
            content=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": JOSE_CONTENT_TYPE, "Accept": accept},
        )

    async def _post_as_get(
        self,
        session: _ACMESession,
        url: str,
        accept: str = "application/json",
    ) -> httpx.Response:
        return await self._acme_post(session, url, None, accept=accept)
