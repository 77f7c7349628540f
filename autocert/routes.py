"""
HTTP endpoints for certificate management.

Provides:
- ACME HTTP-01 challenge serving
- Certificate status for every managed domain
- Manual renewal of a single domain
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from .challenges import CHALLENGE_PATH_PREFIX
from .manager import get_certificate_manager


logger = logging.getLogger(__name__)

# The challenge path must sit at the site root, so there is no prefix here
router = APIRouter(tags=["Certificates"])


# ============================================================================
# Response Models
# ============================================================================


class DomainStatusResponse(BaseModel):
    domain: str
    primary: bool
    state: str
    has_certificate: bool = False
    expires_at: Optional[str] = None
    days_until_expiry: Optional[int] = None
    retry_pending: bool = False
    last_error: Optional[str] = None
    error_count: int = 0


class CacheStatsResponse(BaseModel):
    entries: int
    approx_memory_bytes: int
    max_entries: int


class CertificateStatusResponse(BaseModel):
    """Certificate manager status."""

    enabled: bool
    environment: str
    directory_url: str
    running: bool
    checked_at: str
    bootstrap_ready: bool
    pending_challenges: int
    cache: CacheStatsResponse
    domains: list[DomainStatusResponse]


class RenewResponse(BaseModel):
    success: bool
    outcome: str
    message: str
    expires_at: Optional[str] = None
    error_kind: Optional[str] = None
    stage: Optional[str] = None


# ============================================================================
# ACME HTTP-01 Challenge Endpoint
# ============================================================================


@router.get(CHALLENGE_PATH_PREFIX + "{token}", response_class=PlainTextResponse)
async def acme_http_challenge(token: str):
    """
    Serve ACME HTTP-01 challenge response.

    Let's Encrypt requests this endpoint to verify domain ownership.
    """
    response = get_certificate_manager().challenges.get(token)
    if response is None:
        logger.warning("[ACME-CHALLENGE] Challenge not found for token: %s", token[:16])
        raise HTTPException(status_code=404, detail="Challenge not found")

    logger.info("[ACME-CHALLENGE] Serving HTTP-01 challenge for token: %s", token[:16])
    return PlainTextResponse(content=response)


# ============================================================================
# Certificate Status and Renewal
# ============================================================================


@router.get("/api/certs/status", response_model=CertificateStatusResponse)
async def get_certificate_status():
    """Get ACME configuration, cache usage and per-domain certificate state."""
    return get_certificate_manager().status()


@router.post("/api/certs/{domain}/renew", response_model=RenewResponse)
async def trigger_renewal(domain: str):
    """
    Manually provision a certificate for a managed domain.

    Runs the full ACME flow and waits for it to finish.
    """
    manager = get_certificate_manager()
    try:
        result = await manager.renew(domain)
    except KeyError:
        raise HTTPException(404, f"Domain is not managed: {domain}")

    if result.success:
        return RenewResponse(
            success=True,
            outcome=result.outcome,
            message="Certificate issued successfully",
            expires_at=result.expires_at.isoformat() if result.expires_at else None,
        )
    if result.disabled:
        return RenewResponse(
            success=False,
            outcome=result.outcome,
            message="ACME provisioning is disabled",
            error_kind=result.error_kind,
        )
    return RenewResponse(
        success=False,
        outcome=result.outcome,
        message=f"Renewal failed: {result.error}",
        error_kind=result.error_kind,
        stage=result.stage,
    )
