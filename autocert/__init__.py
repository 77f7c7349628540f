"""
Automatic TLS certificate management.

Provides:
- Let's Encrypt certificate issuance via ACME with HTTP-01 validation
- A self-signed bootstrap certificate for immediate startup
- An in-memory certificate cache backed by on-disk storage
- SNI-based certificate selection with fallbacks
- Automatic certificate renewal
"""

from .settings import (
    AutocertSettings,
    get_settings,
    clear_settings_cache,
)
from .exceptions import AutocertError, ACMEError
from .storage import CertificateStorage, CertificateInfo
from .challenges import ChallengeStore, HTTPChallengeServer
from .acme_client import ACMEClient, CertificateResult
from .cache import CertificateCache
from .bootstrap import BootstrapCertificate
from .domains import DomainSet
from .sni import SNIDispatcher, CertificateMaterial
from .renewal import RenewalOrchestrator
from .manager import CertificateManager, get_certificate_manager

__all__ = [
    "AutocertSettings",
    "get_settings",
    "clear_settings_cache",
    "AutocertError",
    "ACMEError",
    "CertificateStorage",
    "CertificateInfo",
    "ChallengeStore",
    "HTTPChallengeServer",
    "ACMEClient",
    "CertificateResult",
    "CertificateCache",
    "BootstrapCertificate",
    "DomainSet",
    "SNIDispatcher",
    "CertificateMaterial",
    "RenewalOrchestrator",
    "CertificateManager",
    "get_certificate_manager",
]
