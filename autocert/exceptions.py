"""
Error taxonomy for certificate provisioning and serving.

ACME errors are scoped to the protocol stage that produced them so the
renewal layer and event sink can report where an attempt broke down.
"""
from typing import Any, Optional


class AutocertError(Exception):
    """Base class for all certificate manager errors."""


class ACMEError(AutocertError):
    """A provisioning stage failed."""

    stage = "unknown"

    def __init__(
        self,
        detail: str,
        status_code: Optional[int] = None,
        problem: Optional[Any] = None,
        timeout: bool = False,
    ):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.problem = problem
        self.timeout = timeout

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        parts = [self.detail]
        if self.status_code is not None:
            parts.append(f"HTTP {self.status_code}")
        if isinstance(self.problem, dict) and self.problem.get("detail"):
            parts.append(str(self.problem["detail"]))
        return " - ".join(parts)


class DirectoryError(ACMEError):
    stage = "directory"


class AccountError(ACMEError):
    stage = "account"


class OrderError(ACMEError):
    stage = "order"


class AuthorizationError(ACMEError):
    stage = "authorization"


class NoHttp01Challenge(AuthorizationError):
    """The authorization offers no http-01 challenge."""


class ChallengeError(ACMEError):
    stage = "challenge"


class ChallengeInvalid(ChallengeError):
    """The CA marked the challenge invalid."""


class ChallengeTimeout(ChallengeError):
    """The challenge did not become valid within the allowed polls."""


class FinalizeError(ACMEError):
    stage = "finalize"


class OrderInvalid(FinalizeError):
    """The CA marked the order invalid after finalization."""


class OrderTimeout(FinalizeError):
    """The order did not become valid within the allowed polls."""


class CertificateDownloadError(ACMEError):
    stage = "download"


class CertificateError(AutocertError):
    """Certificate or key material could not be decoded."""


class InvalidCertificate(CertificateError):
    pass


class InvalidPrivateKey(CertificateError):
    pass


class BootstrapError(AutocertError):
    """The self-signed fallback certificate could not be produced."""
