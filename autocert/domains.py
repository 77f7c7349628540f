"""Set of hostnames the manager holds certificates for."""
import threading
from typing import Iterable, Optional


def normalize_hostname(hostname: str) -> str:
    return hostname.strip().lower().rstrip(".")


class DomainSet:
    """
    Primary domains (fixed at startup) plus tenant domains registered at runtime.

    Each domain renews independently; subdomains of a primary domain share
    the primary's certificate when served over SNI.
    """

    def __init__(self, primary: Iterable[str] = (), tenants: Iterable[str] = ()):
        self._primary: tuple[str, ...] = tuple(
            dict.fromkeys(normalize_hostname(d) for d in primary if d.strip())
        )
        self._tenants: set[str] = {normalize_hostname(d) for d in tenants if d.strip()}
        self._lock = threading.Lock()

    @property
    def primary(self) -> tuple[str, ...]:
        return self._primary

    @property
    def tenants(self) -> list[str]:
        with self._lock:
            return sorted(self._tenants)

    def register(self, domain: str) -> bool:
        """Add a tenant domain. Returns False if it was already managed."""
        domain = normalize_hostname(domain)
        if not domain or domain in self._primary:
            return False
        with self._lock:
            if domain in self._tenants:
                return False
            self._tenants.add(domain)
            return True

    def unregister(self, domain: str) -> bool:
        with self._lock:
            try:
                self._tenants.remove(normalize_hostname(domain))
                return True
            except KeyError:
                return False

    def is_primary(self, hostname: str) -> bool:
        return normalize_hostname(hostname) in self._primary

    def is_tenant(self, hostname: str) -> bool:
        with self._lock:
            return normalize_hostname(hostname) in self._tenants

    def is_managed(self, hostname: str) -> bool:
        return self.is_primary(hostname) or self.is_tenant(hostname)

    def parent_primary(self, hostname: str) -> Optional[str]:
        """
        Get the primary domain a hostname is a subdomain of.

        The longest matching primary wins, so ``a.b.example.com`` prefers
        ``b.example.com`` over ``example.com`` when both are primary.
        """
        hostname = normalize_hostname(hostname)
        matches = [d for d in self._primary if hostname.endswith("." + d)]
        if not matches:
            return None
        return max(matches, key=len)

    def all(self) -> list[str]:
        return list(self._primary) + self.tenants

    def __contains__(self, hostname: str) -> bool:
        return self.is_managed(hostname)

    def __len__(self) -> int:
        with self._lock:
            return len(self._primary) + len(self._tenants)
