"""
ACME HTTP-01 challenge store and responder.

Holds the key authorizations the CA fetches from
``/.well-known/acme-challenge/<token>`` while an order is being
validated. Entries expire on their own after a TTL whether or not the
provisioning flow cleans them up.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .workers import PeriodicWorker


logger = logging.getLogger(__name__)

# Challenge TTL in seconds (10 minutes)
CHALLENGE_TTL = 600

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"


@dataclass
class ChallengeEntry:
    """A stored key authorization and its deadline."""

    response: str
    expires_at: float


class ChallengeStore:
    """Thread-safe, TTL-bounded token -> key authorization map."""

    def __init__(
        self,
        ttl: float = CHALLENGE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the store.

        Args:
            ttl: Seconds an entry stays retrievable after ``put``
            clock: Monotonic time source
        """
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, ChallengeEntry] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[PeriodicWorker] = None

    def put(self, token: str, response: str) -> None:
        """Store the response for a token, replacing any previous one."""
        with self._lock:
            self._entries[token] = ChallengeEntry(response, self._clock() + self.ttl)
        logger.info("[ACME-CHALLENGE] Registered HTTP-01 challenge: %s", token[:16])

    def get(self, token: str) -> Optional[str]:
        """
        Get the response for a token.

        Returns:
            The key authorization, or None if absent or expired
        """
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[token]
                logger.debug("[ACME-CHALLENGE] Challenge expired on lookup: %s", token[:16])
                return None
            return entry.response

    def delete(self, token: str) -> None:
        with self._lock:
            removed = self._entries.pop(token, None)
        if removed is not None:
            logger.info("[ACME-CHALLENGE] Cleared HTTP-01 challenge: %s", token[:16])

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [t for t, e in self._entries.items() if now >= e.expires_at]
            for token in expired:
                del self._entries[token]
        if expired:
            logger.debug("[ACME-CHALLENGE] Swept %s expired challenges", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def start_sweeper(self, interval: float = 60.0) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._sweeper is None:
            self._sweeper = PeriodicWorker("challenge-sweep", interval, self.sweep)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.stop()


# Global store for pending HTTP-01 challenges
_challenge_store = ChallengeStore()


def get_challenge_store() -> ChallengeStore:
    """Get the global challenge store."""
    return _challenge_store


class HTTPChallengeServer:
    """
    Standalone HTTP server for ACME HTTP-01 challenges.

    Used when the main application does not own port 80 and challenges
    must be answered by a separate listener.
    """

    def __init__(
        self,
        store: Optional[ChallengeStore] = None,
        host: str = "0.0.0.0",
        port: int = 80,
    ):
        """
        Initialize the challenge server.

        Args:
            store: Challenge store to answer from (defaults to the global store)
            host: Host to bind to
            port: Port to bind to (usually 80 for HTTP-01)
        """
        self.store = store or _challenge_store
        self.host = host
        self.port = port
        self._runner = None
        self._site = None

    def build_app(self):
        """Build the aiohttp application serving the challenge route."""
        from aiohttp import web

        app = web.Application()
        app.router.add_get(
            CHALLENGE_PATH_PREFIX + "{token}",
            self._handle_challenge,
        )
        return app

    async def start(self) -> bool:
        """Start the HTTP challenge server."""
        from aiohttp import web

        try:
            self._runner = web.AppRunner(self.build_app())
            await self._runner.setup()

            self._site = web.TCPSite(self._runner, self.host, self.port)
            await self._site.start()

            logger.info("[ACME-CHALLENGE] HTTP challenge server started on %s:%s", self.host, self.port)
            return True

        except OSError as e:
            logger.error("[ACME-CHALLENGE] Failed to start challenge server on port %s: %s", self.port, e)
            if self._runner is not None:
                await self._runner.cleanup()
                self._runner = None
            return False

    async def stop(self) -> None:
        """Stop the HTTP challenge server."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("[ACME-CHALLENGE] HTTP challenge server stopped")

    async def _handle_challenge(self, request):
        """Handle an ACME challenge request."""
        from aiohttp import web

        token = request.match_info["token"]
        response = self.store.get(token)

        if response is None:
            logger.warning("[ACME-CHALLENGE] Challenge not found for token: %s", token[:16])
            raise web.HTTPNotFound()

        logger.info("[ACME-CHALLENGE] Serving challenge response for token: %s", token[:16])
        return web.Response(text=response, content_type="text/plain")
