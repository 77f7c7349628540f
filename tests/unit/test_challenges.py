"""
Unit tests for the HTTP-01 challenge store and standalone responder.

Tests: put/get/delete, TTL expiry, sweep, aiohttp challenge handler.
"""
import pytest
from aiohttp.test_utils import TestClient, TestServer

from autocert.challenges import CHALLENGE_TTL, ChallengeStore, HTTPChallengeServer


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestChallengeStore:
    """Tests for ChallengeStore."""

    def test_put_then_get(self):
        """A stored response is returned for its token."""
        store = ChallengeStore()
        store.put("tok", "tok.thumb")
        assert store.get("tok") == "tok.thumb"

    def test_get_unknown_token(self):
        """Unknown tokens return None."""
        assert ChallengeStore().get("missing") is None

    def test_put_replaces_previous_value(self):
        store = ChallengeStore()
        store.put("tok", "first")
        store.put("tok", "second")
        assert store.get("tok") == "second"
        assert len(store) == 1

    def test_delete(self):
        """Deleted tokens are gone; deleting twice is harmless."""
        store = ChallengeStore()
        store.put("tok", "value")
        store.delete("tok")
        store.delete("tok")
        assert store.get("tok") is None

    def test_default_ttl_is_ten_minutes(self):
        assert CHALLENGE_TTL == 600
        assert ChallengeStore().ttl == 600

    def test_entry_expires_after_ttl(self):
        """An entry is retrievable just before the TTL and gone once it elapses."""
        clock = FakeClock()
        store = ChallengeStore(ttl=600, clock=clock)
        store.put("tok", "value")

        clock.now += 599
        assert store.get("tok") == "value"

        clock.now += 1
        assert store.get("tok") is None
        assert len(store) == 0

    def test_sweep_removes_only_expired(self):
        """sweep() drops expired entries and reports how many."""
        clock = FakeClock()
        store = ChallengeStore(ttl=10, clock=clock)
        store.put("old", "a")
        clock.now += 5
        store.put("new", "b")
        clock.now += 6

        assert store.sweep() == 1
        assert store.get("old") is None
        assert store.get("new") == "b"

    def test_clear(self):
        store = ChallengeStore()
        store.put("a", "1")
        store.put("b", "2")
        store.clear()
        assert len(store) == 0


class TestHTTPChallengeServer:
    """Tests for the aiohttp challenge handler."""

    @pytest.mark.asyncio
    async def test_serves_stored_response_as_plain_text(self):
        """GET /.well-known/acme-challenge/<token> returns the key authorization."""
        store = ChallengeStore()
        store.put("abc123", "abc123.thumbprint")
        server = HTTPChallengeServer(store=store)

        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/.well-known/acme-challenge/abc123")
            assert resp.status == 200
            assert resp.content_type == "text/plain"
            assert await resp.text() == "abc123.thumbprint"

    @pytest.mark.asyncio
    async def test_unknown_token_is_404(self):
        server = HTTPChallengeServer(store=ChallengeStore())

        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/.well-known/acme-challenge/nope")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_expired_token_is_404(self):
        """Expired entries are not served."""
        clock = FakeClock()
        store = ChallengeStore(ttl=1, clock=clock)
        store.put("tok", "value")
        clock.now += 2
        server = HTTPChallengeServer(store=store)

        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/.well-known/acme-challenge/tok")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_start_and_stop_on_ephemeral_port(self):
        server = HTTPChallengeServer(store=ChallengeStore(), host="127.0.0.1", port=0)
        assert await server.start() is True
        await server.stop()
        assert server._runner is None
