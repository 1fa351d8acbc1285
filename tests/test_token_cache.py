"""
Unit tests for the (identity, scope) token cache.
"""

from token_cache import SAFETY_BUFFER_MS, CachedToken, MemoryTokenStore, TokenCache


class TestCachedToken:
    def test_valid_outside_buffer(self):
        token = CachedToken("abc", expires_at=10_000_000)
        assert token.is_valid(now=10_000_000 - SAFETY_BUFFER_MS - 1)

    def test_invalid_at_buffer_boundary(self):
        token = CachedToken("abc", expires_at=10_000_000)
        assert not token.is_valid(now=10_000_000 - SAFETY_BUFFER_MS)


class TestTokenCache:
    def test_get_missing_returns_none(self, clock):
        cache = TokenCache(clock=clock)
        assert cache.get("agent@contoso.com", "scope-a") is None

    def test_put_then_get(self, clock):
        cache = TokenCache(clock=clock)
        token = CachedToken("abc", expires_at=clock.now + 60 * 60 * 1000)

        cache.put("agent@contoso.com", "scope-a", token)

        assert cache.get("agent@contoso.com", "scope-a") == token

    def test_entries_are_keyed_by_scope(self, clock):
        cache = TokenCache(clock=clock)
        cache.put("agent@contoso.com", "scope-a", CachedToken("a", clock.now + 3_600_000))

        assert cache.get("agent@contoso.com", "scope-b") is None
        assert cache.get("other@contoso.com", "scope-a") is None

    def test_token_inside_safety_buffer_is_not_returned(self, clock):
        cache = TokenCache(clock=clock)
        cache.put("agent@contoso.com", "scope-a", CachedToken("a", clock.now + 3_600_000))

        clock.advance(56 * 60 * 1000)

        assert cache.get("agent@contoso.com", "scope-a") is None

    def test_custom_buffer(self, clock):
        cache = TokenCache(clock=clock, safety_buffer_ms=0)
        cache.put("agent@contoso.com", "scope-a", CachedToken("a", clock.now + 1000))

        clock.advance(999)

        assert cache.get("agent@contoso.com", "scope-a") is not None

    def test_put_replaces_entry(self, clock):
        cache = TokenCache(clock=clock)
        cache.put("agent@contoso.com", "scope-a", CachedToken("old", clock.now + 3_600_000))
        cache.put("agent@contoso.com", "scope-a", CachedToken("new", clock.now + 3_600_000))

        assert cache.get("agent@contoso.com", "scope-a").access_token == "new"
        assert cache.stats()["count"] == 1

    def test_invalidate_single_entry(self, clock):
        cache = TokenCache(clock=clock)
        cache.put("agent@contoso.com", "scope-a", CachedToken("a", clock.now + 3_600_000))
        cache.put("agent@contoso.com", "scope-b", CachedToken("b", clock.now + 3_600_000))

        assert cache.invalidate("agent@contoso.com", "scope-a") == 1
        assert cache.get("agent@contoso.com", "scope-a") is None
        assert cache.get("agent@contoso.com", "scope-b") is not None

    def test_invalidate_identity(self, clock):
        cache = TokenCache(clock=clock)
        cache.put("agent@contoso.com", "scope-a", CachedToken("a", clock.now + 3_600_000))
        cache.put("agent@contoso.com", "scope-b", CachedToken("b", clock.now + 3_600_000))
        cache.put("other@contoso.com", "scope-a", CachedToken("c", clock.now + 3_600_000))

        assert cache.invalidate("agent@contoso.com") == 2
        assert cache.stats() == {"count": 1, "identities": ["other@contoso.com"]}

    def test_invalidate_all(self, clock):
        cache = TokenCache(clock=clock)
        cache.put("agent@contoso.com", "scope-a", CachedToken("a", clock.now + 3_600_000))
        cache.put("other@contoso.com", "scope-a", CachedToken("c", clock.now + 3_600_000))

        assert cache.invalidate() == 2
        assert cache.stats() == {"count": 0, "identities": []}

    def test_injected_store_is_used(self, clock):
        store = MemoryTokenStore()
        cache = TokenCache(clock=clock, store=store)

        cache.put("agent@contoso.com", "scope-a", CachedToken("a", clock.now + 3_600_000))

        assert list(store.keys()) == [("agent@contoso.com", "scope-a")]
