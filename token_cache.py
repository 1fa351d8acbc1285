# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Token Cache
Caches delegated access tokens keyed by (identity, scope).

The cache is process-local. Multiple replicas each keep their own copy and
will each run the exchange once per identity and scope.
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Iterator, Protocol

logger = logging.getLogger(__name__)

# Tokens expiring within this window are treated as already expired
SAFETY_BUFFER_MS = 5 * 60 * 1000

Clock = Callable[[], int]
CacheKey = tuple[str, str]


def now_ms() -> int:
    """Current time in milliseconds since epoch."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CachedToken:
    """A bearer token and its absolute expiry in milliseconds since epoch."""

    access_token: str
    expires_at: int

    def is_valid(self, now: int, buffer_ms: int = SAFETY_BUFFER_MS) -> bool:
        return self.expires_at > now + buffer_ms


class TokenStore(Protocol):
    """Backing storage for TokenCache."""

    def get(self, key: CacheKey) -> CachedToken | None: ...

    def set(self, key: CacheKey, token: CachedToken) -> None: ...

    def delete(self, key: CacheKey) -> None: ...

    def keys(self) -> Iterator[CacheKey]: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    """Dict-backed token store."""

    def __init__(self) -> None:
        self._tokens: dict[CacheKey, CachedToken] = {}

    def get(self, key: CacheKey) -> CachedToken | None:
        return self._tokens.get(key)

    def set(self, key: CacheKey, token: CachedToken) -> None:
        self._tokens[key] = token

    def delete(self, key: CacheKey) -> None:
        self._tokens.pop(key, None)

    def keys(self) -> Iterator[CacheKey]:
        return iter(list(self._tokens.keys()))

    def clear(self) -> None:
        self._tokens.clear()


class TokenCache:
    """
    Cache of delegated access tokens.

    T1 and T2 are scope-independent but the final agent token is bound to
    its scope, so entries are keyed by both identity and scope.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        store: TokenStore | None = None,
        safety_buffer_ms: int = SAFETY_BUFFER_MS,
    ):
        self._clock = clock or now_ms
        self._store = store if store is not None else MemoryTokenStore()
        self._buffer_ms = safety_buffer_ms
        self._lock = Lock()

    def now(self) -> int:
        return self._clock()

    def get(self, identity: str, scope: str) -> CachedToken | None:
        """
        Retrieve a usable cached token.

        Args:
            identity: Agent UPN the token was issued for
            scope: Scope the token was issued for

        Returns:
            The cached token, or None if absent or within the safety buffer of expiry
        """
        key = (identity, scope)
        with self._lock:
            token = self._store.get(key)

        if token is None:
            logger.debug(f"No cached token for {identity}|{scope}")
            return None

        if not token.is_valid(self.now(), self._buffer_ms):
            logger.debug(f"Cached token for {identity}|{scope} is expired or about to expire")
            return None

        return token

    def put(self, identity: str, scope: str, token: CachedToken) -> None:
        """Store a token, replacing any previous entry for the same key."""
        with self._lock:
            self._store.set((identity, scope), token)
        logger.debug(f"Cached token for {identity}|{scope}")

    def invalidate(self, identity: str | None = None, scope: str | None = None) -> int:
        """
        Remove cached tokens.

        With an identity and scope, removes that entry. With only an identity,
        removes every scope for that identity. With neither, clears the cache.

        Returns:
            Number of entries removed
        """
        with self._lock:
            if identity is None:
                removed = sum(1 for _ in self._store.keys())
                self._store.clear()
                logger.debug("Token cache cleared")
                return removed

            keys = [
                key for key in self._store.keys()
                if key[0] == identity and (scope is None or key[1] == scope)
            ]
            for key in keys:
                self._store.delete(key)

        logger.debug(f"Invalidated {len(keys)} cached token(s) for {identity}")
        return len(keys)

    def stats(self) -> dict:
        """Entry count and the identities that currently have cached tokens."""
        with self._lock:
            keys = list(self._store.keys())
        identities = sorted({identity for identity, _ in keys if identity})
        return {"count": len(keys), "identities": identities}
