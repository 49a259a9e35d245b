"""In-memory cache of recently revoked refresh tokens.

WHAT:
    Remembers, per (vendor, client id), when a refresh token was found
    revoked. Lookups inside the TTL short-circuit the token manager so a
    dashboard with several widgets does not hit the OAuth endpoint once
    per widget after the user revoked access.

WHY:
    The cache is an optimization, not a source of truth: the stored tokens
    are already wiped when an entry is created. It is process-local and
    unsynchronized; two concurrent requests may both miss and both call
    the vendor, which costs one redundant call at worst.

REFERENCES:
    - app/services/token_service.py (TokenRefreshManager)
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

REVOKED_TOKEN_TTL_SECONDS = 10 * 60


class RevokedTokenCache:
    """Keyed revocation timestamps with lazy TTL expiry.

    Args:
        ttl_seconds: How long a revocation short-circuits refresh attempts.
        clock: Returns the current time in seconds; tests pass a fake.
    """

    def __init__(
        self,
        ttl_seconds: float = REVOKED_TOKEN_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[Tuple[str, str], float] = {}

    def mark_revoked(self, vendor: str, client_id: str) -> None:
        self._entries[(vendor, str(client_id))] = self._clock()
        logger.info("[REVOKED_CACHE] Cached revocation for %s client %s", vendor, client_id)

    def is_revoked(self, vendor: str, client_id: str) -> bool:
        """True while the cached revocation is younger than the TTL.

        Expired entries are deleted on lookup.
        """
        key = (vendor, str(client_id))
        revoked_at = self._entries.get(key)
        if revoked_at is None:
            return False
        if self._clock() - revoked_at < self.ttl_seconds:
            return True
        del self._entries[key]
        return False

    def forget(self, vendor: str, client_id: str) -> None:
        """Drop an entry, e.g. after the user reconnected."""
        self._entries.pop((vendor, str(client_id)), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# Shared by every request in this process
revoked_token_cache = RevokedTokenCache()
