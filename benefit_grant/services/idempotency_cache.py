"""
Idempotency Cache.

Process-local memory of finalized payment references. Lets repeat deliveries
short-circuit without a database round trip.

The ledger stays the source of truth: an evicted or missing entry only costs
one extra read, never a duplicate grant.
"""

import time
from collections.abc import Callable
from dataclasses import replace

from structlog import get_logger

from benefit_grant.models.domain import CacheEntry

logger = get_logger(__name__)


class IdempotencyCache:
    """
    TTL map of payment_ref -> CacheEntry.

    Entries expire `ttl_seconds` after insertion. Expired entries are dropped
    lazily on lookup and in bulk by `purge_expired`, which the grant engine
    calls from its background sweep.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive: {ttl_seconds}")
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, payment_ref: str) -> CacheEntry | None:
        """Return the live entry for a reference, if any."""
        entry = self._entries.get(payment_ref)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at_monotonic:
            del self._entries[payment_ref]
            return None
        return entry

    def put(self, payment_ref: str, entry: CacheEntry) -> CacheEntry:
        """Store an entry; its eviction deadline is set here."""
        stored = replace(entry, expires_at_monotonic=self._clock() + self._ttl)
        self._entries[payment_ref] = stored
        return stored

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [ref for ref, e in self._entries.items() if now >= e.expires_at_monotonic]
        for ref in expired:
            del self._entries[ref]
        if expired:
            logger.debug("idempotency_cache_purged", removed=len(expired), size=len(self))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, payment_ref: object) -> bool:
        return isinstance(payment_ref, str) and self.get(payment_ref) is not None

    def __len__(self) -> int:
        return len(self._entries)
