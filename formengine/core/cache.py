from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from formengine.core.rules import ValidationResult


logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: str
    field_id: str
    rule_id: str
    result: ValidationResult
    expires_at: float


@dataclass(frozen=True, slots=True)
class CacheStats:
    size: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ValidationCache:
    """
    TTL memo store for rule results.

    - Entries are served only while now < expires_at.
    - Expired entries are dropped on lookup or by sweep().
    - Owned by ValidationEngine; nothing else mutates entries.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock: Clock = clock or monotonic_ms
        self._entries: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[ValidationResult]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if self._clock() >= entry.expires_at:
            del self._entries[key]
            self._misses += 1
            return None

        self._hits += 1
        return entry.result

    def set(
        self,
        key: str,
        result: ValidationResult,
        ttl_ms: float,
        *,
        field_id: str = "",
        rule_id: str = "",
    ) -> None:
        # ttl <= 0 means the rule is cheap enough to always re-run.
        if ttl_ms <= 0:
            return
        self._entries[key] = CacheEntry(
            key=key,
            field_id=field_id,
            rule_id=rule_id or result.rule_id,
            result=result,
            expires_at=self._clock() + ttl_ms,
        )

    def invalidate(self, predicate: Callable[[CacheEntry], bool]) -> int:
        """Drops every entry matching predicate, expired or not. Returns the count."""
        doomed = [k for k, e in self._entries.items() if predicate(e)]
        for k in doomed:
            del self._entries[k]
        if doomed:
            logger.debug("Invalidated %d cache entries", len(doomed))
        return len(doomed)

    def invalidate_fields(self, field_ids) -> int:
        targets = set(field_ids)
        if not targets:
            return 0
        return self.invalidate(lambda e: e.field_id in targets)

    def sweep(self, field_id: Optional[str] = None) -> int:
        """Drops expired entries (only those of `field_id` when given)."""
        now = self._clock()
        if field_id is None:
            return self.invalidate(lambda e: now >= e.expires_at)
        return self.invalidate(lambda e: e.field_id == field_id and now >= e.expires_at)

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def stats(self) -> CacheStats:
        return CacheStats(size=len(self._entries), hits=self._hits, misses=self._misses)
