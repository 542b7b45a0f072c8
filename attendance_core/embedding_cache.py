from __future__ import annotations

import threading
import time
from collections import Counter
from typing import Callable, Iterable

import numpy as np

from .exceptions import InvalidEmbedding, StoreUnavailable
from .interfaces import MemberSource
from .logger import setup_logger
from .matcher import normalize_embedding
from .tenant import Tenant
from .types import CacheEntry, CacheStats, Member


class EmbeddingCache:
    """Per-tenant in-memory roster of enrolled embeddings.

    Entries are immutable snapshots keyed by tenant and extractor engine.
    ``refresh`` and ``invalidate`` swap dict slots under a lock, so a reader
    holding an entry always sees a complete roster even while another session
    refreshes the same tenant. A refresh that overlaps an invalidation of its
    tenant still answers its own caller but is never installed.
    """

    def __init__(
        self,
        source: MemberSource,
        max_age_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.source = source
        self.max_age_seconds = max(0.0, float(max_age_seconds))
        self._clock = clock
        self._entries: dict[tuple[Tenant, str | None], CacheEntry] = {}
        self._generations: dict[Tenant, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def refresh(self, tenant: Tenant, engine: str | None = None) -> CacheEntry:
        with self._lock:
            token = self._token(tenant)
        try:
            rows = list(self.source.list_members_with_embeddings(tenant, engine=engine))
        except StoreUnavailable:
            self.logger.warning("Roster refresh failed for %s: store unavailable", tenant)
            raise
        except Exception as exc:
            self.logger.warning("Roster refresh failed for %s: %s", tenant, exc)
            raise StoreUnavailable(f"Failed to load roster for {tenant}: {exc}") from exc

        members, vectors = self._usable_rows(tenant, engine, rows)
        if vectors:
            matrix = np.vstack(vectors)
        else:
            matrix = np.empty((0, 0), dtype=np.float64)

        entry = CacheEntry(
            tenant=tenant,
            members=tuple(members),
            matrix=matrix,
            fetched_at=self._clock(),
            engine=engine,
        )
        with self._lock:
            current = self._token(tenant) == token
            if current:
                self._entries[(tenant, engine)] = entry

        if current:
            self.logger.info("Cached %d embeddings for %s", entry.count, self._label(tenant, engine))
        else:
            self.logger.info("Discarded roster for %s: invalidated while loading", self._label(tenant, engine))
        return entry

    def get(self, tenant: Tenant, engine: str | None = None) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get((tenant, engine))
        if entry is None:
            return None
        if self.max_age_seconds and (self._clock() - entry.fetched_at) > self.max_age_seconds:
            self.logger.info("Cache entry for %s expired", self._label(tenant, engine))
            return None
        return entry

    def get_or_refresh(self, tenant: Tenant, engine: str | None = None) -> CacheEntry:
        entry = self.get(tenant, engine)
        if entry is not None:
            return entry
        return self.refresh(tenant, engine)

    def invalidate(self, tenant: Tenant) -> None:
        """Drop every roster cached for ``tenant``, whatever engine built it."""
        with self._lock:
            self._generations[tenant] = self._generations.get(tenant, 0) + 1
            keys = [key for key in self._entries if key[0] == tenant]
            for key in keys:
                del self._entries[key]
        if keys:
            self.logger.info("Invalidated cache for %s", tenant)

    def invalidate_all(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()
        self.logger.info("Cleared all cached rosters")

    def tenants(self) -> list[Tenant]:
        with self._lock:
            return list(dict.fromkeys(tenant for tenant, _ in self._entries))

    def stats(self, tenant: Tenant, engine: str | None = None) -> CacheStats:
        """Count and age of one roster.

        Without ``engine`` this summarizes all of the tenant's rosters: the
        largest member count and the oldest age.
        """
        with self._lock:
            if engine is not None:
                entries = [entry for key, entry in self._entries.items() if key == (tenant, engine)]
            else:
                entries = [entry for key, entry in self._entries.items() if key[0] == tenant]
        if not entries:
            return CacheStats(count=0, age_seconds=None)
        now = self._clock()
        return CacheStats(
            count=max(entry.count for entry in entries),
            age_seconds=max(0.0, max(now - entry.fetched_at for entry in entries)),
        )

    def _token(self, tenant: Tenant) -> tuple[int, int]:
        return self._epoch, self._generations.get(tenant, 0)

    @staticmethod
    def _label(tenant: Tenant, engine: str | None) -> str:
        return f"{tenant} [{engine}]" if engine else str(tenant)

    def _usable_rows(
        self,
        tenant: Tenant,
        engine: str | None,
        rows: Iterable[Member],
    ) -> tuple[list[Member], list[np.ndarray]]:
        candidates: list[tuple[Member, np.ndarray]] = []
        dropped = 0
        for member in rows:
            if not tenant.owns(member.organization_id):
                dropped += 1
                continue
            if engine is not None and member.engine != engine:
                dropped += 1
                continue
            try:
                vector = normalize_embedding(member.embedding)
            except InvalidEmbedding:
                dropped += 1
                continue
            candidates.append((member, vector))

        if candidates:
            # One roster, one dimensionality: keep the dominant embedding size.
            dimension, _ = Counter(vec.size for _, vec in candidates).most_common(1)[0]
            kept = [(m, v) for m, v in candidates if v.size == dimension]
            dropped += len(candidates) - len(kept)
            candidates = kept

        if dropped:
            self.logger.warning("Dropped %d unusable roster rows for %s", dropped, self._label(tenant, engine))
        return [m for m, _ in candidates], [v for _, v in candidates]
