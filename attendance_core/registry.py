from __future__ import annotations

from typing import Mapping

import numpy as np

from .database import SqlAlchemyStore
from .embedding_cache import EmbeddingCache
from .logger import setup_logger
from .matcher import normalize_embedding
from .tenant import Tenant
from .types import Member, MemberStatus


class MemberRegistry:
    """Enrollment-side writes that keep the embedding cache honest.

    Every successful write drops the tenant's cached roster so the next match
    refreshes and can see the change.
    """

    def __init__(self, store: SqlAlchemyStore, cache: EmbeddingCache) -> None:
        self.store = store
        self.cache = cache
        self.logger = setup_logger(self.__class__.__name__)

    def enroll(
        self,
        tenant: Tenant,
        name: str,
        embedding: np.ndarray,
        status: MemberStatus = MemberStatus.ALLOWED,
        engine: str = "",
    ) -> Member:
        return self.enroll_embeddings(tenant, name, {engine: embedding}, status)

    def enroll_embeddings(
        self,
        tenant: Tenant,
        name: str,
        embeddings: Mapping[str, np.ndarray],
        status: MemberStatus = MemberStatus.ALLOWED,
    ) -> Member:
        """Create one member with a vector per extractor engine.

        Every vector is validated before anything is written. Returns the
        member carrying the first engine's vector.
        """
        clean_name = self._clean_name(name)
        if not embeddings:
            raise ValueError("At least one embedding is required.")
        vectors = {engine: normalize_embedding(vec).astype(np.float32) for engine, vec in embeddings.items()}

        (first_engine, first_vector), *others = vectors.items()
        member = self.store.upsert_member(
            tenant, clean_name, first_vector, MemberStatus(status), engine=first_engine
        )
        for engine, vector in others:
            self.store.upsert_member(
                tenant, clean_name, vector, member.status, member_id=member.id, engine=engine
            )

        self.logger.info(
            "Enrolled member %s (%s) in %s for engines %s",
            member.name,
            member.id,
            tenant,
            ", ".join(engine or "default" for engine in vectors),
        )
        self._invalidate(tenant)
        return member

    def reenroll(self, tenant: Tenant, member_id: str, embedding: np.ndarray, engine: str = "") -> Member | None:
        existing = self.store.get_member(tenant, member_id)
        if existing is None:
            return None
        vector = normalize_embedding(embedding).astype(np.float32)
        member = self.store.upsert_member(
            tenant, existing.name, vector, existing.status, member_id=member_id, engine=engine
        )
        self.logger.info("Re-enrolled member %s in %s", member_id, tenant)
        self._invalidate(tenant)
        return member

    def update_status(self, tenant: Tenant, member_id: str, status: MemberStatus) -> bool:
        changed = self.store.update_member_status(tenant, member_id, MemberStatus(status))
        if changed:
            self._invalidate(tenant)
        return changed

    def remove(self, tenant: Tenant, member_id: str) -> bool:
        removed = self.store.delete_member(tenant, member_id)
        if removed:
            self.logger.info("Removed member %s from %s", member_id, tenant)
            self._invalidate(tenant)
        return removed

    def _invalidate(self, tenant: Tenant) -> None:
        try:
            self.cache.invalidate(tenant)
        except Exception as exc:
            self.logger.warning("Cache invalidation failed for %s: %s", tenant, exc)

    @staticmethod
    def _clean_name(name: str) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValueError("Member name cannot be empty.")
        return cleaned
