from __future__ import annotations

import math
import time

import numpy as np

from attendance_core.exceptions import StoreUnavailable, StrategyUnavailable
from attendance_core.types import FaceRegion, Member, MemberStatus

DIM = 8


def basis(index: int, dim: int = DIM) -> np.ndarray:
    vec = np.zeros(dim, dtype=np.float32)
    vec[index] = 1.0
    return vec


def at_similarity(similarity: float, dim: int = DIM) -> np.ndarray:
    """Unit vector whose cosine with ``basis(0)`` is ``similarity``."""
    vec = np.zeros(dim, dtype=np.float64)
    vec[0] = similarity
    vec[1] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return vec


def member(
    member_id: str,
    embedding,
    organization_id: str | None = "acme",
    name: str | None = None,
    engine: str = "",
) -> Member:
    return Member(
        id=member_id,
        name=name or member_id.title(),
        status=MemberStatus.ALLOWED,
        embedding=np.asarray(embedding, dtype=np.float32),
        organization_id=organization_id,
        engine=engine,
    )


class FrameEngine:
    """Detector and extractor that treat the frame itself as the face embedding.

    An empty frame holds no face.
    """

    def __init__(
        self,
        fail_init: bool = False,
        detect_error: Exception | None = None,
        delay: float = 0.0,
        engine_id: str | None = None,
    ):
        self.fail_init = fail_init
        self.detect_error = detect_error
        self.delay = delay
        if engine_id is not None:
            self.engine_id = engine_id
        self.init_calls = 0
        self.detect_calls = 0

    def initialize(self) -> None:
        self.init_calls += 1
        if self.fail_init:
            raise StrategyUnavailable("engine unavailable")

    def detect(self, frame):
        self.detect_calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.detect_error is not None:
            raise self.detect_error
        if np.asarray(frame).size == 0:
            return []
        return [FaceRegion(bbox=(10, 10, 110, 110), embedding=np.asarray(frame, dtype=np.float32))]

    def embed(self, region):
        return region.embedding


class MemoryRoster:
    def __init__(self, members=(), error: Exception | None = None, leaky: bool = False):
        self.members = list(members)
        self.error = error
        self.leaky = leaky
        self.calls = 0

    def list_members_with_embeddings(self, tenant, engine=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.leaky:
            return list(self.members)
        return [
            m
            for m in self.members
            if tenant.owns(m.organization_id) and (engine is None or m.engine == engine)
        ]


class FlakyAttendanceStore:
    """Wraps a real store and fails the first ``failures`` calls."""

    def __init__(self, inner, failures: int = 0):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    def _maybe_fail(self):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable("database is locked")

    def has_attendance_between(self, tenant, member_id, start, end):
        self._maybe_fail()
        return self.inner.has_attendance_between(tenant, member_id, start, end)

    def insert_attendance(self, tenant, member_id, confidence, timestamp):
        self._maybe_fail()
        return self.inner.insert_attendance(tenant, member_id, confidence, timestamp)


async def no_sleep(_delay: float) -> None:
    return None
