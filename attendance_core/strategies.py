"""Interchangeable detect -> embed -> match pipelines.

Both strategies share the pipeline in :class:`MatchStrategy` and differ only in
how they treat failures: the optimized path is time-bounded and turns any error
into :class:`OptimizedPathFailure`; the fallback path degrades an unreachable
roster to a no-match and lets anything else propagate.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np

from .embedding_cache import EmbeddingCache
from .exceptions import LowQualityFace, NoFaceDetected, OptimizedPathFailure, StoreUnavailable
from .interfaces import EmbeddingExtractor, FaceDetector, QualityValidator
from .logger import setup_logger
from .matcher import FaceMatcher
from .tenant import Tenant
from .types import CacheEntry, FaceRegion, Member, StrategyName


@dataclass(frozen=True)
class StrategyResult:
    member: Member | None
    confidence: float
    reason: str = ""


class MatchStrategy(ABC):
    name: StrategyName

    def __init__(
        self,
        detector: FaceDetector,
        extractor: EmbeddingExtractor,
        cache: EmbeddingCache,
        matcher: FaceMatcher,
        quality: QualityValidator | None = None,
    ) -> None:
        self.detector = detector
        self.extractor = extractor
        self.cache = cache
        self.matcher = matcher
        self.quality = quality
        # Rosters are built only from vectors this extractor produced.
        self.engine_id: str | None = getattr(extractor, "engine_id", None)
        self.logger = setup_logger(self.__class__.__name__)

    def initialize(self) -> None:
        self.detector.initialize()

    @abstractmethod
    async def run(self, tenant: Tenant, frame: np.ndarray, threshold: float | None = None) -> StrategyResult:
        ...

    def embed_frame(self, frame: np.ndarray) -> np.ndarray:
        """Blocking detect, quality check and embed, as used for enrollment.

        Raises NoFaceDetected or LowQualityFace; an empty array means the
        extractor could not produce a vector for the face it found.
        """
        region = self._select_face(frame, self.detector.detect(frame))
        vector = self.extractor.embed(region)
        if vector is None:
            return np.empty(0, dtype=np.float32)
        return np.asarray(vector)

    async def _run_pipeline(self, tenant: Tenant, frame: np.ndarray, threshold: float | None) -> StrategyResult:
        try:
            return await self._attempt(tenant, frame, threshold)
        except NoFaceDetected:
            return StrategyResult(None, 0.0, "no-face")
        except LowQualityFace as exc:
            self.logger.debug("Face rejected: %s", exc.reason)
            return StrategyResult(None, 0.0, f"low-quality: {exc.reason}")

    async def _attempt(self, tenant: Tenant, frame: np.ndarray, threshold: float | None) -> StrategyResult:
        regions = await asyncio.to_thread(self.detector.detect, frame)
        region = self._select_face(frame, regions)

        probe = await asyncio.to_thread(self.extractor.embed, region)
        if probe is None or np.asarray(probe).size == 0:
            return StrategyResult(None, 0.0, "embedding-unavailable")

        entry = await self._roster(tenant)
        result = self.matcher.match_entry(probe, entry, threshold)
        if result.matched:
            return StrategyResult(result.member, result.confidence)
        reason = "empty-roster" if entry.count == 0 else "below-threshold"
        return StrategyResult(None, result.confidence, reason)

    def _select_face(self, frame: np.ndarray, regions: list[FaceRegion]) -> FaceRegion:
        if not regions:
            raise NoFaceDetected("No face in frame.")

        region = regions[0]
        if self.quality is not None:
            height, width = frame.shape[:2]
            verdict = self.quality.is_acceptable(region, width, height)
            if not verdict.ok:
                raise LowQualityFace(verdict.reason)
        return region

    async def _roster(self, tenant: Tenant) -> CacheEntry:
        entry = self.cache.get(tenant, self.engine_id)
        if entry is not None:
            return entry
        return await asyncio.to_thread(self.cache.refresh, tenant, self.engine_id)


class OptimizedStrategy(MatchStrategy):
    name = StrategyName.OPTIMIZED

    def __init__(self, *args, timeout_seconds: float = 1.5, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.timeout_seconds = timeout_seconds

    async def run(self, tenant: Tenant, frame: np.ndarray, threshold: float | None = None) -> StrategyResult:
        try:
            return await asyncio.wait_for(self._run_pipeline(tenant, frame, threshold), self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise OptimizedPathFailure(f"Optimized path exceeded {self.timeout_seconds:.2f}s") from exc
        except OptimizedPathFailure:
            raise
        except Exception as exc:
            raise OptimizedPathFailure(f"Optimized path failed: {exc}") from exc


class FallbackStrategy(MatchStrategy):
    name = StrategyName.FALLBACK

    async def run(self, tenant: Tenant, frame: np.ndarray, threshold: float | None = None) -> StrategyResult:
        return await self._run_pipeline(tenant, frame, threshold)

    async def _roster(self, tenant: Tenant) -> CacheEntry:
        try:
            return await super()._roster(tenant)
        except StoreUnavailable as exc:
            self.logger.warning("Roster unavailable for %s, treating as empty: %s", tenant, exc)
            return CacheEntry(tenant=tenant, members=(), matrix=np.empty((0, 0)), engine=self.engine_id)
