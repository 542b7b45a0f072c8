from __future__ import annotations

import time
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np

from .embedding_cache import EmbeddingCache
from .exceptions import AllStrategiesFailed, CoordinatorNotReady, CoreInitializationFailed, OptimizedPathFailure
from .logger import setup_logger
from .matcher import DEFAULT_THRESHOLD, validate_threshold
from .metrics import PerformanceTracker
from .strategies import MatchStrategy, StrategyResult
from .tenant import Tenant
from .types import MatchOutcome, StrategyName

if TYPE_CHECKING:
    from .attendance_service import AttendanceRecorder


class CoordinatorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    FALLBACK_ONLY = "fallback-only"
    HYBRID = "hybrid"


class ResilienceCoordinator:
    """Runs each match on the best available strategy.

    The fallback strategy must come up for the coordinator to be usable at all;
    the optimized strategy is an optional extra. In hybrid mode any optimized
    failure is retried on the fallback within the same call, so callers only
    see the ``strategy`` tag change.
    """

    def __init__(
        self,
        fallback: MatchStrategy,
        optimized: MatchStrategy | None = None,
        recorder: AttendanceRecorder | None = None,
        tracker: PerformanceTracker | None = None,
        threshold: float = DEFAULT_THRESHOLD,
        failure_limit: int = 3,
        cache: EmbeddingCache | None = None,
    ) -> None:
        self.fallback = fallback
        self.optimized = optimized
        self.recorder = recorder
        self.tracker = tracker or PerformanceTracker()
        self.threshold = validate_threshold(threshold)
        self.failure_limit = max(0, int(failure_limit))
        self.cache = cache if cache is not None else fallback.cache
        self._state = CoordinatorState.UNINITIALIZED
        self._consecutive_failures = 0
        self._optimized_error: str | None = None
        self.logger = setup_logger(self.__class__.__name__)

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is not CoordinatorState.UNINITIALIZED

    def initialize(self) -> CoordinatorState:
        try:
            self.fallback.initialize()
        except Exception as exc:
            self.logger.error("Fallback strategy failed to initialize: %s", exc)
            raise CoreInitializationFailed(f"Fallback strategy failed to initialize: {exc}") from exc

        self._state = CoordinatorState.FALLBACK_ONLY
        self._try_enable_optimized()
        self.logger.info("Coordinator ready in %s mode", self._state.value)
        return self._state

    def retry_optimized(self) -> bool:
        if not self.is_ready:
            raise CoordinatorNotReady("Call initialize() before retry_optimized().")
        if self._state is CoordinatorState.HYBRID:
            return True
        return self._try_enable_optimized()

    def _try_enable_optimized(self) -> bool:
        if self.optimized is None:
            self._optimized_error = "not configured"
            return False
        try:
            self.optimized.initialize()
        except Exception as exc:
            self._optimized_error = str(exc)
            self.logger.warning("Optimized strategy unavailable, continuing with fallback only: %s", exc)
            return False

        self._optimized_error = None
        self._consecutive_failures = 0
        self._state = CoordinatorState.HYBRID
        return True

    async def match(self, tenant: Tenant, frame: np.ndarray, threshold: float | None = None) -> MatchOutcome:
        if not self.is_ready:
            raise CoordinatorNotReady("Call initialize() before match().")

        required = self.threshold if threshold is None else validate_threshold(threshold)
        started = time.perf_counter()

        if self._state is CoordinatorState.HYBRID and self.optimized is not None:
            try:
                result = await self.optimized.run(tenant, frame, required)
            except OptimizedPathFailure as exc:
                self._note_optimized_failure(exc)
            else:
                self._consecutive_failures = 0
                return self._finish(tenant, result, StrategyName.OPTIMIZED, started)

        try:
            result = await self.fallback.run(tenant, frame, required)
        except Exception as exc:
            self.tracker.record_failure(StrategyName.FALLBACK.value)
            self.logger.error("Fallback strategy failed for %s: %s", tenant, exc)
            raise AllStrategiesFailed(f"All match strategies failed: {exc}") from exc
        return self._finish(tenant, result, StrategyName.FALLBACK, started)

    def _note_optimized_failure(self, exc: Exception) -> None:
        self.tracker.record_failure(StrategyName.OPTIMIZED.value)
        self._consecutive_failures += 1
        self.logger.warning("Optimized path failed, using fallback: %s", exc)

        if self.failure_limit and self._consecutive_failures >= self.failure_limit:
            self._state = CoordinatorState.FALLBACK_ONLY
            self._optimized_error = str(exc)
            self.logger.warning(
                "Optimized strategy demoted after %d consecutive failures", self._consecutive_failures
            )

    def _finish(self, tenant: Tenant, result: StrategyResult, strategy: StrategyName, started: float) -> MatchOutcome:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        outcome = MatchOutcome(
            member=result.member,
            confidence=result.confidence,
            strategy=strategy,
            processing_time_ms=elapsed_ms,
            reason=result.reason,
        )
        self.tracker.update(strategy.value, elapsed_ms, outcome.matched)

        if outcome.matched and self.recorder is not None:
            self.recorder.record(tenant, outcome.member.id, outcome.confidence)
        return outcome

    def active_strategies(self) -> list[MatchStrategy]:
        """Strategies a match can currently run on, in the order they are tried."""
        if not self.is_ready:
            return []
        if self._state is CoordinatorState.HYBRID and self.optimized is not None:
            return [self.optimized, self.fallback]
        return [self.fallback]

    def warm(self, tenant: Tenant) -> None:
        """Load the roster of every active strategy for ``tenant``."""
        for strategy in self.active_strategies():
            self.cache.refresh(tenant, strategy.engine_id)

    def invalidate(self, tenant: Tenant) -> None:
        self.cache.invalidate(tenant)

    def describe(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "optimized": {
                "configured": self.optimized is not None,
                "active": self._state is CoordinatorState.HYBRID,
                "consecutive_failures": self._consecutive_failures,
                "last_error": self._optimized_error,
            },
            "threshold": self.threshold,
            "performance": self.tracker.snapshot(),
            "stats": {
                str(tenant): {"count": stats.count, "age_seconds": stats.age_seconds}
                for tenant, stats in ((t, self.cache.stats(t)) for t in self.cache.tenants())
            },
        }
