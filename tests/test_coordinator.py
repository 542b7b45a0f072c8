import asyncio

import numpy as np
import pytest

from attendance_core.attendance_service import AttendanceRecorder
from attendance_core.coordinator import CoordinatorState, ResilienceCoordinator
from attendance_core.embedding_cache import EmbeddingCache
from attendance_core.exceptions import (
    AllStrategiesFailed,
    CoordinatorNotReady,
    CoreInitializationFailed,
    StoreUnavailable,
)
from attendance_core.matcher import FaceMatcher
from attendance_core.strategies import FallbackStrategy, OptimizedStrategy
from attendance_core.tenant import Tenant
from attendance_core.types import StrategyName
from support import FrameEngine, MemoryRoster, basis, member

ACME = Tenant("acme")
NO_FACE = np.empty(0, dtype=np.float32)


def build(
    members=(),
    optimized_engine=None,
    fallback_engine=None,
    source=None,
    recorder=None,
    timeout=1.5,
    failure_limit=3,
    with_optimized=True,
):
    cache = EmbeddingCache(source or MemoryRoster(members))
    matcher = FaceMatcher(0.85)
    fallback_engine = fallback_engine or FrameEngine()
    fallback = FallbackStrategy(fallback_engine, fallback_engine, cache, matcher)
    optimized = None
    if with_optimized:
        optimized_engine = optimized_engine or FrameEngine()
        optimized = OptimizedStrategy(
            optimized_engine, optimized_engine, cache, matcher, timeout_seconds=timeout
        )
    return ResilienceCoordinator(
        fallback,
        optimized=optimized,
        recorder=recorder,
        failure_limit=failure_limit,
        cache=cache,
    )


def test_fallback_init_failure_is_fatal():
    coordinator = build(fallback_engine=FrameEngine(fail_init=True))

    with pytest.raises(CoreInitializationFailed):
        coordinator.initialize()
    assert coordinator.state is CoordinatorState.UNINITIALIZED


def test_optimized_init_failure_leaves_fallback_only_mode():
    coordinator = build([member("m1", basis(0))], optimized_engine=FrameEngine(fail_init=True))

    assert coordinator.initialize() is CoordinatorState.FALLBACK_ONLY
    outcome = asyncio.run(coordinator.match(ACME, basis(0)))

    assert outcome.strategy is StrategyName.FALLBACK
    assert outcome.member.id == "m1"


def test_without_optimized_strategy_runs_fallback_only():
    coordinator = build([member("m1", basis(0))], with_optimized=False)

    assert coordinator.initialize() is CoordinatorState.FALLBACK_ONLY
    assert coordinator.describe()["optimized"]["configured"] is False


def test_match_before_initialize_is_rejected():
    coordinator = build([member("m1", basis(0))])

    with pytest.raises(CoordinatorNotReady):
        asyncio.run(coordinator.match(ACME, basis(0)))


def test_hybrid_mode_uses_optimized_path():
    fallback_engine = FrameEngine()
    coordinator = build([member("m1", basis(0))], fallback_engine=fallback_engine)
    assert coordinator.initialize() is CoordinatorState.HYBRID

    outcome = asyncio.run(coordinator.match(ACME, basis(0)))

    assert outcome.strategy is StrategyName.OPTIMIZED
    assert outcome.member.id == "m1"
    assert outcome.confidence == 1.0
    assert outcome.processing_time_ms >= 0.0
    assert fallback_engine.detect_calls == 0


def test_optimized_failures_are_invisible_to_callers():
    optimized_engine = FrameEngine(detect_error=RuntimeError("gpu fell over"))
    coordinator = build([member("m1", basis(0))], optimized_engine=optimized_engine, failure_limit=0)
    coordinator.initialize()

    async def scenario():
        return [await coordinator.match(ACME, basis(0)) for _ in range(5)]

    outcomes = asyncio.run(scenario())

    assert all(o.strategy is StrategyName.FALLBACK for o in outcomes)
    assert all(o.member.id == "m1" for o in outcomes)
    assert optimized_engine.detect_calls == 5
    assert coordinator.state is CoordinatorState.HYBRID


def test_optimized_timeout_falls_back():
    coordinator = build(
        [member("m1", basis(0))],
        optimized_engine=FrameEngine(delay=0.3),
        timeout=0.05,
    )
    coordinator.initialize()

    outcome = asyncio.run(coordinator.match(ACME, basis(0)))

    assert outcome.strategy is StrategyName.FALLBACK
    assert outcome.member.id == "m1"


def test_optimized_dimension_mismatch_falls_back():
    # Optimized engine produces 4-dim probes against an 8-dim roster.
    class ShortEngine(FrameEngine):
        def embed(self, region):
            return region.embedding[:4]

    coordinator = build([member("m1", basis(0))], optimized_engine=ShortEngine())
    coordinator.initialize()

    outcome = asyncio.run(coordinator.match(ACME, basis(0)))

    assert outcome.strategy is StrategyName.FALLBACK
    assert outcome.matched


def test_repeated_optimized_failures_demote_and_retry_promotes():
    optimized_engine = FrameEngine(detect_error=RuntimeError("boom"))
    coordinator = build([member("m1", basis(0))], optimized_engine=optimized_engine, failure_limit=3)
    coordinator.initialize()

    async def scenario():
        for _ in range(5):
            await coordinator.match(ACME, basis(0))

    asyncio.run(scenario())

    assert coordinator.state is CoordinatorState.FALLBACK_ONLY
    assert optimized_engine.detect_calls == 3

    optimized_engine.detect_error = None
    assert coordinator.retry_optimized() is True
    assert coordinator.state is CoordinatorState.HYBRID
    outcome = asyncio.run(coordinator.match(ACME, basis(0)))
    assert outcome.strategy is StrategyName.OPTIMIZED


def test_no_face_is_a_no_match_without_fallback():
    fallback_engine = FrameEngine()
    coordinator = build([member("m1", basis(0))], fallback_engine=fallback_engine)
    coordinator.initialize()

    outcome = asyncio.run(coordinator.match(ACME, NO_FACE))

    assert outcome.member is None
    assert outcome.confidence == 0.0
    assert outcome.strategy is StrategyName.OPTIMIZED
    assert outcome.reason == "no-face"
    assert fallback_engine.detect_calls == 0


def test_unreachable_store_degrades_to_no_match():
    coordinator = build(source=MemoryRoster(error=StoreUnavailable("db down")))
    coordinator.initialize()

    outcome = asyncio.run(coordinator.match(ACME, basis(0)))

    assert outcome.strategy is StrategyName.FALLBACK
    assert outcome.member is None
    assert outcome.confidence == 0.0


def test_total_failure_surfaces_and_writes_no_attendance(store):
    recorder = AttendanceRecorder(store)
    coordinator = build(
        [member("m1", basis(0))],
        optimized_engine=FrameEngine(detect_error=RuntimeError("optimized broke")),
        fallback_engine=FrameEngine(detect_error=RuntimeError("fallback broke")),
        recorder=recorder,
    )
    coordinator.initialize()

    async def scenario():
        with pytest.raises(AllStrategiesFailed):
            await coordinator.match(ACME, basis(0))
        await recorder.drain()

    asyncio.run(scenario())

    assert store.list_attendance(ACME) == []


def test_match_schedules_attendance_before_returning(store):
    recorder = AttendanceRecorder(store)
    enrolled = store.upsert_member(ACME, "Ada", basis(0))
    coordinator = build(source=store, recorder=recorder)
    coordinator.initialize()

    async def scenario():
        outcome = await coordinator.match(ACME, basis(0))
        pending = recorder.pending
        await recorder.drain()
        return outcome, pending

    outcome, pending = asyncio.run(scenario())

    assert outcome.member.id == enrolled.id
    assert pending == 1
    logs = store.list_attendance(ACME)
    assert [log.member_id for log in logs] == [enrolled.id]


def test_no_match_schedules_nothing(store):
    recorder = AttendanceRecorder(store)
    store.upsert_member(ACME, "Ada", basis(0))
    coordinator = build(source=store, recorder=recorder)
    coordinator.initialize()

    async def scenario():
        outcome = await coordinator.match(ACME, basis(3))
        return outcome, recorder.pending

    outcome, pending = asyncio.run(scenario())

    assert outcome.member is None
    assert pending == 0


def test_describe_reports_state_performance_and_cache():
    coordinator = build([member("m1", basis(0))])
    coordinator.initialize()
    asyncio.run(coordinator.match(ACME, basis(0)))

    info = coordinator.describe()

    assert info["state"] == "hybrid"
    assert info["optimized"]["active"] is True
    assert info["performance"]["optimized"]["calls"] == 1.0
    assert info["performance"]["optimized"]["matches"] == 1.0
    assert info["stats"]["org:acme"]["count"] == 1


def test_invalidate_passthrough_drops_cached_roster():
    coordinator = build([member("m1", basis(0))])
    coordinator.initialize()
    asyncio.run(coordinator.match(ACME, basis(0)))

    coordinator.invalidate(ACME)

    assert coordinator.cache.get(ACME) is None


@pytest.mark.parametrize("threshold", [1.5, -0.1, float("nan")])
def test_out_of_range_caller_threshold_is_rejected_before_any_strategy_runs(threshold):
    optimized_engine = FrameEngine()
    fallback_engine = FrameEngine()
    coordinator = build(
        [member("m1", basis(0))], optimized_engine=optimized_engine, fallback_engine=fallback_engine
    )
    coordinator.initialize()

    with pytest.raises(ValueError):
        asyncio.run(coordinator.match(ACME, basis(0), threshold=threshold))

    assert optimized_engine.detect_calls == 0
    assert fallback_engine.detect_calls == 0
    assert coordinator.state is CoordinatorState.HYBRID
    assert coordinator.describe()["optimized"]["consecutive_failures"] == 0


def test_each_path_matches_only_vectors_from_its_own_engine():
    coordinator = build(
        [
            member("m1", basis(0), engine="arc"),
            member("m2", basis(1), engine="haar"),
        ],
        optimized_engine=FrameEngine(engine_id="arc"),
        fallback_engine=FrameEngine(engine_id="haar"),
    )
    coordinator.initialize()

    optimized_hit = asyncio.run(coordinator.match(ACME, basis(0)))
    optimized_miss = asyncio.run(coordinator.match(ACME, basis(1)))
    coordinator.optimized.detector.detect_error = RuntimeError("gpu gone")
    fallback_miss = asyncio.run(coordinator.match(ACME, basis(0)))
    fallback_hit = asyncio.run(coordinator.match(ACME, basis(1)))

    assert optimized_hit.member.id == "m1"
    assert optimized_miss.member is None
    assert fallback_miss.strategy is StrategyName.FALLBACK
    assert fallback_miss.member is None
    assert fallback_hit.member.id == "m2"


def test_member_enrolled_for_both_engines_matches_on_either_path():
    coordinator = build(
        [
            member("m1", basis(0), engine="arc"),
            member("m1", basis(0), engine="haar"),
        ],
        optimized_engine=FrameEngine(engine_id="arc"),
        fallback_engine=FrameEngine(engine_id="haar"),
        failure_limit=0,
    )
    coordinator.initialize()

    first = asyncio.run(coordinator.match(ACME, basis(0)))
    coordinator.optimized.detector.detect_error = RuntimeError("gpu gone")
    second = asyncio.run(coordinator.match(ACME, basis(0)))

    assert (first.member.id, first.strategy) == ("m1", StrategyName.OPTIMIZED)
    assert (second.member.id, second.strategy) == ("m1", StrategyName.FALLBACK)


def test_active_strategies_and_warm_follow_state():
    coordinator = build(
        [member("m1", basis(0), engine="arc"), member("m1", basis(0), engine="haar")],
        optimized_engine=FrameEngine(engine_id="arc"),
        fallback_engine=FrameEngine(engine_id="haar"),
    )
    assert coordinator.active_strategies() == []

    coordinator.initialize()
    coordinator.warm(ACME)

    assert coordinator.active_strategies() == [coordinator.optimized, coordinator.fallback]
    assert coordinator.cache.get(ACME, "arc").count == 1
    assert coordinator.cache.get(ACME, "haar").count == 1
