import threading

import numpy as np
import pytest

from attendance_core.embedding_cache import EmbeddingCache
from attendance_core.exceptions import StoreUnavailable
from attendance_core.tenant import Tenant
from support import MemoryRoster, basis, member


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_refresh_then_get_returns_snapshot(acme):
    source = MemoryRoster([member("m1", basis(0)), member("m2", basis(1))])
    cache = EmbeddingCache(source)

    entry = cache.refresh(acme)

    assert entry.count == 2
    assert entry.dimension == 8
    assert cache.get(acme) is entry
    assert np.allclose(np.linalg.norm(entry.matrix, axis=1), 1.0)


def test_get_does_not_fetch(acme):
    source = MemoryRoster([member("m1", basis(0))])
    cache = EmbeddingCache(source)

    assert cache.get(acme) is None
    assert source.calls == 0


def test_get_or_refresh_fetches_once(acme):
    source = MemoryRoster([member("m1", basis(0))])
    cache = EmbeddingCache(source)

    first = cache.get_or_refresh(acme)
    second = cache.get_or_refresh(acme)

    assert first is second
    assert source.calls == 1


def test_invalidate_forces_next_get_to_miss(acme):
    cache = EmbeddingCache(MemoryRoster([member("m1", basis(0))]))
    cache.refresh(acme)

    cache.invalidate(acme)

    assert cache.get(acme) is None
    assert cache.stats(acme).count == 0
    assert cache.stats(acme).age_seconds is None


def test_stats_reports_count_and_age(acme):
    clock = FakeClock()
    cache = EmbeddingCache(MemoryRoster([member("m1", basis(0))]), clock=clock)
    cache.refresh(acme)
    clock.now += 12.5

    stats = cache.stats(acme)

    assert stats.count == 1
    assert stats.age_seconds == pytest.approx(12.5)


def test_store_unavailable_propagates_and_keeps_previous_entry(acme):
    source = MemoryRoster([member("m1", basis(0))])
    cache = EmbeddingCache(source)
    previous = cache.refresh(acme)
    source.error = StoreUnavailable("connection refused")

    with pytest.raises(StoreUnavailable):
        cache.refresh(acme)

    assert cache.get(acme) is previous


def test_unexpected_source_errors_become_store_unavailable(acme):
    cache = EmbeddingCache(MemoryRoster(error=OSError("disk gone")))

    with pytest.raises(StoreUnavailable):
        cache.refresh(acme)


def test_roster_never_contains_other_tenants(acme):
    source = MemoryRoster(
        [
            member("a1", basis(0), "acme"),
            member("g1", basis(1), "globex"),
            member("l1", basis(2), None),
        ],
        leaky=True,
    )
    cache = EmbeddingCache(source)

    acme_ids = {m.id for m in cache.refresh(acme).members}
    globex_ids = {m.id for m in cache.refresh(Tenant("globex")).members}
    legacy_ids = {m.id for m in cache.refresh(Tenant.legacy()).members}

    assert acme_ids == {"a1"}
    assert globex_ids == {"g1"}
    assert legacy_ids == {"l1"}


def test_unusable_rows_are_dropped(acme):
    source = MemoryRoster(
        [
            member("ok1", basis(0)),
            member("ok2", basis(1)),
            member("zero", np.zeros(8)),
            member("empty", []),
            member("nan", [np.nan] * 8),
            member("short", basis(0, dim=4)),
        ]
    )

    entry = EmbeddingCache(source).refresh(acme)

    assert [m.id for m in entry.members] == ["ok1", "ok2"]
    assert entry.matrix.shape == (2, 8)


def test_empty_roster_entry(acme):
    entry = EmbeddingCache(MemoryRoster()).refresh(acme)

    assert entry.count == 0
    assert entry.dimension is None


def test_max_age_expires_entries(acme):
    clock = FakeClock()
    cache = EmbeddingCache(MemoryRoster([member("m1", basis(0))]), max_age_seconds=60, clock=clock)
    cache.refresh(acme)

    clock.now += 59
    assert cache.get(acme) is not None
    clock.now += 2
    assert cache.get(acme) is None


def test_refresh_swaps_entry_without_touching_held_snapshot(acme):
    source = MemoryRoster([member("m1", basis(0))])
    cache = EmbeddingCache(source)
    held = cache.refresh(acme)

    source.members.append(member("m2", basis(1)))
    fresh = cache.refresh(acme)

    assert held.count == 1
    assert held.matrix.shape == (1, 8)
    assert fresh.count == 2
    assert cache.get(acme) is fresh


def test_tenants_and_invalidate_all(acme, legacy):
    cache = EmbeddingCache(MemoryRoster([member("m1", basis(0)), member("l1", basis(1), None)]))
    cache.refresh(acme)
    cache.refresh(legacy)

    assert set(cache.tenants()) == {acme, legacy}

    cache.invalidate_all()

    assert cache.tenants() == []


class BlockingRoster(MemoryRoster):
    """Returns a snapshot taken on entry, then waits until released."""

    def __init__(self, members=()):
        super().__init__(members)
        self.entered = threading.Event()
        self.release = threading.Event()

    def list_members_with_embeddings(self, tenant, engine=None):
        snapshot = super().list_members_with_embeddings(tenant, engine)
        self.entered.set()
        assert self.release.wait(timeout=5)
        return snapshot


def test_refresh_overlapping_invalidate_is_not_installed(acme):
    source = BlockingRoster([member("m1", basis(0))])
    cache = EmbeddingCache(source)
    results = []
    worker = threading.Thread(target=lambda: results.append(cache.refresh(acme)))
    worker.start()
    assert source.entered.wait(timeout=5)

    source.members.append(member("m2", basis(1)))
    cache.invalidate(acme)
    source.release.set()
    worker.join(timeout=5)

    assert [m.id for m in results[0].members] == ["m1"]
    assert cache.get(acme) is None
    assert {m.id for m in cache.get_or_refresh(acme).members} == {"m1", "m2"}


def test_refresh_overlapping_invalidate_all_is_not_installed(acme):
    source = BlockingRoster([member("m1", basis(0))])
    cache = EmbeddingCache(source)
    worker = threading.Thread(target=cache.refresh, args=(acme,))
    worker.start()
    assert source.entered.wait(timeout=5)

    cache.invalidate_all()
    source.release.set()
    worker.join(timeout=5)

    assert cache.get(acme) is None
    assert cache.tenants() == []


def test_invalidating_another_tenant_does_not_discard_refresh(acme, legacy):
    source = BlockingRoster([member("m1", basis(0))])
    cache = EmbeddingCache(source)
    worker = threading.Thread(target=cache.refresh, args=(acme,))
    worker.start()
    assert source.entered.wait(timeout=5)

    cache.invalidate(legacy)
    source.release.set()
    worker.join(timeout=5)

    assert cache.get(acme).count == 1


def test_rosters_are_kept_per_engine(acme):
    source = MemoryRoster(
        [
            member("m1", basis(0), engine="arcface"),
            member("m1", basis(0, dim=512), engine="haar"),
            member("m2", basis(1), engine="arcface"),
        ]
    )
    cache = EmbeddingCache(source)

    arc = cache.refresh(acme, "arcface")
    haar = cache.refresh(acme, "haar")

    assert [m.id for m in arc.members] == ["m1", "m2"]
    assert arc.dimension == 8
    assert [m.id for m in haar.members] == ["m1"]
    assert haar.dimension == 512
    assert cache.get(acme, "arcface") is arc
    assert cache.get(acme, "haar") is haar
    assert cache.get(acme) is None
    assert cache.stats(acme, "haar").count == 1
    assert cache.stats(acme).count == 2
    assert cache.tenants() == [acme]

    cache.invalidate(acme)

    assert cache.get(acme, "arcface") is None
    assert cache.get(acme, "haar") is None


def test_rows_from_another_engine_are_dropped(acme):
    source = MemoryRoster(
        [member("m1", basis(0), engine="arcface"), member("m2", basis(1), engine="haar")],
        leaky=True,
    )

    entry = EmbeddingCache(source).refresh(acme, "arcface")

    assert [m.id for m in entry.members] == ["m1"]
    assert entry.engine == "arcface"
