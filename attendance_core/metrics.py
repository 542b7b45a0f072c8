from __future__ import annotations

from dataclasses import dataclass
from threading import Lock


@dataclass
class StrategyPerf:
    calls: int = 0
    matches: int = 0
    failures: int = 0
    latency_ema_ms: float = 0.0
    latency_samples: int = 0


class PerformanceTracker:
    def __init__(self, alpha: float = 0.2) -> None:
        self.alpha = alpha
        self._lock = Lock()
        self._stats: dict[str, StrategyPerf] = {}

    def update(self, strategy: str, latency_ms: float, matched: bool) -> None:
        with self._lock:
            stat = self._stats.setdefault(strategy, StrategyPerf())
            stat.calls += 1
            if matched:
                stat.matches += 1
            stat.latency_samples += 1
            if stat.latency_samples == 1:
                stat.latency_ema_ms = latency_ms
            else:
                stat.latency_ema_ms = (self.alpha * latency_ms) + ((1.0 - self.alpha) * stat.latency_ema_ms)

    def record_failure(self, strategy: str) -> None:
        with self._lock:
            stat = self._stats.setdefault(strategy, StrategyPerf())
            stat.failures += 1

    def snapshot(self) -> dict[str, dict[str, float]]:
        with self._lock:
            return {
                name: {
                    "calls": float(stat.calls),
                    "matches": float(stat.matches),
                    "failures": float(stat.failures),
                    "latency_ms": stat.latency_ema_ms,
                }
                for name, stat in self._stats.items()
            }
