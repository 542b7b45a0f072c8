from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

import numpy as np

from .config import Settings, get_settings
from .coordinator import ResilienceCoordinator
from .exceptions import AttendanceCoreError, CameraError
from .interfaces import CaptureSource
from .logger import setup_logger
from .tenant import Tenant
from .types import MatchOutcome


@dataclass(frozen=True)
class ScanReport:
    outcome: MatchOutcome | None = None
    error: Exception | None = None

    @property
    def matched(self) -> bool:
        return self.outcome is not None and self.outcome.matched


class ScanSession:
    """One camera, one tenant, one probe at a time.

    The loop reads a frame, asks the coordinator for a match, reports the
    result, and waits a delay that depends on how the probe ended before
    reading the next frame.
    """

    def __init__(
        self,
        coordinator: ResilienceCoordinator,
        capture: CaptureSource,
        tenant: Tenant,
        on_report: Callable[[ScanReport], None] | None = None,
        settings: Settings | None = None,
        threshold: float | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.coordinator = coordinator
        self.capture = capture
        self.tenant = tenant
        self.on_report = on_report
        self.threshold = threshold
        self.delay_after_match = settings.scan_delay_after_match_seconds
        self.delay_after_no_match = settings.scan_delay_after_no_match_seconds
        self.delay_after_error = settings.scan_delay_after_error_seconds
        self._sleep = sleep or self._wait_or_stop
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._probing = False
        self.scans = 0
        self.logger = setup_logger(self.__class__.__name__)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        # Opening a webcam probes backends and can block for seconds.
        await asyncio.to_thread(self.capture.start)
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(self._run_loop(), name=f"scan:{self.tenant}")
        self.logger.info("Scan session started for %s", self.tenant)
        return self._task

    def request_stop(self) -> None:
        """Stop rescheduling; the in-flight probe still completes."""
        self._stop_event.set()

    async def stop(self) -> None:
        self.request_stop()
        if self._task is not None:
            await self._task
            self._task = None

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def scan_once(self) -> tuple[ScanReport, float]:
        if self._probing:
            raise RuntimeError("A probe is already in flight for this session.")
        self._probing = True
        try:
            frame = await self._read_frame()
            outcome = await self.coordinator.match(self.tenant, frame, self.threshold)
        except AttendanceCoreError as exc:
            self.logger.error("Scan failed for %s: %s", self.tenant, exc)
            report, delay = ScanReport(error=exc), self.delay_after_error
        else:
            delay = self.delay_after_match if outcome.matched else self.delay_after_no_match
            report = ScanReport(outcome=outcome)
        finally:
            self._probing = False

        self.scans += 1
        self._report(report)
        return report, delay

    async def _read_frame(self) -> np.ndarray:
        try:
            return await asyncio.to_thread(self.capture.read)
        except CameraError:
            raise
        except Exception as exc:
            raise CameraError(f"Frame capture failed: {exc}") from exc

    async def _run_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                _, delay = await self.scan_once()
                if self._stop_event.is_set():
                    break
                await self._sleep(delay)
        finally:
            self.capture.stop()
            self.logger.info("Scan session stopped for %s after %d scans", self.tenant, self.scans)

    async def _wait_or_stop(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _report(self, report: ScanReport) -> None:
        if self.on_report is None:
            return
        try:
            self.on_report(report)
        except Exception:
            self.logger.exception("Scan report callback failed")
