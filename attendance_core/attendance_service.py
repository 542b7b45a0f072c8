from __future__ import annotations

import asyncio
from datetime import datetime, time as dtime, timedelta, tzinfo
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo

from .config import Settings
from .exceptions import StoreUnavailable
from .interfaces import AttendanceStore
from .logger import setup_logger
from .tenant import Tenant
from .types import RecordResult, RecordStatus


def resolve_timezone(name: str) -> tzinfo | None:
    """Empty name means the process-local wall clock."""
    name = (name or "").strip()
    return ZoneInfo(name) if name else None


def day_window(moment: datetime, tz: tzinfo | None = None) -> tuple[datetime, datetime]:
    """Return ``[start_of_day, start_of_next_day)`` around ``moment`` in ``tz``."""
    day = moment.astimezone(tz).date()
    next_day = day + timedelta(days=1)
    if tz is None:
        return datetime.combine(day, dtime.min).astimezone(), datetime.combine(next_day, dtime.min).astimezone()
    return datetime.combine(day, dtime.min, tzinfo=tz), datetime.combine(next_day, dtime.min, tzinfo=tz)


class AttendanceRecorder:
    """Writes at most one attendance log per member, tenant and calendar day.

    ``record`` is fire-and-forget: it schedules the write on the running loop
    and returns immediately. Within one process, writes for the same member
    and tenant are serialized; across processes the check-then-insert is
    best-effort and the store's unique constraint catches the rest.
    """

    def __init__(
        self,
        store: AttendanceStore,
        timezone: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 0.25,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.timezone = timezone
        self._clock = clock or (lambda: datetime.now().astimezone())
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self._sleep = sleep
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}
        self._pending: set[asyncio.Task] = set()
        self.logger = setup_logger(self.__class__.__name__)

    @classmethod
    def from_settings(cls, store: AttendanceStore, settings: Settings) -> "AttendanceRecorder":
        return cls(
            store,
            timezone=resolve_timezone(settings.attendance_timezone),
            retry_attempts=settings.attendance_retry_attempts,
            retry_delay_seconds=settings.attendance_retry_delay_seconds,
        )

    @property
    def pending(self) -> int:
        return len(self._pending)

    def record(self, tenant: Tenant, member_id: str, confidence: float) -> asyncio.Task:
        timestamp = self._clock()
        task = asyncio.get_running_loop().create_task(
            self.record_now(tenant, member_id, confidence, timestamp=timestamp),
            name=f"attendance:{tenant.scope_key}:{member_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def record_now(
        self,
        tenant: Tenant,
        member_id: str,
        confidence: float,
        timestamp: datetime | None = None,
    ) -> RecordResult:
        moment = (timestamp or self._clock()).astimezone(self.timezone)
        start, end = day_window(moment, self.timezone)
        key = (tenant.scope_key, member_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1

        try:
            async with lock:
                return await self._record_with_retries(tenant, member_id, confidence, moment, start, end)
        finally:
            # Forget the lock once no writer for this member holds or awaits it.
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _record_with_retries(
        self,
        tenant: Tenant,
        member_id: str,
        confidence: float,
        moment: datetime,
        start: datetime,
        end: datetime,
    ) -> RecordResult:
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await self._write_once(tenant, member_id, confidence, moment, start, end)
            except StoreUnavailable as exc:
                if attempt >= self.retry_attempts:
                    self.logger.error(
                        "Attendance for %s in %s not saved after %d attempts: %s",
                        member_id,
                        tenant,
                        attempt,
                        exc,
                    )
                    return RecordResult(RecordStatus.FAILED)
                self.logger.warning("Attendance write attempt %d for %s failed: %s", attempt, member_id, exc)
                await self._sleep(self.retry_delay_seconds * attempt)
            except Exception:
                self.logger.exception("Unexpected error while recording attendance for %s", member_id)
                return RecordResult(RecordStatus.FAILED)
        return RecordResult(RecordStatus.FAILED)

    async def _write_once(
        self,
        tenant: Tenant,
        member_id: str,
        confidence: float,
        moment: datetime,
        start: datetime,
        end: datetime,
    ) -> RecordResult:
        if await asyncio.to_thread(self.store.has_attendance_between, tenant, member_id, start, end):
            self.logger.debug("Attendance already logged today for %s in %s", member_id, tenant)
            return RecordResult(RecordStatus.SKIPPED_DUPLICATE)

        log = await asyncio.to_thread(self.store.insert_attendance, tenant, member_id, confidence, moment)
        if log is None:
            return RecordResult(RecordStatus.SKIPPED_DUPLICATE)

        self.logger.info("Attendance logged for %s in %s (confidence %.3f)", member_id, tenant, confidence)
        return RecordResult(RecordStatus.RECORDED, log)
