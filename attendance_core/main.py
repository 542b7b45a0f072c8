from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from datetime import date

import numpy as np

from .attendance_service import AttendanceRecorder
from .camera import CameraStream
from .config import Settings, get_settings
from .coordinator import ResilienceCoordinator
from .database import SqlAlchemyStore
from .embedding_cache import EmbeddingCache
from .exceptions import AttendanceCoreError, LowQualityFace, NoFaceDetected
from .face_engine import HaarCascadeEngine, InsightFaceEngine
from .logger import setup_logger
from .matcher import FaceMatcher
from .metrics import PerformanceTracker
from .quality import GeometricQualityValidator
from .registry import MemberRegistry
from .scanner import ScanReport, ScanSession
from .strategies import FallbackStrategy, OptimizedStrategy
from .tenant import Tenant, TenantContext
from .types import MemberStatus


@dataclass
class Runtime:
    settings: Settings
    store: SqlAlchemyStore
    cache: EmbeddingCache
    recorder: AttendanceRecorder
    coordinator: ResilienceCoordinator
    registry: MemberRegistry


def build_runtime(settings: Settings | None = None) -> Runtime:
    settings = settings or get_settings()
    store = SqlAlchemyStore.from_settings(settings)
    cache = EmbeddingCache(store, max_age_seconds=settings.cache_max_age_seconds)
    matcher = FaceMatcher(settings.match_threshold)
    quality = GeometricQualityValidator()

    haar = HaarCascadeEngine()
    fallback = FallbackStrategy(haar, haar, cache, matcher, quality)

    insight = InsightFaceEngine(
        model_name=settings.insightface_model,
        det_size=(settings.insightface_det_size, settings.insightface_det_size),
        prefer_gpu=settings.prefer_gpu,
    )
    optimized = OptimizedStrategy(
        insight,
        insight,
        cache,
        matcher,
        quality,
        timeout_seconds=settings.optimized_timeout_seconds,
    )

    recorder = AttendanceRecorder.from_settings(store, settings)
    coordinator = ResilienceCoordinator(
        fallback,
        optimized=optimized,
        recorder=recorder,
        tracker=PerformanceTracker(),
        threshold=settings.match_threshold,
        failure_limit=settings.optimized_failure_limit,
        cache=cache,
    )
    return Runtime(settings, store, cache, recorder, coordinator, MemberRegistry(store, cache))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face match and attendance core")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Scan faces from a webcam and log attendance")
    _add_tenant_args(scan)
    scan.add_argument("--camera", type=int, default=None, help="Webcam index")
    scan.add_argument("--threshold", type=float, default=None, help="Cosine similarity threshold")

    enroll = subparsers.add_parser("enroll", help="Capture a face from a webcam and enroll it")
    _add_tenant_args(enroll)
    enroll.add_argument("--name", required=True, help="Member display name")
    enroll.add_argument("--camera", type=int, default=None, help="Webcam index")
    enroll.add_argument(
        "--status",
        choices=[status.value for status in MemberStatus],
        default=MemberStatus.ALLOWED.value,
        help="Member status",
    )
    enroll.add_argument("--frames", type=int, default=10, help="Max frames to try before giving up")

    attendance = subparsers.add_parser("attendance", help="Print attendance logs for a tenant")
    _add_tenant_args(attendance)
    attendance.add_argument("--day", type=date.fromisoformat, default=None, help="Day as YYYY-MM-DD")
    attendance.add_argument("--limit", type=int, default=1000, help="Max rows to print")

    stats = subparsers.add_parser("cache-stats", help="Warm the roster cache and print coordinator info")
    _add_tenant_args(stats, required=False)
    return parser


def _add_tenant_args(parser: argparse.ArgumentParser, required: bool = True) -> None:
    group = parser.add_mutually_exclusive_group(required=required)
    group.add_argument("--tenant", default=None, help="Organization id")
    group.add_argument("--legacy", action="store_true", help="Use the legacy (no organization) scope")


def _select_tenant(context: TenantContext, args: argparse.Namespace) -> Tenant:
    if args.legacy:
        return context.clear_tenant()
    if args.tenant:
        return context.set_tenant(args.tenant)
    return context.current_tenant()


def _print_report(report: ScanReport) -> None:
    if report.error is not None:
        print(f"[error] {report.error}")
        return
    outcome = report.outcome
    if outcome.matched:
        print(
            f"[match] {outcome.member.name} ({outcome.member.status.value}) "
            f"confidence={outcome.confidence:.3f} via {outcome.strategy.value} "
            f"in {outcome.processing_time_ms:.1f} ms"
        )
    elif outcome.reason != "no-face":
        print(f"[no match] {outcome.reason} confidence={outcome.confidence:.3f}")


def _open_camera(settings: Settings, camera_index: int | None) -> CameraStream:
    return CameraStream(
        camera_index=settings.camera_index if camera_index is None else camera_index,
        width=settings.frame_width,
        height=settings.frame_height,
        fps=settings.frame_fps,
    )


def _capture_embeddings(runtime: Runtime, args: argparse.Namespace) -> dict[str, np.ndarray]:
    """One vector per active engine, taken from the first frames that yield a usable face."""
    logger = setup_logger("main")
    strategies = runtime.coordinator.active_strategies()
    wanted = {strategy.engine_id or "" for strategy in strategies}
    embeddings: dict[str, np.ndarray] = {}

    with _open_camera(runtime.settings, args.camera) as camera:
        for _ in range(max(1, args.frames)):
            frame = camera.read()
            for strategy in strategies:
                engine = strategy.engine_id or ""
                if engine in embeddings:
                    continue
                try:
                    vector = strategy.embed_frame(frame)
                except (NoFaceDetected, LowQualityFace) as exc:
                    logger.info("%s path could not use frame: %s", strategy.name.value, exc)
                    continue
                if vector.size:
                    embeddings[engine] = vector
            if wanted <= embeddings.keys():
                break
    return embeddings


def _enroll(runtime: Runtime, tenant: Tenant, args: argparse.Namespace) -> int:
    runtime.coordinator.initialize()
    embeddings = _capture_embeddings(runtime, args)
    if not embeddings:
        print("No usable face found; nothing enrolled.")
        return 1

    member = runtime.registry.enroll_embeddings(tenant, args.name, embeddings, MemberStatus(args.status))
    engines = ", ".join(engine or "default" for engine in embeddings)
    print(f"Enrolled {member.name} ({member.id}) in {tenant} for {engines}.")
    return 0


async def _run_scan(runtime: Runtime, tenant: Tenant, args: argparse.Namespace) -> None:
    settings = runtime.settings
    runtime.coordinator.initialize()
    camera = _open_camera(settings, args.camera)
    session = ScanSession(
        runtime.coordinator,
        camera,
        tenant,
        on_report=_print_report,
        settings=settings,
        threshold=args.threshold,
    )
    await session.start()
    print(f"Scanning for {tenant} in {runtime.coordinator.state.value} mode. Press Ctrl+C to stop.")
    try:
        await session.wait()
    finally:
        await session.stop()
        await runtime.recorder.drain()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if getattr(args, "threshold", None) is not None and not 0.0 <= args.threshold <= 1.0:
        parser.error("--threshold must be within [0, 1]")
    logger = setup_logger("main")
    context = TenantContext()

    try:
        if args.command == "scan":
            runtime = build_runtime()
            tenant = _select_tenant(context, args)
            asyncio.run(_run_scan(runtime, tenant, args))
            print("Scanning stopped.")
            return 0

        if args.command == "enroll":
            runtime = build_runtime()
            return _enroll(runtime, _select_tenant(context, args), args)

        if args.command == "attendance":
            runtime = build_runtime()
            tenant = _select_tenant(context, args)
            logs = runtime.store.list_attendance(tenant, day=args.day, limit=args.limit)
            if not logs:
                print(f"No attendance logged for {tenant}.")
                return 0

            members = {m.id: m.name for m in runtime.store.list_members_with_embeddings(tenant)}
            print(f"{'Timestamp (UTC)':<21} {'Member':<30} {'Confidence'}")
            print("-" * 64)
            for log in logs:
                name = members.get(log.member_id, log.member_id)
                print(f"{log.timestamp:%Y-%m-%d %H:%M:%S}  {name:<30} {log.confidence:.3f}")
            return 0

        if args.command == "cache-stats":
            runtime = build_runtime()
            runtime.coordinator.initialize()
            if args.legacy or args.tenant:
                runtime.coordinator.warm(_select_tenant(context, args))
            print(json.dumps(runtime.coordinator.describe(), indent=2, default=str))
            return 0

    except AttendanceCoreError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
