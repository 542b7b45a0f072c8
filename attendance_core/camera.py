from __future__ import annotations

import os
import time

import cv2
import numpy as np

from .exceptions import CameraError

_BACKENDS = {
    "auto": ("Auto", "CAP_ANY"),
    "any": ("Auto", "CAP_ANY"),
    "dshow": ("DirectShow", "CAP_DSHOW"),
    "directshow": ("DirectShow", "CAP_DSHOW"),
    "msmf": ("Media Foundation", "CAP_MSMF"),
    "v4l2": ("Video4Linux", "CAP_V4L2"),
}


def _backend_order() -> list[str]:
    raw = os.getenv("ATTENDANCE_CAMERA_BACKENDS", "").strip()
    if raw:
        keys = [item.strip().lower() for item in raw.split(",") if item.strip()]
        keys = [key for key in keys if key in _BACKENDS]
        if keys:
            return keys
    # DirectShow is the steadier choice for Windows laptop webcams.
    if os.name == "nt":
        return ["dshow", "msmf", "auto"]
    return ["auto", "v4l2"]


def capture_backends() -> list[tuple[str, int | None]]:
    candidates: list[tuple[str, int | None]] = []
    seen: set[int | None] = set()
    for key in _backend_order():
        label, attr = _BACKENDS[key]
        backend = getattr(cv2, attr, None)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((label, backend))
    return candidates


def open_capture(camera_index: int, probe_reads: int = 6) -> tuple[cv2.VideoCapture, str]:
    attempted: list[str] = []
    for label, backend in capture_backends():
        attempted.append(label)
        cap = cv2.VideoCapture(camera_index) if backend is None else cv2.VideoCapture(camera_index, backend)
        if cap.isOpened():
            # Some backends open fine but never deliver a frame.
            for _ in range(probe_reads):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, label
                time.sleep(0.03)
        cap.release()

    raise CameraError(f"Unable to open webcam index {camera_index}. Tried backends: {', '.join(attempted)}.")


class CameraStream:
    """OpenCV webcam as a start/read/stop capture source."""

    def __init__(self, camera_index: int = 0, width: int = 1280, height: int = 720, fps: int = 30) -> None:
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.fps = fps
        self.cap: cv2.VideoCapture | None = None
        self.backend_name: str | None = None

    def __enter__(self) -> "CameraStream":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def start(self) -> None:
        if self.cap is not None:
            return
        self.cap, self.backend_name = open_capture(self.camera_index)
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap.set(cv2.CAP_PROP_FPS, self.fps)

    def read(self) -> np.ndarray:
        if self.cap is None:
            raise CameraError("Webcam stream is not started.")
        ok, frame = self.cap.read()
        if not ok or frame is None:
            raise CameraError("Failed to read frame from webcam.")
        return frame

    def stop(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
