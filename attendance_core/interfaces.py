from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence

import numpy as np

from .tenant import Tenant
from .types import AttendanceLog, FaceRegion, Member, QualityVerdict


class FaceDetector(Protocol):
    def initialize(self) -> None: ...

    def detect(self, frame: np.ndarray) -> list[FaceRegion]: ...


class EmbeddingExtractor(Protocol):
    def embed(self, region: FaceRegion) -> np.ndarray:
        """Return the face embedding, or an empty array when extraction failed."""
        ...


class QualityValidator(Protocol):
    def is_acceptable(self, region: FaceRegion, frame_width: int, frame_height: int) -> QualityVerdict: ...


class MemberSource(Protocol):
    def list_members_with_embeddings(self, tenant: Tenant, engine: str | None = None) -> Sequence[Member]:
        """Members of ``tenant``; with ``engine``, only vectors produced by that extractor."""
        ...


class AttendanceStore(Protocol):
    def has_attendance_between(self, tenant: Tenant, member_id: str, start: datetime, end: datetime) -> bool: ...

    def insert_attendance(
        self,
        tenant: Tenant,
        member_id: str,
        confidence: float,
        timestamp: datetime,
    ) -> AttendanceLog | None:
        """Insert a log; return None when the store reports a same-day duplicate."""
        ...


class CaptureSource(Protocol):
    def start(self) -> None: ...

    def read(self) -> np.ndarray: ...

    def stop(self) -> None: ...
