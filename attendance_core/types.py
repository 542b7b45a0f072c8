from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import numpy as np

from .tenant import Tenant


class MemberStatus(str, Enum):
    ALLOWED = "Allowed"
    BANNED = "Banned"
    VIP = "VIP"


class StrategyName(str, Enum):
    OPTIMIZED = "optimized"
    FALLBACK = "fallback"


class RecordStatus(str, Enum):
    RECORDED = "recorded"
    SKIPPED_DUPLICATE = "skipped-duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class Member:
    id: str
    name: str
    status: MemberStatus
    embedding: np.ndarray = field(compare=False, repr=False)
    organization_id: str | None = None
    # Which extractor produced ``embedding``; vectors from different engines never mix.
    engine: str = ""


@dataclass(frozen=True)
class CacheEntry:
    tenant: Tenant
    members: tuple[Member, ...]
    # Row-normalized embeddings, aligned with ``members``.
    matrix: np.ndarray = field(compare=False, repr=False)
    fetched_at: float = 0.0
    engine: str | None = None

    @property
    def count(self) -> int:
        return len(self.members)

    @property
    def dimension(self) -> int | None:
        if not self.members:
            return None
        return int(self.matrix.shape[1])


@dataclass(frozen=True)
class CacheStats:
    count: int
    age_seconds: float | None


@dataclass(frozen=True)
class MatchResult:
    member: Member | None
    confidence: float

    @property
    def matched(self) -> bool:
        return self.member is not None


@dataclass(frozen=True)
class MatchOutcome:
    member: Member | None
    confidence: float
    strategy: StrategyName
    processing_time_ms: float
    reason: str = ""

    @property
    def matched(self) -> bool:
        return self.member is not None


@dataclass(frozen=True)
class AttendanceLog:
    id: str
    member_id: str
    organization_id: str | None
    timestamp: datetime
    confidence: float


@dataclass(frozen=True)
class RecordResult:
    status: RecordStatus
    log: AttendanceLog | None = None


@dataclass(frozen=True)
class FaceRegion:
    bbox: tuple[int, int, int, int]
    score: float = 1.0
    keypoints: tuple[tuple[float, float], ...] = ()
    crop: np.ndarray | None = field(default=None, compare=False, repr=False)
    # Set by engines that detect and embed in a single pass.
    embedding: np.ndarray | None = field(default=None, compare=False, repr=False)

    @property
    def width(self) -> int:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> int:
        return self.bbox[3] - self.bbox[1]

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)


@dataclass(frozen=True)
class QualityVerdict:
    ok: bool
    reason: str = ""
    score: float = 1.0
