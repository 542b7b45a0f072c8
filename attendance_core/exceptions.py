class AttendanceCoreError(Exception):
    """Base exception for the face-match and attendance core."""


class TenantNotSelected(AttendanceCoreError):
    """Raised when a tenant-scoped operation runs before any scope was chosen."""


class NoFaceDetected(AttendanceCoreError):
    """Raised inside a strategy when the frame holds no face. Resolved as no-match."""


class LowQualityFace(AttendanceCoreError):
    """Raised inside a strategy when the primary face fails quality checks. Resolved as no-match."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class MatchError(AttendanceCoreError):
    """Raised when a probe cannot be compared against a roster."""


class InvalidEmbedding(MatchError):
    """Raised when a probe embedding is empty, non-finite or has zero norm."""


class DimensionMismatch(MatchError):
    """Raised when probe and roster embeddings differ in length."""


class StrategyError(AttendanceCoreError):
    """Raised when a match strategy cannot complete an attempt."""


class StrategyUnavailable(StrategyError):
    """Raised when a strategy cannot be brought up."""


class OptimizedPathFailure(StrategyError):
    """Raised when the optimized strategy fails or exceeds its time bound."""


class StoreUnavailable(AttendanceCoreError):
    """Raised when the persistent store cannot be reached."""


class AllStrategiesFailed(AttendanceCoreError):
    """Raised when neither strategy could complete a match attempt."""


class CoreInitializationFailed(AttendanceCoreError):
    """Raised when even the guaranteed fallback strategy cannot initialize."""


class CoordinatorNotReady(AttendanceCoreError):
    """Raised when match is called before initialize."""


class CameraError(AttendanceCoreError):
    """Raised when webcam access fails."""
