from .attendance_service import AttendanceRecorder
from .coordinator import CoordinatorState, ResilienceCoordinator
from .embedding_cache import EmbeddingCache
from .matcher import FaceMatcher
from .strategies import FallbackStrategy, OptimizedStrategy
from .tenant import Tenant, TenantContext
from .types import MatchOutcome, Member, MemberStatus, RecordStatus, StrategyName

__version__ = "0.1.0"

__all__ = [
    "AttendanceRecorder",
    "CoordinatorState",
    "EmbeddingCache",
    "FaceMatcher",
    "FallbackStrategy",
    "MatchOutcome",
    "Member",
    "MemberStatus",
    "OptimizedStrategy",
    "RecordStatus",
    "ResilienceCoordinator",
    "StrategyName",
    "Tenant",
    "TenantContext",
]
