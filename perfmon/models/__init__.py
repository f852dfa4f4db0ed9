from .base import Base
from .collection import CollectionLog, CollectionSchedule, ServerInfoHistory, CriticalIssue, DeltaClaim
from .snapshots import (
    WaitStats, QueryStats, ProcedureStats, PerfmonStats, FileIoStats, MemoryClerksStats,
    BlockingDeadlockStats, LatchStats, SpinlockStats, MemoryGrantStats, MemoryStats,
)
