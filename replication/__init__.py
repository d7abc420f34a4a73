"""
Replication layer over the profile stores.

- HealthMonitor: periodic health checks and the ranked store order
- RepairScheduler: delayed retries for stores that missed a write
- ReplicatedStore: fan-out writes, fallback reads, read-repair
- SyncService: relational-sourced reconciliation jobs
- ProfileService: validation, merge-updates and the compatibility feed
"""

from .health import HealthMonitor, HealthSnapshot, StoreHealth
from .profile_service import ProfileInput, ProfileService, compatibility_score
from .repair import RepairScheduler
from .replicated_store import ReplicatedStore, WriteAttemptResult, WriteOutcome
from .sync_service import ID_FIELDS, SyncRecord, SyncService

__all__ = [
    "HealthMonitor",
    "HealthSnapshot",
    "StoreHealth",
    "ProfileInput",
    "ProfileService",
    "compatibility_score",
    "RepairScheduler",
    "ReplicatedStore",
    "WriteAttemptResult",
    "WriteOutcome",
    "ID_FIELDS",
    "SyncRecord",
    "SyncService",
]
