# Database models package
from mediaqueue.models.queue_snapshot import QueueSnapshotRecord

__all__ = [
    "QueueSnapshotRecord",
]
