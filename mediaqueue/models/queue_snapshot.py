"""
SQLAlchemy model for the job_queue_snapshots table. One row holds the whole
serialized queue and is rewritten in a single transaction on every save.
"""
from sqlalchemy import Column, String, BigInteger, DateTime, Text, func
from mediaqueue.database import Base


class QueueSnapshotRecord(Base):
    __tablename__ = "job_queue_snapshots"

    queue_key = Column(String(100), primary_key=True)

    # JSON document: {"jobs": [...], "lastUpdated": <epoch ms>}
    payload = Column(Text, nullable=False)
    last_updated = Column(BigInteger, nullable=False, default=0)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
