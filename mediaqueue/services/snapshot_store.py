"""
Durable snapshot stores for the job queue.

Each store persists one JSON document, ``{"jobs": [...], "lastUpdated": ...}``,
and is read and rewritten whole. Stores fail open: a missing, unreadable or
corrupt document loads as an empty queue, and a failed write is logged and
reported as False instead of raising into the caller.

There is no compare-and-swap. Two processes writing the same store can lose
each other's updates; run a single writer per queue.
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from mediaqueue.models.queue_snapshot import QueueSnapshotRecord
from mediaqueue.schemas.job import JobQueueSnapshot, job_adapter
from mediaqueue.services.clock import SystemClock
from mediaqueue.utils.logger import logger


def serialize_snapshot(snapshot: JobQueueSnapshot) -> str:
    data = snapshot.model_dump(mode="json", by_alias=True)
    data["jobs"].extend(snapshot.unparsed)
    return json.dumps(data)


class SnapshotStore:
    """Base class: subclasses implement `_read` and `_write` over raw JSON text."""

    name = "snapshot"

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    def load(self) -> JobQueueSnapshot:
        try:
            raw = self._read()
        except Exception as exc:
            logger.error("store.load_failed", extra={"store": self.name, "error": str(exc)})
            return self._empty()

        if raw is None:
            return self._empty()
        return self._parse(raw)

    def save(self, snapshot: JobQueueSnapshot) -> bool:
        try:
            self._write(serialize_snapshot(snapshot), snapshot.last_updated)
        except Exception as exc:
            logger.error(
                "store.save_failed",
                extra={"store": self.name, "error": str(exc), "count": len(snapshot.jobs)},
            )
            return False
        return True

    # ------------------------------------------------------------------
    def _read(self) -> Optional[str]:
        raise NotImplementedError

    def _write(self, payload: str, last_updated: int) -> None:
        raise NotImplementedError

    def _empty(self) -> JobQueueSnapshot:
        return JobQueueSnapshot(jobs=[], last_updated=self.clock.now())

    def _parse(self, raw: str) -> JobQueueSnapshot:
        try:
            data = json.loads(raw)
            if not isinstance(data, dict) or not isinstance(data.get("jobs"), list):
                raise ValueError("snapshot must be an object with a 'jobs' list")
        except ValueError as exc:
            logger.error("store.corrupt_snapshot", extra={"store": self.name, "error": str(exc)})
            return self._empty()

        jobs, unparsed = [], []
        for entry in data["jobs"]:
            try:
                jobs.append(job_adapter.validate_python(entry))
            except ValidationError as exc:
                if not isinstance(entry, dict):
                    logger.warning("store.job_skipped", extra={"store": self.name, "error": str(exc)})
                    continue
                # Kept as-is so a newer writer's jobs survive our saves
                unparsed.append(entry)
                logger.warning(
                    "store.job_unparsed",
                    extra={"store": self.name, "job_id": entry.get("id"), "job_type": entry.get("type"), "error": str(exc)},
                )

        try:
            last_updated = int(data.get("lastUpdated") or 0)
        except (TypeError, ValueError):
            last_updated = 0

        return JobQueueSnapshot(jobs=jobs, last_updated=last_updated, unparsed=unparsed)


class MemorySnapshotStore(SnapshotStore):
    """Keeps the serialized document in memory (tests, ephemeral queues)."""

    name = "memory"

    def __init__(self, payload: Optional[str] = None, clock=None):
        super().__init__(clock)
        self.payload = payload

    def _read(self) -> Optional[str]:
        return self.payload

    def _write(self, payload: str, last_updated: int) -> None:
        self.payload = payload


class JsonFileSnapshotStore(SnapshotStore):
    """One JSON file per queue, replaced atomically on every save."""

    name = "file"

    def __init__(self, path, clock=None):
        super().__init__(clock)
        self.path = Path(path)

    def _read(self) -> Optional[str]:
        if not self.path.exists():
            return None
        return self.path.read_text(encoding="utf-8")

    def _write(self, payload: str, last_updated: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Atomic write: tempfile + os.replace
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, str(self.path))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


class SqlSnapshotStore(SnapshotStore):
    """One row per queue key in job_queue_snapshots.

    Uses a synchronous session, so each load and save blocks the calling
    thread (the event loop, when called from routes or the processor).
    Meant for low-latency local databases such as SQLite.
    """

    name = "sql"

    def __init__(self, session_factory: sessionmaker, queue_key: str, clock=None):
        super().__init__(clock)
        self.session_factory = session_factory
        self.queue_key = queue_key

    def _read(self) -> Optional[str]:
        with self.session_factory() as session:
            record = session.get(QueueSnapshotRecord, self.queue_key)
            return record.payload if record is not None else None

    def _write(self, payload: str, last_updated: int) -> None:
        with self.session_factory.begin() as session:
            record = session.get(QueueSnapshotRecord, self.queue_key)
            if record is None:
                session.add(
                    QueueSnapshotRecord(
                        queue_key=self.queue_key,
                        payload=payload,
                        last_updated=last_updated,
                    )
                )
            else:
                record.payload = payload
                record.last_updated = last_updated
