"""
Snapshot-backed job queue manager.

Every operation reads the whole queue from the durable store, applies one
change, writes the whole queue back and then notifies subscribers. The
manager is the only component that constructs or mutates jobs.

Usage:
    queue = JobQueueManager(store, limits=QueueLimits.from_settings(settings))
    job = queue.add_audio_job({"prompt": "epic battle theme"}, priority=5)
    queue.update_job(job.id, status=JobStatus.PROCESSING, progress=10)
    queue.retry_job(job.id)
"""
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from mediaqueue.schemas.job import (
    JOB_VARIANTS,
    PROGRESS_MAX,
    TERMINAL_STATUSES,
    BaseJob,
    JobEvent,
    JobEventType,
    JobQueueSnapshot,
    JobStats,
    JobStatus,
    JobType,
)
from mediaqueue.services.clock import SystemClock
from mediaqueue.services.events import EventBus
from mediaqueue.services.job_state import CANCELLABLE_STATUSES, RETRYABLE_STATUSES, can_transition
from mediaqueue.services.retention import apply_capacity, apply_retention
from mediaqueue.utils.logger import logger

# Set by the manager only, never through update_job()
PROTECTED_FIELDS = frozenset({"id", "type", "created_at", "started_at", "completed_at", "retry_count"})

TRANSITION_EVENTS = {
    JobStatus.PENDING: JobEventType.RETRIED,
    JobStatus.PROCESSING: JobEventType.STARTED,
    JobStatus.COMPLETED: JobEventType.COMPLETED,
    JobStatus.FAILED: JobEventType.FAILED,
    JobStatus.CANCELLED: JobEventType.CANCELLED,
}

STALE_PROCESSING_POLICIES = ("fail", "requeue", "keep")
STALE_JOB_ERROR = "Interrupted before completion"
UNKNOWN_ERROR = "Unknown error"


@dataclass(frozen=True)
class QueueLimits:
    max_queue_size: int = 100
    completed_retention_ms: int = 24 * 60 * 60 * 1000
    default_max_retries: int = 3
    default_priority: int = 5

    @classmethod
    def from_settings(cls, settings) -> "QueueLimits":
        return cls(
            max_queue_size=settings.max_queue_size,
            completed_retention_ms=int(settings.completed_retention_hours * 60 * 60 * 1000),
            default_max_retries=settings.default_max_retries,
            default_priority=settings.default_priority,
        )


def new_job_id(job_type: str, now: int) -> str:
    return f"{job_type}-{now}-{uuid.uuid4().hex[:9]}"


def _find(jobs: List[BaseJob], job_id: str) -> Optional[int]:
    for index, job in enumerate(jobs):
        if job.id == job_id:
            return index
    return None


class JobQueueManager:
    """Manages durable job state, the status state machine and job events."""

    def __init__(self, store, *, clock=None, events: Optional[EventBus] = None, limits: Optional[QueueLimits] = None):
        self.store = store
        self.clock = clock or SystemClock()
        self.events = events or EventBus()
        self.limits = limits or QueueLimits()
        # Serializes read-modify-write cycles within this process
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def subscribe(self, event_type, listener: Callable[[JobEvent], None]) -> Callable[[], bool]:
        return self.events.subscribe(event_type, listener)

    def unsubscribe(self, event_type, listener: Callable[[JobEvent], None]) -> bool:
        return self.events.unsubscribe(event_type, listener)

    def _emit(self, event_types: Iterable[JobEventType], job: BaseJob) -> None:
        timestamp = self.clock.now()
        for event_type in event_types:
            self.events.emit(
                JobEvent(type=event_type, job_id=job.id, job=job.model_copy(deep=True), timestamp=timestamp)
            )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _prune(self, jobs: List[BaseJob]) -> List[BaseJob]:
        jobs = apply_retention(jobs, self.clock.now(), self.limits.completed_retention_ms)
        return apply_capacity(jobs, self.limits.max_queue_size)

    def _read(self) -> JobQueueSnapshot:
        snapshot = self.store.load()
        snapshot.jobs = self._prune(snapshot.jobs)
        return snapshot

    def _load(self) -> List[BaseJob]:
        return self._read().jobs

    def _save(self, jobs: List[BaseJob], unparsed: Iterable[Dict[str, Any]] = ()) -> List[BaseJob]:
        jobs = apply_capacity(jobs, self.limits.max_queue_size)
        snapshot = JobQueueSnapshot(jobs=jobs, last_updated=self.clock.now(), unparsed=list(unparsed))
        self.store.save(snapshot)
        return jobs

    def compact(self) -> int:
        """Persist retention and eviction now; returns the number of jobs dropped."""
        with self._lock:
            snapshot = self.store.load()
            kept = self._prune(snapshot.jobs)
            dropped = len(snapshot.jobs) - len(kept)
            if dropped:
                self._save(kept, snapshot.unparsed)
        if dropped:
            logger.info("queue.compacted", extra={"count": dropped})
        return dropped

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def add_job(
        self,
        job_type,
        params: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> BaseJob:
        """Create a pending job of `job_type` and append it to the queue."""
        job_type = JobType(job_type)
        now = self.clock.now()
        job = JOB_VARIANTS[job_type](
            id=new_job_id(job_type.value, now),
            params=dict(params or {}),
            priority=self.limits.default_priority if priority is None else priority,
            max_retries=self.limits.default_max_retries if max_retries is None else max_retries,
            created_at=now,
        )

        with self._lock:
            snapshot = self._read()
            snapshot.jobs.append(job)
            self._save(snapshot.jobs, snapshot.unparsed)

        logger.info(
            "job.enqueued",
            extra={"job_id": job.id, "job_type": job.type, "priority": job.priority},
        )
        self._emit([JobEventType.ADDED], job)
        return job

    def add_audio_job(self, params, priority: Optional[int] = None, max_retries: Optional[int] = None) -> BaseJob:
        return self.add_job(JobType.AUDIO_GENERATE, params, priority, max_retries)

    def add_image_job(self, params, priority: Optional[int] = None, max_retries: Optional[int] = None) -> BaseJob:
        return self.add_job(JobType.IMAGE_GENERATE, params, priority, max_retries)

    def add_image_edit_job(self, params, priority: Optional[int] = None, max_retries: Optional[int] = None) -> BaseJob:
        return self.add_job(JobType.IMAGE_EDIT, params, priority, max_retries)

    def add_image_compose_job(self, params, priority: Optional[int] = None, max_retries: Optional[int] = None) -> BaseJob:
        return self.add_job(JobType.IMAGE_COMPOSE, params, priority, max_retries)

    def add_image_style_transfer_job(self, params, priority: Optional[int] = None, max_retries: Optional[int] = None) -> BaseJob:
        return self.add_job(JobType.IMAGE_STYLE_TRANSFER, params, priority, max_retries)

    def add_tweet_job(self, params, priority: Optional[int] = None, max_retries: Optional[int] = None) -> BaseJob:
        return self.add_job(JobType.TWEET_GENERATE, params, priority, max_retries)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_job(self, job_id: str) -> Optional[BaseJob]:
        jobs = self._load()
        index = _find(jobs, job_id)
        return jobs[index] if index is not None else None

    def get_jobs(self, job_type=None, status=None) -> List[BaseJob]:
        """Jobs matching the filters, newest created first."""
        jobs = self._load()
        if job_type is not None:
            job_type = JobType(job_type).value
            jobs = [job for job in jobs if job.type == job_type]
        if status is not None:
            status = JobStatus(status)
            jobs = [job for job in jobs if job.status == status]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def get_pending_jobs(self, job_type=None) -> List[BaseJob]:
        return self.get_jobs(job_type, JobStatus.PENDING)

    def get_processing_jobs(self, job_type=None) -> List[BaseJob]:
        return self.get_jobs(job_type, JobStatus.PROCESSING)

    def get_completed_jobs(self, job_type=None) -> List[BaseJob]:
        return self.get_jobs(job_type, JobStatus.COMPLETED)

    def has_pending_jobs(self) -> bool:
        return any(job.status == JobStatus.PENDING for job in self._load())

    def select_dispatchable(self, limit: int, exclude: Iterable[str] = (), by_priority: bool = False) -> List[BaseJob]:
        """Up to `limit` pending jobs in dispatch order.

        Creation order, oldest first, with queue position breaking ties. With
        `by_priority` higher priorities go first.
        """
        if limit <= 0:
            return []
        excluded = set(exclude)
        candidates = [
            (position, job)
            for position, job in enumerate(self._load())
            if job.status == JobStatus.PENDING and job.id not in excluded
        ]
        if by_priority:
            candidates.sort(key=lambda c: (-c[1].priority, c[1].created_at, c[0]))
        else:
            candidates.sort(key=lambda c: (c[1].created_at, c[0]))
        return [job for _, job in candidates[:limit]]

    def get_stats(self) -> JobStats:
        jobs = self._load()
        stats = JobStats(total=len(jobs), by_type={job_type.value: 0 for job_type in JobType})
        for job in jobs:
            setattr(stats, job.status.value, getattr(stats, job.status.value) + 1)
            stats.by_type[job.type] = stats.by_type.get(job.type, 0) + 1
        return stats

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------
    def _apply_update(self, job: BaseJob, fields: Dict[str, Any], now: int) -> Tuple[BaseJob, List[JobEventType]]:
        """Merge `fields` into `job`. Returns the job and the events to emit.

        A rejected transition returns the job unchanged with no events.
        """
        fields = {key: value for key, value in fields.items() if key not in PROTECTED_FIELDS}
        target = JobStatus(fields.pop("status", job.status))
        transition = target != job.status

        # Only retry_job() moves a job back to pending
        if transition and (target == JobStatus.PENDING or not can_transition(job.status, target)):
            logger.warning(
                "job.invalid_transition",
                extra={"job_id": job.id, "status": f"{job.status.value}->{target.value}"},
            )
            return job, []

        data = job.model_dump()
        data.update(fields)
        data["status"] = target

        if transition:
            if target == JobStatus.PROCESSING and job.started_at is None:
                data["started_at"] = now
            if target in TERMINAL_STATUSES and job.completed_at is None:
                data["completed_at"] = now
        if target == JobStatus.COMPLETED:
            data["progress"] = PROGRESS_MAX
        else:
            data["result"] = None
        if target != JobStatus.FAILED:
            data["error"] = None
        elif not data.get("error"):
            data["error"] = UNKNOWN_ERROR

        updated = type(job).model_validate(data)

        events = [TRANSITION_EVENTS[target]] if transition else []
        if updated.progress != job.progress:
            events.append(JobEventType.PROGRESS)
        events.append(JobEventType.UPDATED)
        return updated, events

    def _mutate(self, job_id: str, change: Callable[[BaseJob, int], Tuple[BaseJob, List[JobEventType]]]) -> Optional[BaseJob]:
        with self._lock:
            snapshot = self._read()
            jobs = snapshot.jobs
            index = _find(jobs, job_id)
            if index is None:
                return None
            updated, events = change(jobs[index], self.clock.now())
            if not events:
                return updated
            jobs[index] = updated
            self._save(jobs, snapshot.unparsed)

        self._emit(events, updated)
        return updated

    def update_job(self, job_id: str, **fields) -> Optional[BaseJob]:
        """Merge `fields` into a job, enforcing the status state machine.

        Returns None for an unknown id and the unchanged job when the status
        transition is not allowed.
        """
        updated = self._mutate(job_id, lambda job, now: self._apply_update(job, fields, now))
        if updated is not None and "status" in fields:
            logger.debug("job.updated", extra={"job_id": job_id, "status": updated.status.value})
        return updated

    def retry_job(self, job_id: str) -> Optional[BaseJob]:
        """Send a failed or cancelled job back to pending while retries remain."""

        def retry(job: BaseJob, now: int) -> Tuple[BaseJob, List[JobEventType]]:
            if job.status not in RETRYABLE_STATUSES or job.retry_count >= job.max_retries:
                logger.info(
                    "job.retry_rejected",
                    extra={"job_id": job.id, "status": job.status.value, "retry_count": job.retry_count},
                )
                return job, []
            data = job.model_dump()
            data.update(
                status=JobStatus.PENDING,
                progress=0,
                error=None,
                result=None,
                started_at=None,
                completed_at=None,
                retry_count=job.retry_count + 1,
            )
            updated = type(job).model_validate(data)
            events = [JobEventType.RETRIED]
            if updated.progress != job.progress:
                events.append(JobEventType.PROGRESS)
            events.append(JobEventType.UPDATED)
            logger.info("job.retried", extra={"job_id": job.id, "retry_count": updated.retry_count})
            return updated, events

        return self._mutate(job_id, retry)

    def cancel_job(self, job_id: str) -> Optional[BaseJob]:
        """Cancel a pending or processing job. Completed jobs are left alone."""

        def cancel(job: BaseJob, now: int) -> Tuple[BaseJob, List[JobEventType]]:
            if job.status not in CANCELLABLE_STATUSES:
                return job, []
            logger.info("job.cancelled", extra={"job_id": job.id, "status": job.status.value})
            return self._apply_update(job, {"status": JobStatus.CANCELLED, "progress": 0}, now)

        return self._mutate(job_id, cancel)

    def set_job_priority(self, job_id: str, priority: int) -> Optional[BaseJob]:
        return self.update_job(job_id, priority=priority)

    def recover_stale_jobs(self, policy: str = "fail") -> List[BaseJob]:
        """Resolve jobs left `processing` by a previous process.

        fail: mark them failed so a user can retry them explicitly.
        requeue: put them back to pending without spending a retry.
        keep: leave them untouched.
        """
        if policy not in STALE_PROCESSING_POLICIES:
            raise ValueError(f"Unknown stale processing policy: {policy}")
        if policy == "keep":
            kept = len(self.get_processing_jobs())
            if kept:
                # Not in any processor's in-flight set, so they hold no slot
                logger.warning("queue.stale_jobs_kept", extra={"count": kept, "policy": policy})
            return []

        changed = []
        with self._lock:
            snapshot = self._read()
            jobs = snapshot.jobs
            now = self.clock.now()
            for index, job in enumerate(jobs):
                if job.status != JobStatus.PROCESSING:
                    continue
                if policy == "fail":
                    updated, events = self._apply_update(
                        job, {"status": JobStatus.FAILED, "error": STALE_JOB_ERROR}, now
                    )
                else:
                    data = job.model_dump()
                    data.update(status=JobStatus.PENDING, progress=0, started_at=None)
                    updated = type(job).model_validate(data)
                    events = [JobEventType.PROGRESS, JobEventType.UPDATED] if job.progress else [JobEventType.UPDATED]
                jobs[index] = updated
                changed.append((updated, events))
            if changed:
                self._save(jobs, snapshot.unparsed)

        for updated, events in changed:
            self._emit(events, updated)
        if changed:
            logger.warning("queue.stale_jobs_recovered", extra={"count": len(changed), "policy": policy})
        return [updated for updated, _ in changed]

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------
    def _remove(self, predicate: Callable[[BaseJob], bool]) -> List[BaseJob]:
        with self._lock:
            snapshot = self._read()
            removed = [job for job in snapshot.jobs if predicate(job)]
            if removed:
                self._save([job for job in snapshot.jobs if not predicate(job)], snapshot.unparsed)

        for job in removed:
            self._emit([JobEventType.REMOVED], job)
        return removed

    def delete_job(self, job_id: str) -> bool:
        return bool(self._remove(lambda job: job.id == job_id))

    def clear_completed(self) -> int:
        count = len(self._remove(lambda job: job.status == JobStatus.COMPLETED))
        logger.info("queue.cleared", extra={"status": "completed", "count": count})
        return count

    def clear_failed(self) -> int:
        count = len(self._remove(lambda job: job.status == JobStatus.FAILED))
        logger.info("queue.cleared", extra={"status": "failed", "count": count})
        return count

    def clear_all(self) -> int:
        count = len(self._remove(lambda job: True))
        logger.info("queue.cleared", extra={"status": "all", "count": count})
        return count
