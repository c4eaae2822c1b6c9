"""
Storage bounds for the job queue.

Retention drops completed jobs older than the retention window (applied on
load). Eviction keeps only the most recently created/completed jobs once the
queue grows past its maximum size (applied on load and save).
"""
from typing import List, Sequence

from mediaqueue.schemas.job import BaseJob, JobStatus


def apply_retention(jobs: Sequence[BaseJob], now: int, retention_ms: int) -> List[BaseJob]:
    """Drop completed jobs whose completedAt is at least `retention_ms` old.

    Jobs in any other status are kept regardless of age.
    """
    kept = []
    for job in jobs:
        if (
            job.status == JobStatus.COMPLETED
            and job.completed_at is not None
            and now - job.completed_at >= retention_ms
        ):
            continue
        kept.append(job)
    return kept


def apply_capacity(jobs: Sequence[BaseJob], max_size: int) -> List[BaseJob]:
    """Keep the `max_size` jobs with the latest `completedAt ?? createdAt`.

    Survivors keep their original relative order.
    """
    if len(jobs) <= max_size:
        return list(jobs)
    ranked = sorted(range(len(jobs)), key=lambda i: jobs[i].recency, reverse=True)
    keep = set(ranked[:max_size])
    return [job for i, job in enumerate(jobs) if i in keep]
