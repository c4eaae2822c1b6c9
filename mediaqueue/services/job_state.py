"""
Job status state machine.

    pending ──► processing ──► completed
       │            │
       │            ├────────► failed ────┐
       ▼            ▼                     │ retry
    cancelled ◄─────┘                     │
       │                                  │
       └──────────── retry ──► pending ◄──┘

``processing → cancelled`` lets a user cancel a running job; the handler's
eventual outcome is then rejected because ``cancelled`` only leads back to
``pending`` through an explicit retry.
"""
from typing import Dict, FrozenSet, Union

from mediaqueue.schemas.job import JobStatus

TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
}

RETRYABLE_STATUSES = frozenset(
    status for status, targets in TRANSITIONS.items() if JobStatus.PENDING in targets
)
CANCELLABLE_STATUSES = frozenset(
    status for status, targets in TRANSITIONS.items() if JobStatus.CANCELLED in targets
)


def can_transition(current: Union[JobStatus, str], target: Union[JobStatus, str]) -> bool:
    """True when moving from `current` to a different `target` status is allowed."""
    return JobStatus(target) in TRANSITIONS[JobStatus(current)]
