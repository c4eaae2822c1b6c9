"""
Pydantic schemas for the background job queue.

One model per job type, tagged by ``type``, so a persisted job always parses
back into its own variant. Field names serialize in camelCase to keep the
snapshot format ``{"jobs": [...], "lastUpdated": ...}`` readable by older
clients; unknown fields on a job survive a load/save cycle.
"""
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

PROGRESS_MIN, PROGRESS_MAX = 0, 100
PRIORITY_MIN, PRIORITY_MAX = 1, 10
DEFAULT_PRIORITY = 5


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobType(str, Enum):
    AUDIO_GENERATE = "audio-generate"
    IMAGE_GENERATE = "image-generate"
    IMAGE_EDIT = "image-edit"
    IMAGE_COMPOSE = "image-compose"
    IMAGE_STYLE_TRANSFER = "image-style-transfer"
    TWEET_GENERATE = "tweet-generate"


class JobEventType(str, Enum):
    ADDED = "job:added"
    STARTED = "job:started"
    PROGRESS = "job:progress"
    COMPLETED = "job:completed"
    FAILED = "job:failed"
    CANCELLED = "job:cancelled"
    RETRIED = "job:retried"
    UPDATED = "job:updated"
    REMOVED = "job:removed"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ========== Jobs ==========
class BaseJob(CamelModel):
    """Fields shared by every job variant"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    type: str
    status: JobStatus = JobStatus.PENDING
    params: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    progress: int = 0
    priority: int = DEFAULT_PRIORITY
    retry_count: int = Field(0, ge=0)
    max_retries: int = Field(3, ge=0)
    created_at: int
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    error: Optional[str] = None

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp_progress(cls, value: Any) -> int:
        if value is None:
            return PROGRESS_MIN
        return clamp(int(value), PROGRESS_MIN, PROGRESS_MAX)

    @field_validator("priority", mode="before")
    @classmethod
    def _clamp_priority(cls, value: Any) -> int:
        if value is None:
            return DEFAULT_PRIORITY
        return clamp(int(value), PRIORITY_MIN, PRIORITY_MAX)

    @model_validator(mode="after")
    def _retries_cover_count(self) -> "BaseJob":
        # retry_count never exceeds max_retries
        if self.max_retries < self.retry_count:
            self.max_retries = self.retry_count
        return self

    @property
    def recency(self) -> int:
        """Timestamp used for capacity eviction: completion time, else creation time"""
        return self.completed_at if self.completed_at is not None else self.created_at


class AudioGenerateJob(BaseJob):
    type: Literal["audio-generate"] = "audio-generate"


class ImageGenerateJob(BaseJob):
    type: Literal["image-generate"] = "image-generate"


class ImageEditJob(BaseJob):
    type: Literal["image-edit"] = "image-edit"


class ImageComposeJob(BaseJob):
    type: Literal["image-compose"] = "image-compose"


class ImageStyleTransferJob(BaseJob):
    type: Literal["image-style-transfer"] = "image-style-transfer"


class TweetGenerateJob(BaseJob):
    type: Literal["tweet-generate"] = "tweet-generate"


Job = Annotated[
    Union[
        AudioGenerateJob,
        ImageGenerateJob,
        ImageEditJob,
        ImageComposeJob,
        ImageStyleTransferJob,
        TweetGenerateJob,
    ],
    Field(discriminator="type"),
]

job_adapter: TypeAdapter = TypeAdapter(Job)

JOB_VARIANTS = {
    JobType.AUDIO_GENERATE: AudioGenerateJob,
    JobType.IMAGE_GENERATE: ImageGenerateJob,
    JobType.IMAGE_EDIT: ImageEditJob,
    JobType.IMAGE_COMPOSE: ImageComposeJob,
    JobType.IMAGE_STYLE_TRANSFER: ImageStyleTransferJob,
    JobType.TWEET_GENERATE: TweetGenerateJob,
}

if set(JOB_VARIANTS) != set(JobType):
    raise RuntimeError("every JobType needs a job model")


# ========== Snapshot, events, stats ==========
class JobQueueSnapshot(CamelModel):
    """The entire persisted state of one queue"""
    jobs: List[Job] = Field(default_factory=list)
    last_updated: int = 0
    # Stored entries this build cannot parse (e.g. job types added later).
    # Written back untouched, never dispatched, counted or evicted.
    unparsed: List[Dict[str, Any]] = Field(default_factory=list, exclude=True)


class JobEvent(CamelModel):
    type: JobEventType
    job_id: str
    job: Job
    timestamp: int


class JobStats(CamelModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)


# ========== API payloads ==========
class EnqueueJobRequest(CamelModel):
    """Body of POST /api/jobs/{job_type}"""
    params: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    max_retries: Optional[int] = Field(None, ge=0, le=20)


class PriorityRequest(CamelModel):
    priority: int
