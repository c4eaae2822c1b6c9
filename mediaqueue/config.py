from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="MEDIAQUEUE_", extra="ignore")

    # App Settings
    app_name: str = "MediaQueue"
    app_version: str = "1.0.0"
    debug: bool = False

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = 8000
    allowed_origins: str = "http://localhost:3000"
    enqueue_rate_limit: str = "60/minute"

    # Durable store
    queue_store: Literal["sql", "file", "memory"] = "sql"
    database_url: str = "sqlite:///./database/mediaqueue.db"
    queue_file_path: str = "./database/job-queue.json"
    queue_key: str = "aiapps-job-queue"

    # Queue limits
    max_queue_size: int = Field(100, ge=1)
    completed_retention_hours: float = Field(24, gt=0)
    default_max_retries: int = Field(3, ge=0)
    default_priority: int = Field(5, ge=1, le=10)

    # Processor
    processor_enabled: bool = True
    poll_interval_seconds: float = Field(5.0, gt=0)
    max_concurrent_jobs: int = Field(2, ge=1)
    handler_timeout_seconds: float = Field(300.0, gt=0)
    processing_start_progress: int = Field(10, ge=0, le=100)
    priority_scheduling: bool = False
    cancel_inflight_handlers: bool = True
    stale_processing_policy: Literal["fail", "requeue", "keep"] = "fail"

    # Generation API (external collaborator the default handlers call)
    generation_api_base_url: str = "http://localhost:3000"
    generation_api_key: str = ""


@lru_cache()
def get_settings() -> Settings:
    return Settings()
