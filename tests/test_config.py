"""Tests for settings and the limits derived from them."""
import pytest
from pydantic import ValidationError

from mediaqueue.config import Settings, get_settings
from mediaqueue.services.job_manager import QueueLimits
from mediaqueue.services.snapshot_store import JsonFileSnapshotStore, MemorySnapshotStore, SqlSnapshotStore
from mediaqueue.worker import build_store


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.queue_store == "sql"
    assert settings.poll_interval_seconds == 5.0
    assert settings.max_concurrent_jobs == 2
    assert settings.max_queue_size == 100
    assert settings.completed_retention_hours == 24
    assert settings.default_max_retries == 3
    assert settings.default_priority == 5
    assert settings.handler_timeout_seconds == 300.0
    assert settings.stale_processing_policy == "fail"


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("MEDIAQUEUE_MAX_CONCURRENT_JOBS", "4")
    monkeypatch.setenv("MEDIAQUEUE_QUEUE_STORE", "file")
    settings = Settings(_env_file=None)
    assert settings.max_concurrent_jobs == 4
    assert settings.queue_store == "file"


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_concurrent_jobs": 0},
        {"max_queue_size": 0},
        {"default_priority": 11},
        {"queue_store": "redis"},
        {"stale_processing_policy": "ignore"},
    ],
)
def test_invalid_values(overrides):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **overrides)


def test_get_settings_is_cached():
    get_settings.cache_clear()
    assert get_settings() is get_settings()
    get_settings.cache_clear()


def test_queue_limits_from_settings():
    settings = Settings(_env_file=None, completed_retention_hours=0.5, max_queue_size=10, default_priority=8)
    limits = QueueLimits.from_settings(settings)
    assert limits.completed_retention_ms == 30 * 60 * 1000
    assert limits.max_queue_size == 10
    assert limits.default_priority == 8
    assert limits.default_max_retries == 3


def test_build_store_per_backend(tmp_path):
    assert isinstance(build_store(Settings(_env_file=None, queue_store="memory")), MemorySnapshotStore)

    file_store = build_store(
        Settings(_env_file=None, queue_store="file", queue_file_path=str(tmp_path / "q.json"))
    )
    assert isinstance(file_store, JsonFileSnapshotStore)

    sql_store = build_store(
        Settings(_env_file=None, queue_store="sql", database_url=f"sqlite:///{tmp_path / 'db' / 'q.db'}")
    )
    assert isinstance(sql_store, SqlSnapshotStore)
    assert sql_store.load().jobs == []
    assert (tmp_path / "db" / "q.db").exists()
