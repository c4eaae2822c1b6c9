"""
Background job processor: polls the queue and dispatches to handlers.

Can run as:
  1. Part of the API process (started from the FastAPI lifespan)
  2. Standalone worker: `mediaqueue-worker` or `python -m mediaqueue.worker`

Each tick computes the free slots, moves that many pending jobs to
`processing` and runs their handlers as asyncio tasks. When a handler
settles its slot is released and the processor ticks again right away, in
addition to the fixed polling interval. Failed jobs are never retried
automatically.
"""
import asyncio
import contextlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from mediaqueue.config import get_settings
from mediaqueue.database import build_engine, build_session_factory, init_db
from mediaqueue.schemas.job import BaseJob, JobEvent, JobEventType, JobStatus
from mediaqueue.services.handlers import HandlerRegistry, register_http_handlers
from mediaqueue.services.job_manager import JobQueueManager, QueueLimits
from mediaqueue.services.snapshot_store import (
    JsonFileSnapshotStore,
    MemorySnapshotStore,
    SnapshotStore,
    SqlSnapshotStore,
)
from mediaqueue.utils.logger import logger
from mediaqueue.utils.metrics import gauge, record_job, track_duration


class HandlerTimeoutError(Exception):
    """A TimeoutError raised by the handler itself, not by the processor deadline."""


async def _call_handler(handler, args):
    try:
        return await handler(*args)
    except asyncio.TimeoutError as exc:
        raise HandlerTimeoutError(str(exc) or type(exc).__name__) from exc


@dataclass(frozen=True)
class ProcessorConfig:
    poll_interval_seconds: float = 5.0
    max_concurrent_jobs: int = 2
    handler_timeout_seconds: float = 300.0
    start_progress: int = 10
    priority_scheduling: bool = False
    cancel_inflight_handlers: bool = True

    @classmethod
    def from_settings(cls, settings) -> "ProcessorConfig":
        return cls(
            poll_interval_seconds=settings.poll_interval_seconds,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            handler_timeout_seconds=settings.handler_timeout_seconds,
            start_progress=settings.processing_start_progress,
            priority_scheduling=settings.priority_scheduling,
            cancel_inflight_handlers=settings.cancel_inflight_handlers,
        )


class JobProcessor:
    """Bounded-concurrency scheduler over a JobQueueManager."""

    def __init__(self, queue: JobQueueManager, registry: HandlerRegistry, config: Optional[ProcessorConfig] = None):
        self.queue = queue
        self.registry = registry
        self.config = config or ProcessorConfig()
        # job id -> handler task (None while the job is being marked processing)
        self._in_flight: Dict[str, Optional[asyncio.Task]] = {}
        self._poll_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._unsubscribe: Optional[Callable[[], bool]] = None
        self._attach()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def in_flight_ids(self) -> List[str]:
        return list(self._in_flight)

    def in_flight_task(self, job_id: str) -> Optional[asyncio.Task]:
        return self._in_flight.get(job_id)

    async def wait_idle(self) -> None:
        """Wait until no handler is running, including ones dispatched meanwhile."""
        while True:
            tasks = [task for task in self._in_flight.values() if task is not None]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def tick(self) -> List[str]:
        """Dispatch pending jobs into free slots. Returns the dispatched ids.

        Must be called from a running event loop.
        """
        free = self.config.max_concurrent_jobs - len(self._in_flight)
        if free <= 0:
            return []

        jobs = self.queue.select_dispatchable(
            free,
            exclude=self._in_flight,
            by_priority=self.config.priority_scheduling,
        )
        loop = asyncio.get_running_loop()
        dispatched = []
        for job in jobs:
            self._in_flight[job.id] = None
            started = self.queue.update_job(
                job.id, status=JobStatus.PROCESSING, progress=self.config.start_progress
            )
            if started is None or started.status != JobStatus.PROCESSING:
                # Deleted or cancelled since selection
                self._in_flight.pop(job.id, None)
                continue

            self._in_flight[job.id] = loop.create_task(self._execute(started), name=f"job:{job.id}")
            dispatched.append(job.id)
            record_job("dispatched", job.type)
            logger.info(
                "job.started",
                extra={"job_id": job.id, "job_type": job.type, "in_flight": len(self._in_flight)},
            )

        gauge("in_flight", len(self._in_flight))
        return dispatched

    async def _execute(self, job: BaseJob) -> None:
        entry = self.registry.get(job.type)
        try:
            if entry is None:
                logger.warning("worker.no_handler", extra={"job_type": job.type, "job_id": job.id})
                self._fail(job, f"No handler registered for job type: {job.type}")
                return

            args: List[Any] = [job.params]
            if entry.reports_progress:
                args.append(self._progress_callback(job.id))

            timeout = self.config.handler_timeout_seconds
            try:
                async with track_duration("handler", job.type):
                    result = await asyncio.wait_for(_call_handler(entry.handler, args), timeout=timeout)
            except asyncio.TimeoutError:
                record_job("timed_out", job.type)
                self._fail(job, f"Job timed out after {timeout:g}s")
            except asyncio.CancelledError:
                current = self.queue.get_job(job.id)
                if current is not None and current.status != JobStatus.CANCELLED:
                    raise
                logger.info("worker.handler_cancelled", extra={"job_id": job.id, "job_type": job.type})
            except Exception as exc:
                logger.error(
                    "worker.handler_error",
                    extra={
                        "job_id": job.id,
                        "job_type": job.type,
                        "error": str(exc)[:500],
                        "error_type": type(exc).__name__,
                    },
                )
                self._fail(job, str(exc) or type(exc).__name__)
            else:
                self._complete(job, result)
        finally:
            self._in_flight.pop(job.id, None)
            gauge("in_flight", len(self._in_flight))
            if not self._stopping:
                self._safe_tick()

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception as exc:
            logger.error("worker.poll_error", extra={"error": str(exc)[:500]}, exc_info=True)

    def _complete(self, job: BaseJob, result: Any) -> None:
        updated = self.queue.update_job(job.id, status=JobStatus.COMPLETED, result=result)
        if updated is None or updated.status != JobStatus.COMPLETED:
            logger.info(
                "worker.result_discarded",
                extra={"job_id": job.id, "status": updated.status.value if updated else "deleted"},
            )
            return
        record_job("completed", job.type)
        logger.info("job.completed", extra={"job_id": job.id, "job_type": job.type})

    def _fail(self, job: BaseJob, error: str) -> None:
        updated = self.queue.update_job(job.id, status=JobStatus.FAILED, error=error)
        if updated is None or updated.status != JobStatus.FAILED:
            logger.info(
                "worker.result_discarded",
                extra={"job_id": job.id, "status": updated.status.value if updated else "deleted"},
            )
            return
        record_job("failed", job.type)
        logger.warning("job.failed", extra={"job_id": job.id, "job_type": job.type, "error": error[:500]})

    def _progress_callback(self, job_id: str) -> Callable[[int], None]:
        def report(progress: int) -> None:
            job = self.queue.get_job(job_id)
            if job is not None and job.status == JobStatus.PROCESSING:
                self.queue.update_job(job_id, progress=progress)

        return report

    # ------------------------------------------------------------------
    # Cancellation of running handlers
    # ------------------------------------------------------------------
    def _attach(self) -> None:
        if self.config.cancel_inflight_handlers and self._unsubscribe is None:
            self._unsubscribe = self.queue.subscribe(JobEventType.CANCELLED, self._on_cancelled)

    def _detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_cancelled(self, event: JobEvent) -> None:
        task = self._in_flight.get(event.job_id)
        if task is None or task.done():
            return
        logger.info("worker.cancelling_handler", extra={"job_id": event.job_id})
        # Listeners may run outside the loop thread
        task.get_loop().call_soon_threadsafe(task.cancel)

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start polling on the running event loop."""
        if self.running:
            return
        self._stopping = False
        self._attach()

        missing = self.registry.missing_types()
        if missing:
            logger.warning(
                "worker.missing_handlers",
                extra={"job_type": ",".join(job_type.value for job_type in missing), "count": len(missing)},
            )

        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(), name="job-processor")
        logger.info(
            "worker.started",
            extra={
                "poll_interval": self.config.poll_interval_seconds,
                "max_concurrent": self.config.max_concurrent_jobs,
            },
        )

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stopping:
            started = loop.time()
            self._safe_tick()
            # Next tick is a fixed delay after the start of this one
            delay = self.config.poll_interval_seconds - (loop.time() - started)
            await asyncio.sleep(max(delay, 0))

    async def stop(self, drain: bool = False) -> None:
        """Stop polling. Running handlers are cancelled unless `drain` is set.

        Jobs whose handlers are cancelled here stay `processing` in the store
        and are resolved by the stale job policy on the next start.
        """
        self._stopping = True
        if self._poll_task is not None:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None

        tasks = [task for task in self._in_flight.values() if task is not None]
        if not drain:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._detach()
        logger.info("worker.stopped", extra={"count": len(tasks), "reason": "drain" if drain else "cancel"})


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_store(settings, clock=None) -> SnapshotStore:
    """Durable store selected by `queue_store`."""
    if settings.queue_store == "memory":
        return MemorySnapshotStore(clock=clock)
    if settings.queue_store == "file":
        return JsonFileSnapshotStore(settings.queue_file_path, clock=clock)

    engine = build_engine(settings.database_url, echo=settings.debug)
    init_db(engine)
    return SqlSnapshotStore(build_session_factory(engine), settings.queue_key, clock=clock)


def build_queue(settings, store: Optional[SnapshotStore] = None, clock=None) -> JobQueueManager:
    """Queue manager with the stale job policy applied and expired jobs pruned."""
    if clock is None and store is not None:
        clock = store.clock
    queue = JobQueueManager(
        store or build_store(settings, clock),
        clock=clock,
        limits=QueueLimits.from_settings(settings),
    )
    queue.recover_stale_jobs(settings.stale_processing_policy)
    queue.compact()
    logger.info(
        "queue.ready",
        extra={"store": settings.queue_store, "queue_key": settings.queue_key, "count": queue.get_stats().total},
    )
    return queue


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Run the processor as a standalone process."""
    settings = get_settings()
    queue = build_queue(settings)

    registry = HandlerRegistry()
    register_http_handlers(registry, settings)

    processor = JobProcessor(queue, registry, ProcessorConfig.from_settings(settings))
    processor.start()
    try:
        await asyncio.Event().wait()
    finally:
        await processor.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("worker.interrupted")


if __name__ == "__main__":
    run()
