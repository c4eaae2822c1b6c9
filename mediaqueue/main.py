from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from mediaqueue.config import Settings, get_settings
from mediaqueue.middleware.correlation import CorrelationMiddleware
from mediaqueue.routes import jobs
from mediaqueue.services.handlers import HandlerRegistry, register_http_handlers
from mediaqueue.services.snapshot_store import SnapshotStore
from mediaqueue.utils.logger import logger
from mediaqueue.worker import JobProcessor, ProcessorConfig, build_queue


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info("app.starting", extra={"store": settings.queue_store, "queue_key": settings.queue_key})

    queue = build_queue(settings, store=app.state.store)
    app.state.queue = queue

    registry = app.state.registry
    if registry is None:
        registry = HandlerRegistry()
        register_http_handlers(registry, settings)

    processor = None
    if settings.processor_enabled:
        processor = JobProcessor(queue, registry, ProcessorConfig.from_settings(settings))
        processor.start()
    app.state.processor = processor

    logger.info("app.ready", extra={"path": f"http://{settings.backend_host}:{settings.backend_port}"})
    try:
        yield
    finally:
        if processor is not None:
            await processor.stop()
        logger.info("app.stopped")


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[HandlerRegistry] = None,
    store: Optional[SnapshotStore] = None,
) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.store = store
    app.state.queue = None
    app.state.processor = None

    app.state.limiter = jobs.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # CORS - Explicit origins from config
    allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key", "X-Correlation-ID"],
    )
    app.add_middleware(CorrelationMiddleware)

    # Health check endpoint (minimal response to prevent information disclosure)
    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    app.include_router(jobs.router, prefix="/api/jobs", tags=["Jobs"])
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "mediaqueue.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug,
    )
