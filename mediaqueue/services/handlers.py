"""
Job handler registry and the default HTTP generation handlers.

A handler is an async callable `handler(params) -> result` that raises on
failure. Handlers registered with `reports_progress=True` are called as
`handler(params, progress)` where `progress(pct)` updates the running job.

Usage:
    registry = HandlerRegistry()
    registry.register(JobType.AUDIO_GENERATE, generate_audio)
    register_http_handlers(registry, get_settings())
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from mediaqueue.schemas.job import JobType
from mediaqueue.utils.logger import logger
from mediaqueue.utils.metrics import track_duration

Handler = Callable[..., Awaitable[Any]]
ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class RegisteredHandler:
    job_type: JobType
    handler: Handler
    reports_progress: bool = False


class HandlerRegistry:
    """Maps each job type to the coroutine function that performs it."""

    def __init__(self):
        self._handlers: Dict[JobType, RegisteredHandler] = {}

    def register(self, job_type, handler: Handler, *, reports_progress: bool = False) -> None:
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise ValueError(f"Unknown job type: {job_type}") from None
        if not callable(handler):
            raise TypeError(f"Handler for {job_type.value} must be callable")

        if job_type in self._handlers:
            logger.info("handlers.replaced", extra={"job_type": job_type.value})
        self._handlers[job_type] = RegisteredHandler(job_type, handler, reports_progress)

    def unregister(self, job_type) -> bool:
        return self._handlers.pop(JobType(job_type), None) is not None

    def get(self, job_type) -> Optional[RegisteredHandler]:
        try:
            return self._handlers.get(JobType(job_type))
        except ValueError:
            return None

    def __contains__(self, job_type) -> bool:
        return self.get(job_type) is not None

    def registered_types(self) -> List[JobType]:
        return [job_type for job_type in JobType if job_type in self._handlers]

    def missing_types(self) -> List[JobType]:
        return [job_type for job_type in JobType if job_type not in self._handlers]


# ---------------------------------------------------------------------------
# HTTP generation handlers
# ---------------------------------------------------------------------------

# job type -> (endpoint, error used when the response carries none)
GENERATION_ENDPOINTS = {
    JobType.AUDIO_GENERATE: ("/api/audio/generate", "Audio generation failed"),
    JobType.IMAGE_GENERATE: ("/api/art/generate", "Image generation failed"),
    JobType.IMAGE_EDIT: ("/api/art/edit", "Image edit failed"),
    JobType.IMAGE_COMPOSE: ("/api/art/compose", "Image composition failed"),
    JobType.IMAGE_STYLE_TRANSFER: ("/api/art/style-transfer", "Style transfer failed"),
    JobType.TWEET_GENERATE: ("/api/tweet/generate", "Tweet generation failed"),
}

if set(GENERATION_ENDPOINTS) != set(JobType):
    raise RuntimeError("every JobType needs a generation endpoint")


class GenerationRequestError(Exception):
    """The generation API answered with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return default


class GenerationClient:
    """Posts job params to the generation API and returns its JSON body."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def post(self, path: str, payload: Dict[str, Any], default_error: str) -> Any:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            resp = await client.post(
                path,
                headers={
                    "Content-Type": "application/json",
                    "X-API-Key": self.api_key,
                },
                json=payload,
            )

        if resp.is_error:
            message = _error_message(resp, default_error)
            logger.warning(
                "generation.request_failed",
                extra={"path": path, "status": resp.status_code, "error": message},
            )
            raise GenerationRequestError(message, resp.status_code)
        return resp.json()

    def handler_for(self, job_type) -> Handler:
        job_type = JobType(job_type)
        path, default_error = GENERATION_ENDPOINTS[job_type]

        async def handle(params: Dict[str, Any]) -> Any:
            async with track_duration("generation", job_type.value):
                return await self.post(path, params, default_error)

        handle.__name__ = f"handle_{job_type.value.replace('-', '_')}"
        return handle


def register_http_handlers(
    registry: HandlerRegistry,
    settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> GenerationClient:
    """Register a generation API handler for every job type."""
    client = GenerationClient(
        settings.generation_api_base_url,
        api_key=settings.generation_api_key,
        timeout=settings.handler_timeout_seconds,
        transport=transport,
    )
    for job_type in JobType:
        registry.register(job_type, client.handler_for(job_type))
    logger.info("handlers.registered", extra={"count": len(GENERATION_ENDPOINTS), "service": "generation"})
    return client
