"""Tests for the handler registry and the HTTP generation handlers."""
import json

import httpx
import pytest

from mediaqueue.config import Settings
from mediaqueue.schemas.job import JobType
from mediaqueue.services.handlers import (
    GENERATION_ENDPOINTS,
    GenerationClient,
    GenerationRequestError,
    HandlerRegistry,
    register_http_handlers,
)


async def noop(params):
    return None


# ─── Registry ──────────────────────────────────────────────────────

def test_register_and_get():
    registry = HandlerRegistry()
    registry.register("audio-generate", noop)

    entry = registry.get(JobType.AUDIO_GENERATE)
    assert entry.handler is noop
    assert entry.reports_progress is False
    assert "audio-generate" in registry
    assert "tweet-generate" not in registry
    assert "video-generate" not in registry


def test_register_unknown_type():
    with pytest.raises(ValueError, match="Unknown job type"):
        HandlerRegistry().register("video-generate", noop)


def test_register_non_callable():
    with pytest.raises(TypeError):
        HandlerRegistry().register(JobType.AUDIO_GENERATE, "not a function")


def test_register_replaces_and_unregisters():
    registry = HandlerRegistry()
    registry.register(JobType.IMAGE_EDIT, noop)

    async def other(params, progress):
        return None

    registry.register(JobType.IMAGE_EDIT, other, reports_progress=True)
    assert registry.get(JobType.IMAGE_EDIT).handler is other
    assert registry.get(JobType.IMAGE_EDIT).reports_progress is True

    assert registry.unregister(JobType.IMAGE_EDIT) is True
    assert registry.unregister(JobType.IMAGE_EDIT) is False
    assert registry.get(JobType.IMAGE_EDIT) is None


def test_registered_and_missing_types():
    registry = HandlerRegistry()
    registry.register(JobType.TWEET_GENERATE, noop)
    registry.register(JobType.AUDIO_GENERATE, noop)

    assert registry.registered_types() == [JobType.AUDIO_GENERATE, JobType.TWEET_GENERATE]
    assert JobType.IMAGE_GENERATE in registry.missing_types()
    assert len(registry.missing_types()) == len(JobType) - 2


# ─── HTTP handlers ─────────────────────────────────────────────────

def recording_transport(status=200, body=None):
    requests = []

    def handle(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status, json=body if body is not None else {"ok": True})

    return httpx.MockTransport(handle), requests


@pytest.mark.asyncio
async def test_http_handler_posts_params():
    transport, requests = recording_transport(body={"audioBase64": "AAA", "metadata": {"bpm": 120}})
    client = GenerationClient("http://gen.local/", api_key="secret", transport=transport)
    handler = client.handler_for(JobType.AUDIO_GENERATE)

    result = await handler({"prompt": "epic battle theme", "bpm": 120})

    assert result == {"audioBase64": "AAA", "metadata": {"bpm": 120}}
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == "http://gen.local/api/audio/generate"
    assert request.headers["X-API-Key"] == "secret"
    assert json.loads(request.content) == {"prompt": "epic battle theme", "bpm": 120}


@pytest.mark.asyncio
async def test_http_handler_error_message_from_body():
    transport, _ = recording_transport(status=429, body={"error": "rate limited"})
    handler = GenerationClient("http://gen.local", transport=transport).handler_for("image-generate")

    with pytest.raises(GenerationRequestError, match="rate limited") as exc_info:
        await handler({"prompt": "castle"})
    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_http_handler_default_error_message():
    def handle(request):
        return httpx.Response(500, text="<html>oops</html>")

    client = GenerationClient("http://gen.local", transport=httpx.MockTransport(handle))
    handler = client.handler_for(JobType.IMAGE_STYLE_TRANSFER)

    with pytest.raises(GenerationRequestError, match="Style transfer failed"):
        await handler({})


@pytest.mark.asyncio
async def test_register_http_handlers_covers_every_type():
    transport, requests = recording_transport()
    settings = Settings(_env_file=None, generation_api_base_url="http://gen.local", generation_api_key="k")
    registry = HandlerRegistry()

    register_http_handlers(registry, settings, transport=transport)
    assert registry.missing_types() == []

    for job_type in JobType:
        await registry.get(job_type).handler({"n": 1})
    paths = [request.url.path for request in requests]
    assert paths == [GENERATION_ENDPOINTS[job_type][0] for job_type in JobType]
