import json

import httpx
import pytest

from conftest import FakeBackend, fragments
from copilotgw.app import create_app
from copilotgw.config import BackendSettings, CompletionConfig, Settings
from copilotgw.middleware.headers import REQUEST_ID_HEADER
from copilotgw.sse import decode_records

COMPLETION_BODY = {
    "extra": {"language": "python", "next_indent": 0, "prompt_tokens": 3, "suffix_tokens": 1, "trim_by_indentation": True},
    "max_tokens": 5000,
    "n": 1,
    "prompt": "def foo():\n",
    "stop": ["\n\n"],
    "stream": True,
    "suffix": "",
    "temperature": 0,
    "top_p": 1,
}


def client_for(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def make_settings(**completion):
    return Settings(
        backend=BackendSettings(model="test-model", num_predict=120),
        completion=CompletionConfig(**completion),
        headers={"X-Served-By": "copilotgw"},
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("engine", ["copilot-codex", "chat-control", "gpt-4o-copilot"])
async def test_stream_completion_on_every_alias(engine, fake_backend):
    app = create_app(make_settings(), backend=fake_backend)
    async with client_for(app) as client:
        response = await client.post(f"/v1/engines/{engine}/completions", json=COMPLETION_BODY)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    records = decode_records(response.content)
    assert [r["choices"][0]["text"] for r in records] == ["def foo():", " pass", ""]
    assert response.content.count(b"data: ") == len(records)


@pytest.mark.asyncio
async def test_max_tokens_capped_by_server_ceiling(fake_backend):
    app = create_app(make_settings(), backend=fake_backend)
    async with client_for(app) as client:
        await client.post("/v1/engines/copilot-codex/completions", json=COMPLETION_BODY)
    options = fake_backend.requests[0].options
    assert options.num_predict == 120
    assert options.stop == ("\n\n", "<|im_end|>")


@pytest.mark.asyncio
async def test_malformed_body_is_client_error_without_backend_call(fake_backend):
    app = create_app(make_settings(), backend=fake_backend)
    async with client_for(app) as client:
        response = await client.post("/v1/engines/copilot-codex/completions", content=b"{broken")
    assert response.status_code == 400
    assert fake_backend.requests == []


@pytest.mark.asyncio
async def test_template_failure_is_server_error(fake_backend):
    app = create_app(make_settings(prompt_template="{{ prefix }}{{ missing }}"), backend=fake_backend)
    async with client_for(app) as client:
        response = await client.post("/v1/engines/copilot-codex/completions", json=COMPLETION_BODY)
    assert response.status_code == 500
    assert fake_backend.requests == []


@pytest.mark.asyncio
async def test_non_streaming_completion(fake_backend):
    app = create_app(make_settings(), backend=fake_backend)
    body = dict(COMPLETION_BODY, stream=False)
    async with client_for(app) as client:
        response = await client.post("/v1/engines/copilot-codex/completions", json=body)
    assert response.status_code == 200
    payload = response.json()
    assert payload["choices"] == [{"text": "def foo(): pass", "index": 0, "finish_reason": "stop"}]


@pytest.mark.asyncio
async def test_non_streaming_timeout_is_gateway_timeout():
    backend = FakeBackend([], hang=True)
    app = create_app(make_settings(timeout_s=0.05), backend=backend)
    body = dict(COMPLETION_BODY, stream=False)
    async with client_for(app) as client:
        response = await client.post("/v1/engines/copilot-codex/completions", json=body)
    assert response.status_code == 504


@pytest.mark.asyncio
async def test_streaming_timeout_keeps_status_and_terminates_in_band():
    backend = FakeBackend(fragments("x = 1", final=False), hang=True)
    app = create_app(make_settings(timeout_s=0.05), backend=backend)
    async with client_for(app) as client:
        response = await client.post("/v1/engines/copilot-codex/completions", json=COMPLETION_BODY)
    assert response.status_code == 200
    records = decode_records(response.content)
    assert records[-1]["chunk"]["done"] is True
    assert records[-1]["choices"][0]["finish_reason"] == "timeout"


@pytest.mark.asyncio
async def test_unknown_engine_and_wrong_method(fake_backend):
    app = create_app(make_settings(), backend=fake_backend)
    async with client_for(app) as client:
        unknown = await client.post("/v1/engines/davinci/completions", json=COMPLETION_BODY)
        wrong_method = await client.get("/v1/engines/copilot-codex/completions")
    assert unknown.status_code == 404
    assert wrong_method.status_code == 405


@pytest.mark.asyncio
async def test_health_token_and_stamped_headers(fake_backend):
    app = create_app(make_settings(), backend=fake_backend)
    async with client_for(app) as client:
        health = await client.get("/health")
        token = await client.get("/copilot_internal/v2/token")
        echoed = await client.get("/health", headers={REQUEST_ID_HEADER: "abc123"})

    assert health.json() == {"status": "ok"}
    assert health.headers["X-Served-By"] == "copilotgw"
    assert len(health.headers[REQUEST_ID_HEADER]) == 32
    assert echoed.headers[REQUEST_ID_HEADER] == "abc123"
    payload = token.json()
    assert set(payload) == {"token", "expires_at", "refresh_in"}
    assert payload["refresh_in"] == 1800


@pytest.mark.asyncio
async def test_unknown_backend_type_fails_route_not_process():
    settings = Settings(backend=BackendSettings(type="llamafile"))
    app = create_app(settings)
    async with client_for(app) as client:
        health = await client.get("/health")
        response = await client.post("/v1/engines/copilot-codex/completions", json=COMPLETION_BODY)
    assert health.json() == {"status": "degraded"}
    assert response.status_code == 500
    assert "Backend unavailable" in response.json()["detail"]


@pytest.mark.asyncio
async def test_backend_check_failure_at_startup_degrades():
    backend = FakeBackend(check_error=ConnectionError("refused"))
    app = create_app(make_settings(), backend=backend)
    async with app.router.lifespan_context(app):
        async with client_for(app) as client:
            health = await client.get("/health")
            response = await client.post("/v1/engines/copilot-codex/completions", json=COMPLETION_BODY)
    assert health.json() == {"status": "degraded"}
    assert response.status_code == 500
    assert backend.requests == []
