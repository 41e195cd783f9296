import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from gengate.dispatcher import Dispatcher
from gengate.providers import ProviderRegistry
from gengate.router import ProviderDef

HEADLINE = {"prompt": "Write a headline", "kind": "headline"}


def read_jobs(tmp_path: Path) -> list[dict[str, Any]]:
    jobs: list[dict[str, Any]] = []
    for path in sorted((tmp_path / "records").glob("jobs-*.jsonl")):
        jobs.extend(json.loads(line) for line in path.read_text(encoding="utf-8").splitlines())
    return jobs


def upstream_registry(statuses: dict[str, int]) -> ProviderRegistry:
    """OpenAI-compatible providers whose answers are fixed per provider name."""

    def handler(request: httpx.Request) -> httpx.Response:
        name = request.url.host.split(".")[0]
        status = statuses[name]
        if status >= 400:
            return httpx.Response(status, json={"error": {"message": "down"}})
        return httpx.Response(200, json={"choices": [{"message": {"content": f"from {name}"}}]})

    defs = {
        name: ProviderDef(
            name=name, type="openai", base_url=f"https://{name}.test/v1", model=f"{name}-model", auth_env=None
        )
        for name in statuses
    }
    return ProviderRegistry(defs, transport=httpx.MockTransport(handler))


def test_generate_returns_content_and_headers(load_server, tmp_path: Path) -> None:
    server = load_server()
    client = TestClient(server.app)

    response = client.post("/v1/generate", json=HEADLINE)

    assert response.status_code == 200
    body = response.json()
    assert body["content"] == "dummy:Write a headline"
    assert body["modelUsed"] == "dummy-together"
    assert body["provider"] == "together"
    assert body["hints"] == []
    assert isinstance(body["durationMs"], int)
    assert body["wordCount"] == 3
    assert body["charCount"] == len("dummy:Write a headline")
    assert response.headers["x-gengate-provider"] == "together"
    assert response.headers["x-gengate-fallback-attempts"] == "0"
    request_id = response.headers["x-gengate-request-id"]

    jobs = read_jobs(tmp_path)
    assert len(jobs) == 1
    assert jobs[0]["request_id"] == request_id
    assert jobs[0]["ok"] is True
    assert jobs[0]["identity"] == "ip:testclient"
    assert jobs[0]["stream"] is False


def test_markup_generation_returns_hints(load_server) -> None:
    server = load_server()
    client = TestClient(server.app)

    response = client.post("/v1/generate", json={"prompt": '<img src="hero.png">', "kind": "component"})

    assert response.status_code == 200
    assert response.json()["hints"] == ["1 image is missing alternative text (alt attribute)."]


@pytest.mark.parametrize(
    ("payload", "fragment"),
    [
        ({"kind": "headline"}, "prompt must not be empty"),
        ({"prompt": "hi"}, "kind: Field required"),
        ({"prompt": "x" * 4001, "kind": "blog"}, "at most 4000 characters"),
        ({"prompt": "hi", "kind": "poem"}, "kind:"),
        ({"kind": "blog", "priorOutput": "draft"}, "must be provided together"),
    ],
)
def test_invalid_requests_are_rejected(load_server, payload: dict[str, Any], fragment: str) -> None:
    server = load_server()
    client = TestClient(server.app)

    response = client.post("/v1/generate", json=payload)

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "invalid_request"
    assert error["retryable"] is False
    assert fragment in error["message"]


@pytest.mark.parametrize(
    ("content", "fragment"),
    [("not json", "valid JSON"), ("[1, 2]", "JSON object")],
)
def test_non_object_bodies_are_rejected(load_server, content: str, fragment: str) -> None:
    server = load_server()
    client = TestClient(server.app)

    response = client.post(
        "/v1/generate", content=content, headers={"content-type": "application/json"}
    )

    assert response.status_code == 400
    assert fragment in response.json()["error"]["message"]


def test_guest_rate_limit_returns_retry_after(load_server) -> None:
    server = load_server()
    client = TestClient(server.app)

    assert client.post("/v1/generate", json={"kind": "headline"}).status_code == 400
    for _ in range(3):
        assert client.post("/v1/generate", json=HEADLINE).status_code == 200

    response = client.post("/v1/generate", json=HEADLINE)

    assert response.status_code == 429
    error = response.json()["error"]
    assert error["code"] == "rate_limited"
    assert error["retryable"] is True
    retry_after = int(response.headers["Retry-After"])
    assert 1 <= retry_after <= 3600
    assert error["retry_after"] == retry_after

    other = client.post("/v1/generate", json=HEADLINE, headers={"x-forwarded-for": "198.51.100.2"})
    assert other.status_code == 200


def test_forwarded_address_is_the_guest_identity(load_server, tmp_path: Path) -> None:
    server = load_server()
    client = TestClient(server.app)

    client.post("/v1/generate", json=HEADLINE, headers={"x-forwarded-for": "203.0.113.7, 10.0.0.1"})

    assert read_jobs(tmp_path)[0]["identity"] == "ip:203.0.113.7"


def test_tier_outside_plan_is_rejected_before_admission(load_server) -> None:
    server = load_server(api_keys="k")
    client = TestClient(server.app, headers={"x-api-key": "k"})
    quality = {**HEADLINE, "tier": "quality"}

    for _ in range(5):
        response = client.post("/v1/generate", json=quality)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "tier_not_permitted"
    assert client.post("/v1/generate", json=HEADLINE).status_code == 200

    pro = client.post(
        "/v1/generate", json=quality, headers={"x-gengate-account": "acme", "x-gengate-plan": "pro"}
    )
    assert pro.status_code == 200
    assert pro.json()["modelUsed"] == "dummy-together"


def test_account_headers_are_ignored_without_inbound_keys(load_server, tmp_path: Path) -> None:
    server = load_server()
    client = TestClient(server.app)
    claimed = {"x-gengate-account": "acme", "x-gengate-plan": "pro"}

    for _ in range(3):
        assert client.post("/v1/generate", json=HEADLINE, headers=claimed).status_code == 200
    limited = client.post("/v1/generate", json=HEADLINE, headers=claimed)
    quality = client.post("/v1/generate", json={**HEADLINE, "tier": "quality"}, headers=claimed)

    assert limited.status_code == 429
    assert quality.status_code == 403
    assert {job["identity"] for job in read_jobs(tmp_path)} == {"ip:testclient"}


def test_account_headers_are_honoured_behind_inbound_keys(load_server, tmp_path: Path) -> None:
    server = load_server(api_keys="k")
    client = TestClient(server.app, headers={"x-api-key": "k"})

    for _ in range(4):
        response = client.post("/v1/generate", json=HEADLINE, headers={"x-gengate-account": "acme"})
        assert response.status_code == 200

    assert client.post("/v1/generate", json=HEADLINE).status_code == 200
    identities = [job["identity"] for job in read_jobs(tmp_path)]
    assert identities.count("account:acme") == 4


def test_all_providers_failing_returns_503(load_server, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    server = load_server()
    monkeypatch.setattr(server, "dispatcher", Dispatcher(upstream_registry({"together": 500, "free": 502})))
    client = TestClient(server.app)

    response = client.post("/v1/generate", json=HEADLINE)

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "all_providers_exhausted"
    assert error["retryable"] is True
    assert response.headers["Retry-After"] == "30"
    assert response.headers["x-gengate-provider"] == "free"
    job = read_jobs(tmp_path)[0]
    assert job["ok"] is False
    assert job["status"] == 503
    assert job["attempts"] == 2
    assert job["error_code"] == "all_providers_exhausted"


def test_fallback_is_reported_in_headers(load_server, monkeypatch: pytest.MonkeyPatch) -> None:
    server = load_server()
    monkeypatch.setattr(server, "dispatcher", Dispatcher(upstream_registry({"together": 503, "free": 200})))
    client = TestClient(server.app)

    response = client.post("/v1/generate", json=HEADLINE)

    assert response.status_code == 200
    assert response.json()["content"] == "from free"
    assert response.headers["x-gengate-provider"] == "free"
    assert response.headers["x-gengate-fallback-attempts"] == "1"


def test_api_key_guard(load_server) -> None:
    server = load_server(api_keys="k-one, k-two")
    client = TestClient(server.app)

    missing = client.post("/v1/generate", json=HEADLINE)
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "invalid_api_key"
    assert client.post("/v1/generate", json=HEADLINE, headers={"x-api-key": "wrong"}).status_code == 401
    assert client.post("/v1/generate", json=HEADLINE, headers={"x-api-key": "k-two"}).status_code == 200
    assert (
        client.post("/v1/generate", json=HEADLINE, headers={"Authorization": "Bearer k-one"}).status_code
        == 200
    )
    assert client.get("/metrics").status_code == 401
    assert client.get("/metrics", headers={"x-api-key": "k-one"}).status_code == 200
    assert client.get("/healthz").status_code == 200


def test_healthz_reports_providers_and_watch_paths(load_server) -> None:
    server = load_server()
    client = TestClient(server.app)

    body = client.get("/healthz").json()

    assert body["status"] == "ok"
    assert body["providers"] == [
        {"name": "free", "type": "dummy", "configured": True},
        {"name": "groq", "type": "dummy", "configured": False},
        {"name": "together", "type": "dummy", "configured": True},
    ]
    assert [entry["path"] for entry in body["resolver"]["watch"]] == ["providers.dummy.toml", "router.yaml"]
    assert body["resolver"]["last_reload_at"].endswith("Z")


def test_tiers_follow_credentials_at_request_time(load_server, monkeypatch: pytest.MonkeyPatch) -> None:
    server = load_server()
    client = TestClient(server.app)

    smart = client.get("/v1/tiers").json()["tiers"]["smart"]
    assert smart == [
        {"provider": "together", "model": "dummy-together", "position": 0},
        {"provider": "free", "model": "dummy-free", "position": 1},
    ]

    monkeypatch.setenv("TEST_GATE_GROQ_KEY", "gk")
    smart = client.get("/v1/tiers").json()["tiers"]["smart"]
    assert [entry["provider"] for entry in smart] == ["groq", "together", "free"]
    assert client.post("/v1/generate", json=HEADLINE).json()["provider"] == "groq"


def test_metrics_exposes_generation_counters(load_server) -> None:
    server = load_server()
    client = TestClient(server.app)
    client.post("/v1/generate", json=HEADLINE)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 'gengate_jobs_total{kind="headline",tier="smart",outcome="ok"} 1' in response.text
    assert 'gengate_provider_jobs_total{provider="together",stream="false"} 1' in response.text


class _GoneRequest:
    async def is_disconnected(self) -> bool:
        return True


def test_disconnect_cancels_the_generation(load_server, monkeypatch: pytest.MonkeyPatch) -> None:
    server = load_server()
    monkeypatch.setattr(server, "DISCONNECT_POLL_INTERVAL", 0.01)

    async def scenario() -> None:
        cancelled = asyncio.Event()

        async def slow_generation() -> str:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return "never"

        with pytest.raises(server._ClientDisconnected):
            await server._run_bound_to_client(_GoneRequest(), slow_generation())
        await asyncio.wait_for(cancelled.wait(), 1.0)

    asyncio.run(scenario())


def test_unexpected_errors_use_the_envelope(load_server, monkeypatch: pytest.MonkeyPatch) -> None:
    server = load_server()

    def explode(tier):
        raise RuntimeError("secret stack detail")

    monkeypatch.setattr(server.resolver, "resolve", explode)
    client = TestClient(server.app, raise_server_exceptions=False)

    response = client.post("/v1/generate", json=HEADLINE)

    assert response.status_code == 500
    assert response.json()["error"] == {
        "message": "internal error",
        "type": "server_error",
        "code": "internal_error",
        "retryable": False,
    }
    assert "secret" not in response.text
