import asyncio
import json

import httpx
import pytest

from gengate.errors import EmptyContent, ProviderError, ProviderStreamError
from gengate.providers import OllamaProvider
from gengate.router import ProviderDef

MESSAGES = [{"role": "user", "content": "tell me a story"}]


def make_provider(handler) -> OllamaProvider:
    defn = ProviderDef(
        name="local",
        type="ollama",
        base_url="http://localhost:11434/",
        model="llama3.1:8b",
        auth_env=None,
    )
    return OllamaProvider(defn, transport=httpx.MockTransport(handler))


def run_generate(provider: OllamaProvider):
    return asyncio.run(provider.generate("", MESSAGES, max_tokens=800, temperature=0.8, timeout=5.0))


def test_generate_maps_options_and_reads_message() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"model": "llama3.1:8b", "message": {"role": "assistant", "content": "Once upon"}, "done": True},
        )

    reply = run_generate(make_provider(handler))

    assert reply.content == "Once upon"
    assert str(seen[0].url) == "http://localhost:11434/api/chat"
    body = json.loads(seen[0].content)
    assert body["options"] == {"temperature": 0.8, "num_predict": 800}
    assert body["stream"] is False
    assert body["model"] == "llama3.1:8b"


def test_generate_reports_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "model 'llama3.1:8b' not found"})

    with pytest.raises(ProviderError, match="not found") as excinfo:
        run_generate(make_provider(handler))

    assert not isinstance(excinfo.value, EmptyContent)


def test_generate_empty_message_is_empty_content() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"message": {"role": "assistant", "content": ""}, "done": True})

    with pytest.raises(EmptyContent):
        run_generate(make_provider(handler))


def test_extract_stream_token_reads_ndjson() -> None:
    provider = make_provider(lambda request: httpx.Response(200))

    assert provider.extract_stream_token('{"message": {"content": "Once"}, "done": false}') == "Once"
    assert provider.extract_stream_token('{"done": true}') is None
    assert provider.extract_stream_token("   ") is None
    with pytest.raises(ValueError):
        provider.extract_stream_token("data: not-ndjson")
    with pytest.raises(ProviderStreamError):
        provider.extract_stream_token('{"error": "out of memory"}')
