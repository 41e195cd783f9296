from __future__ import annotations

import json
from typing import AsyncIterator, Dict, List

import httpx

from ..router import ProviderDef
from ..types import ProviderReply
from .anthropic import AnthropicProvider
from .base import BaseProvider, UpstreamStream, sse_data
from .ollama import OllamaProvider
from .openai import OpenAICompatProvider, chat_completions_url


def _last_user(messages: List[dict[str, str]]) -> str:
    return next((m["content"] for m in reversed(messages) if m["role"] == "user"), "ping")


class DummyStream:
    """In-process stand-in for UpstreamStream that replays OpenAI-style SSE frames."""

    def __init__(self, tokens: List[str]):
        self._tokens = tokens
        self.closed = False

    async def __aenter__(self) -> "DummyStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _frames(self) -> AsyncIterator[bytes]:
        for token in self._tokens:
            chunk = {"choices": [{"index": 0, "delta": {"content": token}}]}
            yield f"data: {json.dumps(chunk)}\n\n".encode("utf-8")
        yield b"data: [DONE]\n\n"

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._frames()

    async def aclose(self) -> None:
        self.closed = True


class DummyProvider(OpenAICompatProvider):
    """Offline echo provider used with providers.dummy.toml."""

    async def generate(
        self,
        model: str,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> ProviderReply:
        return ProviderReply(content=f"dummy:{_last_user(messages)}", model=model or self.defn.model)

    def open_stream(
        self,
        model: str,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> DummyStream:
        words = f"dummy:{_last_user(messages)}".split(" ")
        tokens = [word if index == 0 else f" {word}" for index, word in enumerate(words)]
        return DummyStream(tokens)


class ProviderRegistry:
    _PROVIDER_FACTORIES: dict[str, type[BaseProvider]] = {
        "openai": OpenAICompatProvider,
        "anthropic": AnthropicProvider,
        "ollama": OllamaProvider,
        "dummy": DummyProvider,
    }

    def __init__(
        self,
        providers: Dict[str, ProviderDef],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.providers: Dict[str, BaseProvider] = {}
        for name, d in providers.items():
            provider_type = (d.type or "").strip()
            factory = self._PROVIDER_FACTORIES.get(provider_type)
            if factory is None:
                raise ValueError(
                    f"Unknown provider type '{provider_type or '<missing>'}' for provider '{name}'"
                )
            self.providers[name] = factory(d, transport=transport)

    def get(self, name: str) -> BaseProvider:
        return self.providers[name]

    def __contains__(self, name: object) -> bool:
        return name in self.providers


__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "DummyProvider",
    "DummyStream",
    "OllamaProvider",
    "OpenAICompatProvider",
    "ProviderRegistry",
    "UpstreamStream",
    "chat_completions_url",
    "sse_data",
]
