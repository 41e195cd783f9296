from __future__ import annotations

import json
from typing import Any, List

from ..errors import EmptyContent, ProviderError, ProviderStreamError
from ..types import OllamaChatChunk, ProviderReply
from .base import BaseProvider, UpstreamStream

__all__ = ["OllamaProvider"]


class OllamaProvider(BaseProvider):
    def _url(self) -> str:
        return f"{self.defn.base_url.rstrip('/')}/api/chat"

    def _payload(
        self,
        model: str,
        messages: List[dict[str, str]],
        max_tokens: int,
        temperature: float,
        *,
        stream: bool,
    ) -> dict[str, Any]:
        return {
            "model": model or self.defn.model,
            "messages": messages,
            "stream": stream,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }

    async def generate(
        self,
        model: str,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> ProviderReply:
        data = await self._post_json(
            self._url(), self._payload(model, messages, max_tokens, temperature, stream=False), timeout
        )
        chunk = self._decode(OllamaChatChunk, data)
        if chunk.error:
            raise ProviderError(f"upstream error: {chunk.error}", provider=self.name)
        content = chunk.text.strip()
        if not content:
            raise EmptyContent("upstream returned empty content", provider=self.name)
        return ProviderReply(content=content, model=model or chunk.model or self.defn.model)

    def open_stream(
        self,
        model: str,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> UpstreamStream:
        return self._stream(
            self._url(), self._payload(model, messages, max_tokens, temperature, stream=True), timeout
        )

    def extract_stream_token(self, line: str) -> str | None:
        # NDJSON: one object per line.
        stripped = line.strip()
        if not stripped:
            return None
        chunk = OllamaChatChunk.model_validate(json.loads(stripped))
        if chunk.error:
            raise ProviderStreamError(chunk.error, provider=self.name)
        return chunk.text or None
