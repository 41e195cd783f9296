from __future__ import annotations

import json
from typing import Any, List

from ..errors import EmptyContent, ProviderStreamError
from ..types import AnthropicMessage, AnthropicStreamEvent, ProviderReply
from .base import BaseProvider, UpstreamStream, sse_data

__all__ = ["AnthropicProvider"]

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(BaseProvider):
    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["anthropic-version"] = ANTHROPIC_VERSION
        key = self._credential()
        if key:
            headers["x-api-key"] = key
        return headers

    def _url(self) -> str:
        base = (self.defn.base_url or "https://api.anthropic.com").rstrip("/")
        if base.endswith("/messages"):
            return base
        if base.endswith("/v1"):
            return f"{base}/messages"
        return f"{base}/v1/messages"

    def _payload(
        self,
        model: str,
        messages: List[dict[str, str]],
        max_tokens: int,
        temperature: float,
        *,
        stream: bool,
    ) -> dict[str, Any]:
        system_parts = [m["content"] for m in messages if m["role"] == "system"]
        conversation = [m for m in messages if m["role"] != "system"]
        payload: dict[str, Any] = {
            "model": model or self.defn.model,
            "messages": conversation,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        return payload

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
        message = self._decode(AnthropicMessage, data)
        content = message.text.strip()
        if not content:
            raise EmptyContent("upstream returned no text blocks", provider=self.name)
        return ProviderReply(content=content, model=model or message.model or self.defn.model)

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
        # "event:" lines only name the event; the data line repeats its type.
        data = sse_data(line)
        if not data:
            return None
        event = AnthropicStreamEvent.model_validate(json.loads(data))
        if event.type == "error":
            detail = (event.error or {}).get("message") or "upstream stream error"
            raise ProviderStreamError(str(detail), provider=self.name)
        if event.type != "content_block_delta" or event.delta is None:
            return None
        if event.delta.type not in (None, "text_delta"):
            return None
        return event.delta.text or None
