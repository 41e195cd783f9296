from __future__ import annotations

import json
from typing import Any, List
from urllib.parse import urlparse, urlunparse

from ..errors import EmptyContent, ProviderStreamError
from ..types import OpenAIChatCompletion, OpenAIStreamChunk, ProviderReply
from .base import BaseProvider, UpstreamStream, sse_data

__all__ = ["OpenAICompatProvider", "chat_completions_url"]


def _is_version_segment(segment: str) -> bool:
    lowered = segment.lower()
    return len(lowered) > 1 and lowered[0] == "v" and lowered[1].isdigit()


def chat_completions_url(base_url: str) -> str:
    parsed = urlparse(base_url.strip())
    segments = [segment for segment in parsed.path.split("/") if segment]
    lowered = [segment.lower() for segment in segments]
    if lowered[-2:] == ["chat", "completions"]:
        pass
    elif lowered and lowered[-1] == "chat":
        segments.append("completions")
    else:
        hostname = (parsed.hostname or "").lower()
        if hostname.endswith("openai.com") and not any(_is_version_segment(s) for s in segments):
            segments.append("v1")
        segments.extend(["chat", "completions"])
    return urlunparse(parsed._replace(path="/" + "/".join(segments)))


class OpenAICompatProvider(BaseProvider):
    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        key = self._credential()
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

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
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": stream,
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
        url = chat_completions_url(self.defn.base_url)
        data = await self._post_json(
            url, self._payload(model, messages, max_tokens, temperature, stream=False), timeout
        )
        completion = self._decode(OpenAIChatCompletion, data)
        content = completion.text.strip()
        if not content:
            raise EmptyContent("upstream returned empty content", provider=self.name)
        return ProviderReply(content=content, model=model or completion.model or self.defn.model)

    def open_stream(
        self,
        model: str,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> UpstreamStream:
        url = chat_completions_url(self.defn.base_url)
        return self._stream(url, self._payload(model, messages, max_tokens, temperature, stream=True), timeout)

    def extract_stream_token(self, line: str) -> str | None:
        data = sse_data(line)
        if not data or data == "[DONE]":
            return None
        chunk = OpenAIStreamChunk.model_validate(json.loads(data))
        if chunk.error:
            raise ProviderStreamError(
                str(chunk.error.get("message") or "upstream stream error"), provider=self.name
            )
        return chunk.text or None
