from __future__ import annotations

import logging
import os
from typing import Any, AsyncIterator, List, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ..errors import MalformedUpstreamResponse, ProviderHTTPError
from ..router import ProviderDef
from ..types import ProviderReply

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_SSE_DATA_PREFIX = "data:"
_BODY_EXCERPT_CHARS = 200


def sse_data(line: str) -> str | None:
    """Return the payload of an SSE ``data:`` line, or None for any other line."""
    stripped = line.strip()
    if not stripped.startswith(_SSE_DATA_PREFIX):
        return None
    return stripped[len(_SSE_DATA_PREFIX):].strip()


def _excerpt(body: bytes | str) -> str:
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    text = " ".join(text.split())
    if len(text) > _BODY_EXCERPT_CHARS:
        return text[:_BODY_EXCERPT_CHARS] + "..."
    return text


class UpstreamStream:
    """An upstream streaming response, opened as an async context manager.

    Entering sends the request and checks the status; a non-2xx answer raises
    ProviderHTTPError before any byte is relayed. Leaving closes the response
    and its client.
    """

    def __init__(
        self,
        provider: str,
        url: str,
        *,
        headers: dict[str, str],
        payload: dict[str, Any],
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.provider = provider
        self._url = url
        self._headers = headers
        self._payload = payload
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._response: httpx.Response | None = None
        self.status_code: int | None = None

    async def __aenter__(self) -> "UpstreamStream":
        client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        try:
            request = client.build_request("POST", self._url, headers=self._headers, json=self._payload)
            response = await client.send(request, stream=True)
            self.status_code = response.status_code
            if response.status_code >= 400:
                body = await response.aread()
                await response.aclose()
                raise ProviderHTTPError(
                    f"upstream status {response.status_code}: {_excerpt(body)}",
                    provider=self.provider,
                    status=response.status_code,
                )
        except BaseException:
            await client.aclose()
            raise
        self._client = client
        self._response = response
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        if self._response is None:
            raise RuntimeError("upstream stream is not open")
        return self._response.aiter_bytes()

    async def aclose(self) -> None:
        response, client = self._response, self._client
        self._response = None
        self._client = None
        try:
            if response is not None:
                await response.aclose()
        finally:
            if client is not None:
                await client.aclose()


class BaseProvider:
    def __init__(self, defn: ProviderDef, *, transport: httpx.AsyncBaseTransport | None = None):
        self.defn = defn
        self.name = defn.name
        self._transport = transport

    def _credential(self) -> str | None:
        if not self.defn.auth_env:
            return None
        return os.environ.get(self.defn.auth_env, "").strip() or None

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post_json(self, url: str, payload: dict[str, Any], timeout: float) -> Any:
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            response = await client.post(url, headers=self._headers(), json=payload)
        if response.status_code >= 400:
            raise ProviderHTTPError(
                f"upstream status {response.status_code}: {_excerpt(response.text)}",
                provider=self.name,
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedUpstreamResponse(
                "upstream returned a non-JSON body", provider=self.name, status=response.status_code
            ) from exc

    def _decode(self, schema: Type[SchemaT], data: Any) -> SchemaT:
        try:
            return schema.model_validate(data)
        except ValidationError as exc:
            raise MalformedUpstreamResponse(
                f"upstream payload does not match {schema.__name__}: {exc.error_count()} error(s)",
                provider=self.name,
            ) from exc

    def _stream(self, url: str, payload: dict[str, Any], timeout: float) -> UpstreamStream:
        return UpstreamStream(
            self.name,
            url,
            headers=self._headers(),
            payload=payload,
            timeout=timeout,
            transport=self._transport,
        )

    async def generate(
        self,
        model: str,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> ProviderReply:
        raise NotImplementedError

    def open_stream(
        self,
        model: str,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> UpstreamStream:
        raise NotImplementedError

    def extract_stream_token(self, line: str) -> str | None:
        """Return the text carried by one upstream stream line.

        ``None`` means the line carries no text. Raises ValueError for a line
        that cannot be parsed and ProviderStreamError when upstream reports an
        error inside the stream.
        """
        raise NotImplementedError
