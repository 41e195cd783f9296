from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, List, Sequence

import httpx

from .dispatcher import describe_failure
from .errors import (
    AllProvidersExhausted,
    AttemptFailure,
    GatewayError,
    ProviderError,
    ProviderStreamError,
    UpstreamMidStreamFailure,
)
from .postprocess import analyze, normalize
from .prompts import build_messages, generation_options
from .providers import BaseProvider, ProviderRegistry
from .router import DEFAULT_TOTAL_DEADLINE_S, RouterDefaults
from .types import (
    DoneEvent,
    ErrorEvent,
    GenerationRequest,
    HintsEvent,
    MetaEvent,
    ProviderCandidate,
    StreamEvent,
    TokenEvent,
)

logger = logging.getLogger(__name__)

_CONNECT_FAILURES = (asyncio.TimeoutError, httpx.HTTPError, ProviderError)


class RelayState(str, Enum):
    CONNECTING = "connecting"
    RELAYING = "relaying"
    FINALIZING = "finalizing"
    CLOSED = "closed"
    ERRORED = "errored"


class RelaySession:
    """One streamed generation. Iterate it to receive StreamEvents.

    ``done`` is always the last event. Breaking out of the iteration or
    cancelling the consuming task closes the upstream response.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        request: GenerationRequest,
        candidates: Sequence[ProviderCandidate],
        *,
        connect_deadline_s: float,
        options: dict[str, Any],
        req_id: str = "-",
    ):
        self._registry = registry
        self.request = request
        self._candidates = list(candidates)
        self._connect_deadline_s = connect_deadline_s
        self._options = options
        self.req_id = req_id
        self.state = RelayState.CONNECTING
        self.provider: str | None = None
        self.model: str | None = None
        self.content = ""
        self.hints: tuple[str, ...] = ()
        self.failures: List[AttemptFailure] = []
        self.error_code: str | None = None
        self.started = time.monotonic()
        self._events: AsyncIterator[StreamEvent] | None = None
        self._upstream: Any = None

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._events is None:
            self._events = self._run()
        return self._events

    async def aclose(self) -> None:
        if self._events is not None:
            await self._events.aclose()  # type: ignore[attr-defined]

    @property
    def attempts(self) -> int:
        return len(self.failures) + (1 if self.provider else 0)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    async def _connect(self, stack: contextlib.AsyncExitStack, messages) -> tuple[BaseProvider, ProviderCandidate] | None:
        deadline = self.started + self._connect_deadline_s
        for candidate in self._candidates:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                provider = self._registry.get(candidate.provider)
            except KeyError:
                self.failures.append(AttemptFailure(candidate.provider, candidate.model, "unknown provider"))
                continue
            timeout = min(provider.defn.timeout_s, remaining)
            # Idle reads are bounded by the provider timeout; connecting also by the deadline.
            upstream = provider.open_stream(
                candidate.model, messages, timeout=provider.defn.timeout_s, **self._options
            )
            try:
                await asyncio.wait_for(stack.enter_async_context(upstream), timeout)
            except _CONNECT_FAILURES as exc:
                reason, status = describe_failure(exc)
                self.failures.append(AttemptFailure(candidate.provider, candidate.model, reason, status))
                logger.warning(
                    "stream.connect_failed req_id=%s provider=%s model=%s reason=%s",
                    self.req_id,
                    candidate.provider,
                    candidate.model,
                    reason,
                )
                continue
            self._upstream = upstream
            return provider, candidate
        return None

    def _fail(self, exc: GatewayError) -> ErrorEvent:
        self.state = RelayState.ERRORED
        self.error_code = exc.code.value
        return ErrorEvent(message=exc.message, code=exc.code.value, retryable=exc.retryable)

    def _token(self, provider: BaseProvider, line: str) -> str | None:
        try:
            return provider.extract_stream_token(line)
        except ProviderStreamError:
            raise
        except ValueError:
            logger.debug("stream.malformed_line req_id=%s provider=%s", self.req_id, provider.name)
            return None

    async def _run(self) -> AsyncIterator[StreamEvent]:
        messages = build_messages(self.request)
        async with contextlib.AsyncExitStack() as stack:
            connected = await self._connect(stack, messages)
            if connected is None:
                logger.error(
                    "stream.exhausted req_id=%s attempts=%d", self.req_id, len(self.failures)
                )
                yield self._fail(AllProvidersExhausted(failures=self.failures))
                yield DoneEvent()
                return
            provider, candidate = connected
            self.provider = candidate.provider
            self.model = candidate.model
            self.state = RelayState.RELAYING
            yield MetaEvent(model=candidate.model, provider=candidate.provider)

            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            buffer = ""
            parts: List[str] = []
            try:
                async for chunk in self._upstream.aiter_bytes():
                    buffer += decoder.decode(chunk)
                    *lines, buffer = buffer.split("\n")
                    for line in lines:
                        token = self._token(provider, line)
                        if token:
                            parts.append(token)
                            yield TokenEvent(token)
                buffer += decoder.decode(b"", final=True)
                if buffer.strip():
                    token = self._token(provider, buffer)
                    if token:
                        parts.append(token)
                        yield TokenEvent(token)
            except (asyncio.TimeoutError, httpx.HTTPError, ProviderError) as exc:
                reason, _ = describe_failure(exc)
                self.content = "".join(parts)
                logger.warning(
                    "stream.upstream_failed req_id=%s provider=%s tokens=%d reason=%s",
                    self.req_id,
                    candidate.provider,
                    len(parts),
                    reason,
                )
                yield self._fail(UpstreamMidStreamFailure("upstream stream failed"))
                yield DoneEvent()
                return

            self.state = RelayState.FINALIZING
            self.content = normalize("".join(parts))
            self.hints = tuple(analyze(self.request.kind, self.content))
            if self.hints:
                yield HintsEvent(self.hints)
            self.state = RelayState.CLOSED
            yield DoneEvent()


class StreamRelay:
    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        connect_deadline_s: float = DEFAULT_TOTAL_DEADLINE_S,
        defaults: RouterDefaults | None = None,
    ):
        self.registry = registry
        self.connect_deadline_s = connect_deadline_s
        self.defaults = defaults

    def open_stream(
        self,
        request: GenerationRequest,
        candidates: Sequence[ProviderCandidate],
        *,
        req_id: str = "-",
    ) -> RelaySession:
        if self.defaults is None:
            options = generation_options(request)
        else:
            options = generation_options(
                request,
                temperature=self.defaults.temperature,
                markup_temperature=self.defaults.markup_temperature,
            )
        return RelaySession(
            self.registry,
            request,
            candidates,
            connect_deadline_s=self.connect_deadline_s,
            options=options,
            req_id=req_id,
        )
