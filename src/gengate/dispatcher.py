from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

import httpx

from .errors import AllProvidersExhausted, AttemptFailure, EmptyContent, ProviderError
from .postprocess import analyze, normalize
from .prompts import build_messages, generation_options
from .providers import ProviderRegistry
from .router import DEFAULT_TOTAL_DEADLINE_S, RouterDefaults
from .types import GenerationRequest, GenerationResult, ProviderCandidate

logger = logging.getLogger(__name__)


def describe_failure(exc: BaseException) -> tuple[str, int | None]:
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout", None
    if isinstance(exc, httpx.TimeoutException):
        return "timeout", None
    if isinstance(exc, ProviderError):
        return f"{type(exc).__name__}: {exc}", exc.status
    return type(exc).__name__, None


class Dispatcher:
    """Tries candidates in order until one returns non-empty content."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        total_deadline_s: float = DEFAULT_TOTAL_DEADLINE_S,
        defaults: RouterDefaults | None = None,
    ):
        self.registry = registry
        self.total_deadline_s = total_deadline_s
        self.defaults = defaults

    def _options(self, request: GenerationRequest) -> dict:
        if self.defaults is None:
            return generation_options(request)
        return generation_options(
            request,
            temperature=self.defaults.temperature,
            markup_temperature=self.defaults.markup_temperature,
        )

    async def dispatch(
        self,
        request: GenerationRequest,
        candidates: Sequence[ProviderCandidate],
        *,
        req_id: str = "-",
    ) -> GenerationResult:
        messages = build_messages(request)
        options = self._options(request)
        started = time.monotonic()
        deadline = started + self.total_deadline_s
        failures: list[AttemptFailure] = []
        for candidate in candidates:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "generate.deadline_exceeded req_id=%s skipped_from=%s attempts=%d",
                    req_id,
                    candidate.provider,
                    len(failures),
                )
                break
            try:
                provider = self.registry.get(candidate.provider)
            except KeyError:
                failures.append(AttemptFailure(candidate.provider, candidate.model, "unknown provider"))
                continue
            timeout = min(provider.defn.timeout_s, remaining)
            try:
                reply = await asyncio.wait_for(
                    provider.generate(candidate.model, messages, timeout=timeout, **options),
                    timeout,
                )
                content = normalize(reply.content)
                if not content.strip():
                    raise EmptyContent("content empty after normalization", provider=candidate.provider)
            except (asyncio.TimeoutError, httpx.HTTPError, ProviderError) as exc:
                reason, status = describe_failure(exc)
                failures.append(AttemptFailure(candidate.provider, candidate.model, reason, status))
                logger.warning(
                    "generate.provider_failed req_id=%s provider=%s model=%s position=%d reason=%s",
                    req_id,
                    candidate.provider,
                    candidate.model,
                    candidate.position,
                    reason,
                )
                continue
            hints = tuple(analyze(request.kind, content))
            duration_ms = int((time.monotonic() - started) * 1000)
            return GenerationResult(
                content=content,
                model_used=candidate.model,
                provider=candidate.provider,
                duration_ms=duration_ms,
                hints=hints,
                attempts=len(failures) + 1,
            )
        logger.error(
            "generate.exhausted req_id=%s attempts=%d last_provider=%s",
            req_id,
            len(failures),
            failures[-1].provider if failures else "-",
        )
        raise AllProvidersExhausted(failures=failures)
