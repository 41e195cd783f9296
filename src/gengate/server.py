import asyncio
import json
import logging
import os
import time
import uuid
from collections.abc import AsyncIterator, Coroutine
from datetime import datetime, timezone
from typing import Any, TypeVar

from typing_extensions import TypedDict

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from .dispatcher import Dispatcher
from .errors import (
    AllProvidersExhausted,
    GatewayError,
    InvalidRequest,
    RateLimited,
    TierNotPermitted,
    Unauthorized,
)
from .metrics import JobRecorder
from .providers import ProviderRegistry
from .rate_limiter import Denied, limiter_from_settings
from .relay import RelaySession, StreamRelay
from .router import LoadedConfig, ProviderResolver, load_config
from .types import GenerationRequest, GenerationResult, JobRecord, StreamEvent, Tier

logger = logging.getLogger(__name__)

app = FastAPI(title="gengate")

_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
CONFIG_DIR = os.environ.get("GENGATE_CONFIG_DIR", os.path.join(_REPO_ROOT, "config"))
RECORDS_DIR = os.environ.get("GENGATE_RECORDS_DIR", os.path.join(_REPO_ROOT, "records"))

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


USE_DUMMY: bool = _env_var_as_bool("GENGATE_USE_DUMMY")
DEFAULT_RETRY_AFTER_SECONDS = int(_env_var_as_float("GENGATE_RETRY_AFTER_SECONDS", default=30.0))
CONFIG_REFRESH_INTERVAL: float = _env_var_as_float("GENGATE_CONFIG_REFRESH_INTERVAL", default=30.0)
LIMITER_SWEEP_INTERVAL: float = _env_var_as_float("GENGATE_LIMITER_SWEEP_INTERVAL", default=60.0)
INBOUND_API_KEYS = frozenset(_parse_env_list(os.environ.get("GENGATE_INBOUND_API_KEYS", "")))
API_KEY_HEADER = os.environ.get("GENGATE_API_KEY_HEADER", "x-api-key")
ALLOWED_ORIGINS = _parse_env_list(os.environ.get("GENGATE_CORS_ALLOW_ORIGINS", ""))
ACCOUNT_HEADER = "x-gengate-account"
PLAN_HEADER = "x-gengate-plan"
DEFAULT_ACCOUNT_PLAN = "free"
GUEST_PLAN = "guest"
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
DISCONNECT_POLL_INTERVAL = 0.5
CLIENT_CLOSED_REQUEST = 499

T = TypeVar("T")


class _CandidateInfo(TypedDict):
    provider: str
    model: str
    position: int


class _TiersResponse(TypedDict):
    tiers: dict[str, list[_CandidateInfo]]


def _format_timestamp(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _sanitize_watch_path(path: str) -> str:
    try:
        relative = os.path.relpath(path, CONFIG_DIR)
    except ValueError:
        relative = os.path.basename(path)
    else:
        if relative.startswith(".."):
            relative = os.path.basename(path)
    return relative.replace("\\", "/")


def _watch_summary(loaded: LoadedConfig) -> list[dict[str, Any]]:
    summary: list[dict[str, Any]] = []
    names = list(loaded.mtimes.keys())
    for index, raw_path in enumerate(loaded.watch_paths):
        name = names[index] if index < len(names) else f"path_{index}"
        try:
            current_mtime = os.stat(raw_path).st_mtime
        except OSError:
            current_mtime = loaded.mtimes.get(name)
        summary.append(
            {
                "name": name,
                "path": _sanitize_watch_path(raw_path),
                "last_modified_at": _format_timestamp(current_mtime),
            }
        )
    return summary


cfg = load_config(CONFIG_DIR, use_dummy=USE_DUMMY)
registry = ProviderRegistry(cfg.providers)
resolver = ProviderResolver(
    cfg.router,
    cfg.providers,
    config_dir=CONFIG_DIR,
    use_dummy=USE_DUMMY,
    mtimes=cfg.mtimes,
)
limiter = limiter_from_settings(cfg.router.rate_limits)
dispatcher = Dispatcher(registry, total_deadline_s=cfg.router.total_deadline_s, defaults=cfg.router.defaults)
relay = StreamRelay(registry, connect_deadline_s=cfg.router.total_deadline_s, defaults=cfg.router.defaults)
recorder = JobRecorder(RECORDS_DIR)
resolver_last_reload_at: float = time.time()

_background_tasks: list[asyncio.Task[None]] = []

if not INBOUND_API_KEYS:
    logger.warning("auth.disabled reason=GENGATE_INBOUND_API_KEYS unset")

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def reload_configuration() -> None:
    global cfg, registry, resolver, dispatcher, relay, resolver_last_reload_at
    new_cfg = load_config(CONFIG_DIR, use_dummy=USE_DUMMY)
    new_registry = ProviderRegistry(new_cfg.providers)
    new_resolver = ProviderResolver(
        new_cfg.router,
        new_cfg.providers,
        config_dir=CONFIG_DIR,
        use_dummy=USE_DUMMY,
        mtimes=new_cfg.mtimes,
    )
    new_dispatcher = Dispatcher(
        new_registry, total_deadline_s=new_cfg.router.total_deadline_s, defaults=new_cfg.router.defaults
    )
    new_relay = StreamRelay(
        new_registry, connect_deadline_s=new_cfg.router.total_deadline_s, defaults=new_cfg.router.defaults
    )
    settings = new_cfg.router.rate_limits
    plan_limits = {name: plan.limit for name, plan in settings.plans.items()}
    # Commit only after every replacement has been built.
    cfg, registry, resolver = new_cfg, new_registry, new_resolver
    dispatcher, relay = new_dispatcher, new_relay
    limiter.configure(plan_limits, settings.window_s)
    resolver_last_reload_at = time.time()
    logger.info("config.reloaded providers=%d", len(new_cfg.providers))


async def _config_refresh_loop() -> None:
    while True:
        try:
            if resolver.files_changed():
                reload_configuration()
        except (OSError, ValueError):
            logger.exception("config.reload_failed keeping_previous=true")
        await asyncio.sleep(CONFIG_REFRESH_INTERVAL if CONFIG_REFRESH_INTERVAL > 0 else 30.0)


async def _limiter_sweep_loop() -> None:
    while True:
        await asyncio.sleep(LIMITER_SWEEP_INTERVAL if LIMITER_SWEEP_INTERVAL > 0 else 60.0)
        limiter.sweep()


@app.on_event("startup")
async def _start_background_loops() -> None:
    if _background_tasks:
        return
    _background_tasks.append(asyncio.create_task(_config_refresh_loop()))
    _background_tasks.append(asyncio.create_task(_limiter_sweep_loop()))


@app.on_event("shutdown")
async def _stop_background_loops() -> None:
    tasks = list(_background_tasks)
    _background_tasks.clear()
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass


def _make_response_headers(*, req_id: str, provider: str | None, attempts: int) -> dict[str, str]:
    return {
        "x-gengate-request-id": req_id,
        "x-gengate-provider": provider or "unknown",
        "x-gengate-fallback-attempts": str(max(attempts - 1, 0)),
    }


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    provider: str | None,
    attempts: int,
    detail: str | None = None,
) -> None:
    message = f"{event} req_id={req_id} provider={provider or 'unknown'} attempts={attempts}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


def _make_error_body(exc: GatewayError) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "message": exc.message,
        "type": exc.error_type,
        "code": exc.code.value,
        "retryable": exc.retryable,
    }
    if exc.retry_after is not None:
        payload["retry_after"] = exc.retry_after
    return {"error": payload}


def _error_response(
    exc: GatewayError,
    *,
    req_id: str,
    provider: str | None = None,
    attempts: int = 0,
    background: BackgroundTask | None = None,
) -> JSONResponse:
    headers = _make_response_headers(req_id=req_id, provider=provider, attempts=attempts)
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        _make_error_body(exc), status_code=exc.status_code, headers=headers, background=background
    )


@app.exception_handler(Exception)
async def _unhandled_error(req: Request, exc: Exception) -> JSONResponse:
    req_id = str(uuid.uuid4())
    logger.error("request.failed req_id=%s path=%s", req_id, req.url.path, exc_info=exc)
    return _error_response(GatewayError("internal error"), req_id=req_id)


def _require_api_key(req: Request) -> None:
    if not INBOUND_API_KEYS:
        return
    candidate = req.headers.get(API_KEY_HEADER)
    if candidate is None:
        auth_header = req.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            candidate = auth_header[7:]
    if candidate and candidate in INBOUND_API_KEYS:
        return
    raise Unauthorized("missing or invalid api key")


def _resolve_identity(req: Request) -> tuple[str, str]:
    """Callers must run _require_api_key first.

    Account and plan headers are honoured only when inbound keys are
    configured. Without keys every caller is a guest keyed by address.
    """
    account = (req.headers.get(ACCOUNT_HEADER) or "").strip() if INBOUND_API_KEYS else ""
    if account:
        plan = (req.headers.get(PLAN_HEADER) or "").strip().lower() or DEFAULT_ACCOUNT_PLAN
        return f"account:{account}", plan
    forwarded = req.headers.get("x-forwarded-for") or ""
    address = forwarded.split(",")[0].strip()
    if not address:
        address = (req.headers.get("x-real-ip") or "").strip()
    if not address and req.client is not None:
        address = req.client.host
    return f"ip:{address or 'unknown'}", GUEST_PLAN


def _validation_message(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "body"
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        problems.append(f"{location}: {message}")
    return "; ".join(problems)


async def _parse_generation_request(req: Request) -> GenerationRequest:
    try:
        body = await req.json()
    except ValueError as exc:
        raise InvalidRequest("request body must be valid JSON") from exc
    if not isinstance(body, dict):
        raise InvalidRequest("request body must be a JSON object")
    try:
        return GenerationRequest.model_validate(
            body, context={"prompt_max_chars": cfg.router.defaults.prompt_max_chars}
        )
    except ValidationError as exc:
        raise InvalidRequest(_validation_message(exc)) from exc


def _check_tier(request: GenerationRequest, plan: str) -> None:
    plan_def = cfg.router.rate_limits.plan(plan)
    if request.tier.value not in plan_def.tiers:
        raise TierNotPermitted(f"tier '{request.tier.value}' is not available on plan '{plan_def.name}'")


async def _admit(identity: str, plan: str) -> None:
    decision = await limiter.admit(identity, plan)
    if isinstance(decision, Denied):
        raise RateLimited(
            f"rate limit exceeded; retry in {decision.retry_after_seconds}s",
            retry_after=decision.retry_after_seconds,
        )


class _ClientDisconnected(Exception):
    pass


async def _run_bound_to_client(req: Request, coro: Coroutine[Any, Any, T]) -> T:
    task = asyncio.ensure_future(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await req.is_disconnected():
                raise _ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()


async def _record_job(record: JobRecord) -> None:
    try:
        await recorder.write(record)
    except Exception:
        logger.exception("job.record_failed req_id=%s", record.request_id)


def encode_sse(event: StreamEvent) -> bytes:
    wire = event.to_wire()
    data = wire if isinstance(wire, str) else json.dumps(wire, ensure_ascii=False)
    return f"data: {data}\n\n".encode("utf-8")


async def _sse_events(session: RelaySession) -> AsyncIterator[bytes]:
    try:
        async for event in session:
            yield encode_sse(event)
    finally:
        await session.aclose()


async def _record_stream(session: RelaySession, identity: str) -> None:
    await _record_job(
        JobRecord(
            request_id=session.req_id,
            identity=identity,
            kind=session.request.kind.value,
            tier=session.request.tier.value,
            ok=session.error_code is None,
            status=200,
            provider=session.provider,
            model=session.model,
            attempts=session.attempts,
            duration_ms=session.duration_ms,
            stream=True,
            hints=list(session.hints),
            error_code=session.error_code,
        )
    )


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {
        "status": "ok",
        "providers": [
            {"name": name, "type": defn.type, "configured": defn.configured}
            for name, defn in sorted(cfg.providers.items())
        ],
        "resolver": {
            "last_reload_at": _format_timestamp(resolver_last_reload_at),
            "watch": _watch_summary(cfg),
        },
    }


@app.get("/v1/tiers")
async def list_tiers() -> _TiersResponse:
    tiers: dict[str, list[_CandidateInfo]] = {}
    for tier in Tier:
        tiers[tier.value] = [
            {"provider": c.provider, "model": c.model, "position": c.position}
            for c in resolver.resolve(tier)
        ]
    return {"tiers": tiers}


@app.get("/metrics")
async def metrics_endpoint(req: Request) -> Response:
    try:
        _require_api_key(req)
    except Unauthorized as exc:
        return _error_response(exc, req_id=str(uuid.uuid4()))
    return Response(recorder.render_prometheus().encode("utf-8"), media_type=PROM_CONTENT_TYPE)


@app.post("/v1/generate")
async def generate(req: Request) -> Response:
    req_id = str(uuid.uuid4())
    try:
        _require_api_key(req)
        identity, plan = _resolve_identity(req)
        request = await _parse_generation_request(req)
        _check_tier(request, plan)
        await _admit(identity, plan)
    except GatewayError as exc:
        _log_request_event(
            logging.INFO,
            event="generate.rejected",
            req_id=req_id,
            provider=None,
            attempts=0,
            detail=exc.code.value,
        )
        return _error_response(exc, req_id=req_id)

    candidates = resolver.resolve(request.tier)

    if request.stream:
        session = relay.open_stream(request, candidates, req_id=req_id)
        return StreamingResponse(
            _sse_events(session),
            media_type="text/event-stream",
            headers={
                "x-gengate-request-id": req_id,
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
            background=BackgroundTask(_record_stream, session, identity),
        )

    start = time.monotonic()
    try:
        result: GenerationResult = await _run_bound_to_client(
            req, dispatcher.dispatch(request, candidates, req_id=req_id)
        )
    except AllProvidersExhausted as exc:
        exc.retry_after = DEFAULT_RETRY_AFTER_SECONDS
        _log_request_event(
            logging.ERROR,
            event="generate.exhausted",
            req_id=req_id,
            provider=exc.last_provider,
            attempts=exc.attempts,
        )
        record = JobRecord(
            request_id=req_id,
            identity=identity,
            kind=request.kind.value,
            tier=request.tier.value,
            ok=False,
            status=exc.status_code,
            provider=exc.last_provider,
            attempts=exc.attempts,
            duration_ms=int((time.monotonic() - start) * 1000),
            error_code=exc.code.value,
        )
        return _error_response(
            exc,
            req_id=req_id,
            provider=exc.last_provider,
            attempts=exc.attempts,
            background=BackgroundTask(_record_job, record),
        )
    except _ClientDisconnected:
        _log_request_event(
            logging.INFO, event="generate.cancelled", req_id=req_id, provider=None, attempts=0
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    _log_request_event(
        logging.WARNING if result.attempts > 1 else logging.INFO,
        event="generate.fallback" if result.attempts > 1 else "generate.ok",
        req_id=req_id,
        provider=result.provider,
        attempts=result.attempts,
    )
    record = JobRecord(
        request_id=req_id,
        identity=identity,
        kind=request.kind.value,
        tier=request.tier.value,
        ok=True,
        status=200,
        provider=result.provider,
        model=result.model_used,
        attempts=result.attempts,
        duration_ms=result.duration_ms,
        hints=list(result.hints),
    )
    return JSONResponse(
        result.to_payload(),
        headers=_make_response_headers(req_id=req_id, provider=result.provider, attempts=result.attempts),
        background=BackgroundTask(_record_job, record),
    )
