import asyncio
import logging
import os
import time
import uuid
from typing import Any, Literal
from urllib.parse import unquote

from typing_extensions import TypedDict

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .adapters import AdapterRegistry
from .config import UserDef, load_config
from .dispatcher import RequestDispatcher
from .errors import ErrorCode, ProviderNotConfigured, UpstreamRejected
from .quota import QuotaPolicy, StaticQuota
from .recorder import UsageLogger
from .transcoder import StreamTranscoder, submit_record
from .types import ClientRequest, StreamContext
from .usage import UsageAccumulator

logger = logging.getLogger(__name__)

app = FastAPI(title="llm-relay")

_PROJECT_ROOT = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..")
CONFIG_DIR = os.environ.get("RELAY_CONFIG_DIR", os.path.join(_PROJECT_ROOT, "config"))
USAGE_DIR = os.environ.get("RELAY_USAGE_DIR", os.path.join(_PROJECT_ROOT, "usage"))

OUT_OF_QUOTA_STATUS = 459
MODEL_NOT_ALLOWED_STATUS = 428
BAD_GATEWAY_STATUS = 502
GATEWAY_TIMEOUT_STATUS = 504
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class _ProviderInfo(TypedDict):
    id: str
    object: Literal["provider"]
    style: str


class _ProviderListResponse(TypedDict):
    object: Literal["list"]
    data: list[_ProviderInfo]


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


STREAM_TIMEOUT_SECONDS: float = _env_var_as_float("RELAY_STREAM_TIMEOUT_SECONDS", default=60.0)
API_KEY_HEADER = os.environ.get("RELAY_API_KEY_HEADER", "x-api-key")
ALLOWED_ORIGINS = _parse_env_list(os.environ.get("RELAY_CORS_ALLOW_ORIGINS", ""))

cfg = load_config(CONFIG_DIR)
usage_logger = UsageLogger(USAGE_DIR)
dispatcher = RequestDispatcher(cfg.providers, timeout=STREAM_TIMEOUT_SECONDS)
quota: QuotaPolicy = StaticQuota(cfg.access, usage_logger.user_total)
adapters = AdapterRegistry()

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _make_response_headers(*, req_id: str, provider: str | None) -> dict[str, str]:
    return {
        "x-relay-request-id": req_id,
        "x-relay-provider": provider or "unknown",
    }


def _error_response(
    message: str, status_code: int, *, req_id: str, provider: str | None = None
) -> JSONResponse:
    headers = _make_response_headers(req_id=req_id, provider=provider)
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    provider: str | None,
    detail: str | None = None,
) -> None:
    message = f"{event} req_id={req_id} provider={provider or 'unknown'}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


def _inbound_key(req: Request) -> str | None:
    candidate = req.headers.get(API_KEY_HEADER)
    if candidate is None:
        auth_header = req.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            candidate = auth_header[7:]
    return candidate.strip() if candidate else None


def _authenticate(req: Request) -> UserDef | None:
    return cfg.access.by_api_key(_inbound_key(req))


def _require_api_key(req: Request) -> UserDef:
    user = _authenticate(req)
    if user is None:
        raise HTTPException(status_code=401, detail="missing or invalid api key")
    return user


def _record_rejection(ctx: StreamContext, detail: str) -> None:
    record = UsageAccumulator(ctx).finalize("error", error=detail)
    if record is not None:
        submit_record(usage_logger, record)


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {"status": "ok", "providers": sorted(cfg.providers.keys())}


@app.get("/metrics")
async def metrics_endpoint(req: Request) -> Response:
    _require_api_key(req)
    return Response(usage_logger.render_prometheus(), media_type=PROM_CONTENT_TYPE)


@app.get("/v1/providers")
async def list_providers(req: Request) -> _ProviderListResponse:
    _require_api_key(req)
    data: list[_ProviderInfo] = [
        {"id": name, "object": "provider", "style": definition.style}
        for name, definition in sorted(cfg.providers.items())
    ]
    return {"object": "list", "data": data}


@app.post("/v1/completions")
async def completions(req: Request) -> Response:
    start = time.perf_counter()
    req_id = str(uuid.uuid4())
    user = _authenticate(req)
    if user is None:
        _log_request_event(
            logging.WARNING, event="relay.request rejected", req_id=req_id, provider=None,
            detail=ErrorCode.INVALID_API_KEY.value,
        )
        return _error_response("Unauthorized", 401, req_id=req_id)

    provider_name = (req.headers.get("x-provider") or "openai").strip()
    header_model = unquote(req.headers.get("x-model") or "").strip()
    chat_id = req.headers.get("x-chat-id") or None
    endpoint_override = req.headers.get("x-endpoint") or None
    api_key_override = req.headers.get("x-apikey") or None

    try:
        body = await req.body()
        try:
            parsed = ClientRequest.model_validate_json(body)
        except ValidationError:
            _log_request_event(
                logging.INFO, event="relay.request rejected", req_id=req_id, provider=provider_name,
                detail=ErrorCode.INVALID_REQUEST.value,
            )
            return _error_response("request body must be a JSON object", 400, req_id=req_id, provider=provider_name)
        try:
            provider = dispatcher.resolve(provider_name)
        except ProviderNotConfigured as exc:
            _log_request_event(
                logging.INFO, event="relay.request rejected", req_id=req_id, provider=provider_name,
                detail=ErrorCode.PROVIDER_NOT_CONFIGURED.value,
            )
            return _error_response(str(exc), 400, req_id=req_id, provider=provider_name)
        adapter = adapters.get(provider.style)

        # the provider's configured model is the last resort
        declared_model = parsed.model or header_model or provider.model
        if not declared_model:
            return _error_response("model is required", 400, req_id=req_id, provider=provider_name)
        upstream_model = header_model or declared_model

        decision = await quota.check(user.user_id, provider_name, upstream_model)
        if not decision.token_pass:
            _log_request_event(
                logging.INFO, event="relay.request rejected", req_id=req_id, provider=provider_name,
                detail=ErrorCode.OUT_OF_QUOTA.value,
            )
            return _error_response("Out of quota", OUT_OF_QUOTA_STATUS, req_id=req_id, provider=provider_name)
        if not decision.model_pass:
            _log_request_event(
                logging.INFO, event="relay.request rejected", req_id=req_id, provider=provider_name,
                detail=ErrorCode.MODEL_NOT_ALLOWED.value,
            )
            return _error_response(
                "Model not allowed", MODEL_NOT_ALLOWED_STATUS, req_id=req_id, provider=provider_name
            )

        ctx = StreamContext(
            user_id=user.user_id,
            provider_id=provider_name,
            model=declared_model,
            chat_id=chat_id,
            req_id=req_id,
            started_at=start,
        )
        try:
            upstream = await asyncio.wait_for(
                dispatcher.open_stream(
                    provider,
                    upstream_model,
                    body,
                    api_key_override=api_key_override,
                    endpoint_override=endpoint_override,
                ),
                max(STREAM_TIMEOUT_SECONDS - (time.perf_counter() - start), 0.0),
            )
        except asyncio.TimeoutError:
            detail = f"upstream did not answer within the {STREAM_TIMEOUT_SECONDS:g}s request ceiling"
            _record_rejection(ctx, detail)
            _log_request_event(
                logging.WARNING, event="relay.request rejected", req_id=req_id, provider=provider_name,
                detail=ErrorCode.UPSTREAM_TIMEOUT.value,
            )
            return _error_response(
                "Gateway Timeout", GATEWAY_TIMEOUT_STATUS, req_id=req_id, provider=provider_name
            )
        except UpstreamRejected as exc:
            _record_rejection(ctx, f"upstream status {exc.status_code}")
            headers = _make_response_headers(req_id=req_id, provider=provider_name)
            return Response(
                exc.body, status_code=exc.status_code, media_type=exc.content_type, headers=headers
            )
        except httpx.HTTPError as exc:
            detail = str(exc) or type(exc).__name__
            _record_rejection(ctx, detail)
            _log_request_event(
                logging.ERROR, event="relay.request upstream unreachable", req_id=req_id,
                provider=provider_name, detail=detail,
            )
            return _error_response("Bad Gateway", BAD_GATEWAY_STATUS, req_id=req_id, provider=provider_name)
    except Exception:
        logger.exception(
            "relay.request failed req_id=%s provider=%s detail=%s", req_id, provider_name, ErrorCode.INTERNAL_ERROR.value
        )
        return _error_response("Internal Server Error", 500, req_id=req_id, provider=provider_name)

    remaining = STREAM_TIMEOUT_SECONDS - (time.perf_counter() - start)
    transcoder = StreamTranscoder(
        upstream,
        adapter,
        ctx,
        usage_logger,
        timeout=max(remaining, 0.0),
    )
    headers = _make_response_headers(req_id=req_id, provider=provider_name)
    headers["Cache-Control"] = "no-cache"
    return StreamingResponse(transcoder.stream(), media_type="text/event-stream", headers=headers)
