#!/usr/bin/env python3
"""
OpenAI Chat Completions API → Gemini CLI Proxy with REAL SSE Streaming.

This proxy accepts OpenAI-format chat completion requests, shapes them into
the upstream generation config and streams the upstream's tagged events back
as OpenAI `chat.completion.chunk` Server-Sent Events.
"""

import os
import re
import hmac
import time
import uuid
import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, Request, HTTPException
from fastapi.responses import StreamingResponse, JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from message_processor import (
    DEFAULT_THINKING_BUDGET,
    build_generation_config,
    split_system_prompt,
    validate_chat_request,
)
from stream_transformer import (
    OpenAIStreamTransformer,
    collect_completion,
    sse_data,
    transcode_stream,
)
from upstream import (
    AuthManager,
    CachedTokenAuth,
    FileCache,
    HttpEventSource,
    KeyValueStore,
    ModelRegistry,
    StaticModelRegistry,
    UpstreamSource,
)

# Logging setup
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

# Track proxy startup time for uptime calculation
PROXY_START_TIME = time.time()
PROXY_VERSION = "1.0.0"

OPENAI_MODEL_OWNER = "google-gemini-cli"
DEFAULT_MODEL = "gemini-2.5-flash"

CHAT_COMPLETIONS_ENDPOINT = "/v1/chat/completions"


# ─────────────────────────────────────────────────────────────────────────────
# Configuration from environment variables
# ─────────────────────────────────────────────────────────────────────────────

def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name}: invalid value '{raw}', using default {default}")
        return default


@dataclass(frozen=True)
class Settings:
    # Client-facing API key; empty disables request authentication
    openai_api_key: str = ""
    enable_real_thinking: bool = False
    default_thinking_budget: int = DEFAULT_THINKING_BUDGET
    default_model: str = DEFAULT_MODEL
    upstream_base_url: str = ""
    timeout_s: int = 300
    cache_file: str = ".cache.json"
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            enable_real_thinking=os.environ.get("ENABLE_REAL_THINKING", "false").lower() == "true",
            default_thinking_budget=_env_int("DEFAULT_THINKING_BUDGET", DEFAULT_THINKING_BUDGET),
            default_model=os.environ.get("DEFAULT_MODEL", DEFAULT_MODEL),
            upstream_base_url=os.environ.get("UPSTREAM_BASE_URL", ""),
            timeout_s=_env_int("TIMEOUT_S", 300),
            cache_file=os.environ.get("CACHE_FILE", os.path.join(os.getcwd(), ".cache.json")),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8000),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Prometheus Metrics
# ─────────────────────────────────────────────────────────────────────────────

# Request counter by endpoint and status
request_counter = Counter(
    'proxy_requests_total',
    'Total number of requests',
    ['endpoint', 'status']
)

# Request latency histogram by endpoint
request_latency = Histogram(
    'proxy_request_duration_seconds',
    'Request latency in seconds',
    ['endpoint']
)

# Error counter by endpoint
error_counter = Counter(
    'proxy_errors_total',
    'Total number of errors',
    ['endpoint', 'error_type']
)

# SSE records written to clients
stream_chunks_counter = Counter(
    'proxy_stream_chunks_total',
    'Total number of SSE records streamed to clients'
)


def record_request(endpoint: str, status: int, start_time: float, error_type: Optional[str] = None) -> None:
    if error_type:
        error_counter.labels(endpoint=endpoint, error_type=error_type).inc()
    request_counter.labels(endpoint=endpoint, status=str(status)).inc()
    request_latency.labels(endpoint=endpoint).observe(time.time() - start_time)


# ─────────────────────────────────────────────────────────────────────────────
# Helper functions
# ─────────────────────────────────────────────────────────────────────────────

SENSITIVE_BODY_FIELDS = re.compile(r'"(api_?key|token|authorization)":\s*"[^"]*"', re.IGNORECASE)


def get_or_generate_request_id(request: Request) -> str:
    """Get X-Request-Id from request headers or generate a new one."""
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = f"req_{uuid.uuid4().hex}"
    return request_id


def mask_body_for_log(body: str, limit: int = 500) -> str:
    """Truncate a request body and mask API keys or tokens for logging."""
    truncated = body[:limit] + "..." if len(body) > limit else body
    return SENSITIVE_BODY_FIELDS.sub(lambda m: f'"{m.group(1)}": "***"', truncated)


def error_type_for_status(status_code: int) -> str:
    if status_code == 401:
        return "authentication_error"
    if 400 <= status_code < 500:
        return "invalid_request_error"
    return "api_error"


def error_response(status_code: int, message: str, request_id: str, code: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "type": error_type_for_status(status_code),
                "code": code,
            }
        },
        headers={"X-Request-Id": request_id},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Middleware
# ─────────────────────────────────────────────────────────────────────────────

class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """
    OpenAI-style API key authentication.

    - Only active when an API key is configured (OPENAI_API_KEY)
    - Protects /v1/* and /metrics; everything else is public
    - Expects `Authorization: Bearer <key>`, compared in constant time
    """

    def __init__(self, app, api_key: str = ""):
        super().__init__(app)
        self.api_key = api_key

    @staticmethod
    def is_protected(path: str) -> bool:
        return path.startswith("/v1/") or path == "/metrics"

    async def dispatch(self, request: Request, call_next):
        if not self.api_key or not self.is_protected(request.url.path):
            return await call_next(request)

        request_id = get_or_generate_request_id(request)
        client_ip = request.client.host if request.client else "unknown"

        auth_header = request.headers.get("Authorization")
        if not auth_header:
            logger.warning(
                f"Authentication failed: Missing Authorization header | "
                f"path={request.url.path} client_ip={client_ip} request_id={request_id}"
            )
            return error_response(401, "Missing Authorization header", request_id, "missing_authorization")

        match = re.match(r"^Bearer\s+(.+)$", auth_header)
        if not match:
            logger.warning(
                f"Authentication failed: Invalid Authorization format | "
                f"path={request.url.path} client_ip={client_ip} request_id={request_id}"
            )
            return error_response(
                401,
                "Invalid Authorization header format. Expected: Bearer <token>",
                request_id,
                "invalid_authorization_format",
            )

        if not hmac.compare_digest(match.group(1).encode(), self.api_key.encode()):
            logger.warning(
                f"Authentication failed: Invalid API key | "
                f"path={request.url.path} client_ip={client_ip} request_id={request_id}"
            )
            return error_response(401, "Invalid API key", request_id, "invalid_api_key")

        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs request start (with a masked body for writes) and completion with duration."""

    async def dispatch(self, request: Request, call_next):
        request_id = get_or_generate_request_id(request)
        request.state.request_id = request_id
        start_time = time.time()

        body_log = ""
        if request.method in ("POST", "PUT", "PATCH"):
            body = await request.body()
            if body:
                body_log = f" - Body: {mask_body_for_log(body.decode('utf-8', errors='replace'))}"

        logger.info(f"{request.method} {request.url.path}{body_log} - Request started | request_id={request_id}")

        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"{request.method} {request.url.path} - Completed with status {response.status_code} "
            f"({duration_ms}ms) | request_id={request_id}"
        )
        return response


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Global HTTPException handler that renders OpenAI-style errors with X-Request-Id.
    """
    request_id = get_or_generate_request_id(request)
    return error_response(exc.status_code, str(exc.detail), request_id)


# ─────────────────────────────────────────────────────────────────────────────
# API Endpoints
# ─────────────────────────────────────────────────────────────────────────────

router = APIRouter()


@router.post(CHAT_COMPLETIONS_ENDPOINT)
async def chat_completions(request: Request):
    """
    OpenAI Chat Completions endpoint.

    Validates the request, builds the upstream generation config and either
    streams transcoded SSE chunks or returns a single completion object.
    """
    request_id = get_or_generate_request_id(request)
    state = request.app.state
    settings: Settings = state.settings
    start_time = time.time()

    try:
        body = await request.json()
    except Exception as e:
        record_request(CHAT_COMPLETIONS_ENDPOINT, 400, start_time, "invalid_json")
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {str(e)}")

    if not isinstance(body, dict):
        record_request(CHAT_COMPLETIONS_ENDPOINT, 400, start_time, "invalid_request")
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")

    model = body.get("model") or settings.default_model
    if not isinstance(model, str):
        record_request(CHAT_COMPLETIONS_ENDPOINT, 400, start_time, "invalid_request")
        raise HTTPException(status_code=400, detail="model must be a string")
    messages = body.get("messages") or []
    # OpenAI compatibility: stream unless explicitly disabled
    stream = body.get("stream") is not False

    config = build_generation_config(
        body,
        model,
        real_thinking_enabled=settings.enable_real_thinking,
        default_thinking_budget=settings.default_thinking_budget,
    )

    logger.info(
        f"request_id={request_id} model={model} "
        f"messages_count={len(messages) if isinstance(messages, list) else 0} stream={stream} "
        f"include_reasoning={config.include_reasoning} thinking_budget={config.thinking_budget} "
        f"tools_count={len(config.tools) if isinstance(config.tools, list) else 0}"
    )

    validation_error = validate_chat_request(messages, model, state.registry)
    if validation_error:
        record_request(CHAT_COMPLETIONS_ENDPOINT, 400, start_time, "invalid_request")
        raise HTTPException(status_code=400, detail=validation_error)

    system_prompt, other_messages = split_system_prompt(messages)

    upstream: Optional[UpstreamSource] = state.upstream
    if upstream is None:
        record_request(CHAT_COMPLETIONS_ENDPOINT, 500, start_time, "configuration_error")
        raise HTTPException(status_code=500, detail="Upstream source is not configured (UPSTREAM_BASE_URL not set)")

    try:
        await state.auth.initialize_auth()
        logger.info(f"Authentication successful | request_id={request_id}")
    except Exception as e:
        logger.error(f"Authentication failed: {e} | request_id={request_id}")
        record_request(CHAT_COMPLETIONS_ENDPOINT, 401, start_time, "authentication_error")
        raise HTTPException(status_code=401, detail=f"Authentication failed: {str(e)}")

    if stream:
        async def stream_generator():
            transformer = OpenAIStreamTransformer(model)
            status = 200
            error_type = None
            try:
                async with aclosing(upstream.open(model, system_prompt, other_messages, config)) as events:
                    async for record in transcode_stream(events, transformer):
                        stream_chunks_counter.inc()
                        yield record
                logger.info(f"Stream completed successfully | request_id={request_id}")
            except (asyncio.CancelledError, GeneratorExit):
                # Client went away; closing the upstream iterator is handled by aclosing
                status, error_type = 499, "client_disconnected"
                logger.info(f"Client disconnected mid-stream | request_id={request_id}")
                raise
            except Exception as e:
                status, error_type = 500, "streaming_error"
                logger.exception(f"Streaming error in chat_completions: request_id={request_id}")
                # Best-effort inline error; no terminal chunk or [DONE] follows
                yield sse_data({
                    "error": {
                        "message": str(e),
                        "type": "upstream_error",
                        "request_id": request_id,
                    }
                })
            finally:
                record_request(CHAT_COMPLETIONS_ENDPOINT, status, start_time, error_type)

        return StreamingResponse(
            stream_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
                "X-Request-Id": request_id,
            },
        )

    # NON-STREAMING MODE
    try:
        async with aclosing(upstream.open(model, system_prompt, other_messages, config)) as events:
            completion = await collect_completion(events, model)
    except Exception as e:
        logger.exception(f"Completion error in chat_completions: request_id={request_id}")
        record_request(CHAT_COMPLETIONS_ENDPOINT, 500, start_time, "completion_error")
        raise HTTPException(status_code=500, detail=str(e))

    record_request(CHAT_COMPLETIONS_ENDPOINT, 200, start_time)
    logger.info(f"Non-streaming completion successful | request_id={request_id}")
    return JSONResponse(content=completion, headers={"X-Request-Id": request_id})


@router.get("/v1/models")
async def v1_models(request: Request):
    """List the models this proxy can serve, in OpenAI format."""
    registry: ModelRegistry = request.app.state.registry
    created = int(time.time())
    return JSONResponse(
        content={
            "object": "list",
            "data": [
                {"id": model_id, "object": "model", "created": created, "owned_by": OPENAI_MODEL_OWNER}
                for model_id in registry.list_model_ids()
            ],
        },
        headers={"X-Request-Id": get_or_generate_request_id(request)},
    )


@router.get("/v1/debug/cache")
async def debug_cache(request: Request):
    """Cached upstream token status, without any token material."""
    request_id = get_or_generate_request_id(request)
    try:
        info = await request.app.state.auth.get_cached_token_info()
    except Exception as e:
        logger.exception(f"Failed to read token cache: request_id={request_id}")
        raise HTTPException(status_code=500, detail=str(e))

    return JSONResponse(
        content={
            "status": "ok",
            "cached": info.get("cached", False),
            "cached_at": info.get("cached_at"),
            "expires_at": info.get("expires_at"),
            "time_until_expiry_seconds": info.get("time_until_expiry_seconds"),
            "is_expired": info.get("is_expired"),
            "message": info.get("message"),
        },
        headers={"X-Request-Id": request_id},
    )


@router.post("/v1/debug/token-test")
@router.post("/v1/token-test")
async def token_test(request: Request):
    """Run upstream authentication only."""
    request_id = get_or_generate_request_id(request)
    try:
        await request.app.state.auth.initialize_auth()
    except Exception as e:
        logger.error(f"Token test error: {e} | request_id={request_id}")
        raise HTTPException(status_code=500, detail=str(e))

    logger.info(f"Token test passed | request_id={request_id}")
    return JSONResponse(
        content={"status": "ok", "message": "Token authentication successful"},
        headers={"X-Request-Id": request_id},
    )


@router.get("/health")
async def health():
    """Public health check."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime_seconds": int(time.time() - PROXY_START_TIME),
        "version": PROXY_VERSION,
    }


@router.get("/metrics")
async def metrics(request: Request):
    """Prometheus metrics endpoint (requires the API key when one is configured)."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
        headers={"X-Request-Id": get_or_generate_request_id(request)},
    )


@router.get("/")
async def root(request: Request):
    """Root endpoint with API info."""
    requires_auth = bool(request.app.state.settings.openai_api_key)
    return JSONResponse(
        content={
            "name": "Gemini CLI OpenAI Proxy",
            "description": "OpenAI-compatible API for Gemini models",
            "version": PROXY_VERSION,
            "authentication": {
                "required": requires_auth,
                "type": "Bearer token in Authorization header" if requires_auth else "None",
            },
            "endpoints": {
                "chat_completions": CHAT_COMPLETIONS_ENDPOINT,
                "models": "/v1/models",
                "debug": {
                    "cache": "/v1/debug/cache",
                    "token_test": "/v1/debug/token-test",
                },
                "health": "/health",
                "metrics": "/metrics",
            },
        },
        headers={"X-Request-Id": get_or_generate_request_id(request)},
    )


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI app
# ─────────────────────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    auth: Optional[AuthManager] = None,
    upstream: Optional[UpstreamSource] = None,
    registry: Optional[ModelRegistry] = None,
    store: Optional[KeyValueStore] = None,
) -> FastAPI:
    """
    Build the proxy app.

    Collaborators default to the file-backed key-value store, the cached token
    reader and, when UPSTREAM_BASE_URL is set, the HTTP event source.
    """
    settings = settings or Settings.from_env()
    if auth is None:
        store = store or FileCache(settings.cache_file)
        auth = CachedTokenAuth(store)
    if upstream is None and settings.upstream_base_url:
        upstream = HttpEventSource(settings.upstream_base_url, auth, timeout=settings.timeout_s)

    app = FastAPI(title="Gemini CLI OpenAI Proxy", version=PROXY_VERSION)
    app.state.settings = settings
    app.state.auth = auth
    app.state.upstream = upstream
    app.state.registry = registry or StaticModelRegistry()
    app.state.store = store

    # Last added runs first: CORS -> logging -> API key auth
    app.add_middleware(APIKeyAuthMiddleware, api_key=settings.openai_api_key)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.include_router(router)

    if settings.openai_api_key:
        logger.info("Proxy authentication enabled for /v1/* and /metrics")
    else:
        logger.warning("OPENAI_API_KEY not configured - /v1/* endpoints are open")
    if upstream is None:
        logger.warning("UPSTREAM_BASE_URL not configured - chat completions will fail")

    return app


app = create_app()


# ─────────────────────────────────────────────────────────────────────────────
# Main entry point
# ─────────────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port)
