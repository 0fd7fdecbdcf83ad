"""
Collaborators of the completion proxy: model registry, key-value store,
token auth and the upstream event source.

The proxy core only depends on the Protocol classes below. The concrete
implementations are the defaults wired by `proxy.create_app()`.
"""

import os
import json
import time
import asyncio
import logging
import tempfile
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol

import httpx

from message_processor import GenerationConfig
from stream_transformer import UpstreamEvent, parse_upstream_event

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when the upstream credentials are missing or unusable."""


class UpstreamError(Exception):
    """Raised when the upstream event source fails."""


# ─────────────────────────────────────────────────────────────────────────────
# Protocols
# ─────────────────────────────────────────────────────────────────────────────

class KeyValueStore(Protocol):
    async def get(self, key: str, type: Optional[str] = None) -> Any: ...

    async def put(self, key: str, value: Any, expiration_ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class AuthManager(Protocol):
    async def initialize_auth(self) -> str:
        """Return an access token for the upstream, or raise AuthenticationError."""
        ...

    async def get_cached_token_info(self) -> dict: ...


class ModelRegistry(Protocol):
    def exists(self, model_id: str) -> bool: ...

    def supports_images(self, model_id: str) -> bool: ...

    def list_model_ids(self) -> list[str]: ...


class UpstreamSource(Protocol):
    def open(
        self,
        model: str,
        system_prompt: str,
        messages: list,
        config: GenerationConfig,
    ) -> AsyncIterator[UpstreamEvent]: ...


# ─────────────────────────────────────────────────────────────────────────────
# Model registry
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ModelInfo:
    max_tokens: int
    context_window: int
    supports_images: bool
    thinking: bool = True


MODELS: dict[str, ModelInfo] = {
    "gemini-2.5-pro": ModelInfo(max_tokens=65536, context_window=1048576, supports_images=True),
    "gemini-2.5-flash": ModelInfo(max_tokens=65536, context_window=1048576, supports_images=True),
    "gemini-2.5-flash-lite": ModelInfo(max_tokens=65536, context_window=1048576, supports_images=True),
}


class StaticModelRegistry:
    """Model registry backed by an in-process table."""

    def __init__(self, models: Optional[dict[str, ModelInfo]] = None):
        self._models = dict(MODELS if models is None else models)

    def exists(self, model_id: str) -> bool:
        return model_id in self._models

    def supports_images(self, model_id: str) -> bool:
        info = self._models.get(model_id)
        return bool(info and info.supports_images)

    def list_model_ids(self) -> list[str]:
        return list(self._models)


# ─────────────────────────────────────────────────────────────────────────────
# File-backed key-value store
# ─────────────────────────────────────────────────────────────────────────────

class FileCache:
    """
    JSON-file key-value store for running outside a hosted KV runtime.

    The file is read once on first access and kept in memory afterwards.
    Every write replaces the file atomically. TTLs are accepted for
    interface compatibility but never enforced.
    """

    def __init__(self, path: str):
        self.path = path
        self._data: Optional[dict[str, Any]] = None
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data
        try:
            with open(self.path, "r") as f:
                self._data = json.load(f)
            logger.info(f"Loaded key-value cache from {self.path}: {len(self._data)} keys")
        except FileNotFoundError:
            logger.info(f"No key-value cache file at {self.path}, starting empty")
            self._data = {}
        return self._data

    def _save(self) -> None:
        state_dir = os.path.dirname(self.path) or "."
        temp_fd, temp_path = tempfile.mkstemp(dir=state_dir, prefix=".cache_", suffix=".json.tmp")
        try:
            with os.fdopen(temp_fd, "w") as f:
                json.dump(self._data, f, indent=2)
            # Restrictive permissions, tokens live here
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    async def get(self, key: str, type: Optional[str] = None) -> Any:
        async with self._lock:
            value = self._load().get(key)
        if type == "json" and isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value

    async def put(self, key: str, value: Any, expiration_ttl: Optional[int] = None) -> None:
        async with self._lock:
            self._load()[key] = value
            self._save()
        if expiration_ttl:
            logger.debug(f"FileCache ignores TTL for key '{key}' ({expiration_ttl}s)")

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save()


# ─────────────────────────────────────────────────────────────────────────────
# Token auth
# ─────────────────────────────────────────────────────────────────────────────

TOKEN_CACHE_KEY = "oauth_token_cache"


class CachedTokenAuth:
    """
    Reads an upstream access token that an external login flow stored in
    the key-value store under TOKEN_CACHE_KEY.

    Record shape: {"access_token": str, "expiry_date": ms epoch, "cached_at": ms epoch}.
    """

    def __init__(self, store: KeyValueStore, key: str = TOKEN_CACHE_KEY):
        self.store = store
        self.key = key

    async def _record(self) -> Optional[dict]:
        record = await self.store.get(self.key, type="json")
        return record if isinstance(record, dict) else None

    async def initialize_auth(self) -> str:
        record = await self._record()
        if not record or not record.get("access_token"):
            raise AuthenticationError("No cached access token found")

        expiry_date = record.get("expiry_date")
        if isinstance(expiry_date, (int, float)) and expiry_date <= time.time() * 1000:
            raise AuthenticationError("Cached access token has expired")

        return record["access_token"]

    async def get_cached_token_info(self) -> dict:
        record = await self._record()
        if not record:
            return {"cached": False, "message": "No token found in cache"}

        now_ms = time.time() * 1000
        expiry_date = record.get("expiry_date")
        info: dict[str, Any] = {
            "cached": True,
            "cached_at": record.get("cached_at"),
            "expires_at": expiry_date,
            "time_until_expiry_seconds": None,
            "is_expired": False,
            "message": "Token found in cache",
        }
        if isinstance(expiry_date, (int, float)):
            info["time_until_expiry_seconds"] = int((expiry_date - now_ms) / 1000)
            info["is_expired"] = expiry_date <= now_ms
        return info


# ─────────────────────────────────────────────────────────────────────────────
# Upstream event source over HTTP
# ─────────────────────────────────────────────────────────────────────────────

async def iter_sse_data_lines(response: httpx.Response) -> AsyncIterator[str]:
    """
    Parse an SSE stream from an httpx response, yielding only data payloads.

    Comments and blank separator lines are skipped, partial lines are
    buffered across network chunks.
    """
    buffer = ""

    async for chunk in response.aiter_text():
        buffer += chunk

        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            line = line.rstrip("\r")

            if not line or line.startswith(":"):
                continue

            if line.startswith("data: "):
                yield line[6:]
            elif line.startswith("data:"):
                yield line[5:]

    line = buffer.rstrip("\r")
    if line.startswith("data: "):
        yield line[6:]
    elif line.startswith("data:"):
        yield line[5:]


class HttpEventSource:
    """
    Opens a streaming generation on an upstream bridge that emits the tagged
    events as SSE records of the form `data: {"type": ..., "data": ...}`.
    """

    def __init__(
        self,
        base_url: str,
        auth: AuthManager,
        timeout: float = 300,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.timeout = timeout
        self.transport = transport

    async def open(
        self,
        model: str,
        system_prompt: str,
        messages: list,
        config: GenerationConfig,
    ) -> AsyncIterator[UpstreamEvent]:
        access_token = await self.auth.initialize_auth()
        payload = {
            "model": model,
            "system_prompt": system_prompt,
            "messages": messages,
            "generation_config": config.to_dict(),
        }
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                async with client.stream(
                    "POST", f"{self.base_url}/stream", headers=headers, json=payload
                ) as response:
                    if response.status_code != 200:
                        error_body = await response.aread()
                        error_text = error_body.decode("utf-8", errors="replace")
                        raise UpstreamError(f"Upstream returned {response.status_code}: {error_text}")

                    async for data_line in iter_sse_data_lines(response):
                        if data_line.strip() == "[DONE]":
                            break
                        try:
                            raw = json.loads(data_line)
                        except json.JSONDecodeError as e:
                            raise UpstreamError(f"Failed to decode upstream event: {e}") from e

                        event = parse_upstream_event(raw)
                        if event is not None:
                            yield event
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Upstream timed out after {self.timeout} seconds") from e
        except httpx.RequestError as e:
            raise UpstreamError(f"Upstream request failed: {e}") from e
