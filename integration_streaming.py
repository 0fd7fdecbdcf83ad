#!/usr/bin/env python3
"""Integration checks for streaming chat completions through a running proxy.

This script is intentionally framework-free (no pytest) so it can run against
any deployed proxy. It runs sequential checks and exits non-zero on the first
failure.

Env vars:
- PROXY_BASE_URL (default: http://127.0.0.1:8000)
- PROXY_API_KEY  (default: empty, no Authorization header)
- TEST_MODEL     (default: gemini-2.5-flash)
- FLAKE_RUNS     (default: 10)
- STREAM_TIMEOUT_S (default: 90)
- READ_IDLE_TIMEOUT_S (default: 30)
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from typing import Any, AsyncIterator, Optional

import httpx


PROXY_BASE_URL = os.environ.get("PROXY_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
PROXY_API_KEY = os.environ.get("PROXY_API_KEY", "")
TEST_MODEL = os.environ.get("TEST_MODEL", "gemini-2.5-flash")
FLAKE_RUNS = int(os.environ.get("FLAKE_RUNS", "10"))
STREAM_TIMEOUT_S = float(os.environ.get("STREAM_TIMEOUT_S", "90"))
READ_IDLE_TIMEOUT_S = float(os.environ.get("READ_IDLE_TIMEOUT_S", "30"))

DONE = "[DONE]"


def _headers() -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if PROXY_API_KEY:
        headers["Authorization"] = f"Bearer {PROXY_API_KEY}"
    return headers


def _url(path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return f"{PROXY_BASE_URL}{path}"


async def wait_for_health(timeout_s: float = 20.0) -> None:
    deadline = time.time() + timeout_s
    last_err: Optional[str] = None

    async with httpx.AsyncClient(timeout=5.0) as client:
        while time.time() < deadline:
            try:
                r = await client.get(_url("/health"))
                if r.status_code == 200 and r.json().get("status") == "ok":
                    return
                last_err = f"health status_code={r.status_code} body={r.text[:200]!r}"
            except Exception as e:
                last_err = repr(e)
            await asyncio.sleep(0.3)

    raise AssertionError(f"Proxy not healthy at {PROXY_BASE_URL}. Last error: {last_err}")


async def iter_sse_records(response: httpx.Response) -> AsyncIterator[Any]:
    """Yield decoded `data:` payloads; the [DONE] sentinel is yielded as a string."""
    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload == DONE:
            yield DONE
            continue
        yield json.loads(payload)


async def post_json(path: str, payload: dict[str, Any], timeout_s: float = 60.0) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        return await client.post(_url(path), headers=_headers(), json=payload)


async def run_stream_request(
    *,
    prompt: str,
    max_tokens: int,
    extra: Optional[dict[str, Any]] = None,
) -> tuple[list[Any], dict[str, Any]]:
    """Run a streaming request and return (records, response_headers)."""

    payload = {
        "model": TEST_MODEL,
        "max_tokens": max_tokens,
        "stream": True,
        "messages": [{"role": "user", "content": prompt}],
        **(extra or {}),
    }

    # httpx timeouts: overall + idle read watchdog
    timeout = httpx.Timeout(STREAM_TIMEOUT_S, connect=10.0, read=READ_IDLE_TIMEOUT_S, write=10.0, pool=10.0)

    async with httpx.AsyncClient(timeout=timeout) as client:
        async with client.stream("POST", _url("/v1/chat/completions"), headers=_headers(), json=payload) as resp:
            if resp.status_code != 200:
                body = await resp.aread()
                raise AssertionError(
                    f"stream request failed: status={resp.status_code} body={body[:400]!r}"
                )

            records: list[Any] = []
            async for record in iter_sse_records(resp):
                records.append(record)
                if record == DONE:
                    break
            return records, dict(resp.headers)


def assert_well_formed_stream(records: list[Any]) -> None:
    """Deltas, then one terminal chunk, then [DONE]; role announced exactly once."""
    tail = records[-5:]
    if not records or records[-1] != DONE:
        raise AssertionError(f"stream did not end with [DONE]. tail={tail!r}")
    if len(records) < 2 or not isinstance(records[-2], dict):
        raise AssertionError(f"missing terminal chunk. tail={tail!r}")

    for record in records[:-1]:
        if "error" in record:
            raise AssertionError(f"inline error record: {record!r}")

    terminal = records[-2]["choices"][0]
    if terminal.get("finish_reason") not in ("stop", "tool_calls"):
        raise AssertionError(f"bad finish_reason in terminal chunk: {terminal!r}")

    deltas = [r["choices"][0]["delta"] for r in records[:-2]]
    roles = sum(1 for d in deltas if "role" in d)
    if roles != 1:
        raise AssertionError(f"expected exactly one role announcement, got {roles}")
    if len({r["id"] for r in records[:-1]}) != 1:
        raise AssertionError("chunk ids differ within one stream")


def assert_has_content(records: list[Any]) -> None:
    for record in records:
        if isinstance(record, dict) and record["choices"][0]["delta"].get("content"):
            return
    raise AssertionError(f"no non-empty content delta observed. tail={records[-5:]!r}")


async def step(name: str, fn) -> None:
    print(f"[TEST] {name} ...", flush=True)
    await fn()
    print(f"[OK]   {name}", flush=True)


async def main() -> int:
    print(
        f"proxy={PROXY_BASE_URL} model={TEST_MODEL} flake_runs={FLAKE_RUNS} "
        f"stream_timeout_s={STREAM_TIMEOUT_S} idle_read_timeout_s={READ_IDLE_TIMEOUT_S}",
        flush=True,
    )

    await step("1/8 health is ok", lambda: wait_for_health())

    async def _models():
        async with httpx.AsyncClient(timeout=10.0) as client:
            r = await client.get(_url("/v1/models"), headers=_headers())
        assert r.status_code == 200, r.text
        ids = [m["id"] for m in r.json()["data"]]
        assert TEST_MODEL in ids, ids

    await step("2/8 model list includes test model", _models)

    async def _non_streaming():
        r = await post_json(
            "/v1/chat/completions",
            {
                "model": TEST_MODEL,
                "max_tokens": 64,
                "stream": False,
                "messages": [{"role": "user", "content": "Say: nonstream-ok"}],
            },
        )
        assert r.status_code == 200, r.text[:400]
        data = r.json()
        assert data.get("object") == "chat.completion", data
        assert data["choices"][0]["message"]["role"] == "assistant", data

    await step("3/8 non-streaming completion works", _non_streaming)

    async def _streaming_minimal():
        records, hdrs = await run_stream_request(prompt="Say: streaming-ok", max_tokens=128)
        assert_well_formed_stream(records)
        assert_has_content(records)
        assert hdrs.get("x-request-id"), hdrs

    await step("4/8 streaming ends with terminal chunk + [DONE]", _streaming_minimal)

    async def _no_reasoning_effort():
        records, _ = await run_stream_request(
            prompt="Say: no-thinking", max_tokens=64, extra={"reasoning_effort": "none"}
        )
        assert_well_formed_stream(records)
        for record in records[:-1]:
            assert "reasoning" not in record["choices"][0]["delta"], record

    await step("5/8 reasoning_effort=none streams without reasoning", _no_reasoning_effort)

    async def _usage_in_terminal_chunk():
        records, _ = await run_stream_request(prompt="Say: usage", max_tokens=64)
        assert_well_formed_stream(records)
        usage = records[-2].get("usage")
        if usage is not None:
            assert usage["total_tokens"] == usage["prompt_tokens"] + usage["completion_tokens"], usage

    await step("6/8 usage totals add up", _usage_in_terminal_chunk)

    async def _flake_runs():
        for i in range(1, FLAKE_RUNS + 1):
            records, _ = await run_stream_request(prompt=f"flake-{i}", max_tokens=96)
            assert_well_formed_stream(records)

    await step(f"7/8 flake detector ({FLAKE_RUNS} runs)", _flake_runs)

    async def _unknown_model():
        r = await post_json(
            "/v1/chat/completions",
            {"model": "no-such-model", "messages": [{"role": "user", "content": "hi"}]},
            timeout_s=10.0,
        )
        assert r.status_code == 400, r.text[:400]
        assert "not found" in r.json()["error"]["message"], r.text

    await step("8/8 unknown model is rejected with 400", _unknown_model)

    print("ALL TESTS PASSED", flush=True)
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        raise SystemExit(130)
