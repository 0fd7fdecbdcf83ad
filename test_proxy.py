#!/usr/bin/env python3
"""
Test suite for the proxy endpoints, driven through FastAPI's TestClient with
fake auth and upstream collaborators.
"""

import json
import asyncio
from typing import Optional

from fastapi.testclient import TestClient
from starlette.requests import Request

from proxy import Settings, chat_completions, create_app, mask_body_for_log
from stream_transformer import SSE_DONE, RealThinkingEvent, TextEvent, ToolCodeEvent, UsageEvent
from upstream import AuthenticationError, ModelInfo, StaticModelRegistry, UpstreamError


class FakeAuth:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls = 0

    async def initialize_auth(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return "upstream-token"

    async def get_cached_token_info(self) -> dict:
        return {
            "cached": True,
            "cached_at": 1700000000000,
            "expires_at": 1700003600000,
            "time_until_expiry_seconds": 3600,
            "is_expired": False,
            "message": "Token found in cache",
            "access_token": "must-not-leak",
        }


class FakeUpstream:
    def __init__(self, events: list, error: Optional[Exception] = None):
        self.events = events
        self.error = error
        self.calls = []
        self.closed = False

    async def open(self, model, system_prompt, messages, config):
        self.calls.append({
            "model": model,
            "system_prompt": system_prompt,
            "messages": messages,
            "config": config,
        })
        try:
            for event in self.events:
                yield event
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


def make_client(upstream=None, auth=None, **settings) -> TestClient:
    app = create_app(
        Settings(**settings),
        auth=auth or FakeAuth(),
        upstream=upstream,
        registry=StaticModelRegistry({
            "gemini-2.5-flash": ModelInfo(max_tokens=65536, context_window=1048576, supports_images=True),
            "gemini-2.5-pro": ModelInfo(max_tokens=65536, context_window=1048576, supports_images=True),
            "text-only": ModelInfo(max_tokens=1024, context_window=8192, supports_images=False),
        }),
    )
    return TestClient(app)


def parse_sse(body: str) -> list:
    """Split an SSE body into decoded records ("[DONE]" kept as a string)."""
    records = []
    for frame in body.split("\n\n"):
        if not frame:
            continue
        assert frame.startswith("data: "), frame
        payload = frame[len("data: "):]
        records.append(payload if payload == "[DONE]" else json.loads(payload))
    return records


USER_MESSAGES = [{"role": "user", "content": "Hi there"}]


def test_streaming_text_completion():
    """Streaming is the default and ends with a terminal chunk plus [DONE]."""
    upstream = FakeUpstream([TextEvent("Hel"), TextEvent("lo"), UsageEvent({"inputTokens": 4, "outputTokens": 2})])
    client = make_client(upstream)

    response = client.post("/v1/chat/completions", json={
        "model": "gemini-2.5-pro",
        "messages": [{"role": "system", "content": "Be terse."}] + USER_MESSAGES,
    })

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-request-id"]
    assert response.text.endswith(SSE_DONE)

    records = parse_sse(response.text)
    assert records[-1] == "[DONE]"
    assert records[0]["choices"][0]["delta"] == {"role": "assistant", "content": "Hel"}
    assert records[1]["choices"][0]["delta"] == {"content": "lo"}
    terminal = records[2]
    assert terminal["choices"][0]["finish_reason"] == "stop"
    assert terminal["usage"] == {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6}
    assert len(records) == 4

    call = upstream.calls[0]
    assert call["model"] == "gemini-2.5-pro"
    assert call["system_prompt"] == "Be terse."
    assert call["messages"] == USER_MESSAGES
    assert upstream.closed is True
    print("✓ streaming_text_completion passed")


def test_streaming_tool_call():
    """A tool call stream finishes with finish_reason tool_calls."""
    upstream = FakeUpstream([ToolCodeEvent({"name": "f", "args": {"a": 1}}), UsageEvent({"inputTokens": 10, "outputTokens": 5})])
    client = make_client(upstream)

    response = client.post("/v1/chat/completions", json={"messages": USER_MESSAGES, "stream": True})
    records = parse_sse(response.text)

    assert len(records) == 3
    delta = records[0]["choices"][0]["delta"]
    assert delta["role"] == "assistant" and delta["content"] is None
    assert delta["tool_calls"][0]["function"] == {"name": "f", "arguments": '{"a":1}'}
    assert records[1]["choices"][0]["finish_reason"] == "tool_calls"
    assert records[1]["usage"]["total_tokens"] == 15
    assert records[2] == "[DONE]"
    # Default model applies when none is given
    assert upstream.calls[0]["model"] == "gemini-2.5-flash"
    print("✓ streaming_tool_call passed")


def test_streaming_upstream_error():
    """A mid-stream failure yields the chunks so far plus one error record, without [DONE]."""
    upstream = FakeUpstream([TextEvent("partial")], error=UpstreamError("connection reset"))
    client = make_client(upstream)

    response = client.post("/v1/chat/completions", json={"messages": USER_MESSAGES})
    records = parse_sse(response.text)

    assert response.status_code == 200
    assert len(records) == 2
    assert records[0]["choices"][0]["delta"]["content"] == "partial"
    assert records[1]["error"]["message"] == "connection reset"
    assert "choices" not in records[1]
    assert "[DONE]" not in records
    assert upstream.closed is True
    print("✓ streaming_upstream_error passed")


def test_generation_config_reaches_upstream():
    """Effort and deployment flag shape the config handed to the upstream."""
    upstream = FakeUpstream([TextEvent("ok")])
    client = make_client(upstream, enable_real_thinking=True)

    client.post("/v1/chat/completions", json={
        "model": "gemini-2.5-flash",
        "messages": USER_MESSAGES,
        "extra_body": {"reasoning_effort": "high"},
        "temperature": 0.3,
    })
    config = upstream.calls[0]["config"]
    assert config.include_reasoning is True
    assert config.thinking_budget == 24576
    assert config.temperature == 0.3

    client.post("/v1/chat/completions", json={"messages": USER_MESSAGES, "reasoning_effort": "none"})
    config = upstream.calls[1]["config"]
    assert config.include_reasoning is False
    assert config.thinking_budget == 0
    print("✓ generation_config_reaches_upstream passed")


def test_badly_typed_fields_are_ignored():
    """A non-string reasoning_effort or non-list tools doesn't break the request."""
    upstream = FakeUpstream([TextEvent("ok")])
    client = make_client(upstream)

    response = client.post("/v1/chat/completions", json={
        "model": "gemini-2.5-pro",
        "messages": USER_MESSAGES,
        "reasoning_effort": ["low"],
        "stream": False,
    })
    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "ok"
    config = upstream.calls[0]["config"]
    assert config.include_reasoning is False
    assert config.thinking_budget == -1

    response = client.post("/v1/chat/completions", json={"messages": USER_MESSAGES, "tools": 5})
    assert response.status_code == 200
    assert parse_sse(response.text)[-1] == "[DONE]"
    print("✓ badly_typed_fields_are_ignored passed")


def test_client_disconnect_closes_upstream():
    """Closing the response body mid-stream closes the upstream event iterator."""
    upstream = FakeUpstream([TextEvent("first"), TextEvent("second"), TextEvent("third")])
    app = make_client(upstream).app
    body = json.dumps({"messages": USER_MESSAGES}).encode()

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    async def scenario():
        request = Request(
            {
                "type": "http",
                "method": "POST",
                "path": "/v1/chat/completions",
                "headers": [(b"content-type", b"application/json")],
                "query_string": b"",
                "app": app,
            },
            receive,
        )
        response = await chat_completions(request)
        records = response.body_iterator
        first = await records.__anext__()
        assert '"first"' in first
        assert upstream.closed is False
        await records.aclose()

    asyncio.run(scenario())
    assert upstream.closed is True
    assert len(upstream.calls) == 1
    print("✓ client_disconnect_closes_upstream passed")


def test_non_streaming_completion():
    """stream=false returns a single chat.completion object."""
    upstream = FakeUpstream([
        RealThinkingEvent("thinking..."),
        TextEvent("Hello"),
        TextEvent(" world"),
        UsageEvent({"inputTokens": 3, "outputTokens": 2}),
    ])
    client = make_client(upstream)

    response = client.post("/v1/chat/completions", json={"messages": USER_MESSAGES, "stream": False})

    assert response.status_code == 200
    data = response.json()
    assert data["object"] == "chat.completion"
    assert data["id"].startswith("chatcmpl-")
    choice = data["choices"][0]
    assert choice["message"]["role"] == "assistant"
    assert choice["message"]["content"] == "Hello world"
    assert choice["message"]["reasoning"] == "thinking..."
    assert "tool_calls" not in choice["message"]
    assert choice["finish_reason"] == "stop"
    assert data["usage"] == {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}
    print("✓ non_streaming_completion passed")


def test_non_streaming_tool_call_and_error():
    """Non-streaming tool calls set finish_reason; upstream failures give a 500."""
    client = make_client(FakeUpstream([ToolCodeEvent({"name": "lookup", "args": {"q": "x"}})]))
    data = client.post("/v1/chat/completions", json={"messages": USER_MESSAGES, "stream": False}).json()
    assert data["choices"][0]["finish_reason"] == "tool_calls"
    assert data["choices"][0]["message"]["content"] is None
    assert data["choices"][0]["message"]["tool_calls"][0]["function"]["name"] == "lookup"

    client = make_client(FakeUpstream([TextEvent("lost")], error=UpstreamError("upstream down")))
    response = client.post("/v1/chat/completions", json={"messages": USER_MESSAGES, "stream": False})
    assert response.status_code == 500
    assert response.json()["error"]["message"] == "upstream down"
    assert "lost" not in response.text
    print("✓ non_streaming_tool_call_and_error passed")


def test_validation_errors():
    """Bad requests are rejected with 400 before any upstream call."""
    upstream = FakeUpstream([TextEvent("never")])
    client = make_client(upstream)

    response = client.post("/v1/chat/completions", json={"messages": []})
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "messages is a required field"
    assert response.json()["error"]["type"] == "invalid_request_error"

    response = client.post("/v1/chat/completions", json={"model": "gpt-4o", "messages": USER_MESSAGES})
    assert response.status_code == 400
    assert "Model 'gpt-4o' not found" in response.json()["error"]["message"]

    image_messages = [{"role": "user", "content": [{"type": "image_url", "image_url": {"url": "https://example.com/a.png"}}]}]
    response = client.post("/v1/chat/completions", json={"model": "text-only", "messages": image_messages})
    assert response.status_code == 400
    assert "does not support image inputs" in response.json()["error"]["message"]

    response = client.post(
        "/v1/chat/completions", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert "Invalid JSON" in response.json()["error"]["message"]

    assert upstream.calls == []
    print("✓ validation_errors passed")


def test_upstream_authentication_failure():
    """Auth failure answers 401 and never opens the upstream stream."""
    upstream = FakeUpstream([TextEvent("never")])
    client = make_client(upstream, auth=FakeAuth(error=AuthenticationError("No cached access token found")))

    response = client.post("/v1/chat/completions", json={"messages": USER_MESSAGES})

    assert response.status_code == 401
    assert response.json()["error"]["type"] == "authentication_error"
    assert "No cached access token found" in response.json()["error"]["message"]
    assert upstream.calls == []
    print("✓ upstream_authentication_failure passed")


def test_missing_upstream_fails_closed():
    """Without an upstream source, completions return a configuration error."""
    client = make_client(upstream=None)
    response = client.post("/v1/chat/completions", json={"messages": USER_MESSAGES})
    assert response.status_code == 500
    assert "not configured" in response.json()["error"]["message"]
    print("✓ missing_upstream_fails_closed passed")


def test_api_key_middleware():
    """With an API key configured, /v1/* requires a matching bearer token."""
    client = make_client(FakeUpstream([TextEvent("ok")]), openai_api_key="sk-secret")

    response = client.get("/v1/models")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "missing_authorization"

    response = client.get("/v1/models", headers={"Authorization": "Token sk-secret"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "invalid_authorization_format"

    response = client.get("/v1/models", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "invalid_api_key"

    response = client.get("/v1/models", headers={"Authorization": "Bearer sk-secret"})
    assert response.status_code == 200

    assert client.get("/metrics").status_code == 401
    assert client.get("/health").status_code == 200
    assert client.get("/").json()["authentication"]["required"] is True
    print("✓ api_key_middleware passed")


def test_models_endpoint():
    """Models are listed in OpenAI list format."""
    client = make_client()
    data = client.get("/v1/models").json()
    assert data["object"] == "list"
    assert [m["id"] for m in data["data"]] == ["gemini-2.5-flash", "gemini-2.5-pro", "text-only"]
    assert all(m["object"] == "model" and m["owned_by"] == "google-gemini-cli" for m in data["data"])
    print("✓ models_endpoint passed")


def test_debug_and_service_endpoints():
    """Debug, health, root and metrics endpoints respond without leaking tokens."""
    auth = FakeAuth()
    client = make_client(auth=auth)

    cache_info = client.get("/v1/debug/cache").json()
    assert cache_info["status"] == "ok"
    assert cache_info["cached"] is True
    assert "access_token" not in cache_info
    assert "must-not-leak" not in json.dumps(cache_info)

    assert client.post("/v1/debug/token-test").json()["status"] == "ok"
    assert client.post("/v1/token-test").json()["status"] == "ok"
    assert auth.calls == 2

    failing = make_client(auth=FakeAuth(error=AuthenticationError("expired")))
    response = failing.post("/v1/debug/token-test")
    assert response.status_code == 500
    assert response.json()["error"]["message"] == "expired"

    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert "timestamp" in health and "uptime_seconds" in health

    root = client.get("/").json()
    assert root["endpoints"]["chat_completions"] == "/v1/chat/completions"
    assert root["authentication"]["required"] is False

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "proxy_requests_total" in metrics.text
    print("✓ debug_and_service_endpoints passed")


def test_mask_body_for_log():
    """Keys and tokens are masked and long bodies truncated."""
    masked = mask_body_for_log('{"api_key": "sk-123", "Token":"abc", "model": "gemini-2.5-pro"}')
    assert "sk-123" not in masked and "abc" not in masked
    assert '"api_key": "***"' in masked
    assert '"model": "gemini-2.5-pro"' in masked

    long_body = json.dumps({"content": "x" * 1000})
    assert mask_body_for_log(long_body).endswith("...")
    assert len(mask_body_for_log(long_body)) == 503
    print("✓ mask_body_for_log passed")


def run_all_tests():
    """Run all tests."""
    try:
        test_streaming_text_completion()
        test_streaming_tool_call()
        test_streaming_upstream_error()
        test_generation_config_reaches_upstream()
        test_badly_typed_fields_are_ignored()
        test_client_disconnect_closes_upstream()
        test_non_streaming_completion()
        test_non_streaming_tool_call_and_error()
        test_validation_errors()
        test_upstream_authentication_failure()
        test_missing_upstream_fails_closed()
        test_api_key_middleware()
        test_models_endpoint()
        test_debug_and_service_endpoints()
        test_mask_body_for_log()
        print("\n✅ All tests passed!")
    except AssertionError as e:
        print(f"\n❌ Test failed: {e}")
        raise


if __name__ == "__main__":
    run_all_tests()
