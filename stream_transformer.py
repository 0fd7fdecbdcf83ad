"""
Upstream event types and the OpenAI streaming transcoder.

The upstream emits tagged events ({"type": ..., "data": ...}). Each one is
parsed into a typed event and fed to `OpenAIStreamTransformer`, which returns
the OpenAI `chat.completion.chunk` objects to send to the client. The
transformer does no I/O, so it can be driven from an async generator, a
callback or a plain list in tests.
"""

import json
import time
import uuid
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Optional, Union

logger = logging.getLogger(__name__)

OPENAI_CHAT_COMPLETION_OBJECT = "chat.completion"
OPENAI_CHAT_COMPLETION_CHUNK_OBJECT = "chat.completion.chunk"

SSE_DONE = "data: [DONE]\n\n"


# ─────────────────────────────────────────────────────────────────────────────
# Upstream events
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TextEvent:
    text: str


@dataclass(frozen=True)
class ThinkingContentEvent:
    """Narrated thinking, sent to the client as regular content."""
    text: str


@dataclass(frozen=True)
class RealThinkingEvent:
    """Incremental reasoning trace from the model itself."""
    text: str


@dataclass(frozen=True)
class ReasoningEvent:
    data: Any


@dataclass(frozen=True)
class ToolCodeEvent:
    data: Any


@dataclass(frozen=True)
class NativeToolEvent:
    data: Any


@dataclass(frozen=True)
class GroundingMetadataEvent:
    data: Any


@dataclass(frozen=True)
class UsageEvent:
    data: Any


UpstreamEvent = Union[
    TextEvent,
    ThinkingContentEvent,
    RealThinkingEvent,
    ReasoningEvent,
    ToolCodeEvent,
    NativeToolEvent,
    GroundingMetadataEvent,
    UsageEvent,
]

TEXT_EVENT_TYPES = {
    "text": TextEvent,
    "thinking_content": ThinkingContentEvent,
    "real_thinking": RealThinkingEvent,
}

DATA_EVENT_TYPES = {
    "reasoning": ReasoningEvent,
    "tool_code": ToolCodeEvent,
    "native_tool": NativeToolEvent,
    "grounding_metadata": GroundingMetadataEvent,
    "usage": UsageEvent,
}


def parse_upstream_event(raw: Any) -> Optional[UpstreamEvent]:
    """
    Turn a raw {"type": ..., "data": ...} record into a typed event.

    Returns None for records that can't be used (unknown type, text events
    without a string payload); those are logged and skipped.
    """
    if not isinstance(raw, dict):
        logger.warning(f"Dropping non-object upstream event: {raw!r:.100}")
        return None

    event_type = raw.get("type")
    data = raw.get("data")

    if event_type in TEXT_EVENT_TYPES:
        if not isinstance(data, str):
            logger.warning(f"Dropping {event_type} event with non-string payload")
            return None
        return TEXT_EVENT_TYPES[event_type](data)

    if event_type in DATA_EVENT_TYPES:
        return DATA_EVENT_TYPES[event_type](data)

    logger.warning(f"Dropping upstream event with unknown type={event_type!r}")
    return None


# ─────────────────────────────────────────────────────────────────────────────
# SSE framing
# ─────────────────────────────────────────────────────────────────────────────

def sse_data(payload: Any) -> str:
    """Frame a payload as a single SSE data record."""
    return f"data: {json.dumps(payload)}\n\n"


def _is_function_call(data: Any) -> bool:
    return isinstance(data, dict) and "name" in data and "args" in data


def _is_native_tool_response(data: Any) -> bool:
    return isinstance(data, dict) and "type" in data and "data" in data


def _is_token_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_usage_data(data: Any) -> bool:
    return (
        isinstance(data, dict)
        and _is_token_count(data.get("inputTokens"))
        and _is_token_count(data.get("outputTokens"))
    )


# ─────────────────────────────────────────────────────────────────────────────
# Transcoder
# ─────────────────────────────────────────────────────────────────────────────

class OpenAIStreamTransformer:
    """
    Converts upstream events into OpenAI chat completion chunks for one stream.

    `consume()` is called once per upstream event and returns the chunks to
    send (zero or one). `finalize()` is called once after the upstream ends and
    returns the terminal chunk carrying the finish reason and usage.
    """

    def __init__(self, model: str, session_id: Optional[str] = None, created: Optional[int] = None):
        self.model = model
        self.session_id = session_id or f"chatcmpl-{uuid.uuid4()}"
        self.created = created if created is not None else int(time.time())
        self.role_announced = False
        self.tool_call_id: Optional[str] = None
        self.usage: Optional[dict[str, int]] = None
        self.finalized = False

    def _announce_role(self, delta: dict) -> None:
        if not self.role_announced:
            delta["role"] = "assistant"
            self.role_announced = True

    def _envelope(self, choice: dict) -> dict:
        return {
            "id": self.session_id,
            "object": OPENAI_CHAT_COMPLETION_CHUNK_OBJECT,
            "created": self.created,
            "model": self.model,
            "choices": [choice],
        }

    def consume(self, event: UpstreamEvent) -> list[dict]:
        if self.finalized:
            raise RuntimeError("Stream transformer already finalized")

        delta: dict[str, Any] = {}

        if isinstance(event, (TextEvent, ThinkingContentEvent)):
            self._announce_role(delta)
            delta["content"] = event.text

        elif isinstance(event, RealThinkingEvent):
            delta["reasoning"] = event.text

        elif isinstance(event, ReasoningEvent):
            if isinstance(event.data, dict) and isinstance(event.data.get("reasoning"), str):
                delta["reasoning"] = event.data["reasoning"]
            else:
                logger.debug("Dropping malformed reasoning event")

        elif isinstance(event, ToolCodeEvent):
            if _is_function_call(event.data):
                self.tool_call_id = f"call_{uuid.uuid4()}"
                if not self.role_announced:
                    delta["role"] = "assistant"
                    delta["content"] = None
                    self.role_announced = True
                # Always index 0, even for several calls in one stream
                delta["tool_calls"] = [
                    {
                        "index": 0,
                        "id": self.tool_call_id,
                        "type": "function",
                        "function": {
                            "name": event.data["name"],
                            "arguments": json.dumps(
                                event.data["args"], separators=(",", ":"), ensure_ascii=False
                            ),
                        },
                    }
                ]
            else:
                logger.debug("Dropping malformed tool_code event")

        elif isinstance(event, NativeToolEvent):
            if _is_native_tool_response(event.data):
                delta["native_tool_calls"] = [event.data]
            else:
                logger.debug("Dropping malformed native_tool event")

        elif isinstance(event, GroundingMetadataEvent):
            if event.data:
                delta["grounding"] = event.data

        elif isinstance(event, UsageEvent):
            if _is_usage_data(event.data):
                self.usage = {
                    "input_tokens": event.data["inputTokens"],
                    "output_tokens": event.data["outputTokens"],
                }
            else:
                logger.debug("Dropping malformed usage event")
            return []

        else:
            raise TypeError(f"Unhandled upstream event: {event!r}")

        if not delta:
            return []

        return [
            {
                **self._envelope(
                    {
                        "index": 0,
                        "delta": delta,
                        "finish_reason": None,
                        "logprobs": None,
                        "matched_stop": None,
                    }
                ),
                "usage": None,
            }
        ]

    @property
    def finish_reason(self) -> str:
        return "tool_calls" if self.tool_call_id else "stop"

    def usage_summary(self) -> Optional[dict[str, int]]:
        if self.usage is None:
            return None
        return {
            "prompt_tokens": self.usage["input_tokens"],
            "completion_tokens": self.usage["output_tokens"],
            "total_tokens": self.usage["input_tokens"] + self.usage["output_tokens"],
        }

    def finalize(self) -> dict:
        if self.finalized:
            raise RuntimeError("Stream transformer already finalized")
        self.finalized = True

        final_chunk = self._envelope({"index": 0, "delta": {}, "finish_reason": self.finish_reason})
        usage = self.usage_summary()
        if usage is not None:
            final_chunk["usage"] = usage
        return final_chunk


async def transcode_stream(
    events: AsyncIterable[UpstreamEvent],
    transformer: OpenAIStreamTransformer,
) -> AsyncIterator[str]:
    """
    Yield SSE records for an upstream event stream.

    Ends with the terminal chunk and the [DONE] sentinel. If the upstream
    raises, the exception propagates and no terminal records are produced.
    """
    async for event in events:
        for chunk in transformer.consume(event):
            yield sse_data(chunk)

    yield sse_data(transformer.finalize())
    yield SSE_DONE


# ─────────────────────────────────────────────────────────────────────────────
# Non-streaming aggregation
# ─────────────────────────────────────────────────────────────────────────────

async def collect_completion(events: AsyncIterable[UpstreamEvent], model: str) -> dict:
    """
    Drain an upstream event stream into a single `chat.completion` response.

    Uses the same transcoding rules as streaming, then folds the deltas
    into one assistant message.
    """
    transformer = OpenAIStreamTransformer(model)
    content_parts: list[str] = []
    reasoning_parts: list[str] = []
    tool_calls: list[dict] = []
    native_tool_calls: list = []
    grounding = None

    async for event in events:
        for chunk in transformer.consume(event):
            delta = chunk["choices"][0]["delta"]
            if delta.get("content"):
                content_parts.append(delta["content"])
            if "reasoning" in delta:
                reasoning_parts.append(delta["reasoning"])
            for tc in delta.get("tool_calls", []):
                tool_calls.append({"id": tc["id"], "type": tc["type"], "function": tc["function"]})
            native_tool_calls.extend(delta.get("native_tool_calls", []))
            if "grounding" in delta:
                grounding = delta["grounding"]

    final_chunk = transformer.finalize()

    if content_parts:
        content: Optional[str] = "".join(content_parts)
    else:
        content = None if tool_calls else ""

    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    if reasoning_parts:
        message["reasoning"] = "".join(reasoning_parts)
    if native_tool_calls:
        message["native_tool_calls"] = native_tool_calls
    if grounding is not None:
        message["grounding"] = grounding

    response: dict[str, Any] = {
        "id": transformer.session_id,
        "object": OPENAI_CHAT_COMPLETION_OBJECT,
        "created": transformer.created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": final_chunk["choices"][0]["finish_reason"],
            }
        ],
    }
    if "usage" in final_chunk:
        response["usage"] = final_chunk["usage"]
    return response
