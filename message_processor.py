"""
Request shaping for OpenAI chat completion requests.

Turns a client request into the upstream generation config, splits the system
prompt out of the message list and validates model/image constraints.
"""

import logging
from dataclasses import dataclass, fields
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Upstream "dynamic allocation" sentinel
DEFAULT_THINKING_BUDGET = -1

# Model ids containing this marker use the lighter budget tier
FLASH_MODEL_MARKER = "flash"

# effort -> (standard budget, flash budget)
REASONING_EFFORT_BUDGETS: dict[str, tuple[int, int]] = {
    "low": (1024, 1024),
    "medium": (16384, 12288),
    "high": (32768, 24576),
    "none": (0, 0),
}

PASSTHROUGH_PARAMS = (
    "max_tokens",
    "temperature",
    "top_p",
    "stop",
    "presence_penalty",
    "frequency_penalty",
    "seed",
    "response_format",
    "tools",
    "tool_choice",
)


@dataclass(frozen=True)
class GenerationConfig:
    include_reasoning: bool
    thinking_budget: int
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop: Any = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    seed: Optional[int] = None
    response_format: Optional[dict] = None
    tools: Optional[list] = None
    tool_choice: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the upstream, leaving out parameters the client did not set."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


def get_reasoning_effort(body: dict) -> Optional[str]:
    """
    Find the reasoning effort level in the request.

    Clients put it in different places; checked in order: top level,
    `extra_body`, `model_params`. The first non-empty string wins; values of
    any other type are ignored.
    """
    candidates = [body.get("reasoning_effort")]
    for nested_key in ("extra_body", "model_params"):
        nested = body.get(nested_key)
        if isinstance(nested, dict):
            candidates.append(nested.get("reasoning_effort"))

    for effort in candidates:
        if effort is None:
            continue
        if not isinstance(effort, str):
            logger.warning(f"Ignoring non-string reasoning_effort={effort!r:.100}")
            continue
        if effort:
            return effort
    return None


def build_generation_config(
    body: dict,
    model: str,
    real_thinking_enabled: bool = False,
    default_thinking_budget: int = DEFAULT_THINKING_BUDGET,
) -> GenerationConfig:
    """
    Build the upstream generation config from a chat completion request.

    Reasoning is on whenever real thinking is enabled for the deployment.
    An explicit `thinking_budget` replaces the default budget, and a known
    reasoning effort level overrides both the flag and the budget.
    """
    include_reasoning = real_thinking_enabled
    thinking_budget = default_thinking_budget

    client_budget = body.get("thinking_budget")
    if isinstance(client_budget, int) and not isinstance(client_budget, bool):
        thinking_budget = client_budget
    elif client_budget is not None:
        logger.warning(f"Ignoring non-integer thinking_budget={client_budget!r}")

    effort = get_reasoning_effort(body)
    if effort is not None:
        budgets = REASONING_EFFORT_BUDGETS.get(effort)
        if budgets is None:
            logger.warning(f"Ignoring unknown reasoning_effort={effort!r}")
        else:
            standard_budget, flash_budget = budgets
            thinking_budget = flash_budget if FLASH_MODEL_MARKER in model else standard_budget
            include_reasoning = effort != "none"

    return GenerationConfig(
        include_reasoning=include_reasoning,
        thinking_budget=thinking_budget,
        **{name: body.get(name) for name in PASSTHROUGH_PARAMS},
    )


def extract_text(content: Any) -> str:
    """Text of a message content: the string itself, or its text parts joined by a space."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            part.get("text") or ""
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def split_system_prompt(messages: list) -> tuple[str, list]:
    """
    Separate system messages from the conversation.

    Returns (system_prompt, rest). Each system message overwrites the prompt,
    so only the last one is kept. Other messages are returned untouched and
    in their original order.
    """
    system_prompt = ""
    rest = []

    for msg in messages:
        if msg.get("role") == "system":
            system_prompt = extract_text(msg.get("content"))
        else:
            rest.append(msg)

    return system_prompt, rest


def has_image_content(messages: list) -> bool:
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, list) and any(
            isinstance(part, dict) and part.get("type") == "image_url" for part in content
        ):
            return True
    return False


def validate_chat_request(messages: list, model: str, registry) -> Optional[str]:
    """Return an error message if the request can't be served, else None."""
    if not messages:
        return "messages is a required field"

    if not isinstance(messages, list) or not all(isinstance(msg, dict) for msg in messages):
        return "messages must be a list of message objects"

    if not registry.exists(model):
        available = ", ".join(registry.list_model_ids())
        return f"Model '{model}' not found. Available models: {available}"

    if has_image_content(messages) and not registry.supports_images(model):
        return (
            f"Model '{model}' does not support image inputs. "
            f"Please use a vision-capable model."
        )

    return None
