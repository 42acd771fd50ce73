"""
Autoboard Router: LiteLLM-backed InstructionRunner

Turns a RunRequest into a chat completion and the completion back into a
RunResult. The engine only sees the InstructionRunner protocol; this is
the default capability the CLI injects. Vendor selection, retries and
JSON validation live here.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel, Field, ValidationError
from tenacity import retry, stop_after_attempt, wait_exponential

from autoboard.actions import (
    GeneratedCard,
    ModifiedCard,
    MovedCard,
    RunCancelled,
    RunnerError,
    RunRequest,
    RunResult,
)
from autoboard.config_loader import RoutingConfig
from autoboard.models import Card


# ---------------------------------------------------------------------------
# Strict Output Schemas
# ---------------------------------------------------------------------------

class GenerateOutput(BaseModel):
    cards: list[GeneratedCard] = Field(default_factory=list)


class ModifyOutput(BaseModel):
    cards: list[ModifiedCard] = Field(default_factory=list)


class MoveOutput(BaseModel):
    moves: list[MovedCard] = Field(default_factory=list)


_OUTPUT_SCHEMAS: dict[str, type[BaseModel]] = {
    "generate": GenerateOutput,
    "modify": ModifyOutput,
    "move": MoveOutput,
}


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_BASE_PROMPT = """You operate on a Kanban board on behalf of an automation rule.
You MUST respond with a valid JSON object ONLY. No markdown, no commentary.
"""

SYSTEM_PROMPTS = {
    "generate": _BASE_PROMPT + """
Create new cards for the target column following the instructions.

Output schema:
{
  "cards": [{"title": "Short card title", "content": "Optional body text"}]
}

Rules:
- Produce at most the requested number of cards.
- Do not duplicate cards that already exist on the board.
""",
    "modify": _BASE_PROMPT + """
Update each of the given cards following the instructions.

Output schema:
{
  "cards": [
    {
      "id": "existing card id",
      "title": "New or unchanged title",
      "content": "Optional note to attach",
      "tags": ["tag"],
      "properties": [{"key": "k", "value": "v", "display_type": "chip|field", "color": "blue"}],
      "tasks": [{"title": "Task title", "description": "Optional"}]
    }
  ]
}

Rules:
- Only return cards whose id appears in the input.
- Reuse existing tag names where they fit.
""",
    "move": _BASE_PROMPT + """
Decide which of the given cards should move to another column.

Output schema:
{
  "moves": [{"card_id": "existing card id", "destination_column_id": "column id", "reason": "why"}]
}

Rules:
- Only use column ids listed in the board description.
- Leave cards that should stay where they are out of the list.
""",
}


def _describe_cards(cards: list[Card]) -> str:
    if not cards:
        return "- (none)"
    lines = []
    for card in cards:
        line = f"- [{card.id}] {card.title}"
        if card.tags:
            line += f" (tags: {', '.join(card.tags)})"
        lines.append(line)
    return "\n".join(lines)


def build_messages(request: RunRequest) -> list[dict[str, str]]:
    instruction = request.instruction
    channel = request.channel

    columns = "\n".join(
        f"- {c.id}: {c.name} ({len(c.card_ids)} cards)" for c in channel.columns
    )
    context_cards = _describe_cards(request.context_cards)
    tags = ", ".join(t.name for t in channel.tag_definitions) or "(none)"

    user_content = f"""Board: {channel.name}
{channel.description}

Board guidance:
{channel.ai_instructions or '- None specified'}

Columns:
{columns}

Existing tags: {tags}

Visible cards:
{context_cards}

Rule: {instruction.title}
Instructions:
{instruction.instructions or '- None specified'}

Target columns: {', '.join(request.target_column_ids) or '(none)'}
"""

    if instruction.action == "generate":
        user_content += f"\nCreate up to {request.card_count} cards."
    else:
        user_content += f"\nCards to {instruction.action}:\n{_describe_cards(request.cards)}"

    return [
        {"role": "system", "content": SYSTEM_PROMPTS[instruction.action]},
        {"role": "user", "content": user_content},
    ]


def _strip_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```") and not l.strip().lower() == "json"]
        content = "\n".join(lines)
    return content


def parse_response(action: str, content: str) -> RunResult:
    """Validate the JSON completion against the action's output schema."""
    content = _strip_fences(content)
    try:
        raw_json = json.loads(content)
        parsed = _OUTPUT_SCHEMAS[action].model_validate(raw_json)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug(f"[ROUTER] Raw response: {content[:500]}")
        raise RunnerError(f"Failed to parse {action} response: {e}") from e

    if isinstance(parsed, GenerateOutput):
        return RunResult(generated_cards=parsed.cards)
    if isinstance(parsed, ModifyOutput):
        return RunResult(modified_cards=parsed.cards)
    return RunResult(moved_cards=parsed.moves)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def _build_kwargs(config: RoutingConfig, messages: list[dict[str, str]]) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": config.model,
        "messages": messages,
        "max_tokens": config.max_tokens,
        "response_format": {"type": "json_object"},
    }
    normalized = config.model.lower().replace("openai/", "")
    # o-series and GPT-5 models reject arbitrary temperature
    if not normalized.startswith(("o1", "o3", "o4", "gpt-5")):
        kwargs["temperature"] = config.temperature
    return kwargs


class LiteLLMInstructionRunner:
    """Vendor-agnostic instruction runner. Model comes from config.routing."""

    def __init__(self, config: RoutingConfig):
        self.config = config
        self.call_count = 0
        litellm.suppress_debug_info = True

    async def run(self, request: RunRequest, abort: asyncio.Event | None = None) -> RunResult:
        if abort is not None and abort.is_set():
            raise RunCancelled("Abort signal set before the call")

        action = request.instruction.action
        messages = build_messages(request)
        start = time.monotonic()

        logger.debug(f"[ROUTER] {action} → {self.config.model} ({request.instruction.title})")

        content = await self._complete(messages)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug(f"[ROUTER] {action} complete in {elapsed_ms}ms")

        return parse_response(action, content)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def _complete(self, messages: list[dict[str, str]]) -> str:
        self.call_count += 1
        response = await litellm.acompletion(**_build_kwargs(self.config, messages))
        return response.choices[0].message.content or ""
