import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from autoboard.actions import RunCancelled, RunnerError, RunRequest
from autoboard.config_loader import RoutingConfig
from autoboard.models import Card, Channel, Column
from autoboard.router import (
    LiteLLMInstructionRunner,
    _build_kwargs,
    build_messages,
    parse_response,
)

from conftest import make_instruction


def _request(action: str = "modify") -> RunRequest:
    channel = Channel(id="ch-1", name="Reading list", columns=[Column(id="inbox", name="Inbox", card_ids=["c1"])])
    card = Card(id="c1", channel_id="ch-1", title="Attention is all you need", tags=["ml"])
    return RunRequest(
        instruction=make_instruction(action=action, instructions="Summarise each paper"),
        channel=channel,
        target_column_ids=["inbox"],
        context_column_ids=["inbox"],
        cards=[card],
        context_cards=[card],
        card_count=3,
    )


def _completion(content: str):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def test_parse_response_accepts_fenced_json():
    result = parse_response("generate", '```json\n{"cards": [{"title": "New"}]}\n```')

    assert [c.title for c in result.generated_cards] == ["New"]


def test_parse_response_rejects_bad_payloads():
    with pytest.raises(RunnerError):
        parse_response("move", "not json")
    with pytest.raises(RunnerError):
        parse_response("move", '{"moves": [{"card_id": "c1"}]}')


def test_build_messages_lists_cards_and_instructions():
    messages = build_messages(_request())

    assert messages[0]["role"] == "system"
    assert '"cards"' in messages[0]["content"]
    user = messages[1]["content"]
    assert "[c1] Attention is all you need (tags: ml)" in user
    assert "Summarise each paper" in user
    assert "Cards to modify" in user

    generate = build_messages(_request("generate"))[1]["content"]
    assert "Create up to 3 cards." in generate


def test_temperature_dropped_for_reasoning_models():
    messages = [{"role": "user", "content": "hi"}]

    assert "temperature" not in _build_kwargs(RoutingConfig(model="openai/o3-mini"), messages)
    assert _build_kwargs(RoutingConfig(model="anthropic/claude-sonnet"), messages)["temperature"] == 0.4


@pytest.mark.asyncio()
async def test_runner_parses_completion():
    runner = LiteLLMInstructionRunner(RoutingConfig(model="test/model"))
    content = '{"cards": [{"id": "c1", "title": "Attention", "tags": ["nlp"]}]}'

    with patch("autoboard.router.litellm.acompletion", new=AsyncMock(return_value=_completion(content))) as mock:
        result = await runner.run(_request())

    assert result.modified_cards[0].tags == ["nlp"]
    assert runner.call_count == 1
    assert mock.call_args.kwargs["model"] == "test/model"
    assert mock.call_args.kwargs["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio()
async def test_runner_refuses_when_already_aborted():
    runner = LiteLLMInstructionRunner(RoutingConfig())
    abort = asyncio.Event()
    abort.set()

    with patch("autoboard.router.litellm.acompletion", new=AsyncMock()) as mock:
        with pytest.raises(RunCancelled):
            await runner.run(_request(), abort)

    mock.assert_not_called()
