"""Tests for decision rules and the Anthropic-backed decider."""

import json
from unittest.mock import AsyncMock, MagicMock

import anthropic
import pytest

from arbiter.services.decision import (
    AnthropicDecider,
    DecisionAction,
    MessageContext,
    acknowledgment,
    detect_error_patterns,
    parse_decision,
    quick_decision,
)
from tests.conftest import make_message

CODE_TASK = {
    "should_act": True,
    "confidence": 88,
    "reason": "Asked for a change",
    "action_type": "code_task",
    "task_description": "Fix auth bug",
}


def mock_client(text: str | None = None, error: Exception | None = None) -> MagicMock:
    client = MagicMock()
    if error is not None:
        client.messages.create = AsyncMock(side_effect=error)
    else:
        client.messages.create = AsyncMock(return_value=MagicMock(content=[MagicMock(text=text)]))
    return client


@pytest.fixture
def context():
    return MessageContext(bot_id="arbiter", bot_name="Arbiter", messages=[])


class TestQuickDecision:
    def test_direct_message(self):
        decision = quick_decision(make_message("hey there", channel_name="DM"))
        assert decision.should_act
        assert decision.confidence == 100
        assert decision.action_type is DecisionAction.respond

    def test_mention(self):
        decision = quick_decision(make_message("@arbiter what is up", mentions_bot=True))
        assert decision.reason == "Direct mention"

    def test_too_short(self):
        decision = quick_decision(make_message("k"))
        assert not decision.should_act
        assert decision.action_type is DecisionAction.ignore

    def test_needs_model(self):
        assert quick_decision(make_message("can someone fix the login page")) is None


class TestHelpers:
    def test_error_patterns(self):
        assert detect_error_patterns("Deployment FAILED on prod")
        assert not detect_error_patterns("all good here")

    def test_acknowledgment(self):
        assert acknowledgment(make_message("thanks!")) in (
            "no problem!", "anytime", "happy to help", "you got it",
        )
        assert acknowledgment(make_message("interesting")) == "👍"


class TestParseDecision:
    def test_plain_json(self):
        decision = parse_decision(json.dumps(CODE_TASK))
        assert decision.action_type is DecisionAction.code_task
        assert decision.task_description == "Fix auth bug"

    def test_code_fence(self):
        decision = parse_decision(f"```json\n{json.dumps(CODE_TASK)}\n```")
        assert decision.confidence == 88

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            parse_decision("not json")

    def test_schema_violation(self):
        with pytest.raises(ValueError):
            parse_decision(json.dumps({**CODE_TASK, "confidence": 150}))
        with pytest.raises(ValueError):
            parse_decision(json.dumps({**CODE_TASK, "action_type": "dance"}))


class TestAnthropicDecider:
    async def test_quick_path_skips_model(self, context):
        client = mock_client(json.dumps(CODE_TASK))
        decider = AnthropicDecider(client=client)
        decision = await decider.decide(make_message("hi", channel_name="DM"), context)
        assert decision.action_type is DecisionAction.respond
        client.messages.create.assert_not_called()

    async def test_model_decision(self, context):
        client = mock_client(json.dumps(CODE_TASK))
        decider = AnthropicDecider(model="test-model", client=client)
        decision = await decider.decide(make_message("please fix the auth bug"), context)
        assert decision.action_type is DecisionAction.code_task
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert "please fix the auth bug" in kwargs["messages"][0]["content"]

    async def test_malformed_reply_falls_back(self, context):
        decider = AnthropicDecider(client=mock_client("I think you should act"))
        decision = await decider.decide(make_message("please fix the auth bug"), context)
        assert not decision.should_act
        assert decision.confidence == 50
        assert decision.action_type is DecisionAction.ignore

    async def test_api_error_falls_back(self, context):
        decider = AnthropicDecider(client=mock_client(error=anthropic.AnthropicError("down")))
        decision = await decider.decide(make_message("please fix the auth bug"), context)
        assert decision.action_type is DecisionAction.ignore

    async def test_respond_merges_history(self, context):
        client = mock_client("Sure, here's how.")
        context.messages = [
            make_message("earlier", author_name="Arbiter"),
            make_message("first question", author_name="bob"),
            make_message("second question", author_name="bob"),
        ]
        decider = AnthropicDecider(client=client)
        reply = await decider.respond(make_message("how does auth work?"), context)
        assert reply == "Sure, here's how."
        messages = client.messages.create.call_args.kwargs["messages"]
        assert messages[0]["role"] == "user"
        assert len(messages) == 1
        assert "bob: first question\nbob: second question\nalice: how does auth work?" == messages[0]["content"]

    async def test_respond_error(self, context):
        decider = AnthropicDecider(client=mock_client(error=anthropic.AnthropicError("down")))
        reply = await decider.respond(make_message("how does auth work?"), context)
        assert reply == "Something went wrong while thinking about that."

    async def test_error_keywords_flagged_for_model(self, context):
        client = mock_client(json.dumps(CODE_TASK))
        decider = AnthropicDecider(client=client)
        await decider.decide(make_message("deploy failed with a stack trace"), context)
        prompt = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "error or failure keywords" in prompt
