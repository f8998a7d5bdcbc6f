"""Decides whether and how to act on an incoming chat message."""

import json
import logging
import random
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import anthropic
from pydantic import BaseModel, Field, ValidationError

from arbiter.models.session import ChatMessage
from arbiter.prompts.decision import (
    DECISION_SYSTEM,
    RESPONDER_SYSTEM,
    format_decision_prompt,
)

logger = logging.getLogger(__name__)


class DecisionAction(str, Enum):
    ignore = "ignore"
    acknowledge = "acknowledge"
    respond = "respond"
    code_task = "code_task"
    research = "research"
    defer = "defer"


class Decision(BaseModel):
    should_act: bool
    confidence: float = Field(ge=0, le=100)
    reason: str
    action_type: DecisionAction
    task_description: str | None = None


@dataclass
class MessageContext:
    bot_id: str
    bot_name: str
    messages: list[ChatMessage] = field(default_factory=list)


FALLBACK_DECISION = Decision(
    should_act=False,
    confidence=50,
    reason="Decision system error, defaulting to ignore",
    action_type=DecisionAction.ignore,
)

ERROR_PATTERNS = (
    "deployment failed", "deploy failed", "build failed", "build error",
    "error:", "exception:", "uncaught", "unhandled", "stack trace",
    "fatal error", "critical error", "crash", "crashed",
    "service down", "service unavailable", "connection refused", "timeout",
)

_ACKS = [
    (re.compile(r"thank|thx|\bty\b"), ["no problem!", "anytime", "happy to help", "you got it"]),
    (re.compile(r"^(hi|hello|hey|yo|sup)\b"), ["hey!", "hi there", "hello!", "hey, what's up?"]),
    (re.compile(r"bye|goodbye|cya|later"), ["see ya!", "later!", "catch you later", "bye!"]),
    (re.compile(r"^(ok|okay|cool|nice|great)\b"), ["cool", "sounds good", "nice", "alright"]),
    (re.compile(r"lol|lmao|haha"), ["haha", "lol", "heh"]),
]


def quick_decision(message: ChatMessage) -> Decision | None:
    """Decide obvious cases without a model call."""
    if message.is_direct:
        return Decision(
            should_act=True, confidence=100, reason="Direct message",
            action_type=DecisionAction.respond,
        )
    if message.mentions_bot:
        return Decision(
            should_act=True, confidence=100, reason="Direct mention",
            action_type=DecisionAction.respond,
        )
    if len(message.content.strip()) < 3:
        return Decision(
            should_act=False, confidence=95, reason="Message too short",
            action_type=DecisionAction.ignore,
        )
    return None


def detect_error_patterns(content: str) -> bool:
    lowered = content.lower()
    return any(pattern in lowered for pattern in ERROR_PATTERNS)


def acknowledgment(message: ChatMessage) -> str:
    content = message.content.lower().strip()
    for pattern, replies in _ACKS:
        if pattern.search(content):
            return random.choice(replies)
    return "👍"


def parse_decision(text: str) -> Decision:
    """Validate a model reply as a Decision.

    Tolerates a surrounding markdown code fence.

    Raises:
        ValueError: the reply is not valid JSON or does not match the schema.
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```[a-zA-Z]*\s*|\s*```$", "", cleaned)
    try:
        return Decision.model_validate(json.loads(cleaned))
    except (json.JSONDecodeError, ValidationError) as e:
        raise ValueError(f"Invalid decision payload: {e}") from e


class Decider(ABC):
    """Pluggable decision and reply generation."""

    @abstractmethod
    async def decide(self, message: ChatMessage, context: MessageContext) -> Decision:
        ...

    @abstractmethod
    async def respond(self, message: ChatMessage, context: MessageContext) -> str:
        ...


class AnthropicDecider(Decider):
    """Decides and replies using an Anthropic model."""

    def __init__(self, model: str = "claude-sonnet-4-20250514", client: Any = None) -> None:
        self._model = model
        self._client: Any = client  # Lazy-loaded anthropic.AsyncAnthropic

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic()
        return self._client

    async def decide(self, message: ChatMessage, context: MessageContext) -> Decision:
        quick = quick_decision(message)
        if quick is not None:
            return quick

        prompt = format_decision_prompt(
            message, context.messages, context.bot_name, detect_error_patterns(message.content)
        )
        try:
            response = await self._get_client().messages.create(
                model=self._model,
                max_tokens=500,
                temperature=0.3,
                system=DECISION_SYSTEM,
                messages=[{"role": "user", "content": prompt}],
            )
            return parse_decision(response.content[0].text)
        except (anthropic.AnthropicError, TypeError, ValueError, IndexError, AttributeError):
            logger.warning("Decision call failed, defaulting to ignore", exc_info=True)
            return FALLBACK_DECISION.model_copy()

    async def respond(self, message: ChatMessage, context: MessageContext) -> str:
        history = []
        for msg in context.messages[-10:]:
            if msg.id == message.id:
                continue
            if msg.author_name == context.bot_name:
                history.append({"role": "assistant", "content": msg.content})
            else:
                history.append({"role": "user", "content": f"{msg.author_name}: {msg.content}"})
        history.append({"role": "user", "content": f"{message.author_name}: {message.content}"})

        try:
            response = await self._get_client().messages.create(
                model=self._model,
                max_tokens=1000,
                system=RESPONDER_SYSTEM.format(bot_name=context.bot_name),
                messages=_merge_roles(history),
            )
            return response.content[0].text or "I'm not sure how to respond to that."
        except (anthropic.AnthropicError, TypeError, IndexError, AttributeError):
            logger.warning("Response generation failed", exc_info=True)
            return "Something went wrong while thinking about that."


def _merge_roles(messages: list[dict]) -> list[dict]:
    """Collapse consecutive same-role turns and drop a leading assistant turn."""
    merged: list[dict] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            merged[-1] = {"role": msg["role"], "content": merged[-1]["content"] + "\n" + msg["content"]}
        else:
            merged.append(dict(msg))
    while merged and merged[0]["role"] == "assistant":
        merged.pop(0)
    return merged
