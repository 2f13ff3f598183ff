import asyncio
import json
from datetime import datetime, timezone

import pytest

from teampulse.core.budget.ledger import TokenBudgetLedger
from teampulse.core.budget.memory_store import InMemoryUsageStore
from teampulse.core.llm import LLMReply


class FakeLLM:
    """
    Stands in for the Ollama client. `responder(messages)` returns the reply
    content, an Exception to raise, or a coroutine producing either.
    """

    model_name = "fake-model"

    def __init__(self, responder=None, prompt_tokens=100, completion_tokens=50):
        self.responder = responder or (lambda messages: '{"findings": []}')
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.calls = []

    async def chat(self, messages, temperature=0.0, max_tokens=500, schema=None):
        self.calls.append(messages)
        content = self.responder(messages)
        if asyncio.iscoroutine(content):
            content = await content
        if isinstance(content, Exception):
            raise content
        return LLMReply(
            content=content,
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            model=self.model_name,
        )


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def payload_of(messages) -> dict:
    return json.loads(messages[-1]["content"])


def findings_reply(*findings) -> str:
    return json.dumps({"findings": list(findings)})


@pytest.fixture
def fake_llm_factory():
    return FakeLLM


@pytest.fixture
def clock():
    return Clock(datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def usage_store():
    return InMemoryUsageStore()


@pytest.fixture
def ledger(usage_store, clock):
    return TokenBudgetLedger(usage_store, daily_limit=1_000_000, clock=clock)


@pytest.fixture
def payload_reader():
    return payload_of


@pytest.fixture
def reply_builder():
    return findings_reply
