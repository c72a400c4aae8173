"""Shared fakes: an in-memory stand-in for the AsyncAnthropic client."""

import asyncio
from types import SimpleNamespace

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from coaching.analysis import CoachingAnalyzer


DEFAULT_ANALYSIS = {
    "motivation_level": 7,
    "pain_points": ["wife's health", "needs to move"],
    "objection_detected": False,
    "suggested_response": "It sounds like family is the priority. What timeline works for you?",
    "recommended_next_move": "Ask about timeline",
}

DEFAULT_SUMMARY = {
    "final_motivation_level": 8,
    "pain_points": ["health", "relocation"],
    "objections": ["price below Zillow"],
    "summary": "Structured summary text that should be replaced.",
    "next_steps": "Call back Thursday with a firm offer.",
}


class FakeStream:
    """Async context manager mimicking ``client.messages.stream(...)``."""

    def __init__(self, tokens, error=None):
        self._tokens = list(tokens)
        self._error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    def text_stream(self):
        return self._generate()

    async def _generate(self):
        for token in self._tokens:
            await asyncio.sleep(0)
            yield token
        if self._error is not None:
            raise self._error


class FakeMessages:
    """Routes requests by shape: forced tool, suggestion stream, narrative stream, plain text."""

    def __init__(self):
        self.analysis = dict(DEFAULT_ANALYSIS)
        self.summary = dict(DEFAULT_SUMMARY)
        self.context_summary = "Earlier: seller is motivated by health issues."
        self.suggestion_tokens = ["Family ", "comes ", "first."]
        self.narrative_tokens = ["Seller is ", "highly motivated."]
        self.errors: dict[str, Exception] = {}
        self.create_calls: list[dict] = []
        self.stream_calls: list[dict] = []

    async def create(self, **kwargs):
        self.create_calls.append(kwargs)
        await asyncio.sleep(0)
        tools = kwargs.get("tools")
        if not tools:
            if "text" in self.errors:
                raise self.errors["text"]
            return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.context_summary)])

        name = tools[0]["name"]
        if name in self.errors:
            raise self.errors[name]
        payload = self.analysis if name == "provide_analysis" else self.summary
        return SimpleNamespace(content=[
            SimpleNamespace(type="tool_use", name=name, input=dict(payload)),
        ])

    def stream(self, **kwargs):
        self.stream_calls.append(kwargs)
        content = kwargs["messages"][0]["content"]
        if "<latest_statement>" in content:
            return FakeStream(self.suggestion_tokens, self.errors.get("suggestion"))
        return FakeStream(self.narrative_tokens, self.errors.get("narrative"))


class FakeAnthropic:
    def __init__(self):
        self.messages = FakeMessages()


@pytest.fixture
def fake_client():
    return FakeAnthropic()


@pytest.fixture
def analyzer(fake_client):
    return CoachingAnalyzer(client=fake_client, model="test-model")
