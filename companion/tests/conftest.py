import asyncio
from typing import List, Optional, Sequence

import pytest

from companion.config import AppConfig
from companion.conversation.types import IdentityKey
from companion.core.telemetry import InMemoryTelemetrySink
from companion.db.state_store import InMemoryStateStore
from companion.llm.responders import GenerationConfig, ResponderReply


class FrozenClock:
    """Epoch clock that only moves when a test advances it."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class StubResponder:
    """Responder returning canned replies in order (the last one repeats)."""

    def __init__(
        self,
        replies: Sequence[str] = ("That sounds lovely. Tell me more about your day.",),
        name: str = "stub",
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        tool_intents: Sequence[str] = (),
    ):
        self.replies = list(replies)
        self.name = name
        self.error = error
        self.delay = delay
        self.tool_intents = tuple(tool_intents)
        self.calls: List[tuple] = []

    async def invoke(self, prompt: str, config: GenerationConfig) -> ResponderReply:
        self.calls.append((prompt, config))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        text = self.replies[min(len(self.calls), len(self.replies)) - 1]
        return ResponderReply(text=text, engine_used=self.name, tool_intents=self.tool_intents)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def telemetry():
    return InMemoryTelemetrySink()


@pytest.fixture
def identity():
    return IdentityKey("synth-1", "host-1")


@pytest.fixture
def app_config(monkeypatch):
    for name in ("DATABASE_URL", "LOCAL_RESPONDER_BASE_URL", "DEMO_MODE", "EXHAUSTION_MODE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BACKGROUND_TASKS_ENABLED", "false")
    return AppConfig()


@pytest.fixture
def build_services(app_config, store, telemetry, clock):
    """Factory for the full service graph on the in-memory store with stub responders."""
    from companion.main import initialize_services

    async def _build(primary=None, local=None):
        return await initialize_services(
            app_config,
            store=store,
            responders=(primary or StubResponder(), local),
            telemetry=telemetry,
            clock=clock,
        )

    return _build
