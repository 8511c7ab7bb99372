import asyncio
import uuid
from typing import Any, Optional

import pytest

from coach_chatbot.auth import Identity
from coach_chatbot.db import Database
from coach_chatbot.db.crud_helper import CHAT_TABLES, CRUDRegistry
from coach_chatbot.llm.provider import ChatProvider, StepFinish, TextChunk, ToolCallRequest
from coach_chatbot.services.orchestrator import ChatOrchestrator
from coach_chatbot.settings import Config
from coach_chatbot.streaming.events import Usage

STEP_USAGE = Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15)


class ScriptedProvider(ChatProvider):
    """
    Replays scripted model output.

    ``steps`` holds one list per primary-stream call; items are TextChunk /
    ToolCallRequest objects, an Exception to raise, or an asyncio.Event to wait
    on. ``partials`` is replayed by every structured call and ``completions``
    is popped by ``complete``.
    """

    def __init__(self, steps=None, partials=None, completions=None) -> None:
        self.model_name = "scripted"
        self.steps = list(steps or [])
        self.partials = list(partials or [])
        self.completions = list(completions or [])
        self.stream_calls: list[tuple[list, Optional[list]]] = []
        self.structured_calls: list[list] = []
        self.complete_calls: list[list] = []

    async def stream(self, messages, tools=None):
        self.stream_calls.append((list(messages), tools))
        step = self.steps.pop(0) if self.steps else [TextChunk(text="ok")]
        has_tool_calls = False
        for item in step:
            await asyncio.sleep(0)
            if isinstance(item, Exception):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            if isinstance(item, ToolCallRequest):
                has_tool_calls = True
            yield item
        yield StepFinish(
            finish_reason="tool-calls" if has_tool_calls else "stop", usage=STEP_USAGE
        )

    async def stream_structured(self, messages, schema):
        self.structured_calls.append(list(messages))
        for item in self.partials:
            await asyncio.sleep(0)
            if isinstance(item, Exception):
                raise item
            yield item

    async def complete(self, messages):
        self.complete_calls.append(list(messages))
        if not self.completions:
            raise RuntimeError("no completion scripted")
        result = self.completions.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class ProviderFactoryStub:
    def __init__(self, provider: ChatProvider) -> None:
        self.provider = provider
        self.requested: list[tuple[str, Any]] = []

    def __call__(self, model_name, parameters=None):
        self.requested.append((model_name, parameters))
        return self.provider


class StaticRetriever:
    def __init__(self, hits=None, error: Optional[Exception] = None) -> None:
        self.hits = hits or []
        self.error = error
        self.queries = []

    async def search(self, query, tenant_id, knowledge_base_id, limit=5, min_similarity=0.0):
        self.queries.append((query, tenant_id, knowledge_base_id, limit))
        if self.error is not None:
            raise self.error
        return self.hits


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'chat.db'}")
    db.create_all(CHAT_TABLES)
    yield db
    db.dispose()


@pytest.fixture
def crud(database):
    return CRUDRegistry(database)


@pytest.fixture
def settings():
    return Config(
        gemini_api_key="test-key",
        history_limit=20,
        max_tool_steps=5,
        memory_extraction_threshold=3,
        memory_extraction_window=10,
    )


@pytest.fixture
def identity():
    return Identity(user_id="user-1", tenant_id="tenant-1")


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def provider_factory(provider):
    return ProviderFactoryStub(provider)


@pytest.fixture
def retriever():
    return StaticRetriever()


@pytest.fixture
def orchestrator(database, provider_factory, retriever, settings):
    return ChatOrchestrator(database, provider_factory, retriever, settings)


def make_agent(crud, tenant_id="tenant-1", **overrides):
    data = {
        "id": f"agent-{uuid.uuid4().hex[:8]}",
        "tenant_id": tenant_id,
        "name": "Business Coach",
        "instructions": "You are a business coach.",
        "model": "gemini-2.0-flash",
        "parameters": {"temperature": 0.5},
    }
    data.update(overrides)
    return crud.agents.create_resource(data)


async def run_turn(orchestrator, identity, **kwargs):
    kwargs.setdefault("model", "gemini-2.0-flash")
    turn = await orchestrator.start_turn(identity, **kwargs)
    events = [event async for event in turn.events]
    await orchestrator.drain()
    return turn, events
