"""
Pytest fixtures for AI Teacher tests.
"""

from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai.types.chat import ChatCompletionChunk

from aiteacher.llm.gateway import LanguageModelGateway
from aiteacher.memory.manager import UserMemoryManager
from aiteacher.memory.store import InMemoryMemoryStore
from aiteacher.shared.config import LLMConfig, MemoryConfig, TeacherConfig


def completion_chunk(text: str, index: int = 0) -> ChatCompletionChunk:
    return ChatCompletionChunk.model_validate({
        "id": f"chunk-{index}",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "deepseek-chat",
        "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}],
    })


class FakeStream:
    """Async-iterable stand-in for the SDK stream, with close()."""

    def __init__(self, texts: List[str], fail_after: int = None):
        self.texts = texts
        self.fail_after = fail_after
        self.closed = False
        self.delivered = 0

    def __aiter__(self):
        return self._events()

    async def _events(self):
        for i, text in enumerate(self.texts):
            if self.closed:
                return
            if self.fail_after is not None and i >= self.fail_after:
                raise ConnectionError("connection reset")
            self.delivered += 1
            yield completion_chunk(text, i)

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_stream_cls():
    return FakeStream


@pytest.fixture
def offline_gateway():
    """Gateway without an API key: fallback mode, no network."""
    return LanguageModelGateway(provider="deepseek", config=LLMConfig(deepseek_api_key=None))


@pytest.fixture
def fake_client():
    """OpenAI-shaped client whose calls are AsyncMocks."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    client.models.list = AsyncMock(return_value=[])
    return client


@pytest.fixture
def online_gateway(fake_client):
    """Configured gateway talking to `fake_client`."""
    return LanguageModelGateway(
        provider="deepseek",
        api_key="test-key",
        config=LLMConfig(deepseek_api_key=None),
        client=fake_client,
    )


def completion(text: str):
    """Minimal non-streaming completion object."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = text
    return response


@pytest.fixture
def completion_factory():
    return completion


@pytest.fixture
def memory_config():
    return MemoryConfig()


@pytest.fixture
def memory_store():
    return InMemoryMemoryStore()


@pytest.fixture
def memory_manager(memory_store, memory_config):
    return UserMemoryManager(memory_store, memory_config)


@pytest.fixture
def teacher_config(tmp_path):
    """Teacher config with an empty bootstrap dir so the default persona is used."""
    return TeacherConfig(bootstrap_dir=tmp_path / "bootstrap")


