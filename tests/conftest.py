"""Pytest configuration and fixtures for Story Studio tests"""

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

# Modules live at the project root
project_root = Path(__file__).resolve().parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import models
from key_pool import KeyPoolManager
from key_store import MemoryKeyStore


# ============ Fake google-genai client ============

def text_response(text):
    """generate_content response carrying only text"""
    return SimpleNamespace(text=text, candidates=[])


def inline_response(data, mime_type="image/png"):
    """generate_content response carrying one inline blob"""
    part = SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type=mime_type))
    candidate = SimpleNamespace(content=SimpleNamespace(parts=[part]), grounding_metadata=None)
    return SimpleNamespace(text=None, candidates=[candidate])


class FakeModels:
    def __init__(self, genai, api_key):
        self._genai = genai
        self._api_key = api_key

    async def generate_content(self, **kwargs):
        return self._genai.dispatch(self._api_key, "generate_content", kwargs)

    async def generate_videos(self, **kwargs):
        return self._genai.dispatch(self._api_key, "generate_videos", kwargs)


class FakeOperations:
    def __init__(self, genai, api_key):
        self._genai = genai
        self._api_key = api_key

    async def get(self, operation):
        return self._genai.dispatch(self._api_key, "operations.get", {"operation": operation})


class FakeClient:
    def __init__(self, genai, api_key):
        self.api_key = api_key
        self.aio = SimpleNamespace(
            models=FakeModels(genai, api_key),
            operations=FakeOperations(genai, api_key),
        )


class FakeGenai:
    """
    Client factory for execute_with_rotation.

    handler(api_key, method, kwargs) returns the response or raises.
    """

    def __init__(self, handler):
        self.handler = handler
        self.keys_used = []
        self.calls = []

    def __call__(self, api_key):
        self.keys_used.append(api_key)
        return FakeClient(self, api_key)

    def dispatch(self, api_key, method, kwargs):
        self.calls.append((api_key, method, kwargs))
        return self.handler(api_key, method, kwargs)


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays and returns at once"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


# ============ Fixtures ============

@pytest.fixture
def make_pool():
    """Build a pool from explicit user and system key lists"""
    def _make(user_keys=None, system_keys=None):
        return KeyPoolManager(
            store=MemoryKeyStore(user_keys),
            system_keys_loader=lambda: list(system_keys or []),
        )
    return _make


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def memory_db():
    """Fresh in-memory database for each test"""
    engine = models.init_db("sqlite:///:memory:")
    yield models.get_db
    models.Base.metadata.drop_all(bind=engine)
    engine.dispose()
