"""Shared test fixtures and configuration for backend tests."""
import json
from typing import List

import pytest
from fastapi.testclient import TestClient

from app.chat.connections import Connection
from app.chat.dispatcher import Dispatcher
from app.config import ChatSettings, reset_config
from app.main import app


class RecordingConnection(Connection):
    """In-memory connection that records every frame written to it."""

    def __init__(self, connection_id: str = None) -> None:
        super().__init__(connection_id)
        self.frames: List[dict] = []

    def _write(self, text: str) -> None:
        self.frames.append(json.loads(text))

    def take(self) -> List[dict]:
        """Return and clear the recorded frames."""
        frames, self.frames = self.frames, []
        return frames

    def of_type(self, kind: str) -> List[dict]:
        return [f for f in self.frames if f.get("type") == kind]


@pytest.fixture
def make_connection():
    """Factory for RecordingConnection objects with readable ids."""
    counter = {"n": 0}

    def _make() -> RecordingConnection:
        counter["n"] += 1
        return RecordingConnection(f"conn-{counter['n']}")

    return _make


@pytest.fixture
def dispatcher():
    """A dispatcher with fresh registries and default limits."""
    return Dispatcher.from_settings(ChatSettings())


@pytest.fixture(autouse=True)
def reset_singletons():
    """Give every test a fresh config and process-wide dispatcher."""
    reset_config()
    Dispatcher.reset_instance()
    yield
    Dispatcher.reset_instance()
    reset_config()


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app.

    Named api_client (not client) to avoid shadowing the module-level
    `client = TestClient(app)` pattern used in existing test files.
    """
    return TestClient(app)
