"""
Pytest configuration and shared fixtures for cogpipe tests.
"""
import json
import os
import tempfile
from datetime import datetime, timezone

import pytest

from cogpipe.kernel.engine import CognitionEngine
from cogpipe.lib.connectors import FetchResult


class ScriptedCompletion:
    """Completion service double: replays queued replies and records each call.

    A queued dict is returned as JSON text, a string as-is, and an exception
    instance is raised.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def complete(self, frame, profile):
        self.calls.append((frame, profile))
        if not self.responses:
            raise AssertionError("completion service called with no scripted reply left")
        reply = self.responses.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


class FakeConnector:
    """Connector double that counts fetches."""

    def __init__(self, name="search", payload=None, error=None):
        self.name = name
        self.payload = payload if payload is not None else {"hits": ["Q1 revenue $15.2M"]}
        self.error = error
        self.fetches = 0

    def fetch(self, query):
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return FetchResult(
            payload=self.payload,
            origin=f"fake://{self.name}",
            retrieved_at=datetime.now(timezone.utc),
        )


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    for suffix in ("", "-journal", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def temp_worker_db():
    """Create a temporary worker database for testing."""
    with tempfile.NamedTemporaryFile(suffix="-worker.db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest.fixture
def completion():
    return ScriptedCompletion()


@pytest.fixture
def sleeps():
    """Backoff delays requested by the retry policy, recorded instead of slept."""
    return []


@pytest.fixture
def engine(temp_db, completion, sleeps):
    eng = CognitionEngine(temp_db, completion=completion, sleep=sleeps.append)
    yield eng
    eng.close()


@pytest.fixture
def make_connector():
    return FakeConnector
