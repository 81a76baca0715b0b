"""Shared pytest fixtures for ringrelay tests."""

import os
import sys
from unittest.mock import AsyncMock

import pytest

# Ensure ringrelay is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ringrelay.action_dispatcher import ActionDispatcher
from ringrelay.extractor import EventIntent, MessageIntent, TaskIntent
from ringrelay.session_store import SessionStore

UID = "user-1"
TOKENS = {"access_token": "access-abc", "refresh_token": "refresh-xyz", "owner_id": "100"}
CHATS = [
    {"id": "123", "type": "Team", "name": "general", "displayName": "general"},
    {"id": "456", "type": "Team", "name": "engineering", "displayName": "engineering"},
]


@pytest.fixture
def store():
    """In-memory SessionStore instance."""
    instance = SessionStore(db_path=":memory:")
    yield instance
    instance.close()


@pytest.fixture
def authed_store(store):
    """Store with one authenticated user."""
    store.save_user(UID, dict(TOKENS), CHATS)
    return store


@pytest.fixture
def extractor():
    """Extractor stub returning fixed, valid intents."""
    stub = AsyncMock()
    stub.extract_message.return_value = MessageIntent(
        chat_id="123", chat_name="general", message="Hello team, how are you?")
    stub.extract_task.return_value = TaskIntent(
        title="Review the Q3 report", assignee_id="200", assignee_name="Jane Doe",
        due_date="2026-10-20", due_time=None)
    stub.extract_event.return_value = EventIntent(
        name="Team sync", start_date="2026-10-21", start_time="15:00", duration=30)
    return stub


@pytest.fixture
def sink():
    """ActionSink stub that accepts every call."""
    stub = AsyncMock()
    stub.list_chats.return_value = CHATS
    stub.list_members.return_value = [{"id": "200", "name": "Jane Doe", "displayName": "Jane Doe"}]
    stub.post_message.return_value = {"id": "post-1"}
    stub.create_task.return_value = {"id": "task-1"}
    stub.create_event.return_value = {"id": "event-1"}
    return stub


@pytest.fixture
def dispatcher(authed_store, extractor, sink):
    return ActionDispatcher(authed_store, extractor, sink)
