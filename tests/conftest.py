from __future__ import annotations

from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import accounts
import chat
import database
import main
import media
import posts
from realtime import channel_name, get_notifier
from schemas import User
from security import create_access_token, get_password_hash

PASSWORD = "secret123"
PASSWORD_HASH = get_password_hash(PASSWORD)


class RecordingNotifier:
    """Stands in for the real notifier and keeps every emitted event."""

    def __init__(self):
        self.events = []

    async def emit_to_conversation(self, conversation_id, event, data, exclude=None):
        self.events.append((channel_name(conversation_id), event, data))
        return 0

    async def emit_global(self, event, data):
        self.events.append((None, event, data))
        return 0

    def named(self, event):
        return [(channel, data) for channel, name, data in self.events if name == event]


@pytest.fixture()
def mongo(monkeypatch, tmp_path):
    db = mongomock.MongoClient(tz_aware=True)["orbya_test"]
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(media, "UPLOAD_DIR", tmp_path / "uploads")
    database.ensure_indexes()
    return db


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def client(mongo, notifier):
    main.app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture()
def live_client(mongo):
    with TestClient(main.app) as test_client:
        yield test_client


@pytest.fixture()
def make_user(mongo):
    def _make(username: str, **fields) -> dict:
        user = User(username=username, email=f"{username}@example.com", password_hash=PASSWORD_HASH, **fields)
        user_id = database.create_document("user", user)
        return mongo["user"].find_one({"_id": ObjectId(user_id)})

    return _make


@pytest.fixture()
def befriend():
    def _befriend(a: dict, b: dict) -> None:
        accounts.follow(a, b["username"])
        accounts.follow(b, a["username"])

    return _befriend


def auth_headers(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user['_id'])})}"}


@pytest.fixture()
def headers():
    return auth_headers


@pytest.fixture()
def clock(monkeypatch):
    """Replace the wall clock with one that advances a second per reading."""
    ticks = iter(range(10 ** 6))
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _now():
        return start + timedelta(seconds=next(ticks))

    for module in (database, accounts, chat, posts):
        monkeypatch.setattr(module, "now", _now)
    return _now
