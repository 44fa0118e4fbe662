from __future__ import annotations

import pytest
from pymongo.errors import PyMongoError

import accounts
import chat
from errors import PermissionDenied


@pytest.fixture()
def pair(make_user, befriend):
    alice, bob = make_user("alice"), make_user("bob")
    befriend(alice, bob)
    return alice, bob


def open_conversation(client, headers, user, other_username):
    res = client.post(f"/api/chat/conversation/{other_username}", headers=headers(user))
    assert res.status_code == 200, res.text
    return res.json()["conversation_id"]


def send(client, headers, user, conversation_id, content=None, files=None):
    data = {"conversation_id": conversation_id}
    if content is not None:
        data["content"] = content
    return client.post("/api/chat/message", data=data, files=files, headers=headers(user))


# ------------ Follow-gate ------------

def test_mutual_follow_gate_is_symmetric(make_user):
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")
    a, b, c = str(alice["_id"]), str(bob["_id"]), str(carol["_id"])
    accounts.follow(alice, "bob")
    assert chat.can_converse(a, b) is False
    assert chat.can_converse(b, a) is False

    accounts.follow(bob, "alice")
    assert chat.can_converse(a, b) is True
    assert chat.can_converse(b, a) is True
    assert chat.can_converse(a, c) is False
    assert chat.can_converse(c, a) is False
    assert chat.can_converse(a, a) is False


def test_can_chat_endpoint(client, headers, pair, make_user):
    alice, _ = pair
    make_user("carol")
    assert client.get("/api/chat/can-chat/bob", headers=headers(alice)).json() == {"can_chat": True, "reason": None}

    carol = client.get("/api/chat/can-chat/carol", headers=headers(alice)).json()
    assert carol["can_chat"] is False
    assert carol["reason"]

    itself = client.get("/api/chat/can-chat/alice", headers=headers(alice)).json()
    assert itself["can_chat"] is False
    assert client.get("/api/chat/can-chat/ghost", headers=headers(alice)).status_code == 404


# ------------ Conversation resolver ------------

def test_conversation_requires_mutual_follow(client, headers, make_user, mongo):
    carol, dave = make_user("carol"), make_user("dave")
    accounts.follow(carol, "dave")
    res = client.post("/api/chat/conversation/dave", headers=headers(carol))
    assert res.status_code == 403
    assert mongo["conversation"].count_documents({}) == 0
    assert client.post("/api/chat/conversation/nobody", headers=headers(carol)).status_code == 404


def test_one_conversation_per_pair(client, headers, pair, mongo):
    alice, bob = pair
    first = open_conversation(client, headers, alice, "bob")
    second = open_conversation(client, headers, bob, "alice")
    assert first == second
    assert mongo["conversation"].count_documents({}) == 1

    body = client.post("/api/chat/conversation/bob", headers=headers(alice)).json()
    assert sorted(p["username"] for p in body["participants"]) == ["alice", "bob"]


def test_resolver_raises_for_strangers(make_user):
    alice, bob = make_user("alice"), make_user("bob")
    with pytest.raises(PermissionDenied):
        chat.get_or_create_conversation(str(alice["_id"]), str(bob["_id"]))


# ------------ Message pipeline ------------

def test_message_content_validation(client, headers, pair):
    alice, _ = pair
    cid = open_conversation(client, headers, alice, "bob")

    assert send(client, headers, alice, cid).status_code == 400
    assert send(client, headers, alice, cid, "   ").status_code == 400
    too_long = send(client, headers, alice, cid, "x" * 1001)
    assert too_long.status_code == 400
    assert send(client, headers, alice, cid, "x" * 1000).status_code == 201


def test_send_emits_and_updates_inbox(client, headers, pair, notifier):
    alice, bob = pair
    cid = open_conversation(client, headers, alice, "bob")

    res = send(client, headers, alice, cid, "hi")
    assert res.status_code == 201
    message = res.json()
    assert message["content"] == "hi"
    assert message["message_type"] == "text"
    assert message["is_own"] is True
    assert message["sender"]["username"] == "alice"

    events = notifier.named("new_message")
    assert len(events) == 1
    channel, payload = events[0]
    assert channel == f"conversation_{cid}"
    assert payload["id"] == message["id"]
    assert payload["content"] == "hi"

    inbox = client.get("/api/chat/conversations", headers=headers(bob)).json()
    assert len(inbox) == 1
    assert inbox[0]["id"] == cid
    assert inbox[0]["participant"]["username"] == "alice"
    assert inbox[0]["last_message"]["content"] == "hi"


def test_send_rejects_outsiders_and_revoked_follows(client, headers, pair, make_user):
    alice, bob = pair
    mallory = make_user("mallory")
    cid = open_conversation(client, headers, alice, "bob")

    assert send(client, headers, mallory, cid, "let me in").status_code == 403
    assert send(client, headers, alice, "64b7f0f0f0f0f0f0f0f0f0f0", "hello").status_code == 404
    assert send(client, headers, alice, "not-an-id", "hello").status_code == 404

    assert send(client, headers, alice, cid, "before").status_code == 201
    accounts.unfollow(bob, "alice")
    assert send(client, headers, alice, cid, "after").status_code == 403
    assert send(client, headers, bob, cid, "after").status_code == 403

    # history survives the revoked follow
    history = client.get(f"/api/chat/conversation/{cid}/messages", headers=headers(alice)).json()
    assert [m["content"] for m in history] == ["before"]


def test_missing_conversation_id_is_a_validation_error(client, headers, pair):
    alice, _ = pair
    res = client.post("/api/chat/message", data={"content": "hi"}, headers=headers(alice))
    assert res.status_code == 400


def test_image_message(client, headers, pair):
    alice, _ = pair
    cid = open_conversation(client, headers, alice, "bob")
    res = send(client, headers, alice, cid, files={"image": ("pic.png", b"\x89PNG fake bytes", "image/png")})
    assert res.status_code == 201
    body = res.json()
    assert body["message_type"] == "image"
    assert body["image"].startswith("http://testserver/uploads/chat/chat-")
    assert body["image"].endswith(".png")

    bad = send(client, headers, alice, cid, files={"image": ("notes.txt", b"plain", "text/plain")})
    assert bad.status_code == 400


def test_rejected_send_discards_uploaded_image(client, headers, pair, make_user, tmp_path):
    alice, _ = pair
    mallory = make_user("mallory")
    cid = open_conversation(client, headers, alice, "bob")
    res = send(client, headers, mallory, cid, files={"image": ("pic.png", b"\x89PNG", "image/png")})
    assert res.status_code == 403
    assert list((tmp_path / "uploads" / "chat").iterdir()) == []


# ------------ Deletion ------------

def test_soft_delete(client, headers, pair, notifier, mongo):
    alice, bob = pair
    cid = open_conversation(client, headers, alice, "bob")
    kept = send(client, headers, alice, cid, "keep").json()
    gone = send(client, headers, alice, cid, "oops").json()

    assert client.delete(f"/api/chat/message/{gone['id']}", headers=headers(bob)).status_code == 403
    assert client.delete("/api/chat/message/64b7f0f0f0f0f0f0f0f0f0f0", headers=headers(alice)).status_code == 404

    res = client.delete(f"/api/chat/message/{gone['id']}", headers=headers(alice))
    assert res.status_code == 200
    assert notifier.named("message_deleted") == [(f"conversation_{cid}", {"message_id": gone["id"]})]

    history = client.get(f"/api/chat/conversation/{cid}/messages", headers=headers(bob)).json()
    assert [m["id"] for m in history] == [kept["id"]]

    record = mongo["message"].find_one({"content": "oops"})
    assert record["is_deleted"] is True
    assert record["deleted_at"] is not None

    preview = client.get("/api/chat/conversations", headers=headers(bob)).json()[0]["last_message"]
    assert preview["is_deleted"] is True
    assert preview["content"] is None


# ------------ History & inbox ------------

def test_history_pages_are_newest_window_in_chronological_order(client, headers, pair, clock):
    alice, bob = pair
    cid = open_conversation(client, headers, alice, "bob")
    for i in range(60):
        sender = alice if i % 2 == 0 else bob
        assert send(client, headers, sender, cid, f"m{i}").status_code == 201

    page1 = client.get(f"/api/chat/conversation/{cid}/messages", headers=headers(bob)).json()
    assert [m["content"] for m in page1] == [f"m{i}" for i in range(10, 60)]
    assert page1[-1]["is_own"] is True
    assert page1[-2]["is_own"] is False

    page2 = client.get(f"/api/chat/conversation/{cid}/messages?page=2", headers=headers(bob)).json()
    assert [m["content"] for m in page2] == [f"m{i}" for i in range(10)]

    small = client.get(f"/api/chat/conversation/{cid}/messages?limit=5", headers=headers(bob)).json()
    assert [m["content"] for m in small] == [f"m{i}" for i in range(55, 60)]

    assert client.get(f"/api/chat/conversation/{cid}/messages?page=0", headers=headers(bob)).status_code == 400


def test_history_requires_participation(client, headers, pair, make_user):
    alice, _ = pair
    mallory = make_user("mallory")
    cid = open_conversation(client, headers, alice, "bob")
    assert client.get(f"/api/chat/conversation/{cid}/messages", headers=headers(mallory)).status_code == 403
    assert client.get("/api/chat/conversation/64b7f0f0f0f0f0f0f0f0f0f0/messages",
                      headers=headers(alice)).status_code == 404


def test_inbox_orders_by_latest_activity(client, headers, make_user, befriend, clock):
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")
    befriend(alice, bob)
    befriend(alice, carol)
    with_bob = open_conversation(client, headers, alice, "bob")
    with_carol = open_conversation(client, headers, alice, "carol")

    send(client, headers, alice, with_bob, "to bob")
    send(client, headers, carol, with_carol, "from carol")
    inbox = client.get("/api/chat/conversations", headers=headers(alice)).json()
    assert [c["participant"]["username"] for c in inbox] == ["carol", "bob"]

    send(client, headers, bob, with_bob, "bob again")
    inbox = client.get("/api/chat/conversations", headers=headers(alice)).json()
    assert [c["participant"]["username"] for c in inbox] == ["bob", "carol"]
    assert inbox[0]["last_message"]["content"] == "bob again"


def test_inbox_shows_empty_conversations_without_preview(client, headers, pair):
    alice, bob = pair
    open_conversation(client, headers, alice, "bob")
    inbox = client.get("/api/chat/conversations", headers=headers(bob)).json()
    assert inbox[0]["last_message"] is None
    assert inbox[0]["participant"]["username"] == "alice"


def test_length_limit_counts_the_raw_content(client, headers, pair, mongo):
    alice, _ = pair
    cid = open_conversation(client, headers, alice, "bob")
    assert send(client, headers, alice, cid, "x" * 1000 + " ").status_code == 400
    assert send(client, headers, alice, cid, " " + "x" * 1000).status_code == 400
    assert mongo["message"].count_documents({}) == 0


def test_content_is_stored_as_sent(client, headers, pair, mongo):
    alice, _ = pair
    cid = open_conversation(client, headers, alice, "bob")
    res = send(client, headers, alice, cid, "  indented\n")
    assert res.status_code == 201
    assert res.json()["content"] == "  indented\n"
    assert mongo["message"].find_one({})["content"] == "  indented\n"


def test_storage_failure_discards_uploaded_image(client, headers, pair, tmp_path, monkeypatch):
    alice, _ = pair
    cid = open_conversation(client, headers, alice, "bob")

    def broken_store(*args):
        raise PyMongoError("connection reset")

    monkeypatch.setattr(chat, "send_message", broken_store)
    res = send(client, headers, alice, cid, files={"image": ("pic.png", b"\x89PNG", "image/png")})
    assert res.status_code == 500
    assert res.json() == {"detail": "Server error"}
    assert list((tmp_path / "uploads" / "chat").iterdir()) == []
