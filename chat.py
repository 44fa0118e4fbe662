"""
Direct messaging: follow-gate, conversation resolver, message pipeline,
inbox and history.

Two users may talk only while they follow each other. The gate is evaluated
again on every send, so revoking a follow blocks new messages but leaves the
history in place.
"""
import logging
from typing import List, Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument

from accounts import public_profile, users_by_ids
from database import create_document, get_collection, now, parse_object_id
from errors import NotFound, PermissionDenied, ValidationError
from media import media_url
from schemas import MAX_MESSAGE_LENGTH, Conversation as ConversationSchema, Message as MessageSchema

DEFAULT_PAGE_SIZE = 50

log = logging.getLogger("orbya.chat")


def participant_key(user_a_id: str, user_b_id: str) -> str:
    return ":".join(sorted((user_a_id, user_b_id)))


# ------------ Follow-gate ------------

def can_converse(user_a_id: str, user_b_id: str) -> bool:
    if user_a_id == user_b_id:
        return False
    if not (ObjectId.is_valid(user_a_id) and ObjectId.is_valid(user_b_id)):
        return False
    users = get_collection("user")
    a = users.find_one({"_id": ObjectId(user_a_id)}, {"following": 1})
    b = users.find_one({"_id": ObjectId(user_b_id)}, {"following": 1})
    if not a or not b:
        return False
    return user_b_id in a.get("following", []) and user_a_id in b.get("following", [])


# ------------ Conversations ------------

def get_or_create_conversation(user_a_id: str, user_b_id: str) -> dict:
    if not can_converse(user_a_id, user_b_id):
        raise PermissionDenied("You must follow each other to chat")

    key = participant_key(user_a_id, user_b_id)
    stamp = now()
    fresh = ConversationSchema(participants=[user_a_id, user_b_id], participant_key=key, last_activity=stamp)
    fresh = fresh.model_dump(exclude={"participant_key"})
    fresh.update(created_at=stamp, updated_at=stamp)
    # single upsert on the unique pair key, concurrent first contact lands on one document
    return get_collection("conversation").find_one_and_update(
        {"participant_key": key},
        {"$setOnInsert": fresh},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def get_conversation(conversation_id: str) -> dict:
    conversation = get_collection("conversation").find_one({"_id": parse_object_id(conversation_id, "Conversation")})
    if not conversation:
        raise NotFound("Conversation not found")
    return conversation


def require_participant(conversation_id: str, user_id: str) -> dict:
    conversation = get_conversation(conversation_id)
    if user_id not in conversation.get("participants", []):
        raise PermissionDenied("You do not have access to this conversation")
    return conversation


def other_participant(conversation: dict, user_id: str) -> Optional[str]:
    return next((p for p in conversation.get("participants", []) if p != user_id), None)


def format_conversation(conversation: dict, base_url: str) -> dict:
    users = users_by_ids(conversation.get("participants", []))
    return {
        "conversation_id": str(conversation["_id"]),
        "participants": [public_profile(users[p], base_url) for p in conversation["participants"] if p in users],
    }


# ------------ Messages ------------

def format_message(message: dict, sender: Optional[dict], base_url: str, viewer_id: Optional[str] = None) -> dict:
    formatted = {
        "id": str(message["_id"]),
        "conversation_id": message["conversation_id"],
        "content": message.get("content"),
        "image": media_url(base_url, "chat", message.get("image")),
        "message_type": message.get("message_type", "text"),
        "sender": public_profile(sender, base_url) or {"id": message["sender_id"], "username": None,
                                                       "profile_picture": None},
        "created_at": message.get("created_at"),
    }
    if viewer_id is not None:
        formatted["is_own"] = message["sender_id"] == viewer_id
    return formatted


def send_message(conversation_id: str, sender: dict, content: Optional[str] = None,
                 image: Optional[str] = None) -> dict:
    content = content or ""
    if not content.strip() and not image:
        raise ValidationError("Provide message content or an image")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")

    sender_id = str(sender["_id"])
    conversation = require_participant(conversation_id, sender_id)
    other = other_participant(conversation, sender_id)
    if other is None or not can_converse(sender_id, other):
        raise PermissionDenied("You can no longer chat, check that you still follow each other")

    message = MessageSchema(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        image=image,
        message_type="image" if image else "text",
    )
    message_id = create_document("message", message)

    # not atomic with the insert: a crash here leaves inbox ordering stale until the next send
    stamp = now()
    get_collection("conversation").update_one(
        {"_id": conversation["_id"]},
        {"$set": {"last_message_id": message_id, "last_activity": stamp, "updated_at": stamp}},
    )
    return get_collection("message").find_one({"_id": ObjectId(message_id)})


def delete_message(message_id: str, requester_id: str) -> dict:
    messages = get_collection("message")
    message = messages.find_one({"_id": parse_object_id(message_id, "Message")})
    if not message:
        raise NotFound("Message not found")
    if message["sender_id"] != requester_id:
        raise PermissionDenied("You can only delete your own messages")

    if not message.get("is_deleted"):
        stamp = now()
        messages.update_one({"_id": message["_id"]}, {"$set": {"is_deleted": True, "deleted_at": stamp}})
        message.update(is_deleted=True, deleted_at=stamp)
    return message


def list_messages(conversation_id: str, requester_id: str, base_url: str,
                  page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> List[dict]:
    require_participant(conversation_id, requester_id)
    cursor = (get_collection("message")
              .find({"conversation_id": conversation_id, "is_deleted": False})
              .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
              .skip((page - 1) * page_size)
              .limit(page_size))
    newest_first = list(cursor)
    senders = users_by_ids(m["sender_id"] for m in newest_first)
    return [format_message(m, senders.get(m["sender_id"]), base_url, requester_id) for m in reversed(newest_first)]


# ------------ Inbox ------------

def _preview(message: Optional[dict]) -> Optional[dict]:
    if not message:
        return None
    deleted = message.get("is_deleted", False)
    return {
        "content": None if deleted else message.get("content"),
        "message_type": message.get("message_type", "text"),
        "created_at": message.get("created_at"),
        "is_deleted": deleted,
    }


def list_conversations(user_id: str, base_url: str) -> List[dict]:
    conversations = list(get_collection("conversation")
                         .find({"participants": user_id})
                         .sort([("last_activity", DESCENDING), ("_id", DESCENDING)]))

    others = {c["_id"]: other_participant(c, user_id) for c in conversations}
    users = users_by_ids(o for o in others.values() if o)
    last_ids = [ObjectId(c["last_message_id"]) for c in conversations if c.get("last_message_id")]
    last_messages = {str(m["_id"]): m for m in get_collection("message").find({"_id": {"$in": last_ids}})} \
        if last_ids else {}

    summaries = []
    for conv in conversations:
        other = users.get(others[conv["_id"]])
        if other is None:
            log.debug("Skipping conversation %s without a live counterpart", conv["_id"])
            continue
        summaries.append({
            "id": str(conv["_id"]),
            "participant": public_profile(other, base_url),
            "last_message": _preview(last_messages.get(conv.get("last_message_id"))),
            "last_activity": conv.get("last_activity"),
        })
    return summaries
