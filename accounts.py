"""
User directory and follow graph.

Follow relations are mirrored: A.following holds B exactly when B.followers
holds A. Both sides are written by follow/unfollow; a failed second write is
compensated, and reconcile_follow_graph() repairs anything left behind.
"""
import hashlib
import logging
import os
import secrets
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pydantic import ValidationError as SchemaError
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, get_collection, now
from errors import AuthenticationError, Conflict, NotFound, ValidationError
from media import discard_image, media_url
from schemas import User as UserSchema
from security import get_password_hash, verify_password

DELETED_USER_MARKER = "[deleted user]"
RESET_TOKEN_EXPIRE_MINUTES = int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", 60))

log = logging.getLogger("orbya.accounts")


# ------------ Lookups & formatting ------------

def get_user_by_username(username: str) -> dict:
    user = get_collection("user").find_one({"username": username})
    if not user:
        raise NotFound("User not found")
    return user


def users_by_ids(ids: Iterable[str]) -> Dict[str, dict]:
    oids = [ObjectId(i) for i in set(ids) if i and ObjectId.is_valid(i)]
    if not oids:
        return {}
    cursor = get_collection("user").find({"_id": {"$in": oids}}, {"username": 1, "profile_picture": 1})
    return {str(u["_id"]): u for u in cursor}


def public_profile(user: Optional[dict], base_url: str) -> Optional[dict]:
    if not user:
        return None
    return {
        "id": str(user["_id"]),
        "username": user.get("username"),
        "profile_picture": media_url(base_url, "profiles", user.get("profile_picture")),
    }


def account_view(user: dict, base_url: str) -> dict:
    view = public_profile(user, base_url)
    view.update({
        "email": user.get("email"),
        "description": user.get("description"),
        "gender": user.get("gender"),
        "age": user.get("age"),
        "studies": user.get("studies"),
        "theme": user.get("theme"),
        "created_at": user.get("created_at"),
        "followers_count": len(user.get("followers", [])),
        "following_count": len(user.get("following", [])),
    })
    return view


# ------------ Registration & credentials ------------

def register_user(username: str, email: str, password: str) -> dict:
    email = email.strip().lower()
    users = get_collection("user")
    existing = users.find_one({"$or": [{"email": email}, {"username": username}]})
    if existing:
        if existing.get("email") == email:
            raise Conflict("Email already registered")
        raise Conflict("Username already taken")

    try:
        user = UserSchema(username=username, email=email, password_hash=get_password_hash(password))
    except SchemaError as exc:
        raise ValidationError(exc.errors()[0].get("msg", "Invalid registration data"))

    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        # lost a race against a concurrent registration with the same handle
        raise Conflict("Username or email already registered")
    log.info("Registered user %s", username)
    return users.find_one({"_id": ObjectId(user_id)})


def authenticate_user(email: str, password: str) -> dict:
    user = get_collection("user").find_one({"email": email.strip().lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise AuthenticationError("Invalid credentials")
    return user


def check_password(user: dict, password: str) -> None:
    if not verify_password(password or "", user.get("password_hash", "")):
        raise AuthenticationError("Incorrect password")


# ------------ Password reset ------------

def _reset_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_password_reset(email: str) -> Optional[Tuple[dict, str]]:
    """Store a fresh reset token for the account behind `email`.

    Returns the user and the plain token, or None for an unknown address. Only the
    token's sha256 digest is stored, a new request replaces any earlier token.
    """
    users = get_collection("user")
    user = users.find_one({"email": email.strip().lower()})
    if not user:
        log.info("Password reset requested for unknown address")
        return None

    token = secrets.token_urlsafe(32)
    expires = now() + timedelta(minutes=RESET_TOKEN_EXPIRE_MINUTES)
    users.update_one({"_id": user["_id"]}, {"$set": {
        "reset_password_token": _reset_digest(token),
        "reset_password_expires": expires,
    }})
    log.info("Password reset token issued for %s", user["username"])
    return user, token


def find_reset_user(token: str) -> dict:
    user = get_collection("user").find_one({"reset_password_token": _reset_digest(token or "")})
    expires = user.get("reset_password_expires") if user else None
    if not user or expires is None or expires <= now():
        raise ValidationError("Invalid or expired token, request a new password reset")
    return user


def reset_password(token: str, new_password: str) -> dict:
    user = find_reset_user(token)
    # the token digest in the filter makes the token single use
    res = get_collection("user").update_one(
        {"_id": user["_id"], "reset_password_token": _reset_digest(token)},
        {"$set": {
            "password_hash": get_password_hash(new_password),
            "reset_password_token": None,
            "reset_password_expires": None,
            "updated_at": now(),
        }},
    )
    if res.modified_count == 0:
        raise ValidationError("Invalid or expired token, request a new password reset")
    log.info("Password reset completed for %s", user["username"])
    return user


# ------------ Follow graph ------------

def follow(user: dict, target_username: str) -> None:
    target = get_user_by_username(target_username)
    uid, tid = str(user["_id"]), str(target["_id"])
    if uid == tid:
        raise ValidationError("You cannot follow yourself")

    users = get_collection("user")
    res = users.update_one({"_id": user["_id"], "following": {"$ne": tid}}, {"$addToSet": {"following": tid}})
    if res.modified_count == 0:
        raise Conflict("You already follow this user")
    try:
        users.update_one({"_id": target["_id"]}, {"$addToSet": {"followers": uid}})
    except PyMongoError:
        log.error("Mirror write failed for %s -> %s, undoing follow", uid, tid, exc_info=True)
        users.update_one({"_id": user["_id"]}, {"$pull": {"following": tid}})
        raise


def unfollow(user: dict, target_username: str) -> None:
    target = get_user_by_username(target_username)
    uid, tid = str(user["_id"]), str(target["_id"])
    users = get_collection("user")
    users.update_one({"_id": user["_id"]}, {"$pull": {"following": tid}})
    users.update_one({"_id": target["_id"]}, {"$pull": {"followers": uid}})


def is_following(user: dict, target_username: str) -> bool:
    target = get_user_by_username(target_username)
    me = get_collection("user").find_one({"_id": user["_id"]}, {"following": 1}) or {}
    return str(target["_id"]) in me.get("following", [])


def _related(username: str, field: str, base_url: str) -> List[dict]:
    user = get_user_by_username(username)
    found = users_by_ids(user.get(field, []))
    return [public_profile(found[i], base_url) for i in user.get(field, []) if i in found]


def list_followers(username: str, base_url: str) -> List[dict]:
    return _related(username, "followers", base_url)


def list_following(username: str, base_url: str) -> List[dict]:
    return _related(username, "following", base_url)


def reconcile_follow_graph() -> int:
    """Repair the mirrored follow lists, treating `following` as the source of truth."""
    users = get_collection("user")
    docs = list(users.find({}, {"following": 1, "followers": 1}))
    known = {str(d["_id"]) for d in docs}
    following = {str(d["_id"]): set(d.get("following", [])) for d in docs}
    followers = {str(d["_id"]): set(d.get("followers", [])) for d in docs}

    repairs = 0
    for uid in known:
        oid = ObjectId(uid)
        dangling_following = following[uid] - known
        dangling_followers = followers[uid] - known
        if dangling_following or dangling_followers:
            users.update_one({"_id": oid}, {"$pull": {
                "following": {"$in": list(dangling_following)},
                "followers": {"$in": list(dangling_followers)},
            }})
            repairs += len(dangling_following) + len(dangling_followers)

        for target in following[uid] & known:
            if uid not in followers[target]:
                users.update_one({"_id": ObjectId(target)}, {"$addToSet": {"followers": uid}})
                followers[target].add(uid)
                repairs += 1

        for source in followers[uid] & known:
            if uid not in following[source]:
                users.update_one({"_id": oid}, {"$pull": {"followers": source}})
                repairs += 1

    if repairs:
        log.info("Follow graph reconciliation fixed %d entries", repairs)
    return repairs


# ------------ Account deletion ------------

def delete_account(user: dict) -> List[str]:
    """Remove a user and scrub every relation pointing at it. Returns the ids of the deleted posts."""
    uid = str(user["_id"])
    posts = get_collection("post")
    users = get_collection("user")
    conversations = get_collection("conversation")
    messages = get_collection("message")
    log.info("Deleting account %s (%s)", user.get("username"), uid)

    own_posts = list(posts.find({"author_id": uid}, {"image": 1}))
    posts.delete_many({"author_id": uid})
    for post in own_posts:
        discard_image("posts", post.get("image"))

    # pull likes and decrement the counter in the same write
    for post in list(posts.find({"likes.user": uid}, {"_id": 1})):
        posts.update_one(
            {"_id": post["_id"], "likes.user": uid},
            {"$pull": {"likes": {"user": uid}}, "$inc": {"likes_count": -1}},
        )

    users.update_many({"followers": uid}, {"$pull": {"followers": uid}})
    users.update_many({"following": uid}, {"$pull": {"following": uid}})

    stamp = now()
    for conv in list(conversations.find({"participants": uid})):
        cid = str(conv["_id"])
        messages.update_many(
            {"conversation_id": cid, "sender_id": uid},
            {"$set": {"is_deleted": True, "deleted_at": stamp, "content": DELETED_USER_MARKER}},
        )
        if len(conv.get("participants", [])) == 2:
            for msg in messages.find({"conversation_id": cid, "image": {"$ne": None}}, {"image": 1}):
                discard_image("chat", msg.get("image"))
            messages.delete_many({"conversation_id": cid})
            conversations.delete_one({"_id": conv["_id"]})
        else:
            conversations.update_one({"_id": conv["_id"]}, {"$pull": {"participants": uid}})

    discard_image("profiles", user.get("profile_picture"))
    users.delete_one({"_id": user["_id"]})
    log.info("Account %s deleted with %d posts", uid, len(own_posts))
    return [str(p["_id"]) for p in own_posts]

