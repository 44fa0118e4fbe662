"""
Post store with embedded likes.

likes_count is only ever changed by the same conditional write that changes
the likes array, so the two cannot drift apart and a user can like a post at
most once even under concurrent requests.
"""
import logging
from typing import List, Optional

from bson import ObjectId
from pymongo import DESCENDING

from accounts import public_profile, users_by_ids
from database import create_document, get_collection, now, parse_object_id
from errors import Conflict, NotFound, PermissionDenied, ValidationError
from media import discard_image, media_url
from schemas import MAX_POST_LENGTH, Post as PostSchema

RECENT_LIKES = 3

log = logging.getLogger("orbya.posts")


def get_post(post_id: str) -> dict:
    post = get_collection("post").find_one({"_id": parse_object_id(post_id, "Post")})
    if not post:
        raise NotFound("Post not found")
    return post


def format_post(post: dict, viewer_id: str, base_url: str, users: dict) -> dict:
    author = users.get(post["author_id"])
    likes = post.get("likes", [])
    return {
        "id": str(post["_id"]),
        "text": post.get("text"),
        "is_rich_text": post.get("is_rich_text", False),
        "image": media_url(base_url, "posts", post.get("image")),
        "author": author.get("username") if author else None,
        "author_profile_picture": (public_profile(author, base_url) or {}).get("profile_picture"),
        "created_at": post.get("created_at"),
        "likes_count": post.get("likes_count", 0),
        "has_liked": any(like["user"] == viewer_id for like in likes),
        "recent_likes": [users[like["user"]]["username"] for like in likes[-RECENT_LIKES:] if like["user"] in users],
    }


def _users_for(posts: List[dict]) -> dict:
    ids = set()
    for post in posts:
        ids.add(post["author_id"])
        ids.update(like["user"] for like in post.get("likes", [])[-RECENT_LIKES:])
    return users_by_ids(ids)


def create_post(author: dict, text: Optional[str], is_rich_text: bool = False, image: Optional[str] = None) -> dict:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Post text is required")
    if len(text) > MAX_POST_LENGTH:
        raise ValidationError(f"Post text cannot exceed {MAX_POST_LENGTH} characters")

    post = PostSchema(author_id=str(author["_id"]), text=text, is_rich_text=is_rich_text, image=image)
    post_id = create_document("post", post)
    return get_collection("post").find_one({"_id": ObjectId(post_id)})


def render_post(post: dict, viewer_id: str, base_url: str) -> dict:
    return format_post(post, viewer_id, base_url, _users_for([post]))


def list_feed(viewer_id: str, base_url: str, page: int = 1, limit: int = 50) -> List[dict]:
    cursor = (get_collection("post").find({})
              .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
              .skip((page - 1) * limit)
              .limit(limit))
    posts = list(cursor)
    users = _users_for(posts)
    return [format_post(p, viewer_id, base_url, users) for p in posts]


def _like_payload(post: dict, liked: bool) -> dict:
    likes = post.get("likes", [])
    recent = [like["user"] for like in likes[-RECENT_LIKES:]]
    found = users_by_ids(recent)
    return {
        "post_id": str(post["_id"]),
        "likes_count": post.get("likes_count", 0),
        "has_liked": liked,
        "recent_likes": [found[u]["username"] for u in reversed(recent) if u in found],
    }


def like_post(post_id: str, user: dict) -> dict:
    oid = parse_object_id(post_id, "Post")
    uid = str(user["_id"])
    posts = get_collection("post")
    res = posts.update_one(
        {"_id": oid, "likes.user": {"$ne": uid}},
        {"$push": {"likes": {"user": uid, "created_at": now()}}, "$inc": {"likes_count": 1}},
    )
    if res.matched_count == 0:
        get_post(post_id)
        raise Conflict("You already liked this post")

    payload = _like_payload(get_post(post_id), liked=True)
    payload["liked_by"] = user.get("username")
    return payload


def unlike_post(post_id: str, user: dict) -> dict:
    oid = parse_object_id(post_id, "Post")
    uid = str(user["_id"])
    posts = get_collection("post")
    res = posts.update_one(
        {"_id": oid, "likes.user": uid},
        {"$pull": {"likes": {"user": uid}}, "$inc": {"likes_count": -1}},
    )
    if res.matched_count == 0:
        get_post(post_id)
        raise Conflict("You have not liked this post")

    payload = _like_payload(get_post(post_id), liked=False)
    payload["unliked_by"] = user.get("username")
    return payload


def list_likes(post_id: str, base_url: str, page: int = 1, limit: int = 20) -> dict:
    post = get_post(post_id)
    likes = sorted(post.get("likes", []), key=lambda like: like["created_at"], reverse=True)
    start = (page - 1) * limit
    window = likes[start:start + limit]
    users = users_by_ids(like["user"] for like in window)
    return {
        "likes": [
            {"user": public_profile(users.get(like["user"]), base_url), "liked_at": like["created_at"]}
            for like in window if like["user"] in users
        ],
        "total_likes": post.get("likes_count", 0),
        "current_page": page,
        "has_more": start + limit < len(likes),
    }


def delete_post(post_id: str, requester: dict) -> str:
    post = get_post(post_id)
    if post["author_id"] != str(requester["_id"]):
        raise PermissionDenied("You can only delete your own posts")
    get_collection("post").delete_one({"_id": post["_id"]})
    discard_image("posts", post.get("image"))
    log.info("Post %s deleted by its author", post_id)
    return str(post["_id"])
