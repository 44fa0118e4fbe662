import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

import accounts
import chat
import database
import posts
from errors import AuthenticationError, NotFound, PermissionDenied
from mailer import LoggingMailer, get_mailer, password_reset_mail
from media import UPLOAD_DIR, discard_image, prepare_upload_dirs, request_base_url, store_image
from realtime import Notifier, SessionRegistry, channel_name, get_notifier
from schemas import USERNAME_PATTERN
from security import authenticate_token, create_access_token, get_current_user, token_from_header

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
RECONCILE_FOLLOWS_ON_STARTUP = os.getenv("RECONCILE_FOLLOWS_ON_STARTUP", "false").lower() == "true"
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
log = logging.getLogger("orbya")


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = SessionRegistry()
    app.state.registry = registry
    app.state.notifier = Notifier(registry)
    app.state.mailer = LoggingMailer()
    prepare_upload_dirs()
    if database.init_database() and RECONCILE_FOLLOWS_ON_STARTUP:
        accounts.reconcile_follow_graph()
    log.info("Orbya API started")
    yield
    registry.clear()
    log.info("Orbya API stopped")


app = FastAPI(title="Orbya API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR, check_dir=False), name="uploads")


# ------------ Error handling ------------

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid input", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError):
    log.error("Storage failure on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Server error"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Server error"})


# ------------ Models (request/response) ------------

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=20, pattern=USERNAME_PATTERN)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class PasswordCheck(BaseModel):
    password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6)


def token_response(user: dict, request: Request) -> dict:
    return {
        "access_token": create_access_token({"sub": str(user["_id"])}),
        "token_type": "bearer",
        "user": accounts.account_view(user, request_base_url(request)),
    }


# ------------ Auth & Account ------------

@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
def register(data: RegisterRequest, request: Request):
    user = accounts.register_user(data.username, data.email, data.password)
    return token_response(user, request)


@app.post("/api/auth/login")
def login(data: LoginRequest, request: Request):
    user = accounts.authenticate_user(data.email, data.password)
    return token_response(user, request)


@app.get("/api/auth/me")
def me(request: Request, current=Depends(get_current_user)):
    return {"user": accounts.account_view(current, request_base_url(request))}


@app.post("/api/auth/verify-password-for-deletion")
def verify_password_for_deletion(data: PasswordCheck, current=Depends(get_current_user)):
    accounts.check_password(current, data.password)
    return {"message": "Password verified"}


@app.post("/api/auth/forgot-password")
def forgot_password(data: ForgotPasswordRequest, mailer=Depends(get_mailer)):
    issued = accounts.issue_password_reset(data.email)
    if issued:
        user, token = issued
        link = f"{FRONTEND_URL.rstrip('/')}/reset-password?token={token}"
        subject, body = password_reset_mail(user["username"], link, accounts.RESET_TOKEN_EXPIRE_MINUTES)
        mailer.send(user["email"], subject, body)
    # same answer for unknown addresses
    return {"message": "If the email is registered, you will receive a reset link"}


@app.post("/api/auth/reset-password")
def reset_password(data: ResetPasswordRequest):
    accounts.reset_password(data.token, data.password)
    return {"message": "Password updated, you can now log in"}


@app.get("/api/auth/verify-reset-token/{token}")
def verify_reset_token(token: str):
    accounts.find_reset_user(token)
    return {"valid": True, "message": "Token is valid"}


@app.delete("/api/auth/delete-account")
async def delete_account(current=Depends(get_current_user), notifier: Notifier = Depends(get_notifier)):
    deleted_posts = await run_in_threadpool(accounts.delete_account, current)
    for post_id in deleted_posts:
        await notifier.emit_global("post_deleted", {"post_id": post_id})
    return {"message": "Account deleted", "redirect_to": "/login"}


# ------------ Follows ------------

@app.post("/api/follows/follow/{username}")
def follow_user(username: str, current=Depends(get_current_user)):
    accounts.follow(current, username)
    return {"message": "User followed", "is_following": True}


@app.delete("/api/follows/unfollow/{username}")
def unfollow_user(username: str, current=Depends(get_current_user)):
    accounts.unfollow(current, username)
    return {"message": "User unfollowed", "is_following": False}


@app.get("/api/follows/status/{username}")
def follow_status(username: str, current=Depends(get_current_user)):
    return {"is_following": accounts.is_following(current, username)}


@app.get("/api/follows/followers/{username}")
def followers(username: str, request: Request, current=Depends(get_current_user)):
    return accounts.list_followers(username, request_base_url(request))


@app.get("/api/follows/following/{username}")
def following(username: str, request: Request, current=Depends(get_current_user)):
    return accounts.list_following(username, request_base_url(request))


# ------------ Posts ------------

@app.get("/api/posts")
def feed(request: Request, page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=100),
         current=Depends(get_current_user)):
    return posts.list_feed(str(current["_id"]), request_base_url(request), page, limit)


@app.post("/api/posts", status_code=status.HTTP_201_CREATED)
async def create_post(
    request: Request,
    text: Optional[str] = Form(None),
    is_rich_text: bool = Form(False),
    image: Optional[UploadFile] = File(None),
    current=Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    image_name = await store_image(image, "posts", "post") if image and image.filename else None
    try:
        post = await run_in_threadpool(posts.create_post, current, text, is_rich_text, image_name)
    except Exception:
        discard_image("posts", image_name)
        raise
    rendered = await run_in_threadpool(posts.render_post, post, str(current["_id"]), request_base_url(request))
    await notifier.emit_global("new_post", rendered)
    return {"post": rendered}


@app.post("/api/posts/{post_id}/like")
async def like_post(post_id: str, current=Depends(get_current_user), notifier: Notifier = Depends(get_notifier)):
    like_data = await run_in_threadpool(posts.like_post, post_id, current)
    await notifier.emit_global("post_liked", like_data)
    return {"message": "Like added", **like_data}


@app.delete("/api/posts/{post_id}/like")
async def unlike_post(post_id: str, current=Depends(get_current_user), notifier: Notifier = Depends(get_notifier)):
    like_data = await run_in_threadpool(posts.unlike_post, post_id, current)
    await notifier.emit_global("post_unliked", like_data)
    return {"message": "Like removed", **like_data}


@app.get("/api/posts/{post_id}/likes")
def post_likes(post_id: str, request: Request, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
               current=Depends(get_current_user)):
    return posts.list_likes(post_id, request_base_url(request), page, limit)


@app.delete("/api/posts/{post_id}")
async def delete_post(post_id: str, current=Depends(get_current_user), notifier: Notifier = Depends(get_notifier)):
    deleted_id = await run_in_threadpool(posts.delete_post, post_id, current)
    await notifier.emit_global("post_deleted", {"post_id": deleted_id})
    return {"message": "Post deleted"}


# ------------ Chats & Messages ------------

@app.get("/api/chat/can-chat/{username}")
def can_chat(username: str, current=Depends(get_current_user)):
    target = accounts.get_user_by_username(username)
    if target["_id"] == current["_id"]:
        return {"can_chat": False, "reason": "You cannot chat with yourself"}
    allowed = chat.can_converse(str(current["_id"]), str(target["_id"]))
    return {"can_chat": allowed, "reason": None if allowed else "You must follow each other to chat"}


@app.post("/api/chat/conversation/{username}")
def open_conversation(username: str, request: Request, current=Depends(get_current_user)):
    target = accounts.get_user_by_username(username)
    conversation = chat.get_or_create_conversation(str(current["_id"]), str(target["_id"]))
    return chat.format_conversation(conversation, request_base_url(request))


@app.get("/api/chat/conversation/{conversation_id}/messages")
def conversation_messages(conversation_id: str, request: Request, page: int = Query(1, ge=1),
                          limit: int = Query(chat.DEFAULT_PAGE_SIZE, ge=1, le=100),
                          current=Depends(get_current_user)):
    return chat.list_messages(conversation_id, str(current["_id"]), request_base_url(request), page, limit)


@app.post("/api/chat/message", status_code=status.HTTP_201_CREATED)
async def send_message(
    request: Request,
    conversation_id: str = Form(...),
    content: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    current=Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    image_name = await store_image(image, "chat", "chat") if image and image.filename else None
    try:
        message = await run_in_threadpool(chat.send_message, conversation_id, current, content, image_name)
    except Exception:
        discard_image("chat", image_name)
        raise

    base_url = request_base_url(request)
    broadcast = await run_in_threadpool(chat.format_message, message, current, base_url)
    await notifier.emit_to_conversation(conversation_id, "new_message", broadcast)
    return {**broadcast, "is_own": True}


@app.delete("/api/chat/message/{message_id}")
async def delete_message(message_id: str, current=Depends(get_current_user), notifier: Notifier = Depends(get_notifier)):
    message = await run_in_threadpool(chat.delete_message, message_id, str(current["_id"]))
    await notifier.emit_to_conversation(message["conversation_id"], "message_deleted", {"message_id": message_id})
    return {"message": "Message deleted"}


@app.get("/api/chat/conversations")
def my_conversations(request: Request, current=Depends(get_current_user)):
    return chat.list_conversations(str(current["_id"]), request_base_url(request))


# ------------ Presence & WebSockets ------------

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    registry: SessionRegistry = websocket.app.state.registry
    notifier: Notifier = websocket.app.state.notifier
    try:
        user = await run_in_threadpool(authenticate_token,
                                       token or token_from_header(websocket.headers.get("authorization")))
    except AuthenticationError as exc:
        log.info("Rejected socket handshake: %s", exc.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    session = registry.register(websocket, str(user["_id"]), user["username"])
    log.info("User %s connected", session.username)
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (KeyError, ValueError):
                # binary frames carry no text, bad JSON fails to decode
                await websocket.send_json({"type": "error", "message": "Malformed frame"})
                continue
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "message": "Malformed frame"})
                continue

            event = data.get("type")
            conversation_id = str(data.get("conversation_id") or "")
            if event == "join_conversation":
                try:
                    await run_in_threadpool(chat.require_participant, conversation_id, session.user_id)
                except (NotFound, PermissionDenied) as exc:
                    await websocket.send_json({"type": "error", "message": exc.detail})
                    continue
                if registry.join(session, conversation_id):
                    log.debug("%s joined conversation %s", session.username, conversation_id)
            elif event == "leave_conversation":
                if registry.leave(session, conversation_id):
                    log.debug("%s left conversation %s", session.username, conversation_id)
            elif event == "typing":
                if channel_name(conversation_id) not in session.channels:
                    await websocket.send_json({"type": "error", "message": "Join the conversation first"})
                    continue
                await notifier.emit_to_conversation(conversation_id, "user_typing", {
                    "conversation_id": conversation_id,
                    "user_id": session.user_id,
                    "username": session.username,
                    "is_typing": bool(data.get("is_typing", True)),
                }, exclude=session)
            else:
                await websocket.send_json({"type": "error", "message": "Unknown event"})
    except WebSocketDisconnect as exc:
        log.info("User %s disconnected (code %s)", session.username, exc.code)
    finally:
        registry.unregister(session)


# --------- Health ---------

@app.get("/")
def root():
    return {"service": "Orbya API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "running",
        "database": "unavailable",
        "database_name": database.DATABASE_NAME,
        "collections": [],
    }
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "connected"
    except PyMongoError as exc:
        response["database"] = f"error: {str(exc)[:60]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
