"""
Real-time fan-out over WebSockets.

The SessionRegistry is owned by the application (created in the lifespan and
kept on app.state) and is only touched from the event loop, so it needs no
locking. Delivery is at-most-once: sessions connected at emit time receive the
event, nothing is queued for anyone else.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from fastapi import Request
from fastapi.encoders import jsonable_encoder

log = logging.getLogger("orbya.realtime")


def channel_name(conversation_id: str) -> str:
    return f"conversation_{conversation_id}"


class Session:
    """One authenticated socket."""

    def __init__(self, websocket, user_id: str, username: str):
        self.websocket = websocket
        self.user_id = user_id
        self.username = username
        self.channels: Set[str] = set()

    def __repr__(self):
        return f"<Session {self.username} channels={sorted(self.channels)}>"


class SessionRegistry:
    def __init__(self):
        self.presence: Dict[str, Set[Session]] = {}
        self.channels: Dict[str, Set[Session]] = {}

    def register(self, websocket, user_id: str, username: str) -> Session:
        session = Session(websocket, user_id, username)
        self.presence.setdefault(user_id, set()).add(session)
        return session

    def unregister(self, session: Session) -> None:
        for channel in list(session.channels):
            self._drop_member(channel, session)
        session.channels.clear()
        sessions = self.presence.get(session.user_id)
        if sessions is not None:
            sessions.discard(session)
            if not sessions:
                del self.presence[session.user_id]

    def join(self, session: Session, conversation_id: str) -> bool:
        """Subscribe to a conversation channel. Returns False if already joined."""
        channel = channel_name(conversation_id)
        if channel in session.channels:
            return False
        session.channels.add(channel)
        self.channels.setdefault(channel, set()).add(session)
        return True

    def leave(self, session: Session, conversation_id: str) -> bool:
        channel = channel_name(conversation_id)
        if channel not in session.channels:
            return False
        session.channels.discard(channel)
        self._drop_member(channel, session)
        return True

    def _drop_member(self, channel: str, session: Session) -> None:
        members = self.channels.get(channel)
        if members is None:
            return
        members.discard(session)
        if not members:
            del self.channels[channel]

    def members(self, channel: str) -> List[Session]:
        return list(self.channels.get(channel, ()))

    def sessions(self) -> List[Session]:
        return [s for sessions in self.presence.values() for s in sessions]

    def is_online(self, user_id: str) -> bool:
        return bool(self.presence.get(user_id))

    def online_users(self) -> List[str]:
        return list(self.presence)

    def clear(self) -> None:
        self.presence.clear()
        self.channels.clear()


class Notifier:
    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    async def emit_to_conversation(self, conversation_id: str, event: str, data: dict,
                                   exclude: Optional[Session] = None) -> int:
        targets = [s for s in self.registry.members(channel_name(conversation_id)) if s is not exclude]
        return await self._deliver(targets, event, data)

    async def emit_global(self, event: str, data: dict) -> int:
        return await self._deliver(self.registry.sessions(), event, data)

    async def _deliver(self, sessions: Iterable[Session], event: str, data: dict) -> int:
        frame = {"type": event, "data": jsonable_encoder(data)}
        delivered = 0
        for session in sessions:
            try:
                await session.websocket.send_json(frame)
            except Exception as exc:
                # a dead socket is dropped, the event is not retried
                log.debug("Dropping session of %s after failed send: %s", session.username, exc)
                self.registry.unregister(session)
                continue
            delivered += 1
        return delivered


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier
