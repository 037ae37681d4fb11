"""
chatroom.py
-----------
Connection registry, message history and broadcast engine for the relay.

Responsibilities:
- Keep the set of live connections and their display names
- Keep the last N chat messages for replay to newcomers
- Fan every event out to all live connections, in one total order
- Evict connections whose send fails, as part of the broadcast that hit them

One asyncio.Lock guards the registry and the history together. Every
mutation and every fan-out holds it; helpers prefixed with an underscore
expect the caller to hold it already.
"""

import asyncio
import json
import logging
import uuid
from collections import deque

from starlette.websockets import WebSocketDisconnect

log = logging.getLogger(__name__)

HISTORY_MARKER_TEXT = "Latest messages"

# going-away close code used for evictions and shutdown
CLOSE_GOING_AWAY = 1001

# ---------------------------------------------------------------------------
# Event builders (plain dicts, serialized once per broadcast)
# ---------------------------------------------------------------------------

def build_chat(username: str, text: str) -> dict:
    return {"type": "message", "username": username, "message": text}

def build_user_join(username: str) -> dict:
    return {"type": "user_join", "username": username}

def build_user_leave(username: str) -> dict:
    return {"type": "user_leave", "username": username}

def build_user_list(usernames) -> dict:
    return {"type": "user_list", "users": list(usernames)}

def build_history_marker() -> dict:
    return {"type": "message_history", "message": HISTORY_MARKER_TEXT}

def build_file_upload(username: str, file_name: str) -> dict:
    return {"type": "file_upload", "username": username, "fileName": file_name}

def encode_event(event: dict) -> str:
    return json.dumps(event, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

class Connection:
    """
    One participant's duplex channel plus the display name it joined with.
    The name is fixed for the lifetime of the connection.
    """

    def __init__(self, websocket, username: str):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self._username = username

    @property
    def username(self) -> str:
        return self._username

    async def send(self, text: str):
        await self.websocket.send_text(text)

    async def close(self, code: int = 1000, reason: str = ""):
        """Close the underlying channel; a channel that is already gone is fine."""
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            log.debug("[room] close on %s ignored: %s", self.id, e)

    def __repr__(self):
        return f"Connection(id={self.id!r}, username={self._username!r})"


# ---------------------------------------------------------------------------
# History buffer
# ---------------------------------------------------------------------------

class HistoryBuffer:
    """Bounded FIFO of recent chat events; oldest evicted first."""

    def __init__(self, capacity: int = 10):
        if capacity < 0:
            raise ValueError("history capacity must be >= 0")
        self.capacity = capacity
        self._events = deque(maxlen=capacity)

    def append(self, event: dict):
        self._events.append(event)

    def snapshot(self) -> list:
        return list(self._events)

    def __len__(self):
        return len(self._events)


# ---------------------------------------------------------------------------
# Chat room
# ---------------------------------------------------------------------------

class ChatRoom:
    """
    The process-wide room. Owned by the application and handed to every
    session and HTTP handler that needs it; nothing here is global.
    """

    def __init__(self, history_size: int = 10):
        self.history = HistoryBuffer(history_size)
        self.clients: dict[str, Connection] = {}   # connection id -> Connection
        self.closing = False
        self._lock = asyncio.Lock()
        self._sessions = set()

    # --- registry ---------------------------------------------------------

    async def register(self, conn: Connection):
        async with self._lock:
            self._register(conn)

    async def deregister(self, conn: Connection):
        async with self._lock:
            self._deregister(conn)

    async def snapshot_names(self) -> list[str]:
        async with self._lock:
            return self._names()

    def __contains__(self, conn: Connection):
        return conn.id in self.clients

    def __len__(self):
        return len(self.clients)

    def _register(self, conn: Connection):
        if conn.id in self.clients:
            return
        self.clients[conn.id] = conn
        log.info("[room] %s joined (%d online)", conn.username, len(self.clients))

    def _deregister(self, conn: Connection):
        if self.clients.pop(conn.id, None) is not None:
            log.info("[room] %s left (%d online)", conn.username, len(self.clients))

    def _names(self) -> list[str]:
        return [c.username for c in self.clients.values()]

    # --- broadcast --------------------------------------------------------

    async def broadcast(self, event: dict):
        """Deliver one event to every registered connection."""
        async with self._lock:
            await self._fanout(event)

    async def broadcast_user_list(self):
        """Broadcast the roster as it stands at the start of the fan-out."""
        async with self._lock:
            await self._fanout(build_user_list(self._names()))

    async def _fanout(self, event: dict):
        payload = encode_event(event)
        dead = []
        for conn in list(self.clients.values()):
            try:
                await conn.send(payload)
            except Exception as e:
                log.warning("[room] broadcast to %s failed, evicting: %s", conn.username, e)
                dead.append(conn)
        for conn in dead:
            await conn.close(CLOSE_GOING_AWAY, "send failed")
            self._deregister(conn)

    # --- session-level operations ----------------------------------------

    async def join(self, conn: Connection):
        """
        Register a connection and replay the history to it alone. Both happen
        under one lock acquisition, so every chat message reaches the newcomer
        exactly once: either in the replay or live.
        """
        async with self._lock:
            self._register(conn)
            backlog = [build_history_marker()] + self.history.snapshot()
            for event in backlog:
                try:
                    await conn.send(encode_event(event))
                except Exception as e:
                    log.warning("[room] history replay to %s failed: %s", conn.username, e)
                    break

    async def post_message(self, conn: Connection, text: str) -> dict:
        """Record a chat message in history and broadcast it."""
        event = build_chat(conn.username, text)
        async with self._lock:
            self.history.append(event)
            await self._fanout(event)
        return event

    # --- session tracking / shutdown -------------------------------------

    def track(self, session):
        self._sessions.add(session)

    def untrack(self, session):
        self._sessions.discard(session)

    @property
    def sessions(self):
        return frozenset(self._sessions)

    async def shutdown(self):
        """
        Close every live session's channel. Each session then runs its own
        Closed transition from its read loop.
        """
        if self.closing:
            return
        self.closing = True
        sessions = list(self._sessions)
        log.info("[room] shutting down, closing %d session(s)", len(sessions))
        for session in sessions:
            try:
                await session.close_transport(CLOSE_GOING_AWAY, "server shutting down")
            except Exception as e:
                log.warning("[room] closing %r during shutdown failed: %s", session, e)
