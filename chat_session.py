"""
chat_session.py
---------------
Per-connection control flow for the relay.

    CONNECTING -> HANDSHAKING -> ACTIVE -> CLOSED
                       \___________________^

- HANDSHAKING: the first inbound frame is the display name, taken as-is.
- ACTIVE: every further frame is chat text, recorded and broadcast.
- CLOSED: any read error ends the session. An active session deregisters
  and announces its departure; a session that never finished the handshake
  leaves without a trace.
"""

import enum
import logging

from starlette.websockets import WebSocketDisconnect

from chatroom import (
    CLOSE_GOING_AWAY,
    ChatRoom,
    Connection,
    build_user_join,
    build_user_leave,
)

log = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    CLOSED = "closed"


def frame_text(message: dict) -> str:
    """
    Text of one ASGI websocket.receive message. Binary frames are decoded as
    UTF-8 so any byte sequence is accepted.
    """
    text = message.get("text")
    if text is not None:
        return text
    return (message.get("bytes") or b"").decode("utf-8", errors="replace")


class ChatSession:
    def __init__(self, websocket, room: ChatRoom):
        self.websocket = websocket
        self.room = room
        self.state = SessionState.CONNECTING
        self.connection: Connection | None = None

    @property
    def username(self) -> str | None:
        return self.connection.username if self.connection else None

    async def read_frame(self) -> str:
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000))
        return frame_text(message)

    async def run(self):
        if self.room.closing:
            await self.websocket.close(code=CLOSE_GOING_AWAY)
            self.state = SessionState.CLOSED
            return

        await self.websocket.accept()
        self.state = SessionState.HANDSHAKING
        self.room.track(self)
        try:
            try:
                username = await self.read_frame()
            except (WebSocketDisconnect, OSError) as e:
                log.info("[session] handshake failed: %r", e)
                return

            await self._activate(username)

            while True:
                try:
                    text = await self.read_frame()
                except (WebSocketDisconnect, OSError) as e:
                    log.info("[session] %s read ended: %r", username, e)
                    break
                await self.room.post_message(self.connection, text)
        finally:
            await self._finish()

    async def _activate(self, username: str):
        self.connection = Connection(self.websocket, username)
        await self.room.join(self.connection)
        self.state = SessionState.ACTIVE
        await self.room.broadcast(build_user_join(username))
        await self.room.broadcast_user_list()

    async def _finish(self):
        try:
            if self.state is SessionState.ACTIVE:
                await self.room.deregister(self.connection)
                await self.room.broadcast(build_user_leave(self.connection.username))
                await self.room.broadcast_user_list()
        finally:
            self.state = SessionState.CLOSED
            self.room.untrack(self)
            await self.close_transport()

    async def close_transport(self, code: int = 1000, reason: str = ""):
        """Release the channel. Used on session end and by room shutdown."""
        if self.connection is not None:
            await self.connection.close(code, reason)
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            log.debug("[session] close ignored: %s", e)
