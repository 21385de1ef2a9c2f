import asyncio
from typing import Dict, Optional, Set
from fastapi import WebSocket

from models.session_models import MembershipState
from service.exceptions import MalformedInputError, SessionRejectedError
from service.media_engine_service import MediaEngine, parse_engine_event
from service.presence_service import SessionMembership
from service.session_service import SessionService
import logging
import json

logger = logging.getLogger(__name__)

REJECT_CLOSE_CODES = {
    "not_found": 4404,
    "revoked": 4403,
    "unavailable": 1013,
}


class WebSocketMediaEngine(MediaEngine):
    """Relays engine commands to the browser client that runs the conference"""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def _send(self, command: str, **fields):
        await self.websocket.send_text(json.dumps({"type": "command", "command": command, **fields}))

    async def set_audio_muted(self, muted: bool):
        await self._send("setAudioMuted", muted=muted)

    async def set_video_muted(self, muted: bool):
        await self._send("setVideoMuted", muted=muted)

    async def hangup(self):
        await self._send("hangup")


class ConnectionManager:
    """Live client connections, one session membership per websocket"""

    def __init__(self, sessions: SessionService):
        self.active_connections: Dict[str, Dict[str, WebSocket]] = {}  # {room_name: {session_id: websocket}}
        self.memberships: Dict[WebSocket, SessionMembership] = {}
        self.sessions = sessions
        self._sends: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket, room_name: str, access_code: str,
                      display_name: Optional[str] = None) -> SessionMembership:
        """Accept the socket and open a session, closing it with a reason code on rejection"""
        try:
            await websocket.accept()
            logger.info(f"WebSocket accepted for room {room_name}")
        except Exception as e:
            logger.error(f"Failed to accept WebSocket for room {room_name}: {e}")
            raise

        try:
            membership = await self.sessions.open_membership(room_name, access_code, WebSocketMediaEngine(websocket),
                                                             display_name)
        except SessionRejectedError as e:
            logger.info(f"Rejected session in room {room_name}: {e.reason}")
            await websocket.send_text(json.dumps({"type": "session-rejected", "reason": e.reason, "message": str(e)}))
            await websocket.close(code=REJECT_CLOSE_CODES.get(e.reason, 1008), reason=str(e))
            raise

        session_id = membership.session.id
        self.active_connections.setdefault(room_name, {})[session_id] = websocket
        self.memberships[websocket] = membership
        membership.add_listener(lambda m: self._schedule(self.send_snapshot(websocket, m)))

        await websocket.send_text(json.dumps({
            "type": "session-created",
            "session": membership.session.model_dump(mode="json"),
        }))
        logger.info(f"Session {session_id} connected in room {room_name}. "
                    f"Room has {len(self.active_connections[room_name])} connections")
        return membership

    def _schedule(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    async def handle_message(self, websocket: WebSocket, message: dict):
        membership = self.memberships.get(websocket)
        if membership is None:
            return
        message_type = message.get("type")

        if message_type == "engine-event":
            membership.handle_engine_event(parse_engine_event(message))
        elif message_type == "toggle-audio":
            await membership.toggle_audio()
        elif message_type == "toggle-video":
            await membership.toggle_video()
        elif message_type == "set-audio-muted":
            await membership.set_audio_muted(bool(message.get("muted")))
        elif message_type == "set-video-muted":
            await membership.set_video_muted(bool(message.get("muted")))
        elif message_type == "hangup":
            await membership.hangup()
        else:
            raise MalformedInputError(f"Unknown message type: {message_type!r}")

    async def send_snapshot(self, websocket: WebSocket, membership: SessionMembership):
        message = {
            "type": "session-ended" if membership.state == MembershipState.ENDED else "participants-updated",
            "session_id": membership.session.id,
            "state": membership.state.value,
            "audio_muted": membership.audio_muted,
            "video_muted": membership.video_muted,
            "participants": [p.model_dump() for p in membership.participants],
        }
        if membership.end_reason:
            message["reason"] = membership.end_reason
        try:
            await websocket.send_text(json.dumps(message))
        except Exception as e:
            logger.error(f"Error sending participants to session {membership.session.id}: {e}")

    async def disconnect(self, websocket: WebSocket):
        """Tear down the connection's membership"""
        membership = self.memberships.pop(websocket, None)
        if membership is None:
            return

        room_name = membership.session.room_name
        session_id = membership.session.id
        if room_name in self.active_connections:
            self.active_connections[room_name].pop(session_id, None)
            if not self.active_connections[room_name]:
                del self.active_connections[room_name]

        await membership.close()
        logger.info(f"Session {session_id} disconnected from room {room_name}")

    def connection_count(self) -> int:
        return sum(len(sessions) for sessions in self.active_connections.values())
