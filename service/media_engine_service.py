import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

from service.exceptions import MalformedInputError

logger = logging.getLogger(__name__)


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class EngineEventKind(str, Enum):
    CONFERENCE_JOINED = "videoConferenceJoined"
    CONFERENCE_LEFT = "videoConferenceLeft"
    READY_TO_CLOSE = "readyToClose"
    PARTICIPANT_JOINED = "participantJoined"
    PARTICIPANT_LEFT = "participantLeft"
    AUDIO_MUTE_CHANGED = "audioMuteStatusChanged"
    VIDEO_MUTE_CHANGED = "videoMuteStatusChanged"
    DISPLAY_NAME_CHANGED = "displayNameChange"


class EngineEvent(BaseModel):
    """One fact reported by the conferencing engine to the local client"""
    kind: EngineEventKind
    # None on a mute event means the local participant
    participant_id: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    muted: Optional[bool] = None

    @property
    def media(self) -> Optional[MediaKind]:
        if self.kind == EngineEventKind.AUDIO_MUTE_CHANGED:
            return MediaKind.AUDIO
        if self.kind == EngineEventKind.VIDEO_MUTE_CHANGED:
            return MediaKind.VIDEO
        return None


_NEEDS_ID = {
    EngineEventKind.CONFERENCE_JOINED,
    EngineEventKind.PARTICIPANT_JOINED,
    EngineEventKind.PARTICIPANT_LEFT,
    EngineEventKind.DISPLAY_NAME_CHANGED,
}


def parse_engine_event(message: Dict[str, Any]) -> EngineEvent:
    """
    Map an engine message such as
    {"event": "participantJoined", "id": "ab12", "displayName": "Bob"}
    to an EngineEvent.
    """
    name = message.get("event")
    try:
        kind = EngineEventKind(name)
    except ValueError:
        raise MalformedInputError(f"Unknown engine event: {name!r}")

    participant_id = message.get("id")
    if kind in _NEEDS_ID and not participant_id:
        raise MalformedInputError(f"Engine event {kind.value} without a participant id")

    muted = message.get("muted")
    if kind in (EngineEventKind.AUDIO_MUTE_CHANGED, EngineEventKind.VIDEO_MUTE_CHANGED) and muted is None:
        raise MalformedInputError(f"Engine event {kind.value} without a muted flag")

    return EngineEvent(
        kind=kind,
        participant_id=participant_id or None,
        display_name=message.get("displayName") or message.get("displayname"),
        email=message.get("email"),
        muted=muted,
    )


class MediaEngine(ABC):
    """Commands the local client can send to the conferencing engine"""

    @abstractmethod
    async def set_audio_muted(self, muted: bool):
        ...

    @abstractmethod
    async def set_video_muted(self, muted: bool):
        ...

    @abstractmethod
    async def hangup(self):
        ...
