from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from models.code_models import utcnow


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class MembershipState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    ENDED = "ended"


class VideoSession(BaseModel):
    id: str
    room_name: str
    access_code: str
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None


class Participant(BaseModel):
    id: str
    display_name: str = "Anonymous"
    email: Optional[str] = None
    is_local: bool = False
    audio_muted: bool = False
    video_muted: bool = False


class ParticipantRecord(BaseModel):
    """Persisted row for one participant of one session"""
    row_id: str
    session_id: str
    participant_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    joined_at: datetime = Field(default_factory=utcnow)


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    type: ChangeType
    topic: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None


# -------------------
# Request bodies
# -------------------

class CreateSessionRequest(BaseModel):
    room_name: str
    access_code: str


class AddParticipantRequest(BaseModel):
    participant_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
