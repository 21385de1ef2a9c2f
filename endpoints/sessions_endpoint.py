from typing import List

from fastapi import APIRouter, Depends

from endpoints.dependencies import get_sessions, to_http_exception
from models.session_models import AddParticipantRequest, CreateSessionRequest, ParticipantRecord, VideoSession
from service.exceptions import AccessCodeError
from service.session_service import SessionService

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


@router.post("", response_model=VideoSession, status_code=201)
async def create_session(request: CreateSessionRequest, sessions: SessionService = Depends(get_sessions)):
    try:
        return await sessions.create_session(request.room_name, request.access_code)
    except AccessCodeError as e:
        raise to_http_exception(e)


@router.get("", response_model=List[VideoSession])
async def list_active_sessions(room: str, sessions: SessionService = Depends(get_sessions)):
    try:
        return await sessions.list_active_sessions(room)
    except AccessCodeError as e:
        raise to_http_exception(e)


@router.get("/{session_id}")
async def get_session_info(session_id: str, sessions: SessionService = Depends(get_sessions)):
    try:
        session = await sessions.get_session(session_id)
        participants = await sessions.list_participants(session_id)
    except AccessCodeError as e:
        raise to_http_exception(e)
    return {
        "session": session,
        "participants": participants,
        "participant_count": len(participants),
    }


@router.get("/{session_id}/participants", response_model=List[ParticipantRecord])
async def list_participants(session_id: str, sessions: SessionService = Depends(get_sessions)):
    try:
        return await sessions.list_participants(session_id)
    except AccessCodeError as e:
        raise to_http_exception(e)


@router.post("/{session_id}/participants", response_model=ParticipantRecord)
async def add_participant(session_id: str, request: AddParticipantRequest,
                          sessions: SessionService = Depends(get_sessions)):
    try:
        return await sessions.add_participant(session_id, request.participant_id, request.display_name,
                                              request.email)
    except AccessCodeError as e:
        raise to_http_exception(e)


@router.delete("/{session_id}/participants/{participant_id}")
async def remove_participant(session_id: str, participant_id: str, sessions: SessionService = Depends(get_sessions)):
    try:
        removed = await sessions.remove_participant(session_id, participant_id)
    except AccessCodeError as e:
        raise to_http_exception(e)
    return {"removed": removed}


@router.post("/{session_id}/end", response_model=VideoSession)
async def end_session(session_id: str, sessions: SessionService = Depends(get_sessions)):
    try:
        return await sessions.end_session(session_id)
    except AccessCodeError as e:
        raise to_http_exception(e)
