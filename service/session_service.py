import logging
from typing import List, Optional, Set

from fastapi.concurrency import run_in_threadpool

from models.session_models import ParticipantRecord, VideoSession
from repos.change_feed_repo import ChangeFeed
from repos.file_storage_manager_repo import FileStorageManager
from service.code_registry_service import CodeRegistry
from service.exceptions import (CodeNotFoundError, CodeRevokedError, SessionNotFoundError, SessionRejectedError,
                                StorageUnavailableError)
from service.media_engine_service import MediaEngine
from service.presence_service import SessionMembership

logger = logging.getLogger(__name__)


class SessionService:
    """Creates video sessions for valid access codes and tracks open memberships"""

    def __init__(self, registry: CodeRegistry, storage: FileStorageManager, feed: ChangeFeed):
        self.registry = registry
        self.storage = storage
        self.feed = feed
        self.memberships: Set[SessionMembership] = set()

    async def create_session(self, room_name: str, access_code: str) -> VideoSession:
        try:
            code = await self.registry.require_active(access_code)
        except CodeNotFoundError as e:
            raise SessionRejectedError("not_found") from e
        except CodeRevokedError as e:
            raise SessionRejectedError("revoked") from e
        except StorageUnavailableError as e:
            logger.error(f"Access code validation failed for room {room_name}: {e}")
            raise SessionRejectedError("unavailable") from e

        try:
            record = await run_in_threadpool(self.storage.create_session, room_name, code.code)
        except StorageUnavailableError as e:
            logger.error(f"Could not store session for room {room_name}: {e}")
            raise SessionRejectedError("unavailable") from e
        return VideoSession(**record)

    async def open_membership(self, room_name: str, access_code: str, engine: Optional[MediaEngine] = None,
                              display_name: Optional[str] = None) -> SessionMembership:
        """Create a session and start this client's view of it"""
        session = await self.create_session(room_name, access_code)
        membership = SessionMembership(session, self.storage, self.feed, engine, display_name)
        membership.start()
        membership.add_listener(self._forget_when_ended)
        self.memberships.add(membership)
        return membership

    def _forget_when_ended(self, membership: SessionMembership):
        if membership.is_ended:
            self.memberships.discard(membership)

    async def close(self):
        for membership in list(self.memberships):
            await membership.close()
        self.memberships.clear()

    async def get_session(self, session_id: str) -> VideoSession:
        record = await run_in_threadpool(self.storage.get_session, session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return VideoSession(**record)

    async def list_active_sessions(self, room_name: str) -> List[VideoSession]:
        records = await run_in_threadpool(self.storage.list_active_sessions, room_name)
        return [VideoSession(**r) for r in records]

    async def end_session(self, session_id: str) -> VideoSession:
        record = await run_in_threadpool(self.storage.end_session, session_id)
        return VideoSession(**record)

    async def add_participant(self, session_id: str, participant_id: str, display_name: Optional[str] = None,
                              email: Optional[str] = None) -> ParticipantRecord:
        record = await run_in_threadpool(self.storage.add_participant, session_id, participant_id,
                                         display_name, email)
        return ParticipantRecord(**record)

    async def remove_participant(self, session_id: str, participant_id: str) -> bool:
        await self.get_session(session_id)
        return await run_in_threadpool(self.storage.remove_participant, session_id, participant_id)

    async def list_participants(self, session_id: str) -> List[ParticipantRecord]:
        await self.get_session(session_id)
        records = await run_in_threadpool(self.storage.get_session_participants, session_id)
        return [ParticipantRecord(**r) for r in records]
