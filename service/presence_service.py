"""
Participant presence for one video session, as seen by one client.

Membership facts arrive on two channels that are neither exclusive nor
ordered relative to each other:

    local   the conferencing engine's events for this client
    remote  the change feed on the session's persisted participant rows,
            written by every client in the room, this one included

PresenceReconciler folds both into one set keyed by the engine's participant
id, so replaying a fact from either channel leaves the set unchanged.
SessionMembership adds the session lifecycle around it, mirrors local facts
to storage on a best-effort basis and owns the change-feed subscriptions.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set

from fastapi.concurrency import run_in_threadpool

from models.session_models import ChangeEvent, ChangeType, MembershipState, Participant, VideoSession
from repos.change_feed_repo import ChangeFeed, Subscription, room_topic, session_topic
from repos.file_storage_manager_repo import FileStorageManager
from service.exceptions import AccessCodeError
from service.media_engine_service import EngineEvent, EngineEventKind, MediaEngine, MediaKind

logger = logging.getLogger(__name__)


class PresenceReconciler:
    """Id-keyed participant set merged from local and remote facts"""

    def __init__(self):
        self.participants: Dict[str, Participant] = {}
        self.local_id: Optional[str] = None
        # engine ids never come back after a connection ends, so a departed id
        # only returns through the engine itself
        self.departed: Set[str] = set()

    def get(self, participant_id: str) -> Optional[Participant]:
        return self.participants.get(participant_id)

    def snapshot(self) -> List[Participant]:
        """Local participant first, then everyone else in arrival order"""
        ordered = sorted(self.participants.values(), key=lambda p: not p.is_local)
        return [p.model_copy() for p in ordered]

    def clear(self):
        self.participants.clear()

    # -------------------
    # Local channel
    # -------------------

    def local_joined(self, participant: Participant) -> bool:
        if participant.is_local:
            self.local_id = participant.id
        self.departed.discard(participant.id)

        existing = self.participants.get(participant.id)
        if existing is None:
            self.participants[participant.id] = participant
            return True

        # an unset name is the placeholder default and never replaces a known one
        named = "display_name" in participant.model_fields_set and participant.display_name
        merged = existing.model_copy(update={
            "display_name": participant.display_name if named else existing.display_name,
            "email": participant.email if participant.email is not None else existing.email,
            "is_local": existing.is_local or participant.is_local,
        })
        if merged == existing:
            return False
        self.participants[participant.id] = merged
        return True

    def local_left(self, participant_id: str) -> bool:
        self.departed.add(participant_id)
        return self.participants.pop(participant_id, None) is not None

    def mute_changed(self, participant_id: Optional[str], media: MediaKind, muted: bool) -> bool:
        target = participant_id or self.local_id
        existing = self.participants.get(target) if target else None
        if existing is None:
            return False
        field = "audio_muted" if media == MediaKind.AUDIO else "video_muted"
        if getattr(existing, field) == muted:
            return False
        self.participants[target] = existing.model_copy(update={field: muted})
        return True

    def display_name_changed(self, participant_id: str, display_name: Optional[str]) -> bool:
        existing = self.participants.get(participant_id)
        if existing is None or not display_name or existing.display_name == display_name:
            return False
        self.participants[participant_id] = existing.model_copy(update={"display_name": display_name})
        return True

    # -------------------
    # Remote channel
    # -------------------

    def remote_change(self, event: ChangeEvent) -> bool:
        record = event.old if event.type == ChangeType.DELETE else event.new
        participant_id = (record or {}).get("participant_id")
        if not participant_id:
            logger.warning(f"Ignoring {event.type.value} on {event.topic} without a participant id")
            return False

        if event.type == ChangeType.DELETE:
            self.departed.add(participant_id)
            return self.participants.pop(participant_id, None) is not None

        if participant_id in self.departed:
            return False

        if event.type == ChangeType.INSERT:
            if participant_id == self.local_id or participant_id in self.participants:
                return False
            self.participants[participant_id] = Participant(
                id=participant_id,
                display_name=record.get("display_name") or "Anonymous",
                email=record.get("email"),
                is_local=False,
            )
            return True

        return self.display_name_changed(participant_id, record.get("display_name"))


MembershipListener = Callable[["SessionMembership"], None]


class SessionMembership:
    """
    One client's view of a session. Local engine events update the view at
    once; mirroring them to storage runs afterwards in order and any failure
    there is logged, never raised to the caller.
    """

    def __init__(self, session: VideoSession, storage: FileStorageManager, feed: ChangeFeed,
                 engine: Optional[MediaEngine] = None, display_name: Optional[str] = None):
        self.session = session
        self.storage = storage
        self.feed = feed
        self.engine = engine
        # name for the local participant when the engine reports none
        self.display_name = display_name
        self.state = MembershipState.CREATED
        self.reconciler = PresenceReconciler()
        self.audio_muted = False
        self.video_muted = False
        self.end_reason: Optional[str] = None
        self._subscriptions: List[Subscription] = []
        self._pending: Set[asyncio.Task] = set()
        self._mirror_lock = asyncio.Lock()
        self._listeners: List[MembershipListener] = []

    @property
    def participants(self) -> List[Participant]:
        return self.reconciler.snapshot()

    @property
    def local_participant(self) -> Optional[Participant]:
        if self.reconciler.local_id is None:
            return None
        return self.reconciler.get(self.reconciler.local_id)

    @property
    def is_ended(self) -> bool:
        return self.state == MembershipState.ENDED

    def add_listener(self, listener: MembershipListener):
        self._listeners.append(listener)

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception(f"Membership listener failed for session {self.session.id}")

    # -------------------
    # Lifecycle
    # -------------------

    def start(self):
        """Subscribe to the session's participant rows and the room's session records"""
        if self._subscriptions or self.is_ended:
            return
        self._subscriptions = [
            self.feed.subscribe(session_topic(self.session.id), self.apply_remote),
            self.feed.subscribe(room_topic(self.session.room_name), self._on_session_change),
        ]

    def end(self, reason: str = "left") -> bool:
        """End the session for this client. Returns False if it had already ended."""
        if self.is_ended:
            return False
        self.state = MembershipState.ENDED
        self.end_reason = reason

        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []

        local_id = self.reconciler.local_id
        if local_id is not None:
            self._mirror("local leave", self.storage.remove_participant, self.session.id, local_id)
        self._mirror("session end", self.storage.end_session, self.session.id)

        self.reconciler.clear()
        logger.info(f"Session {self.session.id} ended ({reason})")
        self._notify()
        return True

    async def settle(self):
        """Wait for outstanding storage writes and queued change-feed events"""
        while True:
            while self._pending:
                await asyncio.gather(*list(self._pending), return_exceptions=True)
            for subscription in list(self._subscriptions):
                await subscription.flush()
            if not self._pending:
                return

    async def close(self):
        """Client teardown"""
        self.end("teardown")
        await self.settle()

    def _end_if_empty(self):
        if self.state == MembershipState.ACTIVE and not self.reconciler.participants:
            self.end("empty")

    def _known_name(self, participant_id: str) -> Optional[str]:
        existing = self.reconciler.get(participant_id)
        return existing.display_name if existing is not None else None

    def _mirror(self, description: str, func, *args):
        async def run():
            async with self._mirror_lock:
                try:
                    await run_in_threadpool(func, *args)
                except (AccessCodeError, OSError) as e:
                    logger.warning(f"Could not mirror {description} for session {self.session.id}: {e}")

        task = asyncio.get_running_loop().create_task(run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # -------------------
    # Local channel
    # -------------------

    def handle_engine_event(self, event: EngineEvent):
        kind = event.kind
        if kind == EngineEventKind.CONFERENCE_JOINED:
            self.conference_joined(event.participant_id, event.display_name, event.email)
        elif kind == EngineEventKind.PARTICIPANT_JOINED:
            self.participant_joined(event.participant_id, event.display_name, event.email)
        elif kind == EngineEventKind.PARTICIPANT_LEFT:
            self.participant_left(event.participant_id)
        elif kind in (EngineEventKind.AUDIO_MUTE_CHANGED, EngineEventKind.VIDEO_MUTE_CHANGED):
            self.mute_changed(event.participant_id, event.media, event.muted)
        elif kind == EngineEventKind.DISPLAY_NAME_CHANGED:
            self.display_name_changed(event.participant_id, event.display_name)
        elif kind == EngineEventKind.CONFERENCE_LEFT:
            self.end("conference left")
        elif kind == EngineEventKind.READY_TO_CLOSE:
            self.end("ready to close")

    def conference_joined(self, participant_id: str, display_name: Optional[str] = None,
                          email: Optional[str] = None):
        if self.is_ended:
            logger.info(f"Ignoring conference join on ended session {self.session.id}")
            return
        name = display_name or self.display_name or self._known_name(participant_id) or "You"
        participant = Participant(id=participant_id, display_name=name, email=email,
                                  is_local=True, audio_muted=self.audio_muted, video_muted=self.video_muted)
        self.reconciler.local_joined(participant)
        if self.state == MembershipState.CREATED:
            self.state = MembershipState.ACTIVE
            logger.info(f"Session {self.session.id} active, local participant {participant_id}")
        self._mirror("local join", self.storage.add_participant, self.session.id, participant_id,
                     participant.display_name, email)
        self._notify()

    def participant_joined(self, participant_id: str, display_name: Optional[str] = None,
                           email: Optional[str] = None):
        if self.is_ended:
            return
        name = display_name or self._known_name(participant_id) or "Anonymous"
        participant = Participant(id=participant_id, display_name=name, email=email)
        if self.reconciler.local_joined(participant):
            self._notify()
        self._mirror("participant join", self.storage.add_participant, self.session.id, participant_id,
                     participant.display_name, email)

    def participant_left(self, participant_id: str):
        if self.is_ended:
            return
        if self.reconciler.local_left(participant_id):
            self._notify()
        self._mirror("participant leave", self.storage.remove_participant, self.session.id, participant_id)
        self._end_if_empty()

    def mute_changed(self, participant_id: Optional[str], media: MediaKind, muted: bool):
        if participant_id is None or participant_id == self.reconciler.local_id:
            if media == MediaKind.AUDIO:
                self.audio_muted = muted
            else:
                self.video_muted = muted
        if self.reconciler.mute_changed(participant_id, media, muted):
            self._notify()

    def display_name_changed(self, participant_id: str, display_name: Optional[str]):
        if self.is_ended:
            return
        if self.reconciler.display_name_changed(participant_id, display_name):
            self._notify()
            self._mirror("name change", self.storage.update_participant_name, self.session.id,
                         participant_id, display_name)

    # -------------------
    # Remote channel
    # -------------------

    def apply_remote(self, event: ChangeEvent):
        if self.is_ended:
            return
        if self.reconciler.remote_change(event):
            self._notify()
            self._end_if_empty()

    def _on_session_change(self, event: ChangeEvent):
        record = event.new or {}
        if record.get("id") == self.session.id and record.get("status") == "ended":
            self.end("ended remotely")

    # -------------------
    # Commands
    # -------------------

    async def _command(self, name: str, *args):
        if self.engine is None:
            return
        try:
            await getattr(self.engine, name)(*args)
        except Exception:
            logger.exception(f"Engine command {name} failed for session {self.session.id}")

    async def set_audio_muted(self, muted: bool):
        await self._command("set_audio_muted", muted)

    async def set_video_muted(self, muted: bool):
        await self._command("set_video_muted", muted)

    async def toggle_audio(self):
        await self.set_audio_muted(not self.audio_muted)

    async def toggle_video(self):
        await self.set_video_muted(not self.video_muted)

    async def hangup(self):
        await self._command("hangup")
        self.end("hangup")
