import os
from threading import Lock
import json
import uuid
from datetime import datetime, timezone
import logging
from typing import Dict, Iterable, List, Optional

from models.session_models import ChangeEvent, ChangeType
from repos.change_feed_repo import ChangeFeed, room_topic, session_topic
from service.exceptions import DuplicateCodeError, SessionNotFoundError, StorageUnavailableError

logger = logging.getLogger(__name__)


class FileStorageManager:
    """File-based storage for access codes, video sessions and their participants"""

    def __init__(self, data_dir="data", feed: Optional[ChangeFeed] = None):
        self.data_dir = data_dir
        self.codes_file = f"{data_dir}/codes.json"
        self.sessions_file = f"{data_dir}/sessions.json"
        self.participants_file = f"{data_dir}/participants.json"
        self.attempts_file = f"{data_dir}/attempts.json"
        self.feed = feed
        self.file_lock = Lock()
        self._ensure_data_dir()

    def _ensure_data_dir(self):
        """Create data directory and initialize files if they don't exist"""
        try:
            os.makedirs(self.data_dir, exist_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot create data directory {self.data_dir}: {e}") from e

        for filepath in (self.codes_file, self.sessions_file, self.participants_file, self.attempts_file):
            if not os.path.exists(filepath):
                self._write_json(filepath, {})

    def _read_json(self, filepath: str) -> dict:
        """Read JSON file, a missing file reads as empty"""
        try:
            with open(filepath, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise StorageUnavailableError(f"Corrupt data file {filepath}: {e}") from e
        except OSError as e:
            raise StorageUnavailableError(f"Cannot read {filepath}: {e}") from e

    def _write_json(self, filepath: str, data: dict):
        """Write JSON file atomically"""
        tmp_path = f"{filepath}.tmp"
        try:
            with open(tmp_path, 'w') as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp_path, filepath)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write {filepath}: {e}") from e

    def _publish(self, events: Iterable[ChangeEvent]):
        if self.feed is None:
            return
        for event in events:
            self.feed.publish(event)

    # -------------------
    # Access codes
    # -------------------

    def list_codes(self) -> List[dict]:
        return list(self._read_json(self.codes_file).values())

    def get_code(self, code: str) -> Optional[dict]:
        return self._read_json(self.codes_file).get(code)

    def apply_code_changes(self, inserts: List[dict] = (), updates: Optional[Dict[str, dict]] = None) -> List[dict]:
        """
        Insert new code records and patch existing ones in a single write.
        Raises DuplicateCodeError without writing anything if an insert collides
        with a stored code or with another insert. Updates for codes that are not
        stored are ignored. Returns the updated records.
        """
        updates = updates or {}
        with self.file_lock:
            codes = self._read_json(self.codes_file)

            seen = set()
            collisions = []
            for record in inserts:
                if record["code"] in codes or record["code"] in seen:
                    collisions.append(record["code"])
                seen.add(record["code"])
            if collisions:
                raise DuplicateCodeError(collisions)

            updated = []
            for code, fields in updates.items():
                if code in codes:
                    codes[code].update(fields)
                    updated.append(codes[code])
            for record in inserts:
                codes[record["code"]] = record

            if inserts or updated:
                self._write_json(self.codes_file, codes)

        if inserts:
            logger.info(f"Stored {len(inserts)} new access code(s)")
        return updated

    def insert_codes(self, records: List[dict]):
        self.apply_code_changes(inserts=records)

    def update_codes(self, updates: Dict[str, dict]) -> List[dict]:
        return self.apply_code_changes(updates=updates)

    def delete_codes(self, codes: Iterable[str]) -> List[str]:
        """Delete codes, returning the ones that existed"""
        wanted = set(codes)
        with self.file_lock:
            stored = self._read_json(self.codes_file)
            deleted = [code for code in stored if code in wanted]
            if deleted:
                for code in deleted:
                    del stored[code]
                self._write_json(self.codes_file, stored)

        if deleted:
            logger.info(f"Deleted {len(deleted)} access code(s)")
        return deleted

    def record_validation_attempt(self, code: str, valid: bool, reason: Optional[str] = None,
                                  ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
        """Append an audit row for a join-time code check"""
        record = {
            "id": str(uuid.uuid4()),
            "code": code,
            "valid": valid,
            "reason": reason,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "attempted_at": datetime.now(timezone.utc).isoformat(),
        }
        with self.file_lock:
            attempts = self._read_json(self.attempts_file)
            attempts[record["id"]] = record
            self._write_json(self.attempts_file, attempts)
        return record

    def list_validation_attempts(self, code: Optional[str] = None) -> List[dict]:
        """Oldest first"""
        attempts = self._read_json(self.attempts_file).values()
        rows = [a for a in attempts if code is None or a["code"] == code]
        return sorted(rows, key=lambda a: a["attempted_at"])

    # -------------------
    # Video sessions
    # -------------------

    def create_session(self, room_name: str, access_code: str) -> dict:
        """Create new active session and return its record"""
        session_id = str(uuid.uuid4())
        record = {
            "id": session_id,
            "room_name": room_name,
            "access_code": access_code,
            "status": "active",
            "created_at": datetime.now(timezone.utc).isoformat(),
            "ended_at": None,
        }

        with self.file_lock:
            sessions = self._read_json(self.sessions_file)
            sessions[session_id] = record
            self._write_json(self.sessions_file, sessions)

            participants = self._read_json(self.participants_file)
            participants[session_id] = {}
            self._write_json(self.participants_file, participants)

        logger.info(f"Created session {session_id} in room {room_name}")
        self._publish([ChangeEvent(type=ChangeType.INSERT, topic=room_topic(room_name), new=record)])
        return record

    def get_session(self, session_id: str) -> Optional[dict]:
        return self._read_json(self.sessions_file).get(session_id)

    def list_active_sessions(self, room_name: str) -> List[dict]:
        sessions = self._read_json(self.sessions_file).values()
        active = [s for s in sessions if s["room_name"] == room_name and s["status"] == "active"]
        return sorted(active, key=lambda s: s["created_at"], reverse=True)

    def end_session(self, session_id: str) -> dict:
        """Mark session ended. Ending an ended session changes nothing."""
        with self.file_lock:
            sessions = self._read_json(self.sessions_file)
            if session_id not in sessions:
                raise SessionNotFoundError(session_id)
            old = dict(sessions[session_id])
            record = sessions[session_id]
            if record["status"] == "ended":
                return record
            record["status"] = "ended"
            record["ended_at"] = datetime.now(timezone.utc).isoformat()
            self._write_json(self.sessions_file, sessions)

        logger.info(f"Ended session {session_id}")
        self._publish([ChangeEvent(type=ChangeType.UPDATE, topic=room_topic(record["room_name"]),
                                   new=record, old=old)])
        return record

    # -------------------
    # Session participants
    # -------------------

    def add_participant(self, session_id: str, participant_id: str, display_name: Optional[str] = None,
                        email: Optional[str] = None) -> dict:
        """Add participant to session, updating the row if the participant is already present"""
        with self.file_lock:
            sessions = self._read_json(self.sessions_file)
            if session_id not in sessions:
                raise SessionNotFoundError(session_id)

            participants = self._read_json(self.participants_file)
            rows = participants.setdefault(session_id, {})
            old = rows.get(participant_id)
            if old is None:
                record = {
                    "row_id": str(uuid.uuid4()),
                    "session_id": session_id,
                    "participant_id": participant_id,
                    "display_name": display_name,
                    "email": email,
                    "joined_at": datetime.now(timezone.utc).isoformat(),
                }
                event = ChangeEvent(type=ChangeType.INSERT, topic=session_topic(session_id), new=record)
            else:
                record = dict(old, display_name=display_name, email=email)
                if record == old:
                    return record
                event = ChangeEvent(type=ChangeType.UPDATE, topic=session_topic(session_id),
                                    new=record, old=old)
            rows[participant_id] = record
            self._write_json(self.participants_file, participants)

        logger.info(f"Participant {participant_id} ({display_name}) recorded in session {session_id}")
        self._publish([event])
        return record

    def update_participant_name(self, session_id: str, participant_id: str, display_name: str) -> Optional[dict]:
        with self.file_lock:
            participants = self._read_json(self.participants_file)
            rows = participants.get(session_id, {})
            if participant_id not in rows:
                return None
            old = dict(rows[participant_id])
            if old.get("display_name") == display_name:
                return old
            rows[participant_id]["display_name"] = display_name
            record = rows[participant_id]
            self._write_json(self.participants_file, participants)

        self._publish([ChangeEvent(type=ChangeType.UPDATE, topic=session_topic(session_id), new=record, old=old)])
        return record

    def remove_participant(self, session_id: str, participant_id: str) -> bool:
        """Remove participant row, returns False if there was nothing to remove"""
        with self.file_lock:
            participants = self._read_json(self.participants_file)
            rows = participants.get(session_id, {})
            old = rows.pop(participant_id, None)
            if old is None:
                return False
            self._write_json(self.participants_file, participants)

        logger.info(f"Participant {participant_id} removed from session {session_id}")
        self._publish([ChangeEvent(type=ChangeType.DELETE, topic=session_topic(session_id), old=old)])
        return True

    def get_session_participants(self, session_id: str) -> List[dict]:
        participants = self._read_json(self.participants_file)
        return list(participants.get(session_id, {}).values())
