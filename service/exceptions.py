from typing import Iterable, Optional


class AccessCodeError(Exception):
    """Base class for access-code and session errors"""


class CodeNotFoundError(AccessCodeError):
    def __init__(self, code: str):
        super().__init__(f"Access code {code} not found")
        self.code = code


class CodeRevokedError(AccessCodeError):
    def __init__(self, code: str):
        super().__init__(f"Access code {code} is revoked")
        self.code = code


class CollisionExhaustedError(AccessCodeError):
    """No free code could be found within the configured retry bound"""

    def __init__(self, attempts: int):
        super().__init__(f"Could not generate a unique access code after {attempts} attempts")
        self.attempts = attempts


class StorageUnavailableError(AccessCodeError):
    """The persisted store or change feed could not be reached"""


class DuplicateCodeError(AccessCodeError):
    def __init__(self, codes: Iterable[str]):
        self.codes = sorted(set(codes))
        super().__init__(f"Access codes already exist: {', '.join(self.codes)}")


class MalformedInputError(AccessCodeError, ValueError):
    pass


class SessionNotFoundError(AccessCodeError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionRejectedError(AccessCodeError):
    """
    Session creation refused before anything was persisted.
    reason is one of "not_found", "revoked" or "unavailable".
    """

    MESSAGES = {
        "not_found": "Access code not found",
        "revoked": "Access code has been revoked",
        "unavailable": "Access code validation service is unreachable",
    }

    def __init__(self, reason: str, detail: Optional[str] = None):
        super().__init__(detail or self.MESSAGES.get(reason, reason))
        self.reason = reason
