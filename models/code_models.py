from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CodeStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class AccessCode(BaseModel):
    code: str
    name: str = ""
    status: CodeStatus = CodeStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)


class CodeImportItem(BaseModel):
    code: str
    # None leaves an existing name unchanged, "" clears it
    name: Optional[str] = None


class RejectReason(str, Enum):
    NOT_FOUND = "not_found"
    REVOKED = "revoked"


class CodeRecord(BaseModel):
    code: str
    name: str = ""


class ValidationResult(BaseModel):
    valid: bool
    reason: Optional[RejectReason] = None
    record: Optional[CodeRecord] = None


# -------------------
# Request bodies
# -------------------

class GenerateOneRequest(BaseModel):
    name: Optional[str] = None


class GenerateBulkRequest(BaseModel):
    count: int
    names: Optional[List[Optional[str]]] = None


class ImportCodesRequest(BaseModel):
    # rows are checked one by one so a bad row is skipped, not fatal
    items: List[Any]


class SetNameRequest(BaseModel):
    name: Optional[str] = None


class SetNamesBulkRequest(BaseModel):
    codes: List[str]
    names: List[Optional[str]]
    overwrite: bool = True


class SetStatusRequest(BaseModel):
    status: CodeStatus


class RemoveCodesRequest(BaseModel):
    codes: List[str]
