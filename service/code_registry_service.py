import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from config import BULK_MAX_CODES, CODE_GENERATION_ATTEMPTS, CODE_LENGTH
from models.code_models import (AccessCode, CodeImportItem, CodeRecord, CodeStatus, RejectReason,
                                ValidationResult)
from repos.file_storage_manager_repo import FileStorageManager
from service.code_csv_service import export_codes_csv
from service.code_generator_service import generate_code, normalize_code
from service.exceptions import (CodeNotFoundError, CodeRevokedError, CollisionExhaustedError, DuplicateCodeError,
                                MalformedInputError, StorageUnavailableError)

logger = logging.getLogger(__name__)


def clean_name(name: Optional[str]) -> Optional[str]:
    """None stays None (leave unchanged), anything else is trimmed ("" clears)"""
    return None if name is None else name.strip()


def resolve_bulk_names(n: int, names: Optional[Sequence[Optional[str]]]) -> List[Optional[str]]:
    """
    Line up an admin-supplied name list with n generated codes:
    exactly n names are used as given, a single name is a prefix numbered
    1..n, and any other length leaves every name unset.
    """
    if not names:
        return [None] * n
    if len(names) == n:
        return [clean_name(name) or None for name in names]
    if len(names) == 1:
        prefix = clean_name(names[0])
        if not prefix:
            return [None] * n
        return [f"{prefix}{i}" for i in range(1, n + 1)]
    logger.info(f"Ignoring {len(names)} name(s) for {n} generated code(s)")
    return [None] * n


class CodeRegistry:
    """
    Authoritative set of access codes. Every change is written to storage first
    and applied to the in-memory map only once the write succeeded.
    """

    def __init__(self, storage: FileStorageManager, code_length: int = CODE_LENGTH,
                 max_attempts: int = CODE_GENERATION_ATTEMPTS, bulk_max: int = BULK_MAX_CODES,
                 generator: Callable[[int], str] = generate_code):
        self.storage = storage
        self.code_length = code_length
        self.max_attempts = max_attempts
        self.bulk_max = bulk_max
        self.generator = generator
        self._codes: Dict[str, AccessCode] = {}
        self._lock = asyncio.Lock()

    async def start(self):
        records = await run_in_threadpool(self.storage.list_codes)
        self._codes = {}
        for record in records:
            item = AccessCode(**record)
            self._codes[normalize_code(item.code)] = item
        logger.info(f"Loaded {len(self._codes)} access code(s)")

    def __len__(self):
        return len(self._codes)

    # -------------------
    # Lookup
    # -------------------

    def find(self, code: str) -> Optional[AccessCode]:
        return self._codes.get(normalize_code(code))

    def list_codes(self, status: Optional[CodeStatus] = None) -> List[AccessCode]:
        """Newest first"""
        items = [c for c in self._codes.values() if status is None or c.status == status]
        return sorted(items, key=lambda c: c.created_at, reverse=True)

    async def validate(self, code: str) -> ValidationResult:
        """Check a code against storage at join time"""
        key = normalize_code(code)
        record = await run_in_threadpool(self.storage.get_code, key) if key else None
        if record is None:
            self._codes.pop(key, None)
            return ValidationResult(valid=False, reason=RejectReason.NOT_FOUND)

        item = AccessCode(**record)
        self._codes[key] = item
        if item.status == CodeStatus.REVOKED:
            return ValidationResult(valid=False, reason=RejectReason.REVOKED)
        return ValidationResult(valid=True, record=CodeRecord(code=item.code, name=item.name))

    async def record_attempt(self, code: str, result: ValidationResult, ip_address: Optional[str] = None,
                             user_agent: Optional[str] = None) -> bool:
        """Audit a validation; a failed write is logged and reported as False"""
        reason = result.reason.value if result.reason else None
        try:
            await run_in_threadpool(self.storage.record_validation_attempt, normalize_code(code), result.valid,
                                    reason, ip_address, user_agent)
        except StorageUnavailableError as e:
            logger.warning(f"Could not record validation attempt for {normalize_code(code)}: {e}")
            return False
        return True

    async def require_active(self, code: str) -> AccessCode:
        result = await self.validate(code)
        if result.reason == RejectReason.NOT_FOUND:
            raise CodeNotFoundError(normalize_code(code))
        if result.reason == RejectReason.REVOKED:
            raise CodeRevokedError(normalize_code(code))
        return self._codes[normalize_code(code)]

    # -------------------
    # Generation
    # -------------------

    def _fresh_code(self, taken: set) -> str:
        for _ in range(self.max_attempts):
            code = normalize_code(self.generator(self.code_length))
            if code not in taken:
                taken.add(code)
                return code
        raise CollisionExhaustedError(self.max_attempts)

    async def _insert_generated(self, names: List[Optional[str]]) -> List[AccessCode]:
        now = datetime.now(timezone.utc)
        taken = set(self._codes)
        items = [AccessCode(code=self._fresh_code(taken), name=name or "", created_at=now) for name in names]

        for attempt in range(1, self.max_attempts + 1):
            try:
                await run_in_threadpool(self.storage.insert_codes, [i.model_dump(mode="json") for i in items])
                break
            except DuplicateCodeError as e:
                # another writer got there first; swap out only the colliding codes
                logger.warning(f"Generated code collision on attempt {attempt}: {e.codes}")
                taken.update(e.codes)
                items = [i.model_copy(update={"code": self._fresh_code(taken)}) if i.code in e.codes else i
                         for i in items]
        else:
            raise CollisionExhaustedError(self.max_attempts)

        for item in items:
            self._codes[item.code] = item
        return items

    async def generate_one(self, name: Optional[str] = None) -> str:
        async with self._lock:
            items = await self._insert_generated([clean_name(name) or None])
        logger.info(f"Generated access code {items[0].code}")
        return items[0].code

    async def generate_bulk(self, n: int, names: Optional[Sequence[Optional[str]]] = None) -> List[str]:
        if not 1 <= n <= self.bulk_max:
            raise MalformedInputError(f"Bulk size must be between 1 and {self.bulk_max}, got {n}")
        resolved = resolve_bulk_names(n, names)
        async with self._lock:
            items = await self._insert_generated(resolved)
        logger.info(f"Generated {len(items)} access codes")
        return [item.code for item in items]

    # -------------------
    # Import
    # -------------------

    async def import_many(self, items: Iterable[Union[CodeImportItem, dict]]) -> Dict[str, int]:
        """
        Upsert uploaded codes: new codes are inserted active, existing codes only
        get their name replaced. A code repeated in the batch keeps its first name.
        Rows that are not code items or have no code are skipped and counted.
        """
        batch: Dict[str, Optional[str]] = {}
        skipped = 0
        for raw in items:
            try:
                item = raw if isinstance(raw, CodeImportItem) else CodeImportItem.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed import row {raw!r}: {e.error_count()} error(s)")
                skipped += 1
                continue
            code = normalize_code(item.code)
            if not code:
                skipped += 1
                continue
            if code not in batch:
                batch[code] = clean_name(item.name)

        async with self._lock:
            now = datetime.now(timezone.utc)
            new_codes = [code for code in batch if code not in self._codes]
            for _ in range(self.max_attempts):
                inserts = [AccessCode(code=code, name=batch[code] or "", created_at=now) for code in new_codes]
                updates = {code: {"name": name} for code, name in batch.items()
                           if code not in new_codes and name is not None}
                try:
                    updated = await run_in_threadpool(self.storage.apply_code_changes,
                                                      [i.model_dump(mode="json") for i in inserts], updates)
                    break
                except DuplicateCodeError as e:
                    # stored by someone else since we loaded; treat those as existing
                    new_codes = [code for code in new_codes if code not in e.codes]
            else:
                raise CollisionExhaustedError(self.max_attempts)

            for item in inserts:
                self._codes[item.code] = item
            for record in updated:
                self._codes[record["code"]] = AccessCode(**record)

        logger.info(f"Imported {len(inserts)} new and {len(updated)} existing code(s), skipped {skipped}")
        return {"inserted": len(inserts), "updated": len(updated), "skipped": skipped}

    # -------------------
    # Naming
    # -------------------

    async def _write_updates(self, updates: Dict[str, dict]) -> int:
        if not updates:
            return 0
        updated = await run_in_threadpool(self.storage.update_codes, updates)
        for record in updated:
            self._codes[record["code"]] = AccessCode(**record)
        return len(updated)

    async def set_name(self, code: str, name: Optional[str] = None):
        name = clean_name(name)
        if name is None:
            return
        async with self._lock:
            count = await self._write_updates({normalize_code(code): {"name": name}})
        if not count:
            logger.info(f"Rename skipped, code {normalize_code(code)} does not exist")

    async def set_names_bulk(self, codes: Sequence[str], names: Sequence[Optional[str]], overwrite: bool = True) -> int:
        """
        Pair codes with names by position. With overwrite off, codes that already
        carry a name keep it. Returns how many codes were renamed.
        """
        if len(codes) != len(names):
            logger.warning(f"Bulk rename got {len(codes)} codes and {len(names)} names, pairing the shorter list")
        wanted: Dict[str, str] = {}
        for code, name in zip(codes, names):
            name = clean_name(name)
            if name is not None:
                wanted[normalize_code(code)] = name

        async with self._lock:
            updates = {}
            for code, name in wanted.items():
                current = self._codes.get(code)
                if current is None:
                    continue
                if not overwrite and current.name:
                    continue
                updates[code] = {"name": name}
            return await self._write_updates(updates)

    async def upsert_names(self, pairs: Iterable[Union[CodeImportItem, dict]]) -> int:
        """Rename codes that already exist, ignoring unknown ones"""
        codes, names = [], []
        for raw in pairs:
            item = raw if isinstance(raw, CodeImportItem) else CodeImportItem(**raw)
            codes.append(item.code)
            names.append(item.name if item.name is not None else "")
        return await self.set_names_bulk(codes, names, overwrite=True)

    # -------------------
    # Status and removal
    # -------------------

    async def set_status(self, code: str, status: CodeStatus):
        key = normalize_code(code)
        status = CodeStatus(status)
        async with self._lock:
            current = self._codes.get(key)
            if current is not None and current.status == status:
                return
            count = await self._write_updates({key: {"status": status.value}})
        if count:
            logger.info(f"Access code {key} is now {status.value}")

    async def revoke(self, code: str):
        await self.set_status(code, CodeStatus.REVOKED)

    async def activate(self, code: str):
        await self.set_status(code, CodeStatus.ACTIVE)

    async def remove_many(self, codes: Iterable[str]) -> int:
        keys = {normalize_code(code) for code in codes}
        keys.discard("")
        if not keys:
            return 0
        async with self._lock:
            deleted = await run_in_threadpool(self.storage.delete_codes, keys)
            for key in keys:
                self._codes.pop(key, None)
        return len(deleted)

    # -------------------
    # Export
    # -------------------

    def export_csv(self, codes: Optional[Iterable[str]] = None, include_names: bool = True) -> str:
        if codes is None:
            items = self.list_codes()
        else:
            items = [item for item in (self.find(code) for code in codes) if item is not None]
        return export_codes_csv(items, include_names=include_names)
