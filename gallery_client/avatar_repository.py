"""
Avatar list and cache persistence for the VRChat Avatar Gallery.

This module owns the two data files: the tracked ID list (one avatar ID per
line) and the JSON metadata cache. It also runs the sequential full refresh
and the add/remove operations that keep both files in step.
"""

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Optional, List, Callable, Awaitable

from gallery_client.id_validator import is_valid_avatar_id
from gallery_shared.exceptions import ErrorCode, PersistenceError
from gallery_shared.logging_config import AuditLogger, OperationLogger, record_error
from gallery_shared.models import AvatarRecord, AddOutcome, OutcomeKind, RefreshSummary

logger = logging.getLogger(__name__)

FetchFn = Callable[[str], Awaitable[Optional[AvatarRecord]]]
ProgressFn = Callable[[int, int, str, bool], None]

INVALID_ID_MESSAGE = (
    "Invalid avatar ID. Must start with 'avtr_' followed by a UUID, "
    "e.g. avtr_5f2a3b4c-1d2e-3f4a-5b6c-7d8e9f0a1b2c"
)


class AvatarRepository:
    """
    Tracked avatar IDs plus their cached metadata.

    The in-memory record list is the source of truth once loaded; every
    mutation writes the ID list and the cache back to disk.
    """

    def __init__(self, ids_file: Path, cache_file: Path):
        self.ids_file = Path(ids_file)
        self.cache_file = Path(cache_file)
        self.audit = AuditLogger()
        self.operations = OperationLogger()

        self._records: List[AvatarRecord] = []

        logger.info(f"Avatar repository initialized: {self.ids_file}, {self.cache_file}")

    @property
    def records(self) -> List[AvatarRecord]:
        return list(self._records)

    @property
    def tracked_ids(self) -> List[str]:
        return [record.id for record in self._records]

    def _write_atomic(self, path: Path, text: str) -> bool:
        """Write to a temporary file first, then rename over the target."""
        temp_file = path.with_suffix(path.suffix + '.tmp')
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, 'w', encoding='utf-8') as f:
                f.write(text)
            temp_file.replace(path)
            return True
        except OSError as e:
            record_error(logger, PersistenceError(
                f"Failed to write {path.name}: {e}", ErrorCode.PERSISTENCE_WRITE_FAILED,
                path=str(path), cause=e
            ))
            temp_file.unlink(missing_ok=True)
            return False

    def load_tracked_ids(self) -> List[str]:
        """
        Read the tracked ID list.

        Lines are trimmed; blank and malformed lines are skipped. File order is
        kept and duplicates are not removed.

        Returns:
            Valid IDs, or [] if the file is missing or unreadable
        """
        if not self.ids_file.exists():
            logger.debug(f"ID list does not exist: {self.ids_file}")
            return []

        try:
            raw = self.ids_file.read_bytes()
        except OSError as e:
            record_error(logger, PersistenceError(
                f"Failed to read ID list: {e}", ErrorCode.PERSISTENCE_READ_FAILED,
                path=str(self.ids_file), cause=e
            ), level=logging.WARNING)
            return []

        # undecodable bytes become U+FFFD, so only the damaged line fails validation
        lines = raw.decode('utf-8', errors='replace').splitlines()

        ids = []
        for line in lines:
            candidate = line.strip()
            if not candidate:
                continue
            if is_valid_avatar_id(candidate):
                ids.append(candidate)
            else:
                logger.warning(f"Skipping malformed avatar ID in {self.ids_file.name}: {candidate!r}")
        return ids

    def save_tracked_ids(self, ids: List[str]) -> bool:
        """Overwrite the ID list, one ID per line."""
        text = ''.join(f"{avatar_id}\n" for avatar_id in ids)
        return self._write_atomic(self.ids_file, text)

    def load_cache(self) -> Optional[List[AvatarRecord]]:
        """
        Read the metadata cache.

        Returns:
            The cached records, or None if the cache is missing or unusable
        """
        if not self.cache_file.exists():
            logger.debug(f"Cache does not exist: {self.cache_file}")
            return None

        try:
            with open(self.cache_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except OSError as e:
            self._cache_unusable(f"Failed to read avatar cache: {e}", ErrorCode.PERSISTENCE_READ_FAILED, e)
            return None
        except ValueError as e:
            self._cache_unusable(f"Avatar cache is not valid JSON: {e}", ErrorCode.PERSISTENCE_CORRUPT_DATA, e)
            return None

        if not isinstance(data, list):
            self._cache_unusable("Avatar cache is not a list; ignoring it", ErrorCode.PERSISTENCE_CORRUPT_DATA)
            return None

        records = []
        for entry in data:
            try:
                record = AvatarRecord.from_api(entry)
            except ValueError as e:
                logger.warning(f"Skipping malformed cache entry: {e}")
                continue
            if not is_valid_avatar_id(record.id):
                logger.warning(f"Skipping cache entry with malformed ID: {record.id!r}")
                continue
            records.append(record)

        logger.debug(f"Loaded {len(records)} avatars from cache")
        return records

    def _cache_unusable(self, message: str, code: ErrorCode, cause: Optional[Exception] = None) -> None:
        error = PersistenceError(message, code, path=str(self.cache_file), cause=cause)
        record_error(logger, error, level=logging.WARNING)

    def save_cache(self, records: List[AvatarRecord]) -> bool:
        """Overwrite the cache with the given records."""
        payload = json.dumps([record.to_dict() for record in records], indent=2)
        return self._write_atomic(self.cache_file, payload)

    async def refresh_all(
        self,
        ids: List[str],
        fetch_fn: FetchFn,
        progress: Optional[ProgressFn] = None
    ) -> RefreshSummary:
        """
        Fetch every ID in order and replace the cache with the results.

        Fetches run one at a time. IDs whose fetch fails are counted and left
        out of the new record list.

        Args:
            ids: IDs to fetch, in display order
            fetch_fn: Awaitable fetch returning a record or None
            progress: Called after each fetch with (index, total, avatar_id, ok)

        Returns:
            RefreshSummary with the new records and the success/failure counts
        """
        operation_id = str(uuid.uuid4())
        total = len(ids)
        start = time.monotonic()
        self.operations.log_operation_start('refresh_all', operation_id, {'total': total})

        records: List[AvatarRecord] = []
        fail_count = 0
        for index, avatar_id in enumerate(ids, start=1):
            try:
                record = await fetch_fn(avatar_id)
            except Exception as e:
                record_error(logger, e, context={'avatar_id': avatar_id}, resource_id=avatar_id)
                record = None

            if record is not None:
                records.append(record)
            else:
                fail_count += 1

            self.operations.log_operation_progress(
                operation_id,
                'fetching',
                progress_percentage=int(index * 100 / total),
                current_action=f"{index}/{total} {avatar_id}"
            )
            if progress:
                try:
                    progress(index, total, avatar_id, record is not None)
                except Exception as e:
                    logger.error(f"Error in refresh progress callback: {e}")

        self._records = records
        self.save_cache(records)

        summary = RefreshSummary(records=list(records), ok_count=len(records), fail_count=fail_count)
        self.operations.log_operation_complete(
            operation_id,
            success=fail_count == 0,
            duration_seconds=time.monotonic() - start,
            result_summary=summary.message
        )
        return summary

    async def load_cache_or_refresh(
        self,
        fetch_fn: FetchFn,
        progress: Optional[ProgressFn] = None
    ) -> RefreshSummary:
        """
        Startup path: use the cache when it is readable, otherwise refresh from the ID list.
        """
        cached = self.load_cache()
        if cached is not None:
            self._records = cached
            logger.info(f"Loaded {len(cached)} avatars from cache")
            return RefreshSummary(records=list(cached), ok_count=len(cached), fail_count=0, from_cache=True)

        logger.info("No usable cache, fetching all tracked avatars")
        return await self.refresh_all(self.load_tracked_ids(), fetch_fn, progress)

    def _find_index(self, avatar_id: str) -> Optional[int]:
        wanted = avatar_id.lower()
        for index, record in enumerate(self._records):
            if record.id.lower() == wanted:
                return index
        return None

    async def add(self, avatar_id: str, fetch_fn: FetchFn) -> AddOutcome:
        """
        Validate, fetch and start tracking one avatar.

        Args:
            avatar_id: Raw user input; surrounding whitespace is ignored
            fetch_fn: Awaitable fetch returning a record or None

        Returns:
            AddOutcome tagged SUCCESS, VALIDATION_ERROR or TRANSPORT_ERROR
        """
        candidate = avatar_id.strip() if isinstance(avatar_id, str) else ""

        if not is_valid_avatar_id(candidate):
            return AddOutcome(
                kind=OutcomeKind.VALIDATION_ERROR,
                message=INVALID_ID_MESSAGE,
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT
            )

        if self._find_index(candidate) is not None:
            return AddOutcome(
                kind=OutcomeKind.VALIDATION_ERROR,
                message="Avatar already in list.",
                error_code=ErrorCode.VALIDATION_DUPLICATE_VALUE
            )

        try:
            record = await fetch_fn(candidate)
        except Exception as e:
            record_error(logger, e, context={'avatar_id': candidate}, resource_id=candidate, audit=self.audit)
            record = None

        if record is None:
            self.audit.log_avatar_change('add', candidate, result='failure')
            return AddOutcome(
                kind=OutcomeKind.TRANSPORT_ERROR,
                message="Could not fetch avatar (check ID or session).",
                error_code=ErrorCode.NETWORK_HTTP_STATUS
            )

        self._records.append(record)
        self.save_tracked_ids(self.tracked_ids)
        self.save_cache(self._records)
        self.audit.log_avatar_change('add', record.id)
        return AddOutcome(kind=OutcomeKind.SUCCESS, record=record, message=f"Added {record.name or record.id}")

    def remove(self, avatar_id: str) -> bool:
        """
        Stop tracking an avatar (case-insensitive match).

        Returns:
            False if the ID was not tracked; nothing is written in that case
        """
        if not isinstance(avatar_id, str) or not avatar_id.strip():
            return False

        index = self._find_index(avatar_id.strip())
        if index is None:
            return False

        removed = self._records.pop(index)
        self.save_tracked_ids(self.tracked_ids)
        self.save_cache(self._records)
        self.audit.log_avatar_change('remove', removed.id)
        return True
