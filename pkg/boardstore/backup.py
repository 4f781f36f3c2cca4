"""
Backup, restore, export and import of board sets.

A backup is a JSON envelope {context, data, backupDate, version} for one
context; an export is {exportDate, version, contexts} for all of them.
Incoming envelopes are parsed by version (see payloads.py) and their
board sets repaired when they fail validation before being saved.

import_all is all-or-nothing: every context is prepared before anything
is written, and if a write fails the contexts already written are put
back to their previous stored values.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import ArgumentError, BoardStoreError, InvalidOperationError, StorageError
from .payloads import BackupPayload, ExportPayload, parse_backup, parse_export
from .schema import BoardSet, parse_timestamp, utc_now
from .service import BoardService
from .storage import BACKUP_PREFIX, claim_key, parse_stamped_key
from .validation import has_board_list, has_usable_boards, repair, validate

logger = logging.getLogger(__name__)


@dataclass
class StoredBackup:
    """A backup found in storage, regular or emergency."""
    key: str
    kind: str                         # "regular" or "emergency"
    created: datetime                 # stamp embedded in the key
    data: Dict[str, Any]              # raw board set, not yet repaired
    last_modified: Optional[datetime] = None

    @property
    def effective_time(self) -> datetime:
        return self.last_modified or self.created


def _prepare(context: str, raw: Dict[str, Any]) -> BoardSet:
    """
    Stamp an incoming board set with its target context; repair it if invalid.

    Raises InvalidOperationError when the set has no boards list, or is
    invalid and none of its boards would survive repair.
    """
    if not has_board_list(raw):
        raise InvalidOperationError(f"Incoming data for context '{context}' has no boards list")
    data = BoardSet.from_dict(raw)
    data.context = context
    result = validate(data)
    if not result.valid:
        if not has_usable_boards(raw):
            raise InvalidOperationError(
                f"Incoming data for context '{context}' is corrupted: no usable boards"
            )
        logger.warning(
            f"Incoming data for context '{context}' has {len(result.errors)} issue(s), repairing"
        )
        data = repair(raw, context=context)
    data.touch()
    return data


class BackupService:
    """Creates and restores backups on top of a BoardService."""

    def __init__(self, service: BoardService):
        self.service = service
        self.storage = service.storage

    async def available_contexts(self) -> List[str]:
        return await self.service.contexts()

    # ──────────────────────────────────────────
    # Single context
    # ──────────────────────────────────────────

    async def create_backup(self, context: str) -> str:
        """Serialized snapshot of one context's current board set."""
        if not context or not context.strip():
            raise ArgumentError("context must not be blank")
        data = await self.service.load_data(context)
        payload = BackupPayload(context=context, data=data.to_dict(), backup_date=utc_now())
        logger.info(f"Created backup of context '{context}' ({len(data.boards)} boards)")
        return payload.to_json()

    async def restore_backup(self, context: str, snapshot: str) -> BoardSet:
        """
        Replace a context's data with a backup.

        Raises InvalidOperationError when the snapshot is missing, corrupt
        or of an unknown version.
        """
        if not context or not context.strip():
            raise ArgumentError("context must not be blank")
        payload = parse_backup(snapshot)
        data = _prepare(context, payload.data)
        await self.service.save_data(data)
        logger.info(
            f"Restored backup of '{payload.context}' taken {payload.backup_date.isoformat()} "
            f"into context '{context}'"
        )
        return data

    async def save_backup(self, context: str) -> str:
        """Store a regular backup under a timestamped key and return the key."""
        snapshot = await self.create_backup(context)
        key = await claim_key(self.storage, BACKUP_PREFIX, context, utc_now())
        try:
            await self.storage.set(key, snapshot)
        except BoardStoreError:
            raise
        except Exception as e:
            raise StorageError(f"Cannot store backup {key}: {e}", operation="backup", context=context) from e
        logger.info(f"Stored backup {key}")
        return key

    async def list_backups(self, context: str) -> List[StoredBackup]:
        """Regular backups stored for a context, newest first. Unreadable ones are skipped."""
        backups: List[StoredBackup] = []
        for key in await self.storage.list_keys():
            created = parse_stamped_key(key, BACKUP_PREFIX, context)
            if created is None:
                continue
            try:
                payload = parse_backup(await self.storage.get(key) or "")
            except InvalidOperationError as e:
                logger.warning(f"Skipping unreadable backup {key}: {e}")
                continue
            backups.append(StoredBackup(
                key=key,
                kind="regular",
                created=created,
                data=payload.data,
                last_modified=parse_timestamp(payload.data.get("lastModified")) or parse_timestamp(payload.backup_date),
            ))
        backups.sort(key=lambda b: b.effective_time, reverse=True)
        return backups

    # ──────────────────────────────────────────
    # All contexts
    # ──────────────────────────────────────────

    async def export_all(self) -> str:
        """Serialized map of context -> board set for every stored context."""
        contexts: Dict[str, Dict[str, Any]] = {}
        for context in await self.available_contexts():
            data = await self.service.load_data(context)
            contexts[context] = data.to_dict()
        payload = ExportPayload(export_date=utc_now(), contexts=contexts)
        logger.info(f"Exported {len(contexts)} context(s)")
        return payload.to_json()

    async def import_all(self, snapshot: str) -> List[str]:
        """
        Import every context of an export snapshot, all-or-nothing.

        Returns the imported context names. On a write failure, contexts
        already written are rolled back and StorageError is raised.
        """
        payload = parse_export(snapshot)
        label = f"import snapshot exported {payload.export_date.isoformat()}"

        prepared: List[BoardSet] = []
        for context, raw in payload.contexts.items():
            if not context.strip():
                raise InvalidOperationError(f"The {label} contains a blank context name")
            prepared.append(_prepare(context, raw))

        previous = {d.context: await self.service.read_raw(d.context) for d in prepared}
        written: List[str] = []
        try:
            for data in prepared:
                await self.service.save_data(data)
                written.append(data.context)
        except BoardStoreError as e:
            logger.error(f"The {label} failed after {len(written)} context(s): {e}")
            for context in written:
                try:
                    await self.service.write_raw(context, previous[context])
                except BoardStoreError as rollback_error:
                    logger.error(f"Rollback of context '{context}' failed: {rollback_error}")
            raise StorageError(
                f"The {label} failed and was rolled back: {e}",
                operation="import",
            ) from e

        logger.info(f"Imported {len(written)} context(s) from the {label}")
        return written
