"""
Data recovery for a context whose stored board set is missing or damaged.

recover() walks three tiers and stops at the first that succeeds:

  1. primary   the stored set, repaired if it fails validation
  2. backup    stored backups, newest first, written back as the primary
  3. default   a fresh default set, persisted and snapshotted

Each tier returns an Ok or Failed outcome. Failures of tiers 1 and 2 are
logged and the next tier is tried; a failure of tier 3 is raised.

Emergency backups are raw board set snapshots stored under
emergency_backup_{context}_{yyyyMMdd_HHmmss}. They are taken when
defaults replace lost data and before a point-in-time restore, and
cleanup_old_backups() prunes them by the stamp in their key.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from .backup import BackupService, StoredBackup
from .errors import ArgumentError, BoardStoreError, InvalidOperationError, StorageError
from .feedback import FeedbackBridge
from .schema import BoardSet, default_board_set, parse_timestamp, utc_now
from .service import BoardService
from .storage import EMERGENCY_PREFIX, claim_key, data_key, parse_stamped_key
from .validation import has_usable_boards, repair, validate

logger = logging.getLogger(__name__)

PRIMARY = "primary"
BACKUP = "backup"
DEFAULT = "default"

RECOVERY_OPERATION = "data-recovery"
RESTORE_OPERATION = "restore-backup"

RESTORE_MATCH_WINDOW = timedelta(minutes=1)


@dataclass(frozen=True)
class Ok:
    data: BoardSet
    tier: str


@dataclass(frozen=True)
class Failed:
    tier: str
    reason: str


Outcome = Union[Ok, Failed]


class RecoveryOrchestrator:
    """Recovers, snapshots and restores board sets of a BoardService."""

    def __init__(
        self,
        service: BoardService,
        backups: Optional[BackupService] = None,
        feedback: Optional[FeedbackBridge] = None,
        retention_days: int = 30,
        titles_for: Optional[Callable[[str], List[str]]] = None,
    ):
        self.service = service
        self.storage = service.storage
        self.backups = backups or BackupService(service)
        self.feedback = feedback or FeedbackBridge()
        self.retention_days = retention_days
        self._titles_for = titles_for

    def _default_titles(self, context: str) -> List[str]:
        if self._titles_for is not None:
            return list(self._titles_for(context))
        return list(self.service.default_titles)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Tiers
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _from_primary(self, context: str) -> Outcome:
        try:
            raw = await self.service.fetch_raw(context)
            if raw is None:
                return Failed(PRIMARY, "nothing stored")

            data = BoardSet.from_dict(raw)
            data.context = context
            if validate(data).valid:
                self.service.cache.put(context, data)
                return Ok(data, PRIMARY)

            if not has_usable_boards(raw):
                return Failed(PRIMARY, "stored data has no usable boards")
            repaired = repair(raw, context=context, default_titles=self._default_titles(context))
            await self.service.save_data(repaired)
            return Ok(repaired, PRIMARY)
        except Exception as e:
            return Failed(PRIMARY, str(e))

    async def _from_backups(self, context: str) -> Outcome:
        try:
            candidates = await self.available_backups(context)
        except Exception as e:
            return Failed(BACKUP, f"cannot list backups: {e}")
        if not candidates:
            return Failed(BACKUP, "no backups available")

        await self.feedback.info("Recovering from backup...")
        reasons = []
        for backup in candidates:
            if not has_usable_boards(backup.data):
                reasons.append(f"{backup.key} has no usable boards")
                continue
            try:
                data = repair(backup.data, context=context)
                await self.service.save_data(data)
            except Exception as e:
                reasons.append(f"{backup.key}: {e}")
                continue
            logger.info(f"Recovered context '{context}' from {backup.key}")
            return Ok(data, BACKUP)
        return Failed(BACKUP, "; ".join(reasons))

    async def _from_defaults(self, context: str) -> Ok:
        data = default_board_set(context, self._default_titles(context))
        await self.service.save_data(data)
        await self.create_emergency_backup(data, context)
        return Ok(data, DEFAULT)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Recovery
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def recover(self, context: str) -> Ok:
        """Run the recovery tiers for a context and return the successful outcome."""
        if not context or not context.strip():
            raise ArgumentError("context must not be blank")

        logger.info(f"Starting data recovery for context '{context}'")
        await self.feedback.start_loading("Recovering data...", RECOVERY_OPERATION)
        try:
            async with self.service.lock(context):
                for tier in (self._from_primary, self._from_backups):
                    outcome = await tier(context)
                    if isinstance(outcome, Ok):
                        message = "Data recovered" if outcome.tier == PRIMARY else "Data recovered from backup"
                        await self.feedback.success(f"{message}!")
                        return outcome
                    logger.warning(f"Recovery tier '{outcome.tier}' failed for '{context}': {outcome.reason}")

                logger.warning(f"Creating default data for context '{context}' as a last resort")
                await self.feedback.warning("Creating default data...")
                outcome = await self._from_defaults(context)
                await self.feedback.info("Default data created. You can start using the board.")
                return outcome
        except Exception as e:
            logger.error(f"Critical error recovering context '{context}': {e}")
            await self.feedback.error("Critical error during data recovery.")
            raise
        finally:
            await self.feedback.stop_loading(RECOVERY_OPERATION)

    async def recover_data(self, context: str) -> BoardSet:
        outcome = await self.recover(context)
        return outcome.data

    async def can_recover(self, context: str) -> bool:
        """True if there is stored data or at least one backup to recover from."""
        if await self.storage.contains_key(data_key(context)):
            return True
        return bool(await self.available_backups(context))

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Emergency backups
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _store_emergency(self, context: str, value: str) -> str:
        key = await claim_key(self.storage, EMERGENCY_PREFIX, context, utc_now())
        try:
            await self.storage.set(key, value)
        except BoardStoreError:
            raise
        except Exception as e:
            raise StorageError(
                f"Cannot store emergency backup {key}: {e}", operation="emergency_backup", context=context
            ) from e
        logger.info(f"Stored emergency backup {key}")
        return key

    async def create_emergency_backup(self, data: BoardSet, context: str) -> Optional[str]:
        """Snapshot a set under a fresh emergency key. Returns the key, or None if it could not be stored."""
        try:
            return await self._store_emergency(context, json.dumps(data.to_dict(), ensure_ascii=False))
        except BoardStoreError as e:
            logger.error(f"Emergency backup for context '{context}' failed: {e}")
            return None

    async def _emergency_backups(self, context: str) -> List[StoredBackup]:
        found = []
        for key in await self.storage.list_keys():
            created = parse_stamped_key(key, EMERGENCY_PREFIX, context)
            if created is None:
                continue
            try:
                raw = json.loads(await self.storage.get(key) or "")
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping unreadable emergency backup {key}: {e.msg}")
                continue
            if not isinstance(raw, dict):
                logger.warning(f"Skipping emergency backup {key}: not a JSON object")
                continue
            found.append(StoredBackup(
                key=key,
                kind="emergency",
                created=created,
                data=raw,
                last_modified=parse_timestamp(raw.get("lastModified")),
            ))
        return found

    async def available_backups(self, context: str) -> List[StoredBackup]:
        """Regular and emergency backups of a context, newest first."""
        found = await self.backups.list_backups(context) + await self._emergency_backups(context)
        found.sort(key=lambda b: b.effective_time, reverse=True)
        logger.debug(f"Found {len(found)} backup(s) for context '{context}'")
        return found

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Point-in-time restore / retention
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def restore_from_backup(self, context: str, backup_time: datetime) -> BoardSet:
        """
        Restore the backup whose time is within one minute of backup_time.

        The current stored value is snapshotted as an emergency backup
        first. Raises InvalidOperationError if no backup matches or the
        match has no usable boards.
        """
        if not context or not context.strip():
            raise ArgumentError("context must not be blank")
        target_time = parse_timestamp(backup_time)
        if target_time is None:
            raise ArgumentError(f"backup_time must be a datetime, got {backup_time!r}")

        logger.info(f"Restoring backup from {target_time.isoformat()} for context '{context}'")
        await self.feedback.start_loading("Restoring backup...", RESTORE_OPERATION)
        try:
            async with self.service.lock(context):
                match = next(
                    (b for b in await self.available_backups(context)
                     if abs(b.effective_time - target_time) < RESTORE_MATCH_WINDOW),
                    None,
                )
                if match is None:
                    raise InvalidOperationError(f"No backup found for {target_time.isoformat()}")
                if not has_usable_boards(match.data):
                    raise InvalidOperationError(f"Backup {match.key} is corrupted and cannot be restored")

                data = repair(match.data, context=context)

                current = await self.service.read_raw(context)
                if current:
                    await self._store_emergency(context, current)

                await self.service.save_data(data)
        except Exception as e:
            logger.error(f"Restoring backup for context '{context}' failed: {e}")
            await self.feedback.error(f"Error restoring backup: {e}")
            raise
        finally:
            await self.feedback.stop_loading(RESTORE_OPERATION)

        logger.info(f"Restored {match.key} into context '{context}'")
        await self.feedback.success("Backup restored!")
        return data

    async def cleanup_old_backups(self, context: str, keep_days: Optional[int] = None) -> int:
        """Delete emergency backups of a context older than keep_days. Returns how many were removed."""
        days = self.retention_days if keep_days is None else keep_days
        if days < 0:
            raise ArgumentError(f"keep_days must be non-negative, got {days}")
        cutoff = utc_now() - timedelta(days=days)

        removed = 0
        for key in await self.storage.list_keys():
            created = parse_stamped_key(key, EMERGENCY_PREFIX, context)
            if created is not None and created < cutoff:
                await self.storage.remove(key)
                removed += 1
        logger.info(f"Removed {removed} emergency backup(s) of context '{context}' older than {days} day(s)")
        return removed
