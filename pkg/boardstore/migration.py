"""
Migration of stored board sets and context initialization.

migrate_context() brings a stored set written by an older version up to
the current invariants:
  - re-densifies orders when they have gaps or duplicates
  - points every card's board_id at the board that holds it
  - backfills missing timestamps with a sentinel one day in the past, so
    migrated legacy records stay distinguishable from new ones

It is idempotent and only persists when something changed.
"""
import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .schema import BoardSet, default_board_set, utc_now
from .service import BoardService
from .storage import data_key
from .validation import orders_are_dense, repair, validate

logger = logging.getLogger(__name__)

LEGACY_AGE = timedelta(days=1)


class MigrationService:
    """Upgrades and initializes contexts through a BoardService."""

    def __init__(self, service: BoardService, context_boards: Optional[Mapping[str, Sequence[str]]] = None):
        self.service = service
        # lower-cased context -> board titles used when the context is initialized
        self.context_boards: Dict[str, List[str]] = {
            k.lower(): list(v) for k, v in (context_boards or {}).items()
        }

    def board_titles_for(self, context: str) -> List[str]:
        return self.context_boards.get(context.lower(), list(self.service.default_titles))

    async def initialize_context(self, context: str, custom_boards: Optional[Iterable[str]] = None) -> bool:
        """Create a context's boards if it has no stored data. Returns True if created."""
        async with self.service.lock(context):
            if await self.service.storage.contains_key(data_key(context)):
                return False
            titles = list(custom_boards) if custom_boards else self.board_titles_for(context)
            await self.service.save_data(default_board_set(context, titles))
        logger.info(f"Initialized context '{context}' with boards {titles}")
        return True

    async def clean_and_reinitialize(self, context: str) -> None:
        """Drop a context's stored data and start it over with its default boards."""
        async with self.service.lock(context):
            await self.service.remove(context)
            await self.initialize_context(context)
        logger.warning(f"Context '{context}' was wiped and reinitialized")

    def _migrate(self, data: BoardSet) -> bool:
        changed = False
        sentinel = utc_now() - LEGACY_AGE

        if not orders_are_dense(data):
            data.normalize_orders()
            changed = True

        for board in data.boards:
            for card in board.cards:
                if card.board_id != board.id:
                    card.board_id = board.id
                    card.touch()
                    changed = True

        for entity in [*data.boards, *data.all_cards()]:
            if entity.created_at is None:
                entity.created_at = sentinel
                changed = True
            if entity.last_modified is None:
                entity.last_modified = sentinel
                changed = True

        return changed

    async def migrate_context(self, context: str) -> bool:
        """Migrate one stored context. Returns True if anything was changed and saved."""
        async with self.service.lock(context):
            data = await self.service.fetch(context)
            if data is None:
                logger.info(f"Nothing stored for context '{context}', no migration needed")
                return False

            data.context = context
            changed = self._migrate(data)

            remaining = validate(data)
            if not remaining.valid:
                logger.warning(
                    f"Context '{context}' has issues migration cannot fix "
                    f"({'; '.join(remaining.messages)}), repairing"
                )
                data = repair(data, context=context, missing_timestamp=utc_now() - LEGACY_AGE)
                changed = True

            if changed:
                await self.service.save_data(data)
                logger.info(f"Migrated context '{context}'")
            return changed

    async def migrate_all(self) -> Dict[str, bool]:
        results = {}
        for context in await self.service.contexts():
            results[context] = await self.migrate_context(context)
        return results
