"""
Board service: CRUD and reordering for boards and cards.

Every operation works on one context. Reads go through an explicit
BoardCache owned by the service; writes validate, re-densify orders,
persist and then refresh the cache.

Mutations are applied to a working copy of the cached set, so a failed
save (validation or storage) never leaves the cache half-updated.

Operations on the same context are serialized by a per-context lock held
across the whole load -> mutate -> save sequence. The lock is re-entrant
for the task holding it, so callers can wrap several service calls in
`async with service.lock(context):`.
"""
import asyncio
import copy
import json
import logging
from typing import Awaitable, Dict, Iterable, List, Optional, TypeVar

from .errors import (
    ArgumentError,
    BoardNotFoundError,
    BoardStoreError,
    CardNotFoundError,
    StorageError,
    ValidationError,
)
from .schema import DEFAULT_BOARD_TITLES, Board, BoardSet, Card, default_board_set
from .storage import DATA_PREFIX, Storage, data_key
from .validation import (
    check_board_title,
    check_card_title,
    check_description,
    has_board_list,
    validate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _require(value: Optional[str], name: str) -> str:
    if value is None or not str(value).strip():
        raise ArgumentError(f"{name} must not be blank")
    return value


class BoardCache:
    """Per-context board sets kept for the lifetime of a service."""

    def __init__(self):
        self._entries: Dict[str, BoardSet] = {}

    def get(self, context: str) -> Optional[BoardSet]:
        return self._entries.get(context)

    def put(self, context: str, data: BoardSet) -> None:
        self._entries[context] = data

    def invalidate(self, context: str) -> None:
        self._entries.pop(context, None)

    def clear(self) -> None:
        self._entries.clear()

    def contexts(self) -> List[str]:
        return list(self._entries.keys())

    def __contains__(self, context: str) -> bool:
        return context in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ContextLock:
    """asyncio.Lock that the owning task may re-acquire."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None
        self._depth = 0

    async def __aenter__(self) -> "ContextLock":
        task = asyncio.current_task()
        if self._owner is not None and self._owner is task:
            self._depth += 1
            return self
        await self._lock.acquire()
        self._owner = task
        self._depth = 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
            self._lock.release()


class BoardService:
    """Boards and cards of every context, persisted through a Storage backend."""

    def __init__(
        self,
        storage: Storage,
        cache: Optional[BoardCache] = None,
        default_titles: Optional[Iterable[str]] = None,
    ):
        self.storage = storage
        self.cache = cache if cache is not None else BoardCache()
        self.default_titles = tuple(default_titles or DEFAULT_BOARD_TITLES)
        self._locks: Dict[str, ContextLock] = {}

    def lock(self, context: str) -> ContextLock:
        """The lock guarding one context's load/save sequences."""
        if context not in self._locks:
            self._locks[context] = ContextLock()
        return self._locks[context]

    # ──────────────────────────────────────────
    # Storage access
    # ──────────────────────────────────────────

    async def _call(self, operation: str, context: Optional[str], pending: Awaitable[T]) -> T:
        """Await a backend call, wrapping anything that is not ours in StorageError."""
        try:
            return await pending
        except BoardStoreError:
            raise
        except Exception as e:
            raise StorageError(
                f"Unexpected error during {operation} for context '{context}': {e}",
                operation=operation,
                context=context,
            ) from e

    async def fetch_raw(self, context: str) -> Optional[dict]:
        """
        Read and decode the stored set without any normalization.

        Returns None when nothing is stored. Raises StorageError when the
        stored value is not a JSON object with a "boards" list.
        """
        _require(context, "context")
        raw = await self._call("load", context, self.storage.get(data_key(context)))
        if not raw:
            return None
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(
                f"Stored data for context '{context}' is not valid JSON: {e.msg}",
                operation="load",
                context=context,
            ) from e
        if not isinstance(decoded, dict):
            raise StorageError(
                f"Stored data for context '{context}' is not a JSON object",
                operation="load",
                context=context,
            )
        if not has_board_list(decoded):
            raise StorageError(
                f"Stored data for context '{context}' has no boards list",
                operation="load",
                context=context,
            )
        return decoded

    async def fetch(self, context: str) -> Optional[BoardSet]:
        """Stored set for a context, bypassing cache, defaults and normalization."""
        decoded = await self.fetch_raw(context)
        if decoded is None:
            return None
        return BoardSet.from_dict(decoded)

    async def write_raw(self, context: str, value: Optional[str]) -> None:
        """Put a previously read stored value back (None removes it). Drops the cache entry."""
        _require(context, "context")
        async with self.lock(context):
            if value is None:
                await self._call("remove", context, self.storage.remove(data_key(context)))
            else:
                await self._call("save", context, self.storage.set(data_key(context), value))
            self.cache.invalidate(context)

    async def read_raw(self, context: str) -> Optional[str]:
        _require(context, "context")
        return await self._call("load", context, self.storage.get(data_key(context)))

    async def remove(self, context: str) -> None:
        """Delete a context's stored data and forget its cache entry."""
        await self.write_raw(context, None)

    async def contexts(self) -> List[str]:
        """Every context with stored data."""
        keys = await self._call("list_keys", None, self.storage.list_keys())
        return [
            k[len(DATA_PREFIX):]
            for k in keys
            if k.startswith(DATA_PREFIX) and k[len(DATA_PREFIX):].strip()
        ]

    def invalidate(self, context: Optional[str] = None) -> None:
        """Forget one context's cache entry, or all of them."""
        if context is None:
            self.cache.clear()
        else:
            self.cache.invalidate(context)

    # ──────────────────────────────────────────
    # Load / save
    # ──────────────────────────────────────────

    async def load_data(self, context: str) -> BoardSet:
        """
        Board set for a context.

        Cache hit returns immediately. Otherwise reads storage, falls back to
        the default boards when nothing is stored, normalizes the set if it
        fails validation, and caches it.
        """
        _require(context, "context")
        async with self.lock(context):
            cached = self.cache.get(context)
            if cached is not None:
                return cached

            try:
                data = await self.fetch(context)
            except BoardStoreError:
                raise
            except Exception as e:
                raise StorageError(
                    f"Unexpected error loading context '{context}': {e}",
                    operation="load",
                    context=context,
                ) from e

            if data is None:
                logger.info(f"No stored data for context '{context}', using default boards")
                data = default_board_set(context, self.default_titles)

            data.context = context
            if not validate(data).valid:
                data.normalize_orders()
                for board in data.boards:
                    for card in board.cards:
                        card.board_id = board.id
                remaining = validate(data)
                if not remaining.valid:
                    logger.warning(
                        f"Context '{context}' still has {len(remaining.errors)} issue(s) after "
                        f"normalization: {'; '.join(remaining.messages)}"
                    )

            self.cache.put(context, data)
            return data

    async def save_data(self, data: BoardSet) -> None:
        """
        Validate and persist a set.

        Rejects with ValidationError listing every structural violation;
        never repairs. On success refreshes last_modified, re-densifies
        orders, persists and updates the cache.
        """
        if data is None:
            raise ArgumentError("data must not be None")
        context = _require(data.context, "context")

        result = validate(data, check_orders=False)
        if not result.valid:
            logger.warning(f"Rejected save for context '{context}': {'; '.join(result.messages)}")
            raise ValidationError(result.errors)

        async with self.lock(context):
            data.touch()
            data.normalize_orders()
            payload = json.dumps(data.to_dict(), ensure_ascii=False)
            await self._call("save", context, self.storage.set(data_key(context), payload))
            self.cache.put(context, data)

    async def _working_copy(self, context: str) -> BoardSet:
        return copy.deepcopy(await self.load_data(context))

    # ──────────────────────────────────────────
    # Boards
    # ──────────────────────────────────────────

    async def get_board(self, context: str, board_id: str) -> Board:
        data = await self.load_data(context)
        board = data.get_board(board_id)
        if board is None:
            raise BoardNotFoundError(board_id)
        return board

    async def create_board(self, context: str, title: str) -> Board:
        _require(context, "context")
        clean = check_board_title(title)
        async with self.lock(context):
            data = await self._working_copy(context)
            board = Board(title=clean, order=len(data.boards))
            data.boards.append(board)
            await self.save_data(data)
        logger.info(f"Created board {board.id} '{clean}' in context '{context}'")
        return board

    async def delete_board(self, context: str, board_id: str) -> None:
        """Remove a board together with all of its cards."""
        _require(context, "context")
        _require(board_id, "board_id")
        async with self.lock(context):
            data = await self._working_copy(context)
            board = data.get_board(board_id)
            if board is None:
                raise BoardNotFoundError(board_id)
            data.boards = [b for b in data.boards if b is not board]
            data.normalize_orders()
            await self.save_data(data)
        logger.info(f"Deleted board {board_id} ({len(board.cards)} cards) in context '{context}'")

    async def move_board(self, context: str, board_id: str, new_order: int) -> None:
        """Move a board to position new_order, clamped to the end of the list."""
        _require(context, "context")
        _require(board_id, "board_id")
        if new_order < 0:
            raise ArgumentError(f"new_order must be non-negative, got {new_order}")
        async with self.lock(context):
            data = await self._working_copy(context)
            data.normalize_orders()
            board = data.get_board(board_id)
            if board is None:
                raise BoardNotFoundError(board_id)

            boards = [b for b in data.boards if b is not board]
            boards.insert(min(new_order, len(boards)), board)
            data.boards = boards
            board.touch()
            data.renumber()
            await self.save_data(data)

    async def update_board_title(self, context: str, board_id: str, new_title: str) -> None:
        _require(context, "context")
        _require(board_id, "board_id")
        clean = check_board_title(new_title)
        async with self.lock(context):
            data = await self._working_copy(context)
            board = data.get_board(board_id)
            if board is None:
                raise BoardNotFoundError(board_id)
            board.title = clean
            board.touch()
            await self.save_data(data)

    # ──────────────────────────────────────────
    # Cards
    # ──────────────────────────────────────────

    async def get_card(self, context: str, card_id: str) -> Card:
        data = await self.load_data(context)
        card = data.get_card(card_id)
        if card is None:
            raise CardNotFoundError(card_id)
        return card

    async def create_card(self, context: str, board_id: str, title: str, description: str = "") -> Card:
        _require(context, "context")
        _require(board_id, "board_id")
        clean = check_card_title(title)
        clean_description = check_description(description)
        async with self.lock(context):
            data = await self._working_copy(context)
            board = data.get_board(board_id)
            if board is None:
                raise BoardNotFoundError(board_id)
            card = Card(
                title=clean,
                description=clean_description,
                board_id=board.id,
                order=len(board.cards),
            )
            board.cards.append(card)
            board.touch()
            await self.save_data(data)
        logger.info(f"Created card {card.id} on board {board_id} in context '{context}'")
        return card

    async def delete_card(self, context: str, card_id: str) -> None:
        _require(context, "context")
        _require(card_id, "card_id")
        async with self.lock(context):
            data = await self._working_copy(context)
            board = data.owner_of(card_id)
            if board is None:
                raise CardNotFoundError(card_id)
            board.cards = [c for c in board.cards if c.id != card_id]
            board.touch()
            data.normalize_orders()
            await self.save_data(data)

    async def move_card(self, context: str, card_id: str, target_board_id: str, new_order: int) -> None:
        """
        Move a card to position new_order on the target board.

        new_order is clamped to [0, len(target.cards)]; an index at or past
        the end appends. Orders of every board are re-densified afterwards.
        """
        _require(context, "context")
        _require(card_id, "card_id")
        _require(target_board_id, "target_board_id")
        if new_order < 0:
            raise ArgumentError(f"new_order must be non-negative, got {new_order}")
        async with self.lock(context):
            data = await self._working_copy(context)
            data.normalize_orders()
            source = data.owner_of(card_id)
            if source is None:
                raise CardNotFoundError(card_id)
            target = data.get_board(target_board_id)
            if target is None:
                raise BoardNotFoundError(target_board_id)

            card = source.get_card(card_id)
            source.cards = [c for c in source.cards if c is not card]
            source.touch()

            target.cards.insert(min(new_order, len(target.cards)), card)
            card.board_id = target.id
            card.touch()
            target.touch()

            data.renumber()
            await self.save_data(data)

    async def update_card_title(self, context: str, card_id: str, new_title: str) -> None:
        _require(context, "context")
        _require(card_id, "card_id")
        clean = check_card_title(new_title)
        async with self.lock(context):
            data = await self._working_copy(context)
            board = data.owner_of(card_id)
            if board is None:
                raise CardNotFoundError(card_id)
            card = board.get_card(card_id)
            card.title = clean
            card.touch()
            board.touch()
            await self.save_data(data)

    async def update_card_description(self, context: str, card_id: str, new_description: Optional[str]) -> None:
        _require(context, "context")
        _require(card_id, "card_id")
        clean = check_description(new_description)
        async with self.lock(context):
            data = await self._working_copy(context)
            board = data.owner_of(card_id)
            if board is None:
                raise CardNotFoundError(card_id)
            card = board.get_card(card_id)
            card.description = clean
            card.touch()
            board.touch()
            await self.save_data(data)
