"""
Validation and repair of board sets.

validate() reports every invariant violation in a set without changing it.
repair() rebuilds a consistent set from anything that came out of storage
or a backup, and is the only way untrusted data enters the system.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import ValidationError
from .schema import (
    BOARD_TITLE_MAX,
    CARD_TITLE_MAX,
    DESCRIPTION_MAX,
    Board,
    BoardSet,
    Card,
    default_board_set,
    default_boards,
    make_id,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationIssue:
    """One violation, tagged with the offending entity id when there is one."""
    message: str
    entity_id: Optional[str] = None

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[ValidationIssue] = field(default_factory=list)

    def add(self, message: str, entity_id: Optional[str] = None) -> None:
        self.errors.append(ValidationIssue(message, entity_id))
        self.valid = False

    @property
    def messages(self) -> List[str]:
        return [e.message for e in self.errors]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Single-value checks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _check_title(title: Optional[str], limit: int, kind: str) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValidationError([ValidationIssue(f"{kind} title must not be blank")])
    if len(cleaned) > limit:
        raise ValidationError([
            ValidationIssue(f"{kind} title must be at most {limit} characters, got {len(cleaned)}")
        ])
    return cleaned


def check_board_title(title: Optional[str]) -> str:
    """Return the trimmed title or raise ValidationError."""
    return _check_title(title, BOARD_TITLE_MAX, "Board")


def check_card_title(title: Optional[str]) -> str:
    """Return the trimmed title or raise ValidationError."""
    return _check_title(title, CARD_TITLE_MAX, "Card")


def check_description(description: Optional[str]) -> str:
    cleaned = (description or "").strip()
    if len(cleaned) > DESCRIPTION_MAX:
        raise ValidationError([
            ValidationIssue(
                f"Card description must be at most {DESCRIPTION_MAX} characters, got {len(cleaned)}"
            )
        ])
    return cleaned


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Validation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _check_board(board: Board, result: ValidationResult) -> None:
    label = board.id or "<blank>"
    if not board.id.strip():
        result.add(f"Board '{board.title}' has a blank id")
    if not board.title.strip():
        result.add(f"Board {label} has a blank title", board.id or None)
    elif len(board.title) > BOARD_TITLE_MAX:
        result.add(f"Board {label} title exceeds {BOARD_TITLE_MAX} characters", board.id or None)
    if board.order < 0:
        result.add(f"Board {label} has negative order {board.order}", board.id or None)


def _check_card(card: Card, board: Board, result: ValidationResult) -> None:
    label = card.id or "<blank>"
    entity = card.id or None
    if not card.id.strip():
        result.add(f"Card '{card.title}' on board {board.id} has a blank id")
    if not card.title.strip():
        result.add(f"Card {label} has a blank title", entity)
    elif len(card.title) > CARD_TITLE_MAX:
        result.add(f"Card {label} title exceeds {CARD_TITLE_MAX} characters", entity)
    if len(card.description) > DESCRIPTION_MAX:
        result.add(f"Card {label} description exceeds {DESCRIPTION_MAX} characters", entity)
    if card.order < 0:
        result.add(f"Card {label} has negative order {card.order}", entity)
    if not card.board_id.strip():
        result.add(f"Card {label} has no board reference", entity)
    elif card.board_id != board.id:
        result.add(
            f"Card {label} references board '{card.board_id}' but is held by board '{board.id}'",
            entity,
        )


def _duplicates(ids: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    dupes: List[str] = []
    for i in ids:
        if i in seen and i not in dupes:
            dupes.append(i)
        seen.add(i)
    return dupes


def _is_dense(orders: List[int]) -> bool:
    return sorted(orders) == list(range(len(orders)))


def orders_are_dense(board_set: BoardSet) -> bool:
    if not _is_dense([b.order for b in board_set.boards]):
        return False
    return all(_is_dense([c.order for c in b.cards]) for b in board_set.boards)


def validate(board_set: BoardSet, check_orders: bool = True) -> ValidationResult:
    """
    Check a set against every invariant and report all violations.

    check_orders=False skips the dense-order checks; save_data uses that
    structural variant because it re-densifies orders itself.
    """
    result = ValidationResult()

    if not board_set.context.strip():
        result.add("Context must not be blank")

    for board in board_set.boards:
        _check_board(board, result)
        for card in board.cards:
            _check_card(card, board, result)

    for board_id in _duplicates(b.id for b in board_set.boards):
        result.add(f"Duplicate board id '{board_id}'", board_id)
    for card_id in _duplicates(c.id for c in board_set.all_cards()):
        result.add(f"Duplicate card id '{card_id}'", card_id)

    if check_orders:
        board_orders = [b.order for b in board_set.boards]
        if not _is_dense(board_orders):
            result.add(f"Board orders {sorted(board_orders)} are not a dense 0-based sequence")
        for board in board_set.boards:
            card_orders = [c.order for c in board.cards]
            if not _is_dense(card_orders):
                result.add(
                    f"Card orders {sorted(card_orders)} on board {board.id} are not a dense 0-based sequence",
                    board.id,
                )

    return result


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Repair
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _clean(value: Any, limit: int) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)
    return text.strip()[:limit].rstrip()


def _prior_order(raw: Any) -> Optional[int]:
    value = raw.get("order") if isinstance(raw, Mapping) else None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _in_prior_order(items: Any) -> List[Any]:
    """Stable sort by previous order value; unusable orders go last, ties keep position."""
    if not isinstance(items, list):
        return []

    def key(pair: Tuple[int, Any]) -> Tuple[int, int, int]:
        position, raw = pair
        order = _prior_order(raw)
        if order is None:
            return (1, 0, position)
        return (0, order, position)

    return [raw for _, raw in sorted(enumerate(items), key=key)]


def _claim_id(value: Any, used: Set[str]) -> str:
    candidate = value.strip() if isinstance(value, str) else ""
    if not candidate or candidate in used:
        candidate = make_id()
        while candidate in used:
            candidate = make_id()
    used.add(candidate)
    return candidate


def _repair(
    raw: Any,
    context: Optional[str],
    missing_timestamp: Optional[datetime],
    default_titles: Optional[Iterable[str]],
) -> BoardSet:
    if isinstance(raw, BoardSet):
        raw = raw.to_dict()
    if not isinstance(raw, Mapping):
        logger.warning(f"Repair received {type(raw).__name__}, treating it as empty")
        raw = {}

    now = utc_now()
    fill = missing_timestamp or now
    ctx = (context or "").strip() or _clean(raw.get("context"), 10_000) or "unknown"

    board_ids: Set[str] = set()
    card_ids: Set[str] = set()
    boards: List[Board] = []
    dropped_boards = 0
    dropped_cards = 0

    for raw_board in _in_prior_order(raw.get("boards")):
        title = _clean(raw_board.get("title"), BOARD_TITLE_MAX) if isinstance(raw_board, Mapping) else ""
        if not title:
            dropped_boards += 1
            logger.debug(f"Dropping board without usable title: {raw_board!r:.80}")
            continue

        board = Board(
            id=_claim_id(raw_board.get("id"), board_ids),
            title=title,
            order=len(boards),
            cards=[],
            created_at=parse_timestamp(raw_board.get("createdAt")) or fill,
            last_modified=parse_timestamp(raw_board.get("lastModified")) or fill,
        )

        for raw_card in _in_prior_order(raw_board.get("cards")):
            card_title = _clean(raw_card.get("title"), CARD_TITLE_MAX) if isinstance(raw_card, Mapping) else ""
            if not card_title:
                dropped_cards += 1
                logger.debug(f"Dropping card without usable title: {raw_card!r:.80}")
                continue
            board.cards.append(Card(
                id=_claim_id(raw_card.get("id"), card_ids),
                title=card_title,
                description=_clean(raw_card.get("description"), DESCRIPTION_MAX),
                board_id=board.id,
                order=len(board.cards),
                created_at=parse_timestamp(raw_card.get("createdAt")) or fill,
                last_modified=parse_timestamp(raw_card.get("lastModified")) or fill,
            ))

        boards.append(board)

    if not boards:
        logger.warning(f"No usable boards in data for context '{ctx}', creating defaults")
        boards = default_boards(default_titles)

    repaired = BoardSet(
        context=ctx,
        boards=boards,
        last_modified=parse_timestamp(raw.get("lastModified")) or now,
    )
    logger.info(
        f"Repaired data for context '{ctx}': {len(boards)} boards, "
        f"{repaired.card_count} cards (dropped {dropped_boards} boards, {dropped_cards} cards)"
    )
    return repaired


def repair(
    raw: Any,
    context: Optional[str] = None,
    missing_timestamp: Optional[datetime] = None,
    default_titles: Optional[Iterable[str]] = None,
) -> BoardSet:
    """
    Rebuild a consistent BoardSet from possibly corrupt input.

    Accepts a BoardSet, a raw mapping, or anything else (treated as empty).
    Never raises. The result always passes validate(), and repairing a
    repaired set returns an equal set.

    Args:
        raw: data to repair
        context: context to stamp on the result (default: the raw context)
        missing_timestamp: value for absent timestamps (default: now);
            migration passes a past sentinel to mark legacy records
        default_titles: board titles used if no board survives
    """
    try:
        return _repair(raw, context, missing_timestamp, default_titles)
    except Exception:
        logger.exception("Repair failed on unreadable input, falling back to default boards")
        return default_board_set((context or "").strip() or "unknown", default_titles)


def has_usable_boards(raw: Any) -> bool:
    """True if repair() would keep at least one board of `raw` instead of creating defaults."""
    if isinstance(raw, BoardSet):
        raw = raw.to_dict()
    boards = raw.get("boards") if isinstance(raw, Mapping) else None
    if not isinstance(boards, list):
        return False
    return any(isinstance(b, Mapping) and _clean(b.get("title"), BOARD_TITLE_MAX) for b in boards)


def has_board_list(raw: Any) -> bool:
    """True if a raw stored set has a "boards" list, possibly empty."""
    return isinstance(raw, Mapping) and isinstance(raw.get("boards"), list)
