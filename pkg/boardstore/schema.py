"""
Board set schema.

A context (logical workspace) owns one BoardSet. A BoardSet holds an
ordered list of Boards, and each Board exclusively owns an ordered list
of Cards.

Invariants of a consistent set:
  - board orders are 0..n-1 with no gaps or duplicates
  - card orders are 0..n-1 within each board
  - board ids are unique in the set, card ids unique across the set
  - every card's board_id is the id of the board holding it

Serialized form uses lower-camel-case keys and omits null values.
"""
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

BOARD_TITLE_MAX = 100
CARD_TITLE_MAX = 200
DESCRIPTION_MAX = 1000

DEFAULT_BOARD_TITLES = ("To Do", "In Progress", "Done")

# fromisoformat before 3.11 only takes 3 or 6 fractional digits; .NET writes 7
_FRACTION_RE = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 value into an aware UTC datetime. Unparsable -> None."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _FRACTION_RE.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", text, count=1)
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def coerce_order(value: Any) -> int:
    """Coerce a stored order to int; anything unusable becomes -1 (flagged by validation)."""
    if isinstance(value, bool):
        return -1
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return -1
    return -1


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class Card:
    """A single card on a board."""

    id: str = field(default_factory=make_id)
    title: str = ""
    description: str = ""
    board_id: str = ""
    order: int = 0
    created_at: Optional[datetime] = field(default_factory=utc_now)
    last_modified: Optional[datetime] = field(default_factory=utc_now)

    def touch(self) -> None:
        self.last_modified = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "boardId": self.board_id,
            "order": self.order,
            "createdAt": format_timestamp(self.created_at),
            "lastModified": format_timestamp(self.last_modified),
        })

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Card":
        """Deserialize from dict. Missing timestamps stay None."""
        return cls(
            id=_text(data.get("id")),
            title=_text(data.get("title")),
            description=_text(data.get("description")),
            board_id=_text(data.get("boardId")),
            order=coerce_order(data.get("order")),
            created_at=parse_timestamp(data.get("createdAt")),
            last_modified=parse_timestamp(data.get("lastModified")),
        )


@dataclass
class Board:
    """A board (column) holding an ordered list of cards."""

    id: str = field(default_factory=make_id)
    title: str = ""
    order: int = 0
    cards: List[Card] = field(default_factory=list)
    created_at: Optional[datetime] = field(default_factory=utc_now)
    last_modified: Optional[datetime] = field(default_factory=utc_now)

    def touch(self) -> None:
        self.last_modified = utc_now()

    def get_card(self, card_id: str) -> Optional[Card]:
        for card in self.cards:
            if card.id == card_id:
                return card
        return None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "id": self.id,
            "title": self.title,
            "order": self.order,
            "cards": [c.to_dict() for c in self.cards],
            "createdAt": format_timestamp(self.created_at),
            "lastModified": format_timestamp(self.last_modified),
        })

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Board":
        raw_cards = data.get("cards")
        cards = []
        if isinstance(raw_cards, list):
            cards = [Card.from_dict(c) for c in raw_cards if isinstance(c, Mapping)]
        return cls(
            id=_text(data.get("id")),
            title=_text(data.get("title")),
            order=coerce_order(data.get("order")),
            cards=cards,
            created_at=parse_timestamp(data.get("createdAt")),
            last_modified=parse_timestamp(data.get("lastModified")),
        )


@dataclass
class BoardSet:
    """All boards of one context."""

    context: str = ""
    boards: List[Board] = field(default_factory=list)
    last_modified: Optional[datetime] = field(default_factory=utc_now)

    def touch(self) -> None:
        self.last_modified = utc_now()

    # -------------------- queries --------------------

    def get_board(self, board_id: str) -> Optional[Board]:
        for board in self.boards:
            if board.id == board_id:
                return board
        return None

    def get_card(self, card_id: str) -> Optional[Card]:
        for board in self.boards:
            card = board.get_card(card_id)
            if card is not None:
                return card
        return None

    def owner_of(self, card_id: str) -> Optional[Board]:
        """Return the board that actually holds the card (ignores card.board_id)."""
        for board in self.boards:
            if board.get_card(card_id) is not None:
                return board
        return None

    def all_cards(self) -> List[Card]:
        return [c for b in self.boards for c in b.cards]

    @property
    def card_count(self) -> int:
        return sum(len(b.cards) for b in self.boards)

    # -------------------- ordering --------------------

    def normalize_orders(self) -> None:
        """Re-densify orders, keeping relative order (stable sort on current order)."""
        self.boards.sort(key=lambda b: b.order)
        for board in self.boards:
            board.cards.sort(key=lambda c: c.order)
        self.renumber()

    def renumber(self) -> None:
        """Assign orders from current list positions."""
        for i, board in enumerate(self.boards):
            board.order = i
            for j, card in enumerate(board.cards):
                card.order = j

    # -------------------- serialization --------------------

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "context": self.context,
            "boards": [b.to_dict() for b in self.boards],
            "lastModified": format_timestamp(self.last_modified),
        })

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BoardSet":
        raw_boards = data.get("boards")
        boards = []
        if isinstance(raw_boards, list):
            boards = [Board.from_dict(b) for b in raw_boards if isinstance(b, Mapping)]
        return cls(
            context=_text(data.get("context")),
            boards=boards,
            last_modified=parse_timestamp(data.get("lastModified")),
        )


def default_boards(titles: Optional[Iterable[str]] = None) -> List[Board]:
    now = utc_now()
    return [
        Board(title=title, order=i, created_at=now, last_modified=now)
        for i, title in enumerate(titles or DEFAULT_BOARD_TITLES)
    ]


def default_board_set(context: str, titles: Optional[Iterable[str]] = None) -> BoardSet:
    """The set a context starts with: "To Do", "In Progress", "Done"."""
    return BoardSet(context=context, boards=default_boards(titles))
