"""
Tests for the board set schema: dict codec, timestamps, ordering helpers.
"""
from datetime import datetime, timezone

from pkg.boardstore.schema import (
    DEFAULT_BOARD_TITLES,
    Board,
    BoardSet,
    Card,
    coerce_order,
    default_board_set,
    format_timestamp,
    parse_timestamp,
)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Timestamps / orders
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTimestamps:

    def test_parse_z_suffix(self):
        dt = parse_timestamp("2024-05-01T10:30:00Z")
        assert dt == datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)

    def test_naive_is_treated_as_utc(self):
        dt = parse_timestamp("2024-05-01T10:30:00")
        assert dt.tzinfo is not None
        assert dt.hour == 10

    def test_offset_converted_to_utc(self):
        dt = parse_timestamp("2024-05-01T12:30:00+02:00")
        assert dt.hour == 10
        assert dt.utcoffset().total_seconds() == 0

    def test_garbage_is_none(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(12345) is None
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None

    def test_seven_digit_fraction(self):
        """Timestamps written with 100ns precision keep their value instead of parsing to None."""
        dt = parse_timestamp("2024-05-01T10:30:00.1234567Z")
        assert dt == datetime(2024, 5, 1, 10, 30, 0, 123456, tzinfo=timezone.utc)

    def test_short_fraction(self):
        dt = parse_timestamp("2024-05-01T10:30:00.5+00:00")
        assert dt.microsecond == 500000

    def test_format_uses_z(self):
        dt = datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)
        assert format_timestamp(dt) == "2024-05-01T10:30:00Z"
        assert format_timestamp(None) is None


class TestCoerceOrder:

    def test_ints_and_integral_values(self):
        assert coerce_order(3) == 3
        assert coerce_order(2.0) == 2
        assert coerce_order(" 4 ") == 4

    def test_unusable_values(self):
        assert coerce_order(None) == -1
        assert coerce_order(True) == -1
        assert coerce_order(1.5) == -1
        assert coerce_order("first") == -1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Dict codec
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCodec:

    def test_card_to_dict_uses_camel_case(self):
        card = Card(id="c1", title="Pour slab", board_id="b1", order=0)
        d = card.to_dict()
        assert d["boardId"] == "b1"
        assert "createdAt" in d and "lastModified" in d
        assert "board_id" not in d

    def test_none_values_omitted(self):
        card = Card(id="c1", title="T", board_id="b1", created_at=None, last_modified=None)
        d = card.to_dict()
        assert "createdAt" not in d
        assert "lastModified" not in d

    def test_missing_timestamps_stay_none(self):
        card = Card.from_dict({"id": "c1", "title": "T", "boardId": "b1", "order": 0})
        assert card.created_at is None
        assert card.last_modified is None

    def test_from_dict_tolerates_junk(self):
        data = BoardSet.from_dict({
            "context": "civil",
            "boards": [
                {"id": "b1", "title": "Todo", "order": "x", "cards": ["not a card", {"title": "ok"}]},
                "not a board",
            ],
        })
        assert len(data.boards) == 1
        assert data.boards[0].order == -1
        assert len(data.boards[0].cards) == 1
        assert data.boards[0].cards[0].id == ""

    def test_board_set_round_trip(self):
        original = default_board_set("civil")
        original.boards[0].cards.append(Card(title="Survey", board_id=original.boards[0].id))
        restored = BoardSet.from_dict(original.to_dict())
        assert restored == original


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Board set helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBoardSet:

    def test_default_set(self):
        data = default_board_set("civil")
        assert data.context == "civil"
        assert [b.title for b in data.boards] == list(DEFAULT_BOARD_TITLES)
        assert [b.order for b in data.boards] == [0, 1, 2]

    def test_custom_default_titles(self):
        data = default_board_set("spcs", ["Backlog", "Done"])
        assert [b.title for b in data.boards] == ["Backlog", "Done"]

    def test_normalize_orders_is_stable(self):
        b1 = Board(id="b1", title="A", order=5)
        b2 = Board(id="b2", title="B", order=2)
        b3 = Board(id="b3", title="C", order=5)
        data = BoardSet(context="x", boards=[b1, b2, b3])
        data.normalize_orders()
        assert [b.id for b in data.boards] == ["b2", "b1", "b3"]
        assert [b.order for b in data.boards] == [0, 1, 2]

    def test_normalize_card_orders(self):
        board = Board(id="b1", title="A", cards=[
            Card(id="c1", title="x", board_id="b1", order=10),
            Card(id="c2", title="y", board_id="b1", order=3),
        ])
        data = BoardSet(context="x", boards=[board])
        data.normalize_orders()
        assert [c.id for c in board.cards] == ["c2", "c1"]
        assert [c.order for c in board.cards] == [0, 1]

    def test_lookup_helpers(self):
        board = Board(id="b1", title="A", cards=[Card(id="c1", title="x", board_id="elsewhere")])
        data = BoardSet(context="x", boards=[board])
        assert data.get_board("b1") is board
        assert data.get_card("c1").title == "x"
        assert data.owner_of("c1") is board
        assert data.get_board("nope") is None
        assert data.card_count == 1
