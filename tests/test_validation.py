"""
Tests for validation and repair.

Covers:
    - validate(): every invariant reported, all at once
    - check_*(): single-value title/description checks
    - repair(): consistent output from garbled input, idempotence
"""
from datetime import datetime, timezone

import pytest

from pkg.boardstore.errors import ValidationError
from pkg.boardstore.schema import (
    BOARD_TITLE_MAX,
    CARD_TITLE_MAX,
    DESCRIPTION_MAX,
    Board,
    BoardSet,
    Card,
    default_board_set,
)
from pkg.boardstore.validation import (
    check_board_title,
    check_card_title,
    check_description,
    has_usable_boards,
    orders_are_dense,
    repair,
    validate,
)


def _valid_set() -> BoardSet:
    todo = Board(id="b1", title="To Do", order=0, cards=[
        Card(id="c1", title="Survey site", board_id="b1", order=0),
        Card(id="c2", title="Order rebar", board_id="b1", order=1),
    ])
    done = Board(id="b2", title="Done", order=1, cards=[
        Card(id="c3", title="Permit", board_id="b2", order=0),
    ])
    return BoardSet(context="civil", boards=[todo, done])


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# validate()
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestValidate:

    def test_valid_set_is_clean(self):
        result = validate(_valid_set())
        assert result.valid
        assert result.errors == []

    def test_default_set_is_valid(self):
        assert validate(default_board_set("civil")).valid

    def test_duplicate_card_id_reported(self):
        data = _valid_set()
        data.boards[1].cards[0].id = "c1"
        result = validate(data)
        assert not result.valid
        assert any("Duplicate card id 'c1'" in m for m in result.messages)

    def test_duplicate_board_id_reported(self):
        data = _valid_set()
        data.boards[1].id = "b1"
        for card in data.boards[1].cards:
            card.board_id = "b1"
        result = validate(data)
        assert any("Duplicate board id 'b1'" in m for m in result.messages)

    def test_order_gap_reported(self):
        data = _valid_set()
        data.boards[0].cards[1].order = 5
        result = validate(data)
        assert not result.valid
        assert any("not a dense" in m for m in result.messages)

    def test_negative_order_reported(self):
        data = _valid_set()
        data.boards[0].order = -1
        result = validate(data)
        assert any("negative order" in m for m in result.messages)

    def test_dangling_board_reference_reported(self):
        data = _valid_set()
        data.boards[0].cards[0].board_id = "b2"
        result = validate(data)
        assert any("references board 'b2'" in m for m in result.messages)
        assert result.errors[0].entity_id == "c1"

    def test_all_violations_reported_together(self):
        data = _valid_set()
        data.boards[0].title = ""
        data.boards[0].cards[0].title = "x" * (CARD_TITLE_MAX + 1)
        data.boards[1].cards[0].description = "d" * (DESCRIPTION_MAX + 1)
        result = validate(data)
        assert len(result.errors) == 3

    def test_skip_order_checks(self):
        data = _valid_set()
        data.boards[0].order = 7
        assert not validate(data).valid
        assert validate(data, check_orders=False).valid

    def test_orders_are_dense(self):
        data = _valid_set()
        assert orders_are_dense(data)
        data.boards[1].cards[0].order = 3
        assert not orders_are_dense(data)


class TestSingleValueChecks:

    def test_titles_are_trimmed(self):
        assert check_board_title("  Doing  ") == "Doing"
        assert check_card_title("\tTask\n") == "Task"

    def test_blank_title_rejected(self):
        with pytest.raises(ValidationError, match="must not be blank"):
            check_board_title("   ")
        with pytest.raises(ValidationError):
            check_card_title(None)

    def test_title_limits(self):
        assert check_board_title("b" * BOARD_TITLE_MAX)
        with pytest.raises(ValidationError, match="at most 100"):
            check_board_title("b" * (BOARD_TITLE_MAX + 1))
        with pytest.raises(ValidationError, match="at most 200"):
            check_card_title("c" * (CARD_TITLE_MAX + 1))

    def test_description(self):
        assert check_description(None) == ""
        with pytest.raises(ValidationError) as exc:
            check_description("d" * (DESCRIPTION_MAX + 1))
        assert len(exc.value.issues) == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# repair()
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRepair:

    def test_output_validates(self):
        raw = {
            "context": "civil",
            "boards": [
                {"id": "b1", "title": "  Late  ", "order": 9, "cards": [
                    {"id": "c1", "title": "A", "boardId": "zzz", "order": 4},
                    {"id": "c1", "title": "dup id", "order": 4},
                    {"title": "   "},
                ]},
                {"id": "b1", "title": "Early", "order": 1},
                {"title": ""},
            ],
        }
        data = repair(raw)
        assert validate(data).valid
        assert [b.title for b in data.boards] == ["Early", "Late"]
        late = data.boards[1]
        assert [c.title for c in late.cards] == ["A", "dup id"]
        assert late.cards[0].id == "c1"
        assert late.cards[1].id != "c1"
        assert all(c.board_id == late.id for c in late.cards)
        assert data.boards[0].id != data.boards[1].id

    def test_idempotent(self):
        raw = {"context": "civil", "boards": [
            {"id": "b1", "title": "A", "order": 3, "cards": [{"id": "c1", "title": "x", "order": 7}]},
            {"title": "B"},
        ]}
        once = repair(raw)
        twice = repair(once)
        assert twice == once

    def test_valid_set_unchanged(self):
        data = _valid_set()
        assert repair(data) == data

    def test_truncates_long_text(self):
        raw = {"context": "c", "boards": [{"id": "b", "title": "t" * 150, "cards": [
            {"id": "c", "title": "x", "description": "d" * 1500},
        ]}]}
        data = repair(raw)
        assert len(data.boards[0].title) == BOARD_TITLE_MAX
        assert len(data.boards[0].cards[0].description) == DESCRIPTION_MAX

    @pytest.mark.parametrize("garbage", [None, 42, "text", [], {"boards": "nope"}, {"boards": [1, 2]}])
    def test_garbled_input_gets_defaults(self, garbage):
        data = repair(garbage, context="civil")
        assert data.context == "civil"
        assert [b.title for b in data.boards] == ["To Do", "In Progress", "Done"]
        assert validate(data).valid

    def test_context_fallbacks(self):
        assert repair({"context": "spcs", "boards": []}).context == "spcs"
        assert repair({}).context == "unknown"
        assert repair({"context": "spcs"}, context="civil").context == "civil"

    def test_missing_timestamp_sentinel(self):
        sentinel = datetime(2020, 1, 1, tzinfo=timezone.utc)
        data = repair({"boards": [{"id": "b", "title": "A"}]}, missing_timestamp=sentinel)
        assert data.boards[0].created_at == sentinel
        assert data.boards[0].last_modified == sentinel

    def test_keeps_existing_timestamps(self):
        data = repair({"boards": [{"id": "b", "title": "A", "createdAt": "2023-02-03T04:05:06Z"}]})
        assert data.boards[0].created_at == datetime(2023, 2, 3, 4, 5, 6, tzinfo=timezone.utc)


class TestUsableBoards:

    def test_detects_usable_boards(self):
        assert has_usable_boards({"boards": [{"title": "A"}]})
        assert has_usable_boards(_valid_set())

    def test_nothing_usable(self):
        assert not has_usable_boards({"boards": [{"title": "  "}, "x"]})
        assert not has_usable_boards({"boards": {}})
        assert not has_usable_boards("garbage")
