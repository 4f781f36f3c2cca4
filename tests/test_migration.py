"""
Tests for MigrationService: legacy upgrades and context initialization.
"""
import asyncio
import json
from datetime import timedelta

from pkg.boardstore.migration import MigrationService
from pkg.boardstore.schema import utc_now
from pkg.boardstore.service import BoardService
from pkg.boardstore.storage import MemoryStorage
from pkg.boardstore.validation import validate

LEGACY = {
    "context": "civil",
    "boards": [
        {"id": "b1", "title": "Todo", "order": 2, "cards": [
            {"id": "c1", "title": "Pour", "boardId": "old-board", "order": 3},
            {"id": "c2", "title": "Cure", "boardId": "b1", "order": 1},
        ]},
        {"id": "b2", "title": "Done", "order": 0},
    ],
}


class TestMigrateContext:

    def setup_method(self):
        self.storage = MemoryStorage({"kanban_data_civil": json.dumps(LEGACY)})
        self.service = BoardService(self.storage)
        self.migration = MigrationService(self.service)

    def _stored(self):
        return json.loads(self.storage.items["kanban_data_civil"])

    def test_legacy_data_is_migrated(self):
        """Out-of-order boards and drifted card board ids are fixed"""
        changed = asyncio.run(self.migration.migrate_context("civil"))
        assert changed

        data = asyncio.run(self.service.load_data("civil"))
        assert validate(data).valid
        assert [b.id for b in data.boards] == ["b2", "b1"]
        assert [c.id for c in data.boards[1].cards] == ["c2", "c1"]
        assert all(c.board_id == "b1" for c in data.boards[1].cards)

    def test_missing_timestamps_get_past_sentinel(self):
        """Missing timestamps are backfilled one day in the past"""
        asyncio.run(self.migration.migrate_context("civil"))
        stored = self._stored()
        created = [b["createdAt"] for b in stored["boards"]]
        assert all(created)

        data = asyncio.run(self.service.load_data("civil"))
        now = utc_now()
        for board in data.boards:
            age = now - board.created_at
            assert timedelta(hours=23) < age < timedelta(days=2)

    def test_migration_is_idempotent(self):
        """A second migration changes nothing and writes nothing"""
        assert asyncio.run(self.migration.migrate_context("civil"))
        first = self.storage.items["kanban_data_civil"]
        assert not asyncio.run(self.migration.migrate_context("civil"))
        assert self.storage.items["kanban_data_civil"] == first

    def test_nothing_stored(self):
        """Migrating an empty context does not create data"""
        assert not asyncio.run(self.migration.migrate_context("spcs"))
        assert "kanban_data_spcs" not in self.storage.items

    def test_unfixable_issues_are_repaired(self):
        """Issues migration cannot fix are handed to repair"""
        self.storage.items["kanban_data_civil"] = json.dumps({
            "boards": [{"id": "b1", "title": "   ", "order": 0}, {"id": "b2", "title": "Keep", "order": 1}],
        })
        assert asyncio.run(self.migration.migrate_context("civil"))
        stored = self._stored()
        assert [b["title"] for b in stored["boards"]] == ["Keep"]

    def test_migrate_all(self):
        """Every stored context is migrated"""
        self.storage.items["kanban_data_spcs"] = json.dumps(LEGACY)
        results = asyncio.run(self.migration.migrate_all())
        assert results == {"civil": True, "spcs": True}
        assert self._stored()["context"] == "civil"


class TestInitialize:

    def setup_method(self):
        self.storage = MemoryStorage()
        self.service = BoardService(self.storage)
        self.migration = MigrationService(self.service, {"Civil": ["Plan", "Build", "Inspect"]})

    def _titles(self, context):
        stored = json.loads(self.storage.items[f"kanban_data_{context}"])
        return [b["title"] for b in stored["boards"]]

    def test_context_specific_titles(self):
        """Context names are matched case-insensitively to their titles"""
        assert asyncio.run(self.migration.initialize_context("civil"))
        assert self._titles("civil") == ["Plan", "Build", "Inspect"]

    def test_unknown_context_uses_defaults(self):
        """Contexts without configured titles get the default boards"""
        asyncio.run(self.migration.initialize_context("other"))
        assert self._titles("other") == ["To Do", "In Progress", "Done"]

    def test_custom_boards(self):
        """Explicit board titles override the configured ones"""
        asyncio.run(self.migration.initialize_context("x", ["One", "Two"]))
        assert self._titles("x") == ["One", "Two"]

    def test_existing_data_is_kept(self):
        """Initializing a context that has data leaves it alone"""
        asyncio.run(self.service.create_board("civil", "Mine"))
        before = self.storage.items["kanban_data_civil"]
        assert not asyncio.run(self.migration.initialize_context("civil"))
        assert self.storage.items["kanban_data_civil"] == before

    def test_clean_and_reinitialize(self):
        """Reinitializing wipes the context and recreates its boards"""
        asyncio.run(self.service.create_board("civil", "Mine"))
        asyncio.run(self.migration.clean_and_reinitialize("civil"))
        assert self._titles("civil") == ["Plan", "Build", "Inspect"]
        data = asyncio.run(self.service.load_data("civil"))
        assert [b.title for b in data.boards] == ["Plan", "Build", "Inspect"]
