"""Shared test fixtures for boardstore tests."""

import sys
from pathlib import Path

import pytest

# Ensure the repo root is importable (pkg.boardstore)
sys.path.insert(0, str(Path(__file__).parent.parent))

from pkg.boardstore.errors import StorageError
from pkg.boardstore.service import BoardService
from pkg.boardstore.storage import MemoryStorage


class FlakyStorage(MemoryStorage):
    """MemoryStorage whose writes fail for chosen keys, or for the next N writes."""

    def __init__(self, items=None, fail_keys=(), fail_times=0):
        super().__init__(items)
        self.fail_keys = set(fail_keys)
        self.fail_times = fail_times
        self.set_calls = 0

    async def set(self, key, value):
        self.set_calls += 1
        if key in self.fail_keys:
            raise StorageError(f"disk full writing {key}", operation="set")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("backend unavailable")
        await super().set(key, value)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def service(storage):
    return BoardService(storage)
