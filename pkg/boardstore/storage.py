"""
Key-value storage backends.

The board store only needs five async calls from its backend:
set, get, remove, contains_key and list_keys, all over string keys and
string values. Backends raise StorageError for any failure.

Key scheme:
  kanban_data_{context}                           - primary board set
  kanban_backup_{context}_{yyyyMMdd_HHmmss}       - regular backup envelope
  emergency_backup_{context}_{yyyyMMdd_HHmmss}    - raw emergency snapshot
"""
import asyncio
import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .errors import StorageError

logger = logging.getLogger(__name__)

DATA_PREFIX = "kanban_data_"
BACKUP_PREFIX = "kanban_backup_"
EMERGENCY_PREFIX = "emergency_backup_"
STAMP_FORMAT = "%Y%m%d_%H%M%S"

# stamp, optionally followed by a collision counter
_STAMP_RE = re.compile(r"(\d{8}_\d{6})(?:_(\d+))?")


def data_key(context: str) -> str:
    return f"{DATA_PREFIX}{context}"


def backup_key(context: str, when: datetime, counter: int = 0) -> str:
    return _stamped(BACKUP_PREFIX, context, when, counter)


def emergency_key(context: str, when: datetime, counter: int = 0) -> str:
    return _stamped(EMERGENCY_PREFIX, context, when, counter)


def _stamped(prefix: str, context: str, when: datetime, counter: int) -> str:
    key = f"{prefix}{context}_{when.astimezone(timezone.utc).strftime(STAMP_FORMAT)}"
    return f"{key}_{counter}" if counter else key


def parse_stamped_key(key: str, prefix: str, context: str) -> Optional[datetime]:
    """
    Return the UTC timestamp embedded in a stamped key for this exact context.

    Keys of other contexts that merely share the prefix (context "a" vs
    "a_b") do not match, because the remainder must be a bare stamp.
    """
    head = f"{prefix}{context}_"
    if not key.startswith(head):
        return None
    match = _STAMP_RE.fullmatch(key[len(head):])
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), STAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


async def claim_key(storage: "Storage", prefix: str, context: str, when: datetime) -> str:
    """First stamped key for `when` not already present (adds _1, _2, ... on collision)."""
    counter = 0
    key = _stamped(prefix, context, when, counter)
    while await storage.contains_key(key):
        counter += 1
        key = _stamped(prefix, context, when, counter)
    return key


class Storage(ABC):
    """Async key-value contract implemented by every backend."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Stored value, or None if the key is absent."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete a key; absent keys are ignored."""

    @abstractmethod
    async def contains_key(self, key: str) -> bool:
        pass

    @abstractmethod
    async def list_keys(self) -> List[str]:
        pass


class MemoryStorage(Storage):
    """In-process dict backend. Used by tests and as a scratch store."""

    def __init__(self, items: Optional[Dict[str, str]] = None):
        self.items: Dict[str, str] = dict(items or {})

    async def set(self, key: str, value: str) -> None:
        if not key:
            raise StorageError("Storage key must not be empty", operation="set")
        self.items[key] = value

    async def get(self, key: str) -> Optional[str]:
        return self.items.get(key)

    async def remove(self, key: str) -> None:
        self.items.pop(key, None)

    async def contains_key(self, key: str) -> bool:
        return bool(self.items.get(key))

    async def list_keys(self) -> List[str]:
        return list(self.items.keys())


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class SqliteStorage(Storage):
    """
    SQLite-backed key-value store.

    Every call opens a short-lived connection in a worker thread so the
    event loop is never blocked on disk I/O.
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "boardstore" / "boards.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create the table if it doesn't exist."""
        try:
            with _connect(self.db_path) as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS kv_store (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot initialize store at {self.db_path}: {e}", operation="init") from e

    async def _run(self, operation: str, key: Optional[str], fn):
        try:
            return await asyncio.to_thread(fn)
        except sqlite3.Error as e:
            target = f" '{key}'" if key else ""
            logger.error(f"SQLite {operation}{target} failed: {e}")
            raise StorageError(f"Storage {operation}{target} failed: {e}", operation=operation) from e

    async def set(self, key: str, value: str) -> None:
        if not key:
            raise StorageError("Storage key must not be empty", operation="set")

        def _set():
            with _connect(self.db_path) as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, datetime.now(timezone.utc).isoformat()),
                )
                conn.commit()

        await self._run("set", key, _set)

    async def get(self, key: str) -> Optional[str]:
        def _get():
            with _connect(self.db_path) as conn:
                row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

        return await self._run("get", key, _get)

    async def remove(self, key: str) -> None:
        def _remove():
            with _connect(self.db_path) as conn:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                conn.commit()

        await self._run("remove", key, _remove)

    async def contains_key(self, key: str) -> bool:
        value = await self.get(key)
        return bool(value)

    async def list_keys(self) -> List[str]:
        def _keys():
            with _connect(self.db_path) as conn:
                rows = conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()
            return [r[0] for r in rows]

        return await self._run("list_keys", None, _keys)
