"""
Pull cursor storage

A cursor is the `server_time_ms` of the last pull whose diffs were applied,
kept per (user_id, table). The sync core never persists cursors itself;
surfaces pick a store:

- MemoryCursorStore: process lifetime only
- SqliteCursorStore: survives restarts (used by the CLI)
"""

import asyncio
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class CursorStore(ABC):
    """
    Per (user_id, table) pull watermark.

    The *_async methods are what coroutines call: a store whose calls may
    wait on I/O (blocking = True) runs them in a worker thread so the event
    loop keeps going.
    """

    blocking = False

    @abstractmethod
    def get(self, user_id: str, table: str) -> int:
        """Current cursor, 0 when nothing has been pulled."""
        pass

    @abstractmethod
    def set(self, user_id: str, table: str, value: int) -> None:
        """Overwrite the cursor."""
        pass

    @abstractmethod
    def reset(self, user_id: Optional[str] = None) -> None:
        """Forget cursors for one user, or for everyone."""
        pass

    def advance(self, user_id: str, table: str, value: int) -> int:
        """Move the cursor forward only; returns the stored value."""
        current = self.get(user_id, table)
        if value > current:
            self.set(user_id, table, value)
            return value
        return current

    def close(self) -> None:
        pass

    async def _run(self, method: Callable[..., Any], *args: Any) -> Any:
        if self.blocking:
            return await asyncio.to_thread(method, *args)
        return method(*args)

    async def get_async(self, user_id: str, table: str) -> int:
        return await self._run(self.get, user_id, table)

    async def advance_async(self, user_id: str, table: str, value: int) -> int:
        return await self._run(self.advance, user_id, table, value)


class MemoryCursorStore(CursorStore):
    def __init__(self):
        self._cursors: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, table: str) -> int:
        with self._lock:
            return self._cursors.get((user_id, table), 0)

    def set(self, user_id: str, table: str, value: int) -> None:
        with self._lock:
            self._cursors[(user_id, table)] = int(value)

    def advance(self, user_id: str, table: str, value: int) -> int:
        with self._lock:
            current = self._cursors.get((user_id, table), 0)
            if value > current:
                self._cursors[(user_id, table)] = int(value)
                return int(value)
            return current

    def reset(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._cursors.clear()
            else:
                for key in [k for k in self._cursors if k[0] == user_id]:
                    del self._cursors[key]


class SqliteCursorStore(CursorStore):
    """
    Cursors in a SQLite file.

    Pattern: persistent connection + thread lock, WAL mode. A locked file
    can hold a call for up to the 30s busy timeout, hence blocking.
    """

    blocking = True

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,
            timeout=30.0,
        )
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_cursors (
                user_id TEXT NOT NULL,
                table_name TEXT NOT NULL,
                since INTEGER NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (user_id, table_name)
            )
            """
        )

    def get(self, user_id: str, table: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT since FROM sync_cursors WHERE user_id = ? AND table_name = ?",
                (user_id, table),
            ).fetchone()
        return int(row[0]) if row else 0

    def set(self, user_id: str, table: str, value: int) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sync_cursors (user_id, table_name, since, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(user_id, table_name) DO UPDATE SET since = excluded.since,
                                                               updated_at = excluded.updated_at
                """,
                (user_id, table, int(value)),
            )

    def advance(self, user_id: str, table: str, value: int) -> int:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sync_cursors (user_id, table_name, since, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(user_id, table_name) DO UPDATE SET
                    since = MAX(sync_cursors.since, excluded.since),
                    updated_at = excluded.updated_at
                """,
                (user_id, table, int(value)),
            )
            row = self._conn.execute(
                "SELECT since FROM sync_cursors WHERE user_id = ? AND table_name = ?",
                (user_id, table),
            ).fetchone()
        return int(row[0])

    def reset(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._conn.execute("DELETE FROM sync_cursors")
            else:
                self._conn.execute("DELETE FROM sync_cursors WHERE user_id = ?", (user_id,))
        logger.info(f"Reset pull cursors for {user_id or 'all users'}")

    def all(self, user_id: str) -> Dict[str, int]:
        """Every table cursor of one user."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT table_name, since FROM sync_cursors WHERE user_id = ? ORDER BY table_name",
                (user_id,),
            ).fetchall()
        return {table: int(since) for table, since in rows}

    def close(self) -> None:
        with self._lock:
            self._conn.close()


__all__ = ["CursorStore", "MemoryCursorStore", "SqliteCursorStore"]
