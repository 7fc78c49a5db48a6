"""
Per-table sync helper

Bundles what one surface needs to keep a single table in sync: a persisted
cursor per user, a one-shot pull, a stamped push and a SmartSync
subscription restricted to the table.

Usage:
    actions = TableSync(sync, "checklist_actions", cursors=SqliteCursorStore(path))
    await actions.pull_now("demo", apply_rows=store.apply)
    await actions.start("demo", apply_rows=store.apply)
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .batch import Diffs, PullResult, PushResult, RowSynchronizer, invoke
from .cursors import CursorStore, MemoryCursorStore
from .realtime import SmartSync
from .rows import Row, get_schema

logger = logging.getLogger(__name__)


class TableSync:
    """Cursor-tracking pull/push/subscribe for one table."""

    def __init__(self,
                 synchronizer: RowSynchronizer,
                 table: str,
                 cursors: Optional[CursorStore] = None,
                 **smart_options: Any):
        """
        Args:
            synchronizer: RowSynchronizer doing the HTTP work
            table: Registered table name
            cursors: Cursor store (in-memory when omitted)
            **smart_options: Defaults passed to SmartSync by start()
        """
        get_schema(table)
        self.synchronizer = synchronizer
        self.table = table
        self.cursors = cursors or MemoryCursorStore()
        self.smart_options = smart_options
        self._smart: Optional[SmartSync] = None

    def get_since(self, user_id: str) -> int:
        return self.cursors.get(user_id, self.table)

    def set_since(self, user_id: str, value: int) -> int:
        """Advance the cursor; it never moves backwards."""
        return self.cursors.advance(user_id, self.table, value)

    def reset(self, user_id: str) -> None:
        self.cursors.set(user_id, self.table, 0)

    async def pull_now(self, user_id: str,
                       apply_rows: Callable[[List[Row]], Any]) -> PullResult:
        """
        Pull this table once, apply the rows, then advance the cursor.

        If apply_rows raises, the cursor stays where it was.
        """
        since = await self.cursors.get_async(user_id, self.table)
        result = await self.synchronizer.pull(user_id, since, (self.table,))
        rows = result.rows(self.table)
        if rows:
            await invoke(apply_rows, rows)
        await self.cursors.advance_async(user_id, self.table, result.server_time_ms)
        return result

    async def push_rows(self, user_id: str, device_id: str,
                        rows: Iterable[Union[Row, Dict[str, Any]]]) -> PushResult:
        """Stamp and push rows of this table."""
        return await self.synchronizer.push_rows(user_id, device_id, self.table, rows)

    @property
    def running(self) -> bool:
        return self._smart is not None and self._smart.running

    async def start(self, user_id: str,
                    apply_rows: Callable[[List[Row]], Any],
                    **options: Any) -> SmartSync:
        """
        Start a stream + polling subscription for this table.

        apply_rows receives only this table's rows and is not called for
        empty diffs. Keyword options override the SmartSync defaults given
        at construction.
        """
        if self.running:
            raise RuntimeError(f"{self.table} sync is already running")

        async def apply_diffs(diffs: Diffs) -> None:
            rows = diffs.get(self.table) or []
            if rows:
                await invoke(apply_rows, rows)

        kwargs = dict(self.smart_options)
        kwargs.update(options)
        self._smart = SmartSync(
            self.synchronizer,
            user_id,
            get_since=lambda: self.cursors.get_async(user_id, self.table),
            set_since=lambda value: self.cursors.advance_async(user_id, self.table, value),
            apply_diffs=apply_diffs,
            tables=(self.table,),
            **kwargs,
        )
        await self._smart.start()
        return self._smart

    async def stop(self) -> None:
        if self._smart is not None:
            await self._smart.stop()
            self._smart = None


__all__ = ["TableSync"]
