"""
SyncClient - one object wiring the sync core together from a SyncConfig

Builds the HTTP transport, the document client (with a persisted ETag
cache), the row synchronizer, the cross-context bus and the cursor store.

Usage:
    config = load_config()
    async with SyncClient.from_config(config) as client:
        await client.documents.save("plan", {"today": []})
        result = await client.pull_all(store.apply_diffs)
"""

import logging
from typing import Any, Callable, Dict, Optional, Sequence

import httpx

from .batch import Diffs, PullResult, RowSynchronizer, invoke
from .bus import SyncBus
from .config import SyncConfig
from .cursors import CursorStore, SqliteCursorStore
from .device import get_device_id
from .documents import DocumentClient, ETagCache
from .merge import DominanceRule, RowStore
from .realtime import SmartSync
from .rows import PriorityOrder
from .table_sync import TableSync
from .transport import HttpTransport

logger = logging.getLogger(__name__)

ETAG_CACHE_FILENAME = "etags.json"


class SyncClient:
    """Facade over the sync components for one user on one device."""

    def __init__(self,
                 config: SyncConfig,
                 transport: HttpTransport,
                 bus: Optional[SyncBus] = None,
                 cursors: Optional[CursorStore] = None,
                 etag_cache: Optional[ETagCache] = None):
        self.config = config
        self.transport = transport
        self.device_id = config.device_id or get_device_id(config.base_path)
        self.bus = bus
        self.cursors = cursors or SqliteCursorStore(config.cursor_db_path)
        self.documents = DocumentClient(transport, config.user_id, etag_cache=etag_cache)
        self.rows = RowSynchronizer.from_config(transport, config, bus=bus)
        self.rule = DominanceRule(PriorityOrder(config.priority_order))

    @classmethod
    def from_config(cls,
                    config: SyncConfig,
                    http_transport: Optional[httpx.AsyncBaseTransport] = None,
                    with_bus: bool = True) -> "SyncClient":
        """
        Build every component from configuration.

        Args:
            config: Validated SyncConfig
            http_transport: Optional httpx transport (tests mount a fake backend)
            with_bus: Create a SyncBus with all adapters
        """
        config.validate()
        config.base_path.mkdir(parents=True, exist_ok=True)
        transport = HttpTransport(
            config.backend_url,
            app_key=config.app_key,
            timeout=config.timeout_seconds,
            transport=http_transport,
        )
        bus = SyncBus.from_config(config) if with_bus else None
        etags = ETagCache(config.base_path / ETAG_CACHE_FILENAME)
        return cls(config, transport, bus=bus, etag_cache=etags)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.transport.close()
        if self.bus is not None:
            self.bus.close()
        self.cursors.close()

    @property
    def user_id(self) -> str:
        return self.config.user_id

    def new_store(self) -> RowStore:
        """Empty local replica using the configured priority order."""
        return RowStore(self.rule)

    def table(self, name: str, **smart_options: Any) -> TableSync:
        """Per-table helper sharing this client's cursor store."""
        options = dict(
            fallback_polling=self.config.fallback_polling,
            polling_interval=self.config.polling_interval_seconds,
            max_polling_interval=self.config.max_polling_interval_seconds,
            backoff_factor=self.config.backoff_factor,
            reconnect_delay=self.config.stream_reconnect_seconds,
            max_reconnect_delay=self.config.max_stream_reconnect_seconds,
        )
        options.update(smart_options)
        return TableSync(self.rows, name, cursors=self.cursors, **options)

    # ==================== Cursor over several tables ====================

    def since(self, tables: Optional[Sequence[str]] = None) -> int:
        """
        Combined cursor for a multi-table pull.

        The smallest per-table cursor, so no table misses rows; the merge
        tolerates the duplicates this re-delivers for the others.
        """
        tables = tuple(tables or self.config.tables)
        return min(self.cursors.get(self.user_id, table) for table in tables)

    def advance(self, server_time_ms: int, tables: Optional[Sequence[str]] = None) -> None:
        for table in tuple(tables or self.config.tables):
            self.cursors.advance(self.user_id, table, server_time_ms)

    async def since_async(self, tables: Optional[Sequence[str]] = None) -> int:
        """since() for coroutines; cursor I/O stays off the event loop."""
        tables = tuple(tables or self.config.tables)
        values = [await self.cursors.get_async(self.user_id, table) for table in tables]
        return min(values)

    async def advance_async(self, server_time_ms: int, tables: Optional[Sequence[str]] = None) -> None:
        for table in tuple(tables or self.config.tables):
            await self.cursors.advance_async(self.user_id, table, server_time_ms)

    def reset_cursors(self) -> None:
        self.cursors.reset(self.user_id)

    async def pull_all(self,
                       apply_diffs: Callable[[Diffs], Any],
                       tables: Optional[Sequence[str]] = None,
                       since: Optional[int] = None) -> PullResult:
        """
        Pull the given tables once, apply, then advance their cursors.

        An explicit `since` overrides the stored cursors for this pull.
        """
        tables = tuple(tables or self.config.tables)
        start = await self.since_async(tables) if since is None else since
        result = await self.rows.pull(self.user_id, start, tables)
        await invoke(apply_diffs, result.diffs)
        await self.advance_async(result.server_time_ms, tables)
        return result

    def smart_sync(self,
                   apply_diffs: Callable[[Diffs], Any],
                   tables: Optional[Sequence[str]] = None,
                   **kwargs: Any) -> SmartSync:
        """SmartSync over the shared cursors (not started)."""
        tables = tuple(tables or self.config.tables)
        return SmartSync.from_config(
            self.rows,
            self.config,
            get_since=lambda: self.since_async(tables),
            set_since=lambda value: self.advance_async(value, tables),
            apply_diffs=apply_diffs,
            tables=tables,
            **kwargs,
        )

    def reset(self) -> None:
        """Drop local sync state: cursors and cached ETags."""
        self.reset_cursors()
        self.documents.reset()
        logger.info(f"Reset local sync state for {self.user_id}")

    def status(self) -> Dict[str, Any]:
        """Snapshot of local sync state for display."""
        return {
            "backend_url": self.config.backend_url,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "priority_class": self.config.priority_class,
            "priority_order": list(self.config.priority_order),
            "cursors": {table: self.cursors.get(self.user_id, table) for table in self.config.tables},
            "cached_etags": len(self.documents.etags),
            "sticky_pull_at": self.bus.sticky_pull_at() if self.bus is not None else None,
        }


__all__ = ["SyncClient", "ETAG_CACHE_FILENAME"]
