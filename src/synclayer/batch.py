"""
Batch Row Synchronizer

Incremental pull (diffs since a cursor) and batched push of upserts and
tombstones for the registered row tables of one user.

The synchronizer is a thin, typed envelope: push() sends rows exactly as
given and refuses rows that are missing updated_at/updated_by. The
composing helpers (stamp, push_rows, upsert, delete and the table-specific
helpers) fill those in from the device and clock for convenience.

Usage:
    sync = RowSynchronizer(transport, priority_class="desktop", bus=bus)
    result = await sync.pull("demo", since=0)
    store.apply_diffs(result.diffs)
    since = result.server_time_ms

    await sync.upsert_checklist_set("demo", device_id, "s1", title="Morning", order=0)
"""

import inspect
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .config import DEFAULT_TABLES
from .errors import ProtocolError
from .events import now_ms
from .rows import (
    ActionLogData,
    ChecklistActionData,
    ChecklistSetData,
    DictionaryEntryData,
    Row,
    TABLES,
    get_schema,
)
from .transport import HttpTransport

logger = logging.getLogger(__name__)

PULL_PATH = "/api/sync/pull-batch"
PUSH_PATH = "/api/sync/push-batch"

Diffs = Dict[str, List[Row]]


async def invoke(callback: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callback and return its result."""
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass
class PullResult:
    """Response of one pull: the new cursor plus per-table diffs"""
    server_time_ms: int
    diffs: Diffs = field(default_factory=dict)

    def rows(self, table: str) -> List[Row]:
        """Diff rows for one table (empty when the table is absent)."""
        return list(self.diffs.get(table, []))

    @property
    def total(self) -> int:
        return sum(len(rows) for rows in self.diffs.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_time_ms": self.server_time_ms,
            "diffs": {table: [row.to_dict() for row in rows] for table, rows in self.diffs.items()},
        }


@dataclass
class PushResult:
    """Outcome of one push-batch request"""
    counts: Dict[str, int] = field(default_factory=dict)
    response: Any = None

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def parse_pull_envelope(body: Any, since: Optional[int] = None) -> PullResult:
    """
    Validate a `{server_time_ms, diffs}` envelope from pull or the stream.

    Tables the client has not registered are logged and skipped.

    Args:
        body: Decoded JSON envelope
        since: Cursor the request was made with; the server time must not
            be earlier

    Raises:
        ProtocolError: If the envelope or any row in it is malformed
    """
    if not isinstance(body, dict):
        raise ProtocolError(f"Pull envelope must be an object, got {type(body).__name__}")

    server_time = body.get("server_time_ms")
    if isinstance(server_time, bool) or not isinstance(server_time, (int, float)):
        raise ProtocolError(f"Pull envelope has invalid server_time_ms: {server_time!r}")
    server_time = int(server_time)
    if since is not None and server_time < since:
        raise ProtocolError(f"server_time_ms {server_time} is earlier than since {since}")

    raw_diffs = body.get("diffs") or {}
    if not isinstance(raw_diffs, dict):
        raise ProtocolError(f"Pull envelope diffs must be an object, got {type(raw_diffs).__name__}")

    diffs: Diffs = {}
    for table, raw_rows in raw_diffs.items():
        if table not in TABLES:
            logger.warning(f"Ignoring diffs for unknown table: {table}")
            continue
        if raw_rows is None:
            continue
        if not isinstance(raw_rows, list):
            raise ProtocolError(f"Diffs for {table} must be a list")
        try:
            diffs[table] = [Row.from_wire(table, raw) for raw in raw_rows]
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed {table} row in pull envelope: {e}") from e

    return PullResult(server_time_ms=server_time, diffs=diffs)


class RowSynchronizer:
    """
    Pull/push client for the batch row tables.

    Args:
        transport: HttpTransport for the backend
        priority_class: This device's class, used by the composing helpers
        bus: Optional SyncBus; a successful push records the sticky pull
            marker and emits a pull intent so other surfaces catch up
        clock: Millisecond clock used to stamp updated_at / deleted_at
    """

    def __init__(self,
                 transport: HttpTransport,
                 priority_class: Optional[str] = "desktop",
                 bus=None,
                 clock: Callable[[], int] = now_ms):
        self.transport = transport
        self.priority_class = priority_class
        self.bus = bus
        self.clock = clock

    @classmethod
    def from_config(cls, transport: HttpTransport, config, bus=None) -> "RowSynchronizer":
        return cls(transport, priority_class=config.priority_class, bus=bus)

    # ==================== Pull ====================

    async def pull(self,
                   user_id: str,
                   since: Optional[int] = 0,
                   tables: Sequence[str] = DEFAULT_TABLES) -> PullResult:
        """
        Fetch every row changed after `since` in the given tables.

        The returned server_time_ms is safe to use as the next `since`, but
        only after the diffs have been applied.

        Raises:
            ValueError: Negative cursor, no tables, or an unregistered table
            ProtocolError: Malformed envelope or a server time before `since`
            TransportError / BadRequestError: From the transport
        """
        since = int(since or 0)
        if since < 0:
            raise ValueError(f"since must be >= 0, got {since}")
        tables = tuple(tables)
        if not tables:
            raise ValueError("At least one table is required")
        for table in tables:
            get_schema(table)

        body, _ = await self.transport.get_json(
            PULL_PATH,
            params={
                "user_id": user_id,
                "since": str(since),
                "tables": ",".join(tables),
            },
        )
        result = parse_pull_envelope(body, since=since)
        logger.debug(
            f"Pulled {result.total} rows for {user_id} since {since} -> {result.server_time_ms}"
        )
        return result

    async def force_pull(self,
                         user_id: str,
                         get_since: Callable[[], Any],
                         set_since: Callable[[int], Any],
                         apply_diffs: Callable[[Diffs], Any],
                         tables: Sequence[str] = DEFAULT_TABLES) -> PullResult:
        """
        One-shot pull: fetch, apply, then advance the cursor.

        The cursor never moves backwards and only moves once apply_diffs
        has returned. Both cursor callables may be sync or async.
        """
        since = await invoke(get_since) or 0
        result = await self.pull(user_id, since, tables)
        await invoke(apply_diffs, result.diffs)
        if result.server_time_ms > since:
            await invoke(set_since, result.server_time_ms)
        return result

    # ==================== Push ====================

    async def push(self,
                   user_id: str,
                   device_id: str,
                   changes: Mapping[str, Sequence[Row]]) -> PushResult:
        """
        Send upserts and tombstones for any number of tables in one request.

        Rows are sent as given; nothing is stamped here.

        Raises:
            ValueError: Missing ids, unregistered tables, rows filed under the
                wrong table, or rows without updated_at/updated_by
            ProtocolError: The server answered with ok=false
        """
        if not user_id:
            raise ValueError("user_id is required")
        if not device_id:
            raise ValueError("device_id is required")

        payload: Dict[str, List[Dict[str, Any]]] = {}
        counts: Dict[str, int] = {}
        for table, rows in changes.items():
            get_schema(table)
            encoded = []
            for row in rows:
                if row.table != table:
                    raise ValueError(f"Row {row.id} belongs to {row.table}, not {table}")
                if row.updated_at is None or not row.updated_by:
                    raise ValueError(
                        f"{table} row {row.id} must carry updated_at and updated_by before push"
                    )
                encoded.append(row.to_push_dict())
            if encoded:
                payload[table] = encoded
                counts[table] = len(encoded)

        if not payload:
            logger.debug("Nothing to push")
            return PushResult()

        body, _ = await self.transport.post_json(
            PUSH_PATH,
            {"user_id": user_id, "device_id": device_id, "changes": payload},
        )
        if isinstance(body, dict) and body.get("ok") is False:
            raise ProtocolError(f"Push rejected by server: {body.get('error') or body}")

        logger.info(f"Pushed {sum(counts.values())} rows for {user_id} from {device_id}: {counts}")

        if self.bus is not None:
            await self.bus.announce_push(user_id, device_id)

        return PushResult(counts=counts, response=body)

    # ==================== Composing helpers ====================

    def stamp(self, row: Row, device_id: str, at: Optional[int] = None) -> Row:
        """Fill updated_at, updated_by and priority_class where they are None."""
        return replace(
            row,
            updated_at=row.updated_at if row.updated_at is not None else (at if at is not None else self.clock()),
            updated_by=row.updated_by or device_id,
            priority_class=row.priority_class or self.priority_class,
        )

    async def push_rows(self,
                        user_id: str,
                        device_id: str,
                        table: str,
                        rows: Iterable[Union[Row, Dict[str, Any]]]) -> PushResult:
        """
        Stamp and push rows of one table.

        Rows may be Row objects or wire dicts (`{"id", "data", "set_id", ...}`).
        """
        stamped = []
        for row in rows:
            if isinstance(row, dict):
                row = Row.from_wire(table, row)
            stamped.append(self.stamp(row, device_id))
        return await self.push(user_id, device_id, {table: stamped})

    async def upsert(self,
                     user_id: str,
                     device_id: str,
                     table: str,
                     row_id: str,
                     data: Any = None,
                     refs: Optional[Dict[str, str]] = None,
                     deleted_at: Optional[int] = None) -> Row:
        """Write a full snapshot of one row; returns the row as pushed."""
        row = self.stamp(
            Row(table=table, id=row_id, data=data, refs=dict(refs or {}), deleted_at=deleted_at),
            device_id,
        )
        await self.push(user_id, device_id, {table: [row]})
        return row

    async def delete(self,
                     user_id: str,
                     device_id: str,
                     table: str,
                     row_id: str,
                     refs: Optional[Dict[str, str]] = None,
                     data: Any = None) -> Row:
        """Push a tombstone for one row; returns the tombstone."""
        at = self.clock()
        row = self.stamp(
            Row(table=table, id=row_id, data=data, refs=dict(refs or {}), deleted_at=at),
            device_id,
            at=at,
        )
        await self.push(user_id, device_id, {table: [row]})
        return row

    # ==================== Table helpers ====================

    async def upsert_checklist_set(self, user_id: str, device_id: str, set_id: str,
                                   title: str, order: int,
                                   deleted_at: Optional[int] = None) -> Row:
        return await self.upsert(
            user_id, device_id, "checklist_sets", set_id,
            data=ChecklistSetData(title=title, order=order),
            deleted_at=deleted_at,
        )

    async def upsert_checklist_action(self, user_id: str, device_id: str, action_id: str,
                                      set_id: str, title: str, order: int,
                                      is_done: Optional[bool] = None) -> Row:
        return await self.upsert(
            user_id, device_id, "checklist_actions", action_id,
            data=ChecklistActionData(title=title, order=order, is_done=is_done),
            refs={"set_id": set_id},
        )

    async def delete_checklist_action(self, user_id: str, device_id: str, action_id: str,
                                      set_id: str, title: Optional[str] = None,
                                      order: Optional[int] = None,
                                      is_done: Optional[bool] = None) -> Row:
        return await self.delete(
            user_id, device_id, "checklist_actions", action_id,
            refs={"set_id": set_id},
            data=ChecklistActionData(title=title, order=order, is_done=is_done),
        )

    async def start_action_log(self, user_id: str, device_id: str, log_id: str,
                               set_id: str, action_id: str, start_at_ms: int) -> Row:
        """Record the start of an action run (end and duration still open)."""
        return await self.upsert(
            user_id, device_id, "checklist_action_logs", log_id,
            data=ActionLogData(start_at_ms=start_at_ms),
            refs={"set_id": set_id, "action_id": action_id},
        )

    async def end_action_log(self, user_id: str, device_id: str, log_id: str,
                             set_id: str, action_id: str, end_at_ms: int,
                             duration_ms: Optional[int] = None,
                             start_at_ms: Optional[int] = None) -> Row:
        """
        Close an action run.

        Rows are full snapshots, so pass start_at_ms to keep it on the row;
        duration_ms is derived from it when omitted.
        """
        if duration_ms is None and start_at_ms is not None:
            duration_ms = max(0, end_at_ms - start_at_ms)
        return await self.upsert(
            user_id, device_id, "checklist_action_logs", log_id,
            data=ActionLogData(start_at_ms=start_at_ms, end_at_ms=end_at_ms, duration_ms=duration_ms),
            refs={"set_id": set_id, "action_id": action_id},
        )

    async def upsert_dictionary_entry(self, user_id: str, device_id: str, entry_id: str,
                                      term: Optional[str] = None, yomi: Optional[str] = None,
                                      meaning: Optional[str] = None,
                                      deleted_at: Optional[int] = None) -> Row:
        return await self.upsert(
            user_id, device_id, "dictionary_entries", entry_id,
            data=DictionaryEntryData(term=term, yomi=yomi, meaning=meaning),
            deleted_at=deleted_at,
        )

    async def delete_dictionary_entry(self, user_id: str, device_id: str, entry_id: str) -> Row:
        return await self.delete(user_id, device_id, "dictionary_entries", entry_id)


__all__ = [
    "RowSynchronizer",
    "PullResult",
    "PushResult",
    "parse_pull_envelope",
    "invoke",
    "PULL_PATH",
    "PUSH_PATH",
]
