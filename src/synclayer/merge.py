"""
Dominance merge for synced rows

Last-writer-wins with a deterministic tie-break chain. For two versions of
the same (table, id) the one with the greater key wins:

1. updated_at (most recent wins)
2. priority rank of priority_class (configured PriorityOrder)
3. updated_by, compared lexically
4. tombstone over live
5. canonical JSON of the foreign keys, then of the data bag

user_id is not part of the key; rows are already scoped to one user.

Because the key is a total order over distinct writes, applying any set of
versions in any order, any number of times, ends in the same state. That is
what lets the stream and polling paths apply diffs without coordination.
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .rows import PriorityOrder, Row

logger = logging.getLogger(__name__)


class DominanceRule:
    """Orders competing versions of one row."""

    def __init__(self, priority_order: Optional[PriorityOrder] = None):
        self.priority_order = priority_order or PriorityOrder()

    def key(self, row: Row) -> Tuple[Any, ...]:
        return (
            row.updated_at if row.updated_at is not None else -1,
            self.priority_order.rank(row.priority_class),
            row.updated_by or "",
            1 if row.is_tombstone else 0,
            row.deleted_at if row.deleted_at is not None else -1,
            json.dumps(row.refs, sort_keys=True, default=str),
            json.dumps(row.data_dict(), sort_keys=True, default=str),
        )

    def dominates(self, incoming: Row, current: Optional[Row]) -> bool:
        """True if incoming strictly beats current (or there is no current)."""
        if current is None:
            return True
        if incoming.key != current.key:
            raise ValueError(f"Cannot compare rows {incoming.key} and {current.key}")
        return self.key(incoming) > self.key(current)

    def winner(self, a: Row, b: Row) -> Row:
        return a if not self.dominates(b, a) else b


@dataclass
class MergeResult:
    """Outcome of applying a batch of rows"""
    applied: List[Row]
    discarded: List[Row]

    @property
    def changed(self) -> bool:
        return bool(self.applied)


class RowStore:
    """
    Local replica of synced rows.

    Holds the dominant version of every (table, id) seen so far, including
    tombstones. Thread-safe: the bus watcher thread and the event loop may
    both apply into the same store.

    Usage:
        store = RowStore(DominanceRule(PriorityOrder(("desktop", "mobile"))))
        store.apply_diffs(pull_result.diffs)
        for row in store.live_rows("checklist_sets"):
            print(row.data.title)
    """

    def __init__(self, rule: Optional[DominanceRule] = None):
        self.rule = rule or DominanceRule()
        self._rows: Dict[Tuple[str, str], Row] = {}
        self._lock = threading.Lock()

    def apply(self, rows: Iterable[Row]) -> MergeResult:
        """Merge rows, keeping each incoming version only if it dominates."""
        applied: List[Row] = []
        discarded: List[Row] = []
        with self._lock:
            for row in rows:
                current = self._rows.get(row.key)
                if self.rule.dominates(row, current):
                    self._rows[row.key] = row
                    applied.append(row)
                else:
                    discarded.append(row)
        if applied:
            logger.debug(f"Merged {len(applied)} rows, discarded {len(discarded)}")
        return MergeResult(applied=applied, discarded=discarded)

    def apply_diffs(self, diffs: Mapping[str, Sequence[Row]]) -> MergeResult:
        """Merge a pull's per-table diffs."""
        return self.apply(row for rows in diffs.values() for row in rows)

    def get(self, table: str, row_id: str) -> Optional[Row]:
        """Dominant version of a row, tombstones included."""
        with self._lock:
            return self._rows.get((table, row_id))

    def all_rows(self, table: str) -> List[Row]:
        with self._lock:
            return [row for (t, _), row in sorted(self._rows.items()) if t == table]

    def live_rows(self, table: str) -> List[Row]:
        """Rows whose dominant version is not a tombstone."""
        return [row for row in self.all_rows(table) if not row.is_tombstone]

    def snapshot(self) -> Dict[Tuple[str, str], Row]:
        with self._lock:
            return dict(self._rows)

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


__all__ = ["DominanceRule", "MergeResult", "RowStore"]
