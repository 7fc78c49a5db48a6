"""
Row model for batch-synchronized tables

Each synced table has a closed, typed data bag. A Row couples that bag with
the bookkeeping every table shares: updated_at, updated_by, priority_class,
deleted_at (tombstone) and the table's foreign keys.

Wire shapes:
    pulled (flat):  {"id", "user_id", "set_id", "title", "order",
                     "updated_at", "updated_by", "deleted_at", ...}
    pushed:         {"id", "set_id", "updated_at",
                     "updated_by": "<priority_class>|<device>",
                     "deleted_at", "data": {...}}
"""

import logging
import re
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, Iterable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


# ==================== Priority classes ====================

class PriorityOrder:
    """
    Explicit tie-break ranking of device priority classes.

    Classes are listed lowest to highest; when two writes share the same
    updated_at, the write from the higher-ranked class wins. Unknown or
    missing classes rank below every listed class.

    Example:
        order = PriorityOrder(("desktop", "mobile"))
        order.rank("mobile") > order.rank("desktop")   # True
    """

    UNRANKED = -1

    def __init__(self, classes: Iterable[str] = ("desktop", "mobile")):
        self.classes: Tuple[str, ...] = tuple(classes)
        if len(set(self.classes)) != len(self.classes):
            raise ValueError(f"Duplicate priority classes: {self.classes}")
        self._ranks = {name: i for i, name in enumerate(self.classes)}

    def rank(self, priority_class: Optional[str]) -> int:
        if priority_class is None:
            return self.UNRANKED
        return self._ranks.get(priority_class, self.UNRANKED)

    def __repr__(self) -> str:
        return f"PriorityOrder({self.classes!r})"


# Older clients encoded the class as a leading digit in updated_by ("9|dev").
LEGACY_PRIORITY_TAGS = {
    "9": "mobile",
    "5": "desktop",
}

_LEGACY_UPDATED_BY = re.compile(r"^(\d)\|(.+)$")
# Class names must fit the "<class>|<device>" tag
PRIORITY_CLASS_PATTERN = re.compile(r"^[A-Za-z][\w.-]*$")
_TAGGED_UPDATED_BY = re.compile(r"^([A-Za-z][\w.-]*)\|(.+)$")


def split_legacy_updated_by(updated_by: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split a legacy "<tag>|<device>" writer id into (priority_class, device_id)."""
    if not updated_by:
        return None, updated_by
    match = _LEGACY_UPDATED_BY.match(updated_by)
    if not match:
        return None, updated_by
    tag, device_id = match.groups()
    priority_class = LEGACY_PRIORITY_TAGS.get(tag)
    if priority_class is None:
        return None, updated_by
    return priority_class, device_id


def encode_updated_by(priority_class: Optional[str], device_id: Optional[str]) -> Optional[str]:
    """
    Writer id as sent on push: "<priority_class>|<device>".

    The push contract has no field of its own for the class, so it rides in
    updated_by and comes back on every pulled copy of the row.
    """
    if not priority_class or not device_id:
        return device_id
    return f"{priority_class}|{device_id}"


def split_updated_by(updated_by: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a pulled writer id into (priority_class, device_id).

    Understands both "<class>|<device>" and the legacy digit tags; anything
    else is a bare device id.
    """
    priority_class, device_id = split_legacy_updated_by(updated_by)
    if priority_class is not None or not updated_by:
        return priority_class, device_id
    match = _TAGGED_UPDATED_BY.match(updated_by)
    if not match:
        return None, updated_by
    return match.group(1), match.group(2)


# ==================== Table data bags ====================

@dataclass(frozen=True)
class ChecklistSetData:
    """Checklist set: a named, ordered group of actions"""
    title: Optional[str] = None
    order: Optional[int] = None


@dataclass(frozen=True)
class ChecklistActionData:
    """One action within a checklist set"""
    title: Optional[str] = None
    order: Optional[int] = None
    is_done: Optional[bool] = None


@dataclass(frozen=True)
class ActionLogData:
    """Start/end timing of one run of an action"""
    start_at_ms: Optional[int] = None
    end_at_ms: Optional[int] = None
    duration_ms: Optional[int] = None


@dataclass(frozen=True)
class DictionaryEntryData:
    """Glossary term with reading and meaning"""
    term: Optional[str] = None
    yomi: Optional[str] = None
    meaning: Optional[str] = None


@dataclass(frozen=True)
class TableSchema:
    """Registered shape of a synced table"""
    name: str
    data_type: Type
    foreign_keys: Tuple[str, ...] = ()

    @property
    def data_fields(self) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(self.data_type))


TABLES: Dict[str, TableSchema] = {}


def register_table(name: str, data_type: Type, foreign_keys: Iterable[str] = ()) -> TableSchema:
    """
    Register a synced table and its data bag type.

    Args:
        name: Table name as used on the wire
        data_type: Frozen dataclass describing the table's fields
        foreign_keys: Names of fixed foreign-key columns (e.g. "set_id")

    Returns:
        The registered TableSchema

    Raises:
        ValueError: If the name is taken by a different schema
    """
    schema = TableSchema(name=name, data_type=data_type, foreign_keys=tuple(foreign_keys))
    existing = TABLES.get(name)
    if existing is not None and existing != schema:
        raise ValueError(f"Table {name!r} is already registered with a different schema")
    TABLES[name] = schema
    return schema


def get_schema(table: str) -> TableSchema:
    """Look up a registered table.

    Raises:
        ValueError: If the table is not registered
    """
    try:
        return TABLES[table]
    except KeyError:
        raise ValueError(
            f"Unknown table {table!r}; registered tables: {sorted(TABLES)}"
        ) from None


register_table("checklist_sets", ChecklistSetData)
register_table("checklist_actions", ChecklistActionData, foreign_keys=("set_id",))
register_table("checklist_action_logs", ActionLogData, foreign_keys=("set_id", "action_id"))
register_table("dictionary_entries", DictionaryEntryData)


# ==================== Row ====================

@dataclass
class Row:
    """
    One version of a synced row.

    Attributes:
        table: Registered table name
        id: Row id, unique within the table
        data: Instance of the table's data bag type
        updated_at: Logical write time in ms (client assigned)
        updated_by: Writer device id
        priority_class: Device class used to break updated_at ties
        deleted_at: Tombstone time in ms; None means the row is live
        refs: Foreign keys, e.g. {"set_id": "s1"} (never enforced)
        user_id: Owning user, when the server includes it
    """
    table: str
    id: str
    data: Any = None
    updated_at: Optional[int] = None
    updated_by: Optional[str] = None
    priority_class: Optional[str] = None
    deleted_at: Optional[int] = None
    refs: Dict[str, str] = field(default_factory=dict)
    user_id: Optional[str] = None

    def __post_init__(self):
        schema = get_schema(self.table)
        if not self.id:
            raise ValueError(f"{self.table} row requires an id")
        if self.data is None:
            self.data = schema.data_type()
        elif isinstance(self.data, dict):
            self.data = _build_data(schema, self.data)
        elif not isinstance(self.data, schema.data_type):
            raise TypeError(
                f"{self.table} row data must be {schema.data_type.__name__}, "
                f"got {type(self.data).__name__}"
            )
        unknown = set(self.refs) - set(schema.foreign_keys)
        if unknown:
            raise ValueError(f"{self.table} has no foreign keys {sorted(unknown)}")

    @property
    def is_tombstone(self) -> bool:
        return self.deleted_at is not None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.table, self.id)

    def data_dict(self) -> Dict[str, Any]:
        return asdict(self.data)

    def to_push_dict(self) -> Dict[str, Any]:
        """Serialize into the push-batch row shape (class folded into updated_by)."""
        payload: Dict[str, Any] = {
            "id": self.id,
            "updated_at": self.updated_at,
            "updated_by": encode_updated_by(self.priority_class, self.updated_by),
            "deleted_at": self.deleted_at,
        }
        payload.update(self.refs)
        payload["data"] = self.data_dict()
        return payload

    def to_dict(self) -> Dict[str, Any]:
        """Flat dictionary, the same shape the pull endpoint returns."""
        payload: Dict[str, Any] = {
            "id": self.id,
            "user_id": self.user_id,
        }
        payload.update(self.refs)
        payload.update(self.data_dict())
        payload.update({
            "updated_at": self.updated_at,
            "updated_by": self.updated_by,
            "priority_class": self.priority_class,
            "deleted_at": self.deleted_at,
        })
        return payload

    @classmethod
    def from_wire(cls, table: str, raw: Dict[str, Any]) -> "Row":
        """
        Build a Row from a pulled (flat) or pushed (nested `data`) object.

        Tagged "<class>|<device>" updated_by values (and the legacy digit
        tags) are split into priority_class and device id. An explicit
        priority_class field, when a server sends one, takes precedence
        over the tag.

        Raises:
            ValueError: If the object is not a dict or has no id
        """
        if not isinstance(raw, dict):
            raise ValueError(f"{table} row must be an object, got {type(raw).__name__}")
        schema = get_schema(table)

        nested = raw.get("data") if isinstance(raw.get("data"), dict) else None
        source = nested if nested is not None else raw
        data = {name: source.get(name) for name in schema.data_fields if name in source}

        tagged_class, updated_by = split_updated_by(raw.get("updated_by"))
        priority_class = raw.get("priority_class") or tagged_class

        refs = {name: raw[name] for name in schema.foreign_keys if raw.get(name) is not None}

        return cls(
            table=table,
            id=str(raw.get("id") or ""),
            data=_build_data(schema, data),
            updated_at=_as_int(raw.get("updated_at")),
            updated_by=updated_by,
            priority_class=priority_class,
            deleted_at=_as_int(raw.get("deleted_at")),
            refs=refs,
            user_id=raw.get("user_id"),
        )


def _build_data(schema: TableSchema, values: Dict[str, Any]) -> Any:
    allowed = set(schema.data_fields)
    unknown = set(values) - allowed
    if unknown:
        logger.debug(f"Dropping unknown {schema.name} fields: {sorted(unknown)}")
    return schema.data_type(**{k: v for k, v in values.items() if k in allowed})


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Expected an integer timestamp, got {value!r}") from None


__all__ = [
    "PriorityOrder",
    "LEGACY_PRIORITY_TAGS",
    "split_legacy_updated_by",
    "split_updated_by",
    "encode_updated_by",
    "ChecklistSetData",
    "ChecklistActionData",
    "ActionLogData",
    "DictionaryEntryData",
    "TableSchema",
    "TABLES",
    "register_table",
    "get_schema",
    "Row",
]
