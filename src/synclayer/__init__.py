"""
synclayer - multi-device, multi-surface sync core

Keeps client-held state consistent with a remote authority:
- DocumentClient: single documents with ETag optimistic concurrency
- RowSynchronizer: batch pull/push of row tables with tombstones
- SmartSync: event stream + polling fallback driving pulls
- SyncBus: pull/push/reset intents between surfaces on one device
"""

__version__ = "0.1.0"

from .errors import (
    SyncError,
    NotFoundError,
    PreconditionFailedError,
    ConflictError,
    TransportError,
    ProtocolError,
    BadRequestError,
)
from .config import SyncConfig, load_config, DEFAULT_TABLES, DEFAULT_PRIORITY_ORDER
from .transport import HttpTransport
from .documents import Document, DocumentClient, ETagCache
from .rows import (
    PriorityOrder,
    Row,
    TableSchema,
    register_table,
    get_schema,
    ChecklistSetData,
    ChecklistActionData,
    ActionLogData,
    DictionaryEntryData,
)
from .merge import DominanceRule, MergeResult, RowStore
from .batch import RowSynchronizer, PullResult, PushResult
from .realtime import SmartSync, SyncState
from .events import SyncIntent, EVENT_PULL, EVENT_PUSH, EVENT_RESET
from .event_bus import EventBus
from .bus import (
    BusAdapter,
    SameContextAdapter,
    BroadcastAdapter,
    StorageAdapter,
    SyncBus,
    register_manual_sync,
)
from .cursors import CursorStore, MemoryCursorStore, SqliteCursorStore
from .table_sync import TableSync
from .device import get_device_id
from .client import SyncClient

__all__ = [
    "__version__",
    # Errors
    "SyncError",
    "NotFoundError",
    "PreconditionFailedError",
    "ConflictError",
    "TransportError",
    "ProtocolError",
    "BadRequestError",
    # Config / transport
    "SyncConfig",
    "load_config",
    "DEFAULT_TABLES",
    "DEFAULT_PRIORITY_ORDER",
    "HttpTransport",
    # Documents
    "Document",
    "DocumentClient",
    "ETagCache",
    # Rows
    "PriorityOrder",
    "Row",
    "TableSchema",
    "register_table",
    "get_schema",
    "ChecklistSetData",
    "ChecklistActionData",
    "ActionLogData",
    "DictionaryEntryData",
    "DominanceRule",
    "MergeResult",
    "RowStore",
    "RowSynchronizer",
    "PullResult",
    "PushResult",
    # Realtime
    "SmartSync",
    "SyncState",
    # Bus
    "SyncIntent",
    "EVENT_PULL",
    "EVENT_PUSH",
    "EVENT_RESET",
    "EventBus",
    "BusAdapter",
    "SameContextAdapter",
    "BroadcastAdapter",
    "StorageAdapter",
    "SyncBus",
    "register_manual_sync",
    # Helpers
    "CursorStore",
    "MemoryCursorStore",
    "SqliteCursorStore",
    "TableSync",
    "get_device_id",
    "SyncClient",
]
