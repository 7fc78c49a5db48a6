"""
Cross-context sync bus

Lets any surface broadcast "pull now" / "push now" / "reset" intents to every
other surface on the same device, without a shared coordinator. Delivery
goes through every configured adapter at once:

- SameContextAdapter: message post inside one context (an EventBus)
- BroadcastAdapter: named fan-out channel shared by every context in the process
- StorageAdapter: durable write to a SQLite file, observed by a watcher
  thread in each subscribing context (also works across processes)

A listener attached through any one adapter still hears the intent when
another adapter is unavailable. The price is duplicate delivery: one emit
may call a handler once per adapter, so handlers must be idempotent. There
is no ordering between pull and push intents; callers that need
pull-then-push must await the first before emitting the second.

Usage:
    bus = SyncBus.from_config(config)
    dispose = bus.subscribe_pull(lambda intent: schedule_pull())
    bus.emit_pull(user_id="demo", device_id=device_id)
    dispose()
"""

import asyncio
import inspect
import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from .event_bus import WILDCARD, EventBus
from .events import EVENT_PULL, EVENT_PUSH, EVENT_RESET, SyncIntent, now_ms

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "synclayer-sync"
STICKY_PULL_KEY = "sync.pull.sticky"

Listener = Callable[[SyncIntent], None]
Disposer = Callable[[], None]


class BusAdapter(ABC):
    """
    One delivery path for sync intents.

    Implementations fan an intent out to every listener reachable through
    their mechanism. Listener errors are logged, never raised to the emitter.
    """

    name = "adapter"
    # True when publish() may wait on I/O; async emitters run it off the loop
    blocking = False

    @abstractmethod
    def publish(self, intent: SyncIntent) -> None:
        """Deliver an intent to every listener on this path."""
        pass

    @abstractmethod
    def subscribe(self, listener: Listener) -> Disposer:
        """Register a listener; the returned callable removes it."""
        pass

    def close(self) -> None:
        """Release resources held by the adapter."""
        pass


def _call_listeners(adapter_name: str, listeners: Sequence[Listener], intent: SyncIntent) -> None:
    for listener in listeners:
        try:
            listener(intent)
        except Exception as e:
            logger.error(f"[{adapter_name}] listener failed for {intent.event_type}: {e}", exc_info=True)


class SameContextAdapter(BusAdapter):
    """Posts intents through the context's own EventBus."""

    name = "same-context"

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus or EventBus()

    def publish(self, intent: SyncIntent) -> None:
        self.event_bus.publish(intent)

    def subscribe(self, listener: Listener) -> Disposer:
        return self.event_bus.subscribe(WILDCARD, listener)


# Process-wide registry of named broadcast channels
_channels: Dict[str, List[Listener]] = {}
_channels_lock = threading.Lock()


def reset_broadcast_channels() -> None:
    """Drop every broadcast channel listener (mainly for testing)."""
    with _channels_lock:
        _channels.clear()


class BroadcastAdapter(BusAdapter):
    """Fan-out over a channel name shared by every bus in the process."""

    name = "broadcast"

    def __init__(self, channel: str = DEFAULT_CHANNEL):
        self.channel = channel

    def publish(self, intent: SyncIntent) -> None:
        with _channels_lock:
            listeners = list(_channels.get(self.channel, []))
        _call_listeners(self.name, listeners, intent)

    def subscribe(self, listener: Listener) -> Disposer:
        with _channels_lock:
            _channels.setdefault(self.channel, []).append(listener)

        def dispose() -> None:
            with _channels_lock:
                listeners = _channels.get(self.channel, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    _channels.pop(self.channel, None)

        return dispose


class StorageAdapter(BusAdapter):
    """
    Durable key/value signalling through a SQLite file.

    publish() appends a row; each subscribing adapter runs a watcher thread
    that polls for rows newer than the last one it saw and hands them to its
    listeners. Listeners therefore run on the watcher thread.

    One persistent connection guarded by a lock, in WAL mode so several
    processes can write the same file.
    """

    name = "storage"
    blocking = True

    def __init__(self,
                 db_path: Union[str, Path],
                 poll_interval: float = 0.5,
                 retention: int = 200):
        """
        Args:
            db_path: SQLite file shared by every context on the device
            poll_interval: Seconds between watcher polls
            retention: Number of most recent signal rows kept
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.poll_interval = poll_interval
        self.retention = retention

        # check_same_thread=False: the watcher thread shares this connection under _db_lock
        self._conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,
            timeout=30.0,
        )
        self._db_lock = threading.Lock()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_signals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_markers (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()
        # Each watcher owns its stop event, so a late stop never hits a newer watcher
        self._watcher: Optional[Tuple[threading.Thread, threading.Event]] = None
        self._last_id = 0
        self._closed = False

    # ==================== Signals ====================

    def publish(self, intent: SyncIntent) -> None:
        payload = json.dumps(intent.to_dict())
        with self._db_lock:
            cursor = self._conn.execute(
                "INSERT INTO sync_signals (key, payload) VALUES (?, ?)",
                (intent.event_type, payload),
            )
            newest = cursor.lastrowid
            self._conn.execute(
                "DELETE FROM sync_signals WHERE id <= ?",
                (newest - self.retention,),
            )

    def _max_id(self) -> int:
        with self._db_lock:
            row = self._conn.execute("SELECT COALESCE(MAX(id), 0) FROM sync_signals").fetchone()
        return row[0] if row else 0

    def subscribe(self, listener: Listener) -> Disposer:
        with self._listeners_lock:
            self._listeners.append(listener)
            if self._watcher is None:
                self._last_id = self._max_id()
                stop = threading.Event()
                thread = threading.Thread(
                    target=self._watch,
                    args=(stop,),
                    name=f"synclayer-bus-{self.db_path.name}",
                    daemon=True,
                )
                self._watcher = (thread, stop)
                thread.start()

        def dispose() -> None:
            watcher = None
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
                if not self._listeners:
                    watcher = self._detach_watcher()
            self._join(watcher)

        return dispose

    def poll_once(self) -> int:
        """Deliver signals written since the last poll; returns how many."""
        with self._db_lock:
            rows = self._conn.execute(
                "SELECT id, payload FROM sync_signals WHERE id > ? ORDER BY id",
                (self._last_id,),
            ).fetchall()

        delivered = 0
        for row_id, payload in rows:
            self._last_id = row_id
            try:
                intent = SyncIntent.from_dict(json.loads(payload))
            except (ValueError, TypeError) as e:
                logger.warning(f"[storage] skipping malformed signal {row_id}: {e}")
                continue
            with self._listeners_lock:
                listeners = list(self._listeners)
            _call_listeners(self.name, listeners, intent)
            delivered += 1
        return delivered

    def _watch(self, stop: threading.Event) -> None:
        while not stop.wait(self.poll_interval):
            try:
                self.poll_once()
            except sqlite3.Error as e:
                logger.warning(f"[storage] poll of {self.db_path} failed: {e}")

    @property
    def watching(self) -> bool:
        with self._listeners_lock:
            return self._watcher is not None and self._watcher[0].is_alive()

    def _detach_watcher(self) -> Optional[Tuple[threading.Thread, threading.Event]]:
        # Caller holds _listeners_lock
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher[1].set()
        return watcher

    def _join(self, watcher: Optional[Tuple[threading.Thread, threading.Event]]) -> None:
        if watcher is not None and watcher[0] is not threading.current_thread():
            watcher[0].join(timeout=max(self.poll_interval * 4, 1.0))

    def _stop_watcher(self) -> None:
        with self._listeners_lock:
            watcher = self._detach_watcher()
        self._join(watcher)

    # ==================== Markers ====================

    def set_marker(self, key: str, value: Any) -> None:
        with self._db_lock:
            self._conn.execute(
                """
                INSERT INTO sync_markers (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                (key, json.dumps(value)),
            )

    def get_marker(self, key: str) -> Any:
        with self._db_lock:
            row = self._conn.execute(
                "SELECT value FROM sync_markers WHERE key = ?",
                (key,),
            ).fetchone()
        return json.loads(row[0]) if row else None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_watcher()
        with self._db_lock:
            self._conn.close()


class SyncBus:
    """
    Fan-out of sync intents over every configured adapter.

    Each SyncBus instance is one execution context (a surface). With
    include_self=False a bus ignores intents it emitted itself.
    """

    def __init__(self,
                 adapters: Optional[Sequence[BusAdapter]] = None,
                 context_id: Optional[str] = None,
                 include_self: bool = True):
        """
        Args:
            adapters: Delivery paths; defaults to same-context + broadcast
            context_id: Identifier of this context (random when omitted)
            include_self: Whether handlers see intents this bus emitted
        """
        if adapters is None:
            adapters = [SameContextAdapter(), BroadcastAdapter()]
        self.adapters: List[BusAdapter] = list(adapters)
        self.context_id = context_id or uuid.uuid4().hex
        self.include_self = include_self
        self._sticky_pull_at: Optional[int] = None
        logger.debug(
            f"SyncBus {self.context_id} using adapters: {[a.name for a in self.adapters]}"
        )

    @classmethod
    def from_config(cls, config, event_bus: Optional[EventBus] = None,
                    include_self: bool = True) -> "SyncBus":
        """Build a bus with all three adapters from a SyncConfig."""
        adapters: List[BusAdapter] = [
            SameContextAdapter(event_bus),
            BroadcastAdapter(),
            StorageAdapter(config.resolved_bus_db_path, poll_interval=config.bus_poll_interval_seconds),
        ]
        return cls(adapters, include_self=include_self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ==================== Emit ====================

    def _intent(self, event_type: str, user_id: str, device_id: str) -> SyncIntent:
        return SyncIntent(
            event_type=event_type,
            user_id=user_id,
            device_id=device_id,
            origin=self.context_id,
        )

    @staticmethod
    def _publish(adapter: BusAdapter, intent: SyncIntent) -> None:
        try:
            adapter.publish(intent)
        except Exception as e:
            logger.warning(f"[{adapter.name}] failed to publish {intent.event_type}: {e}")

    def emit(self, event_type: str, user_id: str, device_id: str) -> SyncIntent:
        """
        Broadcast an intent through every adapter.

        An adapter that fails is logged and skipped; the others still deliver.
        """
        intent = self._intent(event_type, user_id, device_id)
        for adapter in self.adapters:
            self._publish(adapter, intent)
        return intent

    async def emit_async(self, event_type: str, user_id: str, device_id: str) -> SyncIntent:
        """
        emit() for coroutines: blocking adapters publish in a worker thread,
        the rest publish inline on the event loop.
        """
        intent = self._intent(event_type, user_id, device_id)
        for adapter in self.adapters:
            if adapter.blocking:
                await asyncio.to_thread(self._publish, adapter, intent)
            else:
                self._publish(adapter, intent)
        return intent

    def emit_pull(self, user_id: str, device_id: str) -> SyncIntent:
        return self.emit(EVENT_PULL, user_id, device_id)

    def emit_push(self, user_id: str, device_id: str) -> SyncIntent:
        return self.emit(EVENT_PUSH, user_id, device_id)

    def emit_reset(self, user_id: str, device_id: str) -> SyncIntent:
        return self.emit(EVENT_RESET, user_id, device_id)

    # ==================== Subscribe ====================

    def subscribe(self, event_type: str, handler: Listener) -> Disposer:
        """
        Register a handler for one intent type on every adapter.

        Returns:
            Disposer that unregisters the handler from all adapters; calling
            it more than once is harmless
        """
        def listener(intent: SyncIntent) -> None:
            if intent.event_type != event_type:
                return
            if not self.include_self and intent.origin == self.context_id:
                return
            handler(intent)

        disposers: List[Disposer] = []
        for adapter in self.adapters:
            try:
                disposers.append(adapter.subscribe(listener))
            except Exception as e:
                logger.warning(f"[{adapter.name}] failed to subscribe to {event_type}: {e}")

        def dispose() -> None:
            while disposers:
                undo = disposers.pop()
                try:
                    undo()
                except Exception as e:
                    logger.warning(f"Failed to unsubscribe {event_type} listener: {e}")

        return dispose

    def subscribe_pull(self, handler: Listener) -> Disposer:
        return self.subscribe(EVENT_PULL, handler)

    def subscribe_push(self, handler: Listener) -> Disposer:
        return self.subscribe(EVENT_PUSH, handler)

    def subscribe_reset(self, handler: Listener) -> Disposer:
        return self.subscribe(EVENT_RESET, handler)

    # ==================== Sticky pull marker ====================

    def mark_sticky_pull(self, at: Optional[int] = None) -> int:
        """
        Record that a push just happened.

        Surfaces that regain focus compare this against their last pull to
        decide whether to pull immediately.
        """
        at = at if at is not None else now_ms()
        self._sticky_pull_at = at
        for adapter in self._storage_adapters():
            self._set_sticky_marker(adapter, at)
        return at

    async def announce_push(self, user_id: str, device_id: str) -> SyncIntent:
        """
        Record the sticky pull marker and emit a pull intent after a push,
        keeping SQLite writes off the event loop.
        """
        at = now_ms()
        self._sticky_pull_at = at
        for adapter in self._storage_adapters():
            await asyncio.to_thread(self._set_sticky_marker, adapter, at)
        return await self.emit_async(EVENT_PULL, user_id, device_id)

    def _storage_adapters(self) -> List[StorageAdapter]:
        return [adapter for adapter in self.adapters if isinstance(adapter, StorageAdapter)]

    @staticmethod
    def _set_sticky_marker(adapter: StorageAdapter, at: int) -> None:
        try:
            adapter.set_marker(STICKY_PULL_KEY, at)
        except sqlite3.Error as e:
            logger.warning(f"[storage] failed to record sticky pull marker: {e}")

    def sticky_pull_at(self) -> Optional[int]:
        """Time (ms) of the most recent push recorded by any context."""
        for adapter in self.adapters:
            if isinstance(adapter, StorageAdapter):
                try:
                    value = adapter.get_marker(STICKY_PULL_KEY)
                except sqlite3.Error as e:
                    logger.warning(f"[storage] failed to read sticky pull marker: {e}")
                    continue
                if value is not None:
                    return int(value)
        return self._sticky_pull_at

    def close(self) -> None:
        for adapter in self.adapters:
            try:
                adapter.close()
            except Exception as e:
                logger.warning(f"[{adapter.name}] close failed: {e}")


Handler = Callable[[], Union[None, Awaitable[None]]]


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


# Scheduled handler runs; holding them keeps tasks alive until they finish
_pending: Set[Any] = set()
_pending_lock = threading.Lock()


def _track(name: str, intent: SyncIntent, future: Any) -> None:
    with _pending_lock:
        _pending.add(future)

    def done(f: Any) -> None:
        with _pending_lock:
            _pending.discard(f)
        if f.cancelled():
            logger.debug(f"Async {name} handler for {intent.nonce} was cancelled")
            return
        error = f.exception()
        if error is not None:
            logger.error(
                f"Async {name} handler failed for {intent.event_type} ({intent.nonce}): {error}",
                exc_info=(type(error), error, error.__traceback__),
            )

    future.add_done_callback(done)


def _dispatcher(name: str, handler: Handler,
                loop: Optional[asyncio.AbstractEventLoop]) -> Listener:
    def listener(intent: SyncIntent) -> None:
        result = handler()
        if not inspect.isawaitable(result):
            return
        current = _running_loop()
        target = loop or current
        if target is None:
            logger.warning(f"No event loop to run async {name} handler; dropping intent {intent.nonce}")
            if inspect.iscoroutine(result):
                result.close()
            return
        if target is current:
            future = asyncio.ensure_future(result)
        else:
            future = asyncio.run_coroutine_threadsafe(result, target)
        _track(name, intent, future)

    return listener


def register_manual_sync(bus: SyncBus,
                         pull: Handler,
                         push: Handler,
                         reset: Optional[Handler] = None,
                         loop: Optional[asyncio.AbstractEventLoop] = None) -> Disposer:
    """
    Wire a surface's pull/push/reset handlers to the bus in one call.

    Handlers take no arguments and may be coroutine functions; coroutines
    are scheduled on `loop` (or the running loop of the delivering thread).
    Intents delivered from the storage watcher thread need `loop` to reach
    an async handler.

    Returns:
        Disposer removing every registration
    """
    disposers = [
        bus.subscribe_pull(_dispatcher("pull", pull, loop)),
        bus.subscribe_push(_dispatcher("push", push, loop)),
    ]
    if reset is not None:
        disposers.append(bus.subscribe_reset(_dispatcher("reset", reset, loop)))

    def dispose() -> None:
        for undo in disposers:
            undo()

    return dispose


__all__ = [
    "BusAdapter",
    "SameContextAdapter",
    "BroadcastAdapter",
    "StorageAdapter",
    "SyncBus",
    "register_manual_sync",
    "reset_broadcast_channels",
    "DEFAULT_CHANNEL",
    "STICKY_PULL_KEY",
]
