"""
Realtime Transport Coordinator ("smart sync")

Composes the server-sent event stream with a timed polling loop into one
subscription:

    STARTING -> STREAMING <-> DEGRADED -> STOPPED

- The stream delivers `{server_time_ms, diffs}` envelopes as `data:` events.
  Malformed events are logged and skipped; the stream stays up.
- When the stream fails or ends, the subscription is DEGRADED and reconnects
  after an exponential, capped delay using the current cursor.
- Polling runs alongside the stream regardless of its health, so a stream
  that silently stalls never starves the client. Poll failures back off;
  a successful poll resets the interval.

Both paths call apply_diffs without mutual exclusion. The dominance merge
makes that safe, and the cursor only ever moves forward.

Usage:
    smart = SmartSync(sync, "demo", get_since, set_since, store.apply_diffs)
    await smart.start()
    ...
    await smart.stop()
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Callable, List, Optional, Sequence

from .batch import Diffs, PullResult, RowSynchronizer, invoke, parse_pull_envelope
from .config import DEFAULT_TABLES
from .errors import ProtocolError, SyncError

logger = logging.getLogger(__name__)

STREAM_PATH = "/api/sync/stream-sse"


class SyncState(Enum):
    """Lifecycle of a SmartSync subscription"""
    STARTING = "starting"
    STREAMING = "streaming"
    POLLING = "polling"  # polling-only subscription (stream=False) after a successful poll
    DEGRADED = "degraded"
    STOPPED = "stopped"


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    Yield the data payload of each event in a text/event-stream.

    Multiple `data:` lines of one event are joined with newlines. Comment
    lines (keepalives) and other fields are ignored. An event cut off by
    the end of the stream is dropped.
    """
    data_lines: List[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)


class SmartSync:
    """
    Stream + polling subscription driving a RowSynchronizer's pull path.

    Args:
        synchronizer: RowSynchronizer used for polling (its transport opens the stream)
        user_id: User whose rows are synced
        get_since: Returns the current cursor (sync or async)
        set_since: Stores a new cursor, only ever called with a larger value
            (sync or async; keep blocking storage behind an async callable)
        apply_diffs: Sync or async callable receiving Dict[table, List[Row]]
        tables: Tables to subscribe to
        stream: Open the event stream (False runs polling only)
        fallback_polling: Run the polling loop
        polling_interval: Baseline seconds between polls
        max_polling_interval: Cap for the poll backoff
        backoff_factor: Growth factor for both backoffs
        reconnect_delay: Initial stream reconnect delay in seconds
        max_reconnect_delay: Cap for the reconnect delay
        cancel_event: Optional asyncio.Event; setting it stops the subscription
    """

    def __init__(self,
                 synchronizer: RowSynchronizer,
                 user_id: str,
                 get_since: Callable[[], Any],
                 set_since: Callable[[int], Any],
                 apply_diffs: Callable[[Diffs], Any],
                 tables: Sequence[str] = DEFAULT_TABLES,
                 stream: bool = True,
                 fallback_polling: bool = True,
                 polling_interval: float = 30.0,
                 max_polling_interval: float = 300.0,
                 backoff_factor: float = 2.0,
                 reconnect_delay: float = 1.0,
                 max_reconnect_delay: float = 60.0,
                 cancel_event: Optional[asyncio.Event] = None):
        if not stream and not fallback_polling:
            raise ValueError("SmartSync needs the stream, polling, or both")
        if polling_interval <= 0 or reconnect_delay <= 0:
            raise ValueError("Intervals must be positive")
        if backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")

        self.synchronizer = synchronizer
        self.user_id = user_id
        self.get_since = get_since
        self.set_since = set_since
        self.apply_diffs = apply_diffs
        self.tables = tuple(tables)
        self.stream = stream
        self.fallback_polling = fallback_polling
        self.polling_interval = polling_interval
        self.max_polling_interval = max(max_polling_interval, polling_interval)
        self.backoff_factor = backoff_factor
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max(max_reconnect_delay, reconnect_delay)
        self.cancel_event = cancel_event

        self._state = SyncState.STOPPED
        self._stopped = True
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    @classmethod
    def from_config(cls, synchronizer: RowSynchronizer, config, get_since, set_since, apply_diffs,
                    tables: Optional[Sequence[str]] = None, **kwargs) -> "SmartSync":
        """Build a SmartSync with intervals and backoff taken from a SyncConfig."""
        options = dict(
            tables=tuple(tables) if tables is not None else config.tables,
            fallback_polling=config.fallback_polling,
            polling_interval=config.polling_interval_seconds,
            max_polling_interval=config.max_polling_interval_seconds,
            backoff_factor=config.backoff_factor,
            reconnect_delay=config.stream_reconnect_seconds,
            max_reconnect_delay=config.max_stream_reconnect_seconds,
        )
        options.update(kwargs)
        return cls(synchronizer, config.user_id, get_since, set_since, apply_diffs, **options)

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def running(self) -> bool:
        return not self._stopped

    def _set_state(self, state: SyncState) -> None:
        if self._stopped and state is not SyncState.STOPPED:
            return
        if state is not self._state:
            logger.info(f"[smart-sync] {self.user_id}: {self._state.value} -> {state.value}")
            self._state = state

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Launch the stream and polling tasks on the running loop."""
        if not self._stopped:
            raise RuntimeError("SmartSync is already running")
        self._stopped = False
        self._stop_event = asyncio.Event()
        self._state = SyncState.STARTING
        logger.info(f"[smart-sync] starting for {self.user_id} on {list(self.tables)}")

        if self.stream:
            self._tasks.append(asyncio.ensure_future(self._stream_loop()))
        if self.fallback_polling:
            self._tasks.append(asyncio.ensure_future(self._poll_loop()))
        if self.cancel_event is not None:
            self._tasks.append(asyncio.ensure_future(self._watch_cancel(self.cancel_event)))

    async def stop(self) -> None:
        """
        Stop both paths and close the stream.

        After stop() returns (or the cancel event is observed) neither
        apply_diffs nor set_since is called again.
        """
        if self._stopped:
            return
        self._stopped = True
        if self._stop_event is not None:
            self._stop_event.set()
        self._set_state(SyncState.STOPPED)

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        self._tasks = []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"[smart-sync] stopped for {self.user_id}")

    async def wait(self) -> None:
        """Block until the subscription stops."""
        if self._stop_event is not None:
            await self._stop_event.wait()

    async def _watch_cancel(self, event: asyncio.Event) -> None:
        await event.wait()
        await self.stop()

    async def _sleep(self, seconds: float) -> bool:
        """Cancellable sleep; returns False if the subscription stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return False
        except asyncio.TimeoutError:
            return not self._stopped

    # ==================== Applying ====================

    async def _apply(self, result: PullResult, source: str) -> None:
        if self._stopped:
            return
        await invoke(self.apply_diffs, result.diffs)
        if self._stopped:
            return
        await self._advance(result.server_time_ms)
        logger.debug(f"[smart-sync] {source} applied {result.total} rows, cursor {result.server_time_ms}")

    async def _since(self) -> int:
        return await invoke(self.get_since) or 0

    async def _advance(self, server_time_ms: int) -> None:
        current = await self._since()
        if server_time_ms > current and not self._stopped:
            await invoke(self.set_since, server_time_ms)

    async def handle_event(self, data: str) -> bool:
        """
        Apply one stream event payload.

        Returns:
            True if the event was applied, False if it was malformed and skipped
        """
        try:
            envelope = json.loads(data)
            result = parse_pull_envelope(envelope)
        except (ValueError, ProtocolError) as e:
            logger.warning(f"[smart-sync] skipping malformed stream event: {e}")
            return False
        await self._apply(result, "stream")
        return True

    # ==================== Stream path ====================

    async def _stream_loop(self) -> None:
        delay = self.reconnect_delay
        transport = self.synchronizer.transport
        while not self._stopped:
            params = {
                "user_id": self.user_id,
                "since": str(await self._since()),
                "tables": ",".join(self.tables),
            }
            try:
                async with transport.stream_lines(STREAM_PATH, params=params) as lines:
                    self._set_state(SyncState.STREAMING)
                    delay = self.reconnect_delay
                    async for data in iter_sse_data(lines):
                        if self._stopped:
                            return
                        try:
                            await self.handle_event(data)
                        except Exception as e:
                            logger.error(f"[smart-sync] apply_diffs failed on stream event: {e}", exc_info=True)
                logger.info("[smart-sync] stream closed by server")
            except SyncError as e:
                logger.warning(f"[smart-sync] stream error: {e}")
            except Exception as e:
                logger.error(f"[smart-sync] unexpected stream failure: {e}", exc_info=True)

            if self._stopped:
                return
            self._set_state(SyncState.DEGRADED)
            logger.info(f"[smart-sync] reconnecting stream in {delay:.1f}s")
            if not await self._sleep(delay):
                return
            delay = min(delay * self.backoff_factor, self.max_reconnect_delay)

    # ==================== Polling path ====================

    async def _poll_loop(self) -> None:
        interval = self.polling_interval
        while not self._stopped:
            if not await self._sleep(interval):
                return
            try:
                result = await self.synchronizer.pull(self.user_id, await self._since(), self.tables)
                await self._apply(result, "poll")
                interval = self.polling_interval
                if not self.stream:
                    self._set_state(SyncState.POLLING)
            except SyncError as e:
                interval = min(interval * self.backoff_factor, self.max_polling_interval)
                logger.warning(f"[smart-sync] pull failed: {e}; next poll in {interval:.1f}s")
            except Exception as e:
                interval = min(interval * self.backoff_factor, self.max_polling_interval)
                logger.error(f"[smart-sync] poll apply failed: {e}", exc_info=True)


__all__ = ["SmartSync", "SyncState", "iter_sse_data", "STREAM_PATH"]
