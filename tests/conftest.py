"""Pytest fixtures for synclayer tests

FakeBackend is an in-memory stand-in for the sync backend, mounted through
httpx.MockTransport so every test exercises the real HttpTransport.
"""
import json
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote

import httpx
import pytest

from synclayer.bus import reset_broadcast_channels
from synclayer.config import SyncConfig
from synclayer.transport import HttpTransport

BACKEND_URL = "http://backend.test"
APP_KEY = "test-app-key"

# Row columns a push-batch backend persists: bookkeeping plus foreign keys
STORED_PUSH_FIELDS = {"id", "updated_at", "updated_by", "deleted_at", "set_id", "action_id"}


class FakeBackend:
    """
    In-memory backend: document store, append-only row change log, SSE.

    Rows are kept as a change log, every pushed version with the server
    time it was received at; pull returns every version newer than `since`
    and lets the client's dominance merge pick winners.
    """

    def __init__(self, start_time_ms: int = 1000):
        self.now_ms = start_time_ms
        self.docs: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.changes: List[Tuple[int, str, str, Dict[str, Any]]] = []
        self.requests: List[httpx.Request] = []
        self.pushes: List[Dict[str, Any]] = []
        self.failures: List[Tuple[str, int]] = []
        self.stream_bodies: List[str] = []
        self.stream_connects = 0
        self.on_put: Optional[Callable[[str, str], None]] = None
        self.put_count = 0

    # ==================== Test helpers ====================

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def fail(self, path_prefix: str, status: int, times: int = 1) -> None:
        """Answer the next `times` requests under path_prefix with `status`."""
        self.failures.extend([(path_prefix, status)] * times)

    def seed_row(self, user_id: str, table: str, row: Dict[str, Any],
                 server_time: Optional[int] = None) -> None:
        """Record a flat row version as if another device had pushed it."""
        if server_time is None:
            self.now_ms += 1
            server_time = self.now_ms
        self.now_ms = max(self.now_ms, server_time)
        flat = dict(row)
        flat.setdefault("user_id", user_id)
        self.changes.append((server_time, user_id, table, flat))

    def write_doc(self, user_id: str, key: str, data: Any) -> str:
        """Write a document directly (a concurrent writer); returns the new ETag."""
        current = self.docs.get((user_id, key))
        version = (current["version"] if current else 0) + 1
        self.now_ms += 1
        self.docs[(user_id, key)] = {"data": data, "version": version, "updated_at": self.now_ms}
        return self.etag(user_id, key)

    def etag(self, user_id: str, key: str) -> Optional[str]:
        doc = self.docs.get((user_id, key))
        return f'"{key}-v{doc["version"]}"' if doc else None

    def add_stream(self, *events: Any, keepalive: bool = True) -> None:
        """Queue one stream connection delivering the given events, then closing."""
        parts = [": keepalive\n\n"] if keepalive else []
        for event in events:
            data = event if isinstance(event, str) else json.dumps(event)
            parts.append("".join(f"data: {line}\n" for line in data.split("\n")) + "\n")
        self.stream_bodies.append("".join(parts))

    def requests_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    # ==================== Request handling ====================

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        for i, (prefix, status) in enumerate(self.failures):
            if path.startswith(prefix):
                del self.failures[i]
                return httpx.Response(status, json={"ok": False, "error": f"injected {status}"})

        if path == "/api/sync/stream-sse":
            if request.url.params.get("app_key") != APP_KEY:
                return httpx.Response(401, json={"ok": False, "error": "unauthorized"})
            return self._stream(request)

        if request.headers.get("x-app-key") != APP_KEY:
            return httpx.Response(401, json={"ok": False, "error": "unauthorized"})

        if path.startswith("/api/docs/"):
            key = unquote(path[len("/api/docs/"):])
            user_id = request.url.params.get("user_id")
            if request.method == "GET":
                return self._get_doc(user_id, key)
            if request.method == "PUT":
                return self._put_doc(request, user_id, key)
        if path == "/api/sync/pull-batch" and request.method == "GET":
            return self._pull(request)
        if path == "/api/sync/push-batch" and request.method == "POST":
            return self._push(request)
        return httpx.Response(404, json={"ok": False, "error": "no route"})

    def _get_doc(self, user_id: str, key: str) -> httpx.Response:
        doc = self.docs.get((user_id, key))
        if doc is None:
            return httpx.Response(404, json={"ok": False, "error": "not_found"})
        return httpx.Response(
            200,
            json={"ok": True, "data": doc["data"], "updated_at": doc["updated_at"]},
            headers={"ETag": self.etag(user_id, key)},
        )

    def _put_doc(self, request: httpx.Request, user_id: str, key: str) -> httpx.Response:
        self.put_count += 1
        if self.on_put is not None:
            self.on_put(user_id, key)
        if_match = request.headers.get("if-match")
        current = self.etag(user_id, key)
        if if_match != "*" and if_match != current:
            return httpx.Response(412, json={"ok": False, "error": "precondition_failed"})
        self.write_doc(user_id, key, json.loads(request.content))
        return httpx.Response(
            200,
            json={"ok": True, "updated_at": self.now_ms},
            headers={"ETag": self.etag(user_id, key)},
        )

    def _pull(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        user_id = params.get("user_id")
        since = int(params.get("since", "0"))
        tables = [t for t in params.get("tables", "").split(",") if t]
        diffs: Dict[str, List[Dict[str, Any]]] = {table: [] for table in tables}
        for server_time, owner, table, row in self.changes:
            if owner == user_id and table in diffs and server_time > since:
                diffs[table].append(row)
        return httpx.Response(200, json={"server_time_ms": max(self.now_ms, since), "diffs": diffs})

    def _push(self, request: httpx.Request) -> httpx.Response:
        """Store only the documented push fields; anything else is dropped."""
        body = json.loads(request.content)
        self.pushes.append(body)
        user_id = body["user_id"]
        for table, rows in body["changes"].items():
            for row in rows:
                flat = {k: v for k, v in row.items() if k in STORED_PUSH_FIELDS}
                flat.update(row.get("data") or {})
                self.seed_row(user_id, table, flat)
        return httpx.Response(200, json={"ok": True})

    def _stream(self, request: httpx.Request) -> httpx.Response:
        self.stream_connects += 1
        if not self.stream_bodies:
            return httpx.Response(503, json={"ok": False, "error": "stream unavailable"})
        body = self.stream_bodies.pop(0)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=body.encode(),
        )


@pytest.fixture(autouse=True)
def _isolated_broadcast_channels():
    """Broadcast channels are process-wide; start every test empty."""
    reset_broadcast_channels()
    yield
    reset_broadcast_channels()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_transport(backend):
    """Factory for HttpTransports wired to the fake backend."""
    def _make(app_key: str = APP_KEY) -> HttpTransport:
        return HttpTransport(BACKEND_URL, app_key=app_key, transport=backend.transport())
    return _make


@pytest.fixture
def sync_config(tmp_path):
    """SyncConfig pointing at the fake backend with a temp data dir."""
    return SyncConfig(
        backend_url=BACKEND_URL,
        app_key=APP_KEY,
        user_id="demo",
        device_id="dev-test",
        base_path=tmp_path / "synclayer",
        polling_interval_seconds=0.05,
        max_polling_interval_seconds=0.2,
        stream_reconnect_seconds=0.02,
        max_stream_reconnect_seconds=0.1,
        bus_poll_interval_seconds=0.02,
    )


def set_row(row_id: str, updated_at: int, updated_by: str, title: str,
            priority_class: Optional[str] = None, deleted_at: Optional[int] = None,
            order: int = 0) -> Dict[str, Any]:
    """Flat checklist_sets wire row."""
    return {
        "id": row_id,
        "title": title,
        "order": order,
        "updated_at": updated_at,
        "updated_by": updated_by,
        "priority_class": priority_class,
        "deleted_at": deleted_at,
    }
