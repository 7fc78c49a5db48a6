"""
Conditional Document Client - one document per (user, key)

Reads cache the server's ETag; writes send it back as `If-Match` so two
devices cannot both win against the same generation of a document.

Flow for save():
1. PUT with If-Match: <cached ETag>, or `*` when nothing is cached
2. On 412 Precondition Failed: re-load (refreshes the ETag), PUT once more
3. A second 412 raises ConflictError; field-level merging is the caller's job

Usage:
    async with HttpTransport(url, app_key=key) as transport:
        docs = DocumentClient(transport, user_id="demo")
        plan = await docs.load("plan") or {}
        plan["today"] = ["write tests"]
        await docs.save("plan", plan)
"""

import json
import os
import logging
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

from .errors import ConflictError, NotFoundError, PreconditionFailedError, ProtocolError
from .transport import HttpTransport

logger = logging.getLogger(__name__)

WILDCARD_ETAG = "*"


@dataclass
class Document:
    """A loaded document with its freshness metadata"""
    key: str
    data: Any
    updated_at: Optional[int] = None
    etag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "key": self.key,
            "data": self.data,
            "updated_at": self.updated_at,
            "etag": self.etag,
        }


class ETagCache:
    """
    Freshness-token cache keyed by (user_id, doc_key).

    Owned by a DocumentClient (or shared explicitly between clients).
    Every update swaps in a whole new mapping under the lock, so readers
    never see a half-written token. Optionally persisted to a JSON file so a
    restarted surface keeps its tokens.
    """

    def __init__(self, path: Optional[Path] = None):
        """
        Args:
            path: Optional JSON file used to persist tokens across restarts
        """
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._tokens: Dict[Tuple[str, str], str] = self._read_file()

    def _read_file(self) -> Dict[Tuple[str, str], str]:
        if not self.path or not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable ETag cache {self.path}: {e}")
            return {}
        tokens = {}
        for entry in raw if isinstance(raw, list) else []:
            try:
                tokens[(entry["user_id"], entry["doc_key"])] = entry["etag"]
            except (KeyError, TypeError):
                continue
        return tokens

    def _write_file(self, tokens: Dict[Tuple[str, str], str]) -> None:
        if not self.path:
            return
        payload = [
            {"user_id": user_id, "doc_key": doc_key, "etag": etag}
            for (user_id, doc_key), etag in sorted(tokens.items())
        ]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".etags-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f)
            os.replace(tmp_name, self.path)
        except OSError as e:
            logger.warning(f"Failed to persist ETag cache to {self.path}: {e}")
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def get(self, user_id: str, doc_key: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get((user_id, doc_key))

    def set(self, user_id: str, doc_key: str, etag: Optional[str]) -> None:
        """Replace the token for a key; a falsy etag removes it."""
        with self._lock:
            tokens = dict(self._tokens)
            if etag:
                tokens[(user_id, doc_key)] = etag
            else:
                tokens.pop((user_id, doc_key), None)
            self._tokens = tokens
            self._write_file(tokens)

    def clear(self) -> None:
        """Drop every token (logout / reset)."""
        with self._lock:
            self._tokens = {}
            self._write_file({})

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class DocumentClient:
    """
    Optimistic-concurrency client for the single-document store.

    Concurrent save() calls from different devices cannot both succeed
    against the same ETag; the loser goes through the refresh-and-retry
    path exactly once.
    """

    def __init__(self,
                 transport: HttpTransport,
                 user_id: str,
                 etag_cache: Optional[ETagCache] = None,
                 path_prefix: str = "/api/docs"):
        """
        Args:
            transport: HTTP transport to the backend
            user_id: Owner of the documents
            etag_cache: Token cache; a private one is created when omitted
            path_prefix: Document collection path on the backend
        """
        if not user_id:
            raise ValueError("user_id is required")
        self.transport = transport
        self.user_id = user_id
        self.etags = etag_cache if etag_cache is not None else ETagCache()
        self.path_prefix = path_prefix.rstrip("/")

    def _path(self, doc_key: str) -> str:
        if not doc_key:
            raise ValueError("doc_key is required")
        return f"{self.path_prefix}/{quote(doc_key, safe='')}"

    def cached_etag(self, doc_key: str) -> Optional[str]:
        return self.etags.get(self.user_id, doc_key)

    async def load_document(self, doc_key: str) -> Optional[Document]:
        """
        Read a document and refresh its cached ETag.

        Returns:
            Document, or None if the server reports it absent

        Raises:
            ProtocolError: If the backend answers ok=false or a non-object body
            TransportError / BadRequestError: Propagated from the transport
        """
        try:
            body, headers = await self.transport.get_json(
                self._path(doc_key),
                params={"user_id": self.user_id},
                headers={"cache-control": "no-store"},
            )
        except NotFoundError:
            logger.debug(f"Document {doc_key!r} not found for user {self.user_id}")
            self.etags.set(self.user_id, doc_key, None)
            return None

        etag = headers.get("etag")
        if etag:
            self.etags.set(self.user_id, doc_key, etag)

        if not isinstance(body, dict):
            raise ProtocolError(f"load {doc_key!r}: expected a JSON object, got {type(body).__name__}")
        if not body.get("ok", True):
            raise ProtocolError(f"load {doc_key!r}: backend returned ok=false")

        if body.get("data") is None:
            return None
        return Document(
            key=doc_key,
            data=body["data"],
            updated_at=body.get("updated_at"),
            etag=etag,
        )

    async def load(self, doc_key: str) -> Optional[Any]:
        """Read a document's payload, or None when absent."""
        document = await self.load_document(doc_key)
        return document.data if document else None

    async def _put(self, doc_key: str, data: Any) -> Any:
        etag = self.cached_etag(doc_key) or WILDCARD_ETAG
        body, headers = await self.transport.put_json(
            self._path(doc_key),
            data,
            params={"user_id": self.user_id},
            headers={"if-match": etag, "content-type": "application/json"},
        )
        new_etag = headers.get("etag")
        if new_etag:
            self.etags.set(self.user_id, doc_key, new_etag)
        return body

    async def save(self, doc_key: str, data: Any) -> None:
        """
        Conditionally write a document.

        Raises:
            ConflictError: If the write is rejected again after one refresh
            ProtocolError: If the backend answers ok=false
        """
        try:
            body = await self._put(doc_key, data)
        except PreconditionFailedError:
            logger.info(f"Precondition failed saving {doc_key!r}; refreshing ETag and retrying once")
            await self.load_document(doc_key)
            try:
                body = await self._put(doc_key, data)
            except PreconditionFailedError as e:
                logger.warning(f"Conflict saving {doc_key!r} after retry: {e}")
                raise ConflictError(
                    f"save {doc_key!r} conflicted with a concurrent writer after one retry",
                    doc_key=doc_key,
                ) from e

        if isinstance(body, dict) and body.get("ok") is False:
            raise ProtocolError(f"save {doc_key!r}: backend returned ok=false")

    def reset(self) -> None:
        """Forget all cached ETags (logout / account switch)."""
        self.etags.clear()


__all__ = ["Document", "DocumentClient", "ETagCache", "WILDCARD_ETAG"]
