"""
Error taxonomy for synclayer.

Every failure surfaced by the sync core is a SyncError subclass so callers
can catch the whole family or one specific kind:

- NotFoundError: document/row absent (HTTP 404)
- PreconditionFailedError: optimistic-lock conflict (HTTP 412)
- ConflictError: a 412 that survived the single refresh-and-retry cycle
- TransportError: network failure, unexpected status, malformed body
- ProtocolError: unparseable event-stream payload or envelope
- BadRequestError: arguments rejected by the server (HTTP 400/422)
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync core errors"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(SyncError):
    """Exception for absent documents or rows"""
    pass


class PreconditionFailedError(SyncError):
    """Exception for a write whose freshness token no longer matches"""
    pass


class ConflictError(SyncError):
    """Exception raised when a conditional write still fails after one retry"""

    def __init__(self, message: str, doc_key: Optional[str] = None):
        super().__init__(message, status_code=412)
        self.doc_key = doc_key


class TransportError(SyncError):
    """Exception for network failures, non-2xx statuses and malformed bodies"""
    pass


class ProtocolError(SyncError):
    """Exception for malformed stream events or response envelopes"""
    pass


class BadRequestError(SyncError):
    """Exception for caller-supplied arguments rejected by the server"""
    pass


__all__ = [
    "SyncError",
    "NotFoundError",
    "PreconditionFailedError",
    "ConflictError",
    "TransportError",
    "ProtocolError",
    "BadRequestError",
]
