"""
Event type definitions for the sync bus.

Surfaces exchange three intents:
- sync.pull: pull the latest diffs now
- sync.push: upload pending local changes now
- sync.reset: drop local sync state (cursors, cached tokens) and re-pull

Every intent carries who asked (user_id, device_id), when (at, ms since
epoch), the emitting bus context (origin) and a nonce unique per emit.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

EVENT_PULL = "sync.pull"
EVENT_PUSH = "sync.push"
EVENT_RESET = "sync.reset"

EVENT_TYPES = (EVENT_PULL, EVENT_PUSH, EVENT_RESET)


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


@dataclass
class SyncIntent:
    """A request broadcast to every surface on the bus."""
    event_type: str
    user_id: str
    device_id: str
    at: int = field(default_factory=now_ms)
    origin: Optional[str] = None
    nonce: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown sync intent type: {self.event_type}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "at": self.at,
            "origin": self.origin,
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncIntent":
        """Create SyncIntent from dictionary.

        Raises:
            ValueError: If required keys are missing or the type is unknown
        """
        try:
            return cls(
                event_type=data["event_type"],
                user_id=data["user_id"],
                device_id=data["device_id"],
                at=int(data.get("at") or now_ms()),
                origin=data.get("origin"),
                nonce=data.get("nonce") or uuid.uuid4().hex,
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed sync intent: {data!r}") from e


__all__ = ["SyncIntent", "EVENT_PULL", "EVENT_PUSH", "EVENT_RESET", "EVENT_TYPES", "now_ms"]
