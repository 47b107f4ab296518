"""Data models for the replication queue."""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class RefClass(str, Enum):
    """Whose content a reference is, which decides how it is replicated."""

    SELF = "self"  # owner's own content: pin (replicate and retain)
    FOLLOW = "follow"  # followed accounts: cache (replicate, evictable)


class RefStatus(str, Enum):
    """Lifecycle status of a reference."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PINNED = "pinned"
    CACHED = "cached"
    FAILED = "failed"


TERMINAL_STATUS: dict[RefClass, RefStatus] = {
    RefClass.SELF: RefStatus.PINNED,
    RefClass.FOLLOW: RefStatus.CACHED,
}

# Allowed transitions; pinned and cached are terminal.
TRANSITIONS: dict[RefStatus, frozenset[RefStatus]] = {
    RefStatus.PENDING: frozenset({RefStatus.IN_PROGRESS}),
    RefStatus.IN_PROGRESS: frozenset(
        {RefStatus.PINNED, RefStatus.CACHED, RefStatus.FAILED, RefStatus.PENDING}
    ),
    RefStatus.FAILED: frozenset({RefStatus.IN_PROGRESS, RefStatus.PENDING}),
    RefStatus.PINNED: frozenset(),
    RefStatus.CACHED: frozenset(),
}


def can_transition(current: RefStatus, new: RefStatus) -> bool:
    """Check whether ``current -> new`` is a legal lifecycle step."""
    return new in TRANSITIONS[current]


@dataclass
class ContentReference:
    """A CID discovered in a Nostr event and tracked until replicated."""

    cid: str
    origin_event_id: str
    author: str
    discovered_at: int
    ref_class: RefClass
    status: RefStatus = RefStatus.PENDING
    size_bytes: int = 0
    source: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_activity: float | None = None
    progress_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialise for JSON responses."""
        data = asdict(self)
        data["ref_class"] = self.ref_class.value
        data["status"] = self.status.value
        data.pop("last_activity", None)
        return data
