"""Deletion (kind 5) event handling."""

from collections.abc import Iterable, Mapping
from typing import Any

DELETION_KIND = 5


def deleted_event_ids(delete_events: Iterable[Mapping[str, Any]]) -> set[str]:
    """Collect the event ids retracted by a set of deletion events.

    Every ``["e", <event id>, ...]`` tag of a deletion event names a retracted
    event. Malformed tags are ignored.
    """
    deleted: set[str] = set()
    for event in delete_events:
        for tag in event.get("tags") or []:
            if isinstance(tag, list) and len(tag) > 1 and tag[0] == "e" and tag[1]:
                deleted.add(str(tag[1]))
    return deleted
