"""Tests for deletion event handling."""

from filedrop.discovery.tombstones import DELETION_KIND, deleted_event_ids


def test_deleted_event_ids_collects_e_tags() -> None:
    """Every e tag of every deletion event is retracted."""
    deletions = [
        {"kind": DELETION_KIND, "tags": [["e", "id-1"], ["e", "id-2", "wss://relay"]]},
        {"kind": DELETION_KIND, "tags": [["e", "id-3"], ["p", "someone"]]},
    ]

    assert deleted_event_ids(deletions) == {"id-1", "id-2", "id-3"}


def test_deleted_event_ids_ignores_malformed_tags() -> None:
    """Short, empty and non-list tags are skipped."""
    deletions = [
        {"kind": DELETION_KIND, "tags": [["e"], ["e", ""], "e", None]},
        {"kind": DELETION_KIND},
    ]

    assert deleted_event_ids(deletions) == set()
