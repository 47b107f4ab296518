"""Tests for the discovery job."""

import asyncio
import random
from collections.abc import Sequence
from typing import Any

from filedrop.discovery.job import DiscoveryJob, references_from_events
from filedrop.discovery.relays import DiscoveryError
from filedrop.discovery.tombstones import DELETION_KIND
from filedrop.pinning.models import RefClass, RefStatus
from filedrop.pinning.store import ReferenceStore
from tests.fixtures.pipeline import CID_A, CID_B, CID_C, NPUB, PUBKEY

FRIEND = "f" * 64


def event(
    event_id: str, content: str, created_at: int, pubkey: str = PUBKEY, kind: int = 1
) -> dict[str, Any]:
    return {
        "id": event_id,
        "pubkey": pubkey,
        "created_at": created_at,
        "kind": kind,
        "tags": [],
        "content": content,
    }


def deletion(*event_ids: str, pubkey: str = PUBKEY) -> dict[str, Any]:
    return {
        "id": "del-" + "-".join(event_ids),
        "pubkey": pubkey,
        "created_at": 1,
        "kind": DELETION_KIND,
        "tags": [["e", event_id] for event_id in event_ids],
        "content": "",
    }


class StubPool:
    """Relay pool answering from canned per-author histories."""

    def __init__(
        self,
        notes: dict[str, list[dict[str, Any]]],
        deletes: dict[str, list[dict[str, Any]]] | None = None,
        follows: dict[str, list[str]] | None = None,
        failing: set[str] | None = None,
        contacts_error: DiscoveryError | None = None,
    ) -> None:
        self.notes = notes
        self.deletes = deletes or {}
        self.follows = follows or {}
        self.failing = failing or set()
        self.contacts_error = contacts_error
        self.fetch_calls: list[tuple[list[str], list[int], int]] = []

    def sample_relays(self, count: int | None = None) -> list[str]:
        return ["wss://relay.test"]

    async def fetch_all(
        self,
        authors: Sequence[str],
        kinds: Sequence[int],
        relays: Sequence[str] | None = None,
        page_size: int = 250,
        max_pages: int = 100,
    ) -> list[dict[str, Any]]:
        self.fetch_calls.append((list(authors), list(kinds), max_pages))
        if self.failing & set(authors):
            raise DiscoveryError("All 1 relays failed to answer")
        source = self.deletes if DELETION_KIND in kinds else self.notes
        found = [e for author in authors for e in source.get(author, [])]
        return sorted(found, key=lambda e: e["created_at"], reverse=True)

    async def fetch_follows(
        self, pubkey: str, relays: Sequence[str] | None = None
    ) -> list[str]:
        if self.contacts_error is not None:
            raise self.contacts_error
        return self.follows.get(pubkey, [])


def make_job(pool: StubPool, store: ReferenceStore, **kwargs: Any) -> DiscoveryJob:
    return DiscoveryJob(pool, store, [NPUB], rng=random.Random(3), **kwargs)  # type: ignore[arg-type]


class TestReferencesFromEvents:
    """Turning events into references."""

    def test_should_skip_retracted_events(self) -> None:
        events = [event("e2", f"ipfs://{CID_A}", 200), event("e1", CID_B, 100)]

        refs = references_from_events(events, {"e1"}, RefClass.SELF)

        assert [ref.cid for ref in refs] == [CID_A]

    def test_should_keep_newest_mention(self) -> None:
        events = [event("new", CID_A, 200), event("old", CID_A, 100)]

        refs = references_from_events(events, set(), RefClass.FOLLOW, source=NPUB)

        assert len(refs) == 1
        assert refs[0].origin_event_id == "new"
        assert refs[0].discovered_at == 200
        assert refs[0].ref_class is RefClass.FOLLOW
        assert refs[0].source == NPUB

    def test_should_honour_skip_set(self) -> None:
        refs = references_from_events(
            [event("e", f"{CID_A} {CID_B}", 1)], set(), RefClass.FOLLOW, skip={CID_A}
        )

        assert [ref.cid for ref in refs] == [CID_B]


class TestRunCycle:
    """Full discovery cycles."""

    async def test_should_queue_self_and_follow_references(
        self, store: ReferenceStore
    ) -> None:
        pool = StubPool(
            notes={
                PUBKEY: [event("s1", f"my file ipfs://{CID_A}", 300)],
                FRIEND: [
                    event("f1", f"{CID_A} and {CID_B}", 250, pubkey=FRIEND),
                ],
            },
            follows={PUBKEY: [FRIEND, PUBKEY]},
        )
        job = make_job(pool, store)

        report = await job.run_cycle()

        assert store.get(CID_A).ref_class is RefClass.SELF  # type: ignore[union-attr]
        assert store.get(CID_B).ref_class is RefClass.FOLLOW  # type: ignore[union-attr]
        assert report.error is None
        assert report.aggregate == {
            "events_scanned": 2,
            "cids_found": 2,
            "inserted": 2,
            "duplicates": 0,
            "pending_self": 1,
            "pending_follow": 1,
        }
        assert report.npubs[0]["follows"] == 1

    async def test_should_exclude_tombstoned_events(self, store: ReferenceStore) -> None:
        pool = StubPool(
            notes={
                PUBKEY: [
                    event("keep", CID_A, 300),
                    event("gone", CID_B, 200),
                ]
            },
            deletes={PUBKEY: [deletion("gone")]},
        )
        job = make_job(pool, store, follow_enabled=False)

        await job.run_cycle()

        assert CID_A in store
        assert CID_B not in store

    async def test_should_keep_first_discovery_across_cycles(
        self, store: ReferenceStore
    ) -> None:
        pool = StubPool(notes={PUBKEY: [event("first", CID_A, 100)]})
        job = make_job(pool, store, follow_enabled=False)
        await job.run_cycle()

        pool.notes = {PUBKEY: [event("second", CID_A, 200)]}
        report = await job.run_cycle()

        ref = store.get(CID_A)
        assert ref is not None
        assert ref.discovered_at == 100
        assert ref.origin_event_id == "first"
        assert report.aggregate is not None
        assert report.aggregate["duplicates"] == 1

    async def test_should_not_reset_replicated_references(
        self, store: ReferenceStore
    ) -> None:
        pool = StubPool(notes={PUBKEY: [event("e", CID_A, 100)]})
        job = make_job(pool, store, follow_enabled=False)
        await job.run_cycle()
        store.transition(CID_A, RefStatus.IN_PROGRESS)
        store.transition(CID_A, RefStatus.PINNED, size=10)

        await job.run_cycle()

        assert store.get(CID_A).status is RefStatus.PINNED  # type: ignore[union-attr]

    async def test_should_chunk_follow_queries(self, store: ReferenceStore) -> None:
        friends = [f"{i:064x}" for i in range(5)]
        pool = StubPool(notes={}, follows={PUBKEY: friends})
        job = make_job(pool, store, follow_author_chunk=2, follow_max_pages=4)

        await job.run_cycle()

        follow_calls = [c for c in pool.fetch_calls if c[0] != [PUBKEY]]
        assert [len(c[0]) for c in follow_calls if DELETION_KIND not in c[1]] == [2, 2, 1]
        assert all(c[2] == 4 for c in follow_calls)

    async def test_should_survive_a_failing_identity(self, store: ReferenceStore) -> None:
        pool = StubPool(
            notes={FRIEND: [event("x", CID_C, 10, pubkey=FRIEND)]},
            failing={PUBKEY},
        )
        job = DiscoveryJob(
            pool,  # type: ignore[arg-type]
            store,
            [NPUB, FRIEND, "npub1broken"],
            follow_enabled=False,
        )

        report = await job.run_cycle()

        assert CID_C in store
        errors = [entry for entry in report.npubs if "error" in entry]
        assert len(errors) == 2
        assert report.error is None

    async def test_should_keep_self_references_when_contact_list_fails(
        self, store: ReferenceStore
    ) -> None:
        pool = StubPool(
            notes={PUBKEY: [event("s1", CID_A, 300)]},
            contacts_error=DiscoveryError("All 1 relays failed to answer"),
        )
        job = make_job(pool, store)

        report = await job.run_cycle()

        assert store.get(CID_A).ref_class is RefClass.SELF  # type: ignore[union-attr]
        entry = report.npubs[0]
        assert "error" not in entry
        assert entry["follow_error"] == "All 1 relays failed to answer"
        assert entry["self_cids"] == 1
        assert entry["follow_cids"] == 0

    async def test_should_keep_self_references_when_follow_scan_fails(
        self, store: ReferenceStore
    ) -> None:
        pool = StubPool(
            notes={
                PUBKEY: [event("s1", CID_A, 300)],
                FRIEND: [event("f1", CID_B, 250, pubkey=FRIEND)],
            },
            follows={PUBKEY: [FRIEND]},
            failing={FRIEND},
        )
        job = make_job(pool, store)

        report = await job.run_cycle()

        assert CID_A in store
        assert CID_B not in store
        assert report.npubs[0]["follows"] == 1
        assert "follow_error" in report.npubs[0]
        assert report.aggregate is not None
        assert report.aggregate["inserted"] == 1

    async def test_should_record_unexpected_errors(self, store: ReferenceStore) -> None:
        pool = StubPool(notes={})

        async def explode(*args: Any, **kwargs: Any) -> list[dict[str, Any]]:
            raise RuntimeError("boom")

        pool.fetch_all = explode  # type: ignore[method-assign]
        job = make_job(pool, store)

        report = await job.run_cycle()

        assert report.error == "boom"
        assert report.at is not None
        assert job.last_run is report


class TestLifecycle:
    """Starting and stopping the periodic job."""

    async def test_start_without_npubs_is_noop(self, store: ReferenceStore) -> None:
        job = DiscoveryJob(StubPool(notes={}), store, [])  # type: ignore[arg-type]

        job.start()

        assert job._task is None

    async def test_start_runs_a_cycle_and_stop_cancels(
        self, store: ReferenceStore
    ) -> None:
        pool = StubPool(notes={PUBKEY: [event("e", CID_A, 1)]})
        job = make_job(pool, store, follow_enabled=False, interval=3600)

        job.start()
        for _ in range(20):
            if CID_A in store:
                break
            await asyncio.sleep(0)
        await job.stop()

        assert CID_A in store
        assert job._task is None
