"""Nostr discovery job: turns a social feed into queued references."""

import asyncio
import random
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from filedrop.core.logging import get_logger
from filedrop.discovery.extractor import extract_cids
from filedrop.discovery.relays import DiscoveryError, Event, RelayPool, decode_pubkey
from filedrop.discovery.tombstones import DELETION_KIND, deleted_event_ids
from filedrop.pinning.models import ContentReference, RefClass, RefStatus
from filedrop.pinning.store import ReferenceStore

logger = get_logger(__name__)

DEFAULT_KINDS = [1, 6, 30023, 30024, 9802]


@dataclass
class DiscoveryReport:
    """Outcome of the last discovery cycle, exposed on the status endpoints."""

    at: str | None = None
    npubs: list[dict[str, Any]] = field(default_factory=list)
    aggregate: dict[str, int] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at,
            "npubs": self.npubs,
            "aggregate": self.aggregate,
            "error": self.error,
        }


def references_from_events(
    events: Iterable[Event],
    deleted_ids: set[str],
    ref_class: RefClass,
    source: str | None = None,
    skip: set[str] | None = None,
) -> list[ContentReference]:
    """Build one reference per CID found in non-retracted events.

    Events are expected newest first, so the newest mention of a CID wins
    within one batch. CIDs in ``skip`` are left out.
    """
    seen: set[str] = set(skip or ())
    refs: list[ContentReference] = []
    for event in events:
        if event["id"] in deleted_ids:
            continue
        for cid in extract_cids(event.get("content")):
            if cid in seen:
                continue
            seen.add(cid)
            refs.append(
                ContentReference(
                    cid=cid,
                    origin_event_id=event["id"],
                    author=event["pubkey"],
                    discovered_at=event["created_at"],
                    ref_class=ref_class,
                    source=source,
                )
            )
    return refs


class DiscoveryJob:
    """Periodically scans configured identities and their follows for CIDs."""

    def __init__(
        self,
        pool: RelayPool,
        store: ReferenceStore,
        npubs: Sequence[str],
        kinds: Sequence[int] = DEFAULT_KINDS,
        page_size: int = 250,
        max_pages: int = 100,
        follow_max_pages: int = 10,
        follow_author_chunk: int = 100,
        follow_enabled: bool = True,
        interval: float = 420.0,
        jitter: float = 60.0,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the job.

        Args:
            pool: Relay pool used for queries
            store: Reference store receiving discovered CIDs
            npubs: Owner identities (npub or hex) to scan
            kinds: Event kinds scanned for CIDs
            page_size: Events requested per page
            max_pages: Page limit when scanning an owner's history
            follow_max_pages: Page limit when scanning followed accounts
            follow_author_chunk: Authors per follow query
            follow_enabled: Whether followed accounts are scanned at all
            interval: Seconds between cycles
            jitter: Upper bound of random extra delay between cycles
            rng: Random source for jitter
        """
        self.pool = pool
        self.store = store
        self.npubs = list(npubs)
        self.kinds = list(kinds)
        self.page_size = page_size
        self.max_pages = max_pages
        self.follow_max_pages = follow_max_pages
        self.follow_author_chunk = follow_author_chunk
        self.follow_enabled = follow_enabled
        self.interval = interval
        self.jitter = jitter
        self.rng = rng or random.Random()
        self.last_run = DiscoveryReport()
        self._task: asyncio.Task[None] | None = None

    async def _scan_authors(
        self,
        authors: Sequence[str],
        relays: Sequence[str],
        max_pages: int,
    ) -> tuple[list[Event], set[str]]:
        events = await self.pool.fetch_all(
            authors, self.kinds, relays, self.page_size, max_pages
        )
        deletions = await self.pool.fetch_all(
            authors, [DELETION_KIND], relays, self.page_size, max_pages
        )
        return events, deleted_event_ids(deletions)

    async def discover(self, npub: str) -> dict[str, Any]:
        """Collect self and follow references for one owner identity.

        Raises:
            ValueError: If ``npub`` cannot be decoded
            DiscoveryError: If the owner's own history could not be queried
        """
        pubkey = decode_pubkey(npub)
        relays = self.pool.sample_relays()

        events, deleted = await self._scan_authors([pubkey], relays, self.max_pages)
        self_refs = references_from_events(events, deleted, RefClass.SELF, source=npub)
        result: dict[str, Any] = {
            "npub": npub,
            "events_scanned": len(events),
            "deletes_seen": len(deleted),
            "self_cids": len(self_refs),
            "follows": 0,
            "follow_events_scanned": 0,
            "follow_cids": 0,
            "refs": self_refs,
        }

        if not self.follow_enabled:
            return result

        known = {ref.cid for ref in self_refs}
        follow_refs: list[ContentReference] = []

        try:
            follows = [
                key for key in await self.pool.fetch_follows(pubkey, relays) if key != pubkey
            ]
            result["follows"] = len(follows)

            for start in range(0, len(follows), self.follow_author_chunk):
                chunk = follows[start : start + self.follow_author_chunk]
                f_events, f_deleted = await self._scan_authors(
                    chunk, relays, self.follow_max_pages
                )
                result["follow_events_scanned"] += len(f_events)
                chunk_refs = references_from_events(
                    f_events, f_deleted, RefClass.FOLLOW, source=npub, skip=known
                )
                known.update(ref.cid for ref in chunk_refs)
                follow_refs.extend(chunk_refs)
        except DiscoveryError as e:
            logger.warning("follow_scan_failed", npub=npub[:12], error=str(e))
            result["follow_error"] = str(e)

        result["follow_cids"] = len(follow_refs)
        result["refs"] = self_refs + follow_refs
        return result

    async def run_cycle(self) -> DiscoveryReport:
        """Scan every configured identity once and queue what was found."""
        now = datetime.now(timezone.utc).isoformat()
        try:
            results: list[dict[str, Any]] = []
            refs: list[ContentReference] = []

            for npub in self.npubs:
                try:
                    result = await self.discover(npub)
                except (DiscoveryError, ValueError) as e:
                    logger.error("discovery_npub_error", npub=npub[:12], error=str(e))
                    results.append({"npub": npub, "error": str(e)})
                    continue

                refs.extend(result.pop("refs"))
                results.append(result)
                logger.info(
                    "discovery_npub_complete",
                    npub=npub[:12],
                    events=result["events_scanned"],
                    self_cids=result["self_cids"],
                    follow_cids=result["follow_cids"],
                )

            inserted = self.store.batch_insert(refs)
            aggregate = {
                "events_scanned": sum(
                    r.get("events_scanned", 0) + r.get("follow_events_scanned", 0)
                    for r in results
                ),
                "cids_found": len(refs),
                "inserted": inserted,
                "duplicates": len(refs) - inserted,
                "pending_self": self.store.count_by_status(
                    RefStatus.PENDING, RefClass.SELF
                ),
                "pending_follow": self.store.count_by_status(
                    RefStatus.PENDING, RefClass.FOLLOW
                ),
            }
            self.last_run = DiscoveryReport(at=now, npubs=results, aggregate=aggregate)
            logger.info("discovery_complete", npubs=len(self.npubs), **aggregate)
        except Exception as e:
            logger.error(
                "discovery_error", error_type=e.__class__.__name__, error=str(e)
            )
            self.last_run = DiscoveryReport(at=now, error=str(e))
        return self.last_run

    async def _loop(self) -> None:
        while True:
            await self.run_cycle()
            await asyncio.sleep(self.interval + self.rng.uniform(0, self.jitter))

    def start(self) -> None:
        """Run a cycle now and then periodically."""
        if not self.npubs:
            logger.info("discovery_disabled", reason="no npubs configured")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="nostr-discovery")

    async def stop(self) -> None:
        """Cancel the periodic discovery."""
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
