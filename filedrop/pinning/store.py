"""In-memory reference store backing the replication queue.

The store is an index over content that the IPFS daemon holds durably; it
is rebuilt by re-discovery after a restart and is never persisted. None of
its methods await, so each call is atomic with respect to the event loop.
"""

import random
import time
from collections import Counter
from collections.abc import Callable, Iterable

from filedrop.core.logging import get_logger
from filedrop.pinning.models import (
    ContentReference,
    RefClass,
    RefStatus,
    can_transition,
)

logger = get_logger(__name__)

SELECTABLE = frozenset({RefStatus.PENDING, RefStatus.FAILED})


class ReferenceStore:
    """Deduplicated, lifecycle-tracked set of discovered CIDs keyed by CID."""

    def __init__(
        self,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize an empty store.

        Args:
            rng: Random source for candidate selection
            clock: Monotonic clock used for activity tracking
            wall_clock: Epoch clock used for reporting timestamps
        """
        self._refs: dict[str, ContentReference] = {}
        self.rng = rng or random.Random()
        self.clock = clock
        self.wall_clock = wall_clock

    def __len__(self) -> int:
        return len(self._refs)

    def __contains__(self, cid: object) -> bool:
        return cid in self._refs

    def get(self, cid: str) -> ContentReference | None:
        """Look up a reference by CID."""
        return self._refs.get(cid)

    def insert_if_absent(self, ref: ContentReference) -> bool:
        """Insert ``ref`` unless its CID is already tracked.

        The first discovery of a CID wins; later discoveries (in either
        class) leave the existing record untouched.

        Returns:
            True if the reference was inserted
        """
        if ref.cid in self._refs:
            return False
        now = self.wall_clock()
        ref.status = RefStatus.PENDING
        ref.created_at = now
        ref.updated_at = now
        ref.last_activity = None
        self._refs[ref.cid] = ref
        return True

    def batch_insert(self, refs: Iterable[ContentReference]) -> int:
        """Insert many references, skipping known CIDs.

        Returns:
            Number of references inserted
        """
        total = 0
        inserted = 0
        for ref in refs:
            total += 1
            if self.insert_if_absent(ref):
                inserted += 1
        logger.info(
            "batch_insert",
            total=total,
            inserted=inserted,
            duplicates=total - inserted,
        )
        return inserted

    def transition(
        self, cid: str, new_status: RefStatus, size: int | None = None
    ) -> bool:
        """Move a reference to ``new_status``.

        Returns:
            False if the CID is unknown or the step is not a legal transition
        """
        ref = self._refs.get(cid)
        if ref is None:
            return False
        if not can_transition(ref.status, new_status):
            logger.debug(
                "transition_rejected",
                cid=cid,
                current=ref.status.value,
                requested=new_status.value,
            )
            return False

        ref.status = new_status
        ref.updated_at = self.wall_clock()
        if size is not None:
            ref.size_bytes = size
        if new_status is RefStatus.IN_PROGRESS:
            ref.last_activity = self.clock()
            ref.progress_bytes = 0
        else:
            ref.last_activity = None
        return True

    def touch(self, cid: str, progress_bytes: int | None = None) -> bool:
        """Record activity on an in-progress reference.

        Returns:
            False if the reference is unknown or not in progress
        """
        ref = self._refs.get(cid)
        if ref is None or ref.status is not RefStatus.IN_PROGRESS:
            return False
        ref.last_activity = self.clock()
        if progress_bytes is not None:
            ref.progress_bytes = progress_bytes
        return True

    def select_pending_candidates(
        self, ref_class: RefClass, limit: int
    ) -> list[ContentReference]:
        """Pick up to ``limit`` random references of ``ref_class`` awaiting work.

        Pending and failed references are both eligible; in-progress and
        terminal ones never are. Selection is shuffled so an old backlog
        cannot starve newly discovered references.
        """
        if limit <= 0:
            return []
        candidates = [
            ref
            for ref in self._refs.values()
            if ref.ref_class is ref_class and ref.status in SELECTABLE
        ]
        self.rng.shuffle(candidates)
        return candidates[:limit]

    def count_by_status(
        self, status: RefStatus, ref_class: RefClass | None = None
    ) -> int:
        """Count references with ``status``, optionally within one class."""
        return sum(
            1
            for ref in self._refs.values()
            if ref.status is status
            and (ref_class is None or ref.ref_class is ref_class)
        )

    def in_progress(self, ref_class: RefClass | None = None) -> list[ContentReference]:
        """References currently being replicated."""
        return [
            ref
            for ref in self._refs.values()
            if ref.status is RefStatus.IN_PROGRESS
            and (ref_class is None or ref.ref_class is ref_class)
        ]

    def reclaim_stale(self, threshold: float) -> list[str]:
        """Return idle in-progress references to pending.

        An entry is stale when its last activity is older than ``threshold``
        seconds.

        Returns:
            CIDs that were reclaimed
        """
        now = self.clock()
        reclaimed = []
        for ref in self.in_progress():
            last = ref.last_activity if ref.last_activity is not None else now
            idle = now - last
            if idle > threshold:
                self.transition(ref.cid, RefStatus.PENDING)
                reclaimed.append(ref.cid)
                logger.warning(
                    "stale_in_progress_reclaimed",
                    cid=ref.cid,
                    ref_class=ref.ref_class.value,
                    idle_seconds=int(idle),
                )
        return reclaimed

    def stats(self) -> dict[str, dict[str, dict[str, int]]]:
        """Count and total size per class and status."""
        result: dict[str, dict[str, dict[str, int]]] = {
            ref_class.value: {
                status.value: {"count": 0, "total_size": 0} for status in RefStatus
            }
            for ref_class in RefClass
        }
        for ref in self._refs.values():
            bucket = result[ref.ref_class.value][ref.status.value]
            bucket["count"] += 1
            bucket["total_size"] += ref.size_bytes
        return result

    def summary_by_source(self) -> dict[str, dict[str, int]]:
        """Status counts per discovering owner identity."""
        summary: dict[str, Counter[str]] = {}
        for ref in self._refs.values():
            key = ref.source or "unknown"
            summary.setdefault(key, Counter())[ref.status.value] += 1
        return {
            source: {"total": sum(counts.values()), **counts}
            for source, counts in summary.items()
        }

    def recent(
        self, limit: int = 50, ref_class: RefClass | None = None
    ) -> list[ContentReference]:
        """Most recently discovered references first."""
        refs = [
            ref
            for ref in self._refs.values()
            if ref_class is None or ref.ref_class is ref_class
        ]
        refs.sort(key=lambda ref: (ref.discovered_at, ref.created_at), reverse=True)
        return refs[:limit]
