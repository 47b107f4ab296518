"""Replication scheduler: drains the reference store into the IPFS daemon.

One loop runs per reference class, each with its own concurrency ceiling.
A pass claims pending references (marking them ``in_progress`` before any
I/O), skips content the node already holds, and launches the remaining
transfers as background tasks so a slow transfer never blocks scheduling.
A periodic sweep returns references that stopped making progress to
``pending``.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable, Mapping

import httpx
from prometheus_client import Counter, Gauge

from filedrop.core.logging import get_logger
from filedrop.pinning.daemon import DaemonError, IpfsClient
from filedrop.pinning.models import (
    TERMINAL_STATUS,
    ContentReference,
    RefClass,
    RefStatus,
)
from filedrop.pinning.store import ReferenceStore

logger = get_logger(__name__)

REPLICATION_OUTCOMES = Counter(
    "filedrop_replication_outcomes_total",
    "Replication attempts by class and outcome",
    labelnames=["ref_class", "outcome"],
)

STALE_RECLAIMS = Counter(
    "filedrop_stale_reclaims_total",
    "In-progress references returned to pending by the stale sweep",
    labelnames=["ref_class"],
)

REFERENCES = Gauge(
    "filedrop_references",
    "Tracked references by class and status",
    labelnames=["ref_class", "status"],
)

DEFAULT_CONCURRENCY: dict[RefClass, int] = {RefClass.SELF: 2, RefClass.FOLLOW: 6}

Sleep = Callable[[float], Awaitable[None]]


class ReplicationScheduler:
    """Schedules pin (self) and cache (follow) work under per-class ceilings."""

    def __init__(
        self,
        store: ReferenceStore,
        daemon: IpfsClient,
        concurrency: Mapping[RefClass, int] | None = None,
        stale_threshold: float = 1200.0,
        sweep_interval: float = 60.0,
        pass_delay: tuple[float, float] = (5.0, 15.0),
        idle_delay: tuple[float, float] = (30.0, 200.0),
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Reference store to drain
            daemon: IPFS daemon client
            concurrency: In-flight ceiling per reference class
            stale_threshold: Idle seconds after which in-progress work is reclaimed
            sweep_interval: Seconds between stale sweeps
            pass_delay: Bounds of the randomized delay between passes
            idle_delay: Bounds of the randomized delay when nothing is pending
            rng: Random source for delays
            sleep: Coroutine used to wait between passes
            wall_clock: Epoch clock for activity reporting
        """
        self.store = store
        self.daemon = daemon
        self.concurrency = {**DEFAULT_CONCURRENCY, **(concurrency or {})}
        self.stale_threshold = stale_threshold
        self.sweep_interval = sweep_interval
        self.pass_delay = pass_delay
        self.idle_delay = idle_delay
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.wall_clock = wall_clock
        self.last_activity: float | None = None

        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._loops: list[asyncio.Task[None]] = []

    # ---------- Introspection ----------

    def active_tasks(self, ref_class: RefClass | None = None) -> list[str]:
        """CIDs with a transfer task currently running."""
        if ref_class is None:
            return list(self._tasks)
        return [
            cid
            for cid in self._tasks
            if (ref := self.store.get(cid)) is not None and ref.ref_class is ref_class
        ]

    def has_work(self, ref_class: RefClass) -> bool:
        """True when references of the class are waiting for a slot."""
        return (
            self.store.count_by_status(RefStatus.PENDING, ref_class)
            + self.store.count_by_status(RefStatus.FAILED, ref_class)
        ) > 0

    def publish_metrics(self) -> None:
        """Export current store counts to Prometheus."""
        for ref_class, statuses in self.store.stats().items():
            for status, bucket in statuses.items():
                REFERENCES.labels(ref_class=ref_class, status=status).set(
                    bucket["count"]
                )

    # ---------- Scheduling ----------

    async def run_pass(self, ref_class: RefClass) -> int:
        """Claim free slots for ``ref_class`` and dispatch the claimed work.

        Returns:
            Number of references claimed in this pass
        """
        busy = self.store.count_by_status(RefStatus.IN_PROGRESS, ref_class)
        free = self.concurrency[ref_class] - busy
        if free <= 0:
            return 0

        candidates = self.store.select_pending_candidates(ref_class, free)
        claimed = [
            ref
            for ref in candidates
            if self.store.transition(ref.cid, RefStatus.IN_PROGRESS)
        ]
        if not claimed:
            return 0

        self.last_activity = self.wall_clock()
        await asyncio.gather(*(self._dispatch(ref) for ref in claimed))
        return len(claimed)

    async def _dispatch(self, ref: ContentReference) -> None:
        cid = ref.cid
        if await self.daemon.is_pinned(cid):
            size = await self.daemon.get_size(cid)
            if self._complete(ref, size):
                REPLICATION_OUTCOMES.labels(
                    ref_class=ref.ref_class.value, outcome="already_present"
                ).inc()
                logger.info(
                    "replication_skipped_present",
                    cid=cid,
                    ref_class=ref.ref_class.value,
                    size=size,
                )
            return

        task = asyncio.create_task(self._replicate(ref), name=f"replicate:{cid}")
        self._tasks[cid] = task
        task.add_done_callback(lambda done, cid=cid: self._on_task_done(cid, done))
        logger.info(
            "replication_started",
            cid=cid,
            ref_class=ref.ref_class.value,
            in_flight=len(self._tasks),
        )

    async def _replicate(self, ref: ContentReference) -> None:
        cid = ref.cid
        started = time.monotonic()

        def on_progress(progress: int) -> None:
            self.store.touch(cid, progress)

        try:
            if ref.ref_class is RefClass.SELF:
                await self.daemon.pin(cid, on_progress)
                size = await self.daemon.get_size(cid)
            else:
                received = await self.daemon.cache(cid, on_progress)
                size = await self.daemon.get_size(cid) or received
        except DaemonError as e:
            if self._owns(cid) and self._fail(ref):
                REPLICATION_OUTCOMES.labels(
                    ref_class=ref.ref_class.value, outcome="failed"
                ).inc()
                logger.warning(
                    "replication_failed",
                    cid=cid,
                    ref_class=ref.ref_class.value,
                    error=str(e),
                )
            return
        except httpx.TransportError as e:
            # Possibly still progressing on the daemon side; the stale sweep
            # reclaims the reference if nothing else happens.
            REPLICATION_OUTCOMES.labels(
                ref_class=ref.ref_class.value, outcome="interrupted"
            ).inc()
            logger.warning(
                "replication_interrupted",
                cid=cid,
                ref_class=ref.ref_class.value,
                error_type=e.__class__.__name__,
                error=str(e),
            )
            return

        if self._owns(cid) and self._complete(ref, size):
            REPLICATION_OUTCOMES.labels(
                ref_class=ref.ref_class.value, outcome="completed"
            ).inc()
            logger.info(
                "replication_completed",
                cid=cid,
                ref_class=ref.ref_class.value,
                size=size,
                duration=round(time.monotonic() - started, 2),
            )

    def _owns(self, cid: str) -> bool:
        """True when the running task is still the registered attempt for ``cid``."""
        return self._tasks.get(cid) is asyncio.current_task()

    def _complete(self, ref: ContentReference, size: int) -> bool:
        current = self.store.get(ref.cid)
        if current is None or current.status is not RefStatus.IN_PROGRESS:
            logger.info("replication_result_discarded", cid=ref.cid)
            return False
        self.last_activity = self.wall_clock()
        return self.store.transition(
            ref.cid, TERMINAL_STATUS[ref.ref_class], size=size
        )

    def _fail(self, ref: ContentReference) -> bool:
        current = self.store.get(ref.cid)
        if current is None or current.status is not RefStatus.IN_PROGRESS:
            return False
        self.last_activity = self.wall_clock()
        return self.store.transition(ref.cid, RefStatus.FAILED)

    def _on_task_done(self, cid: str, task: "asyncio.Task[None]") -> None:
        if self._tasks.get(cid) is task:
            del self._tasks[cid]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "replication_task_crashed",
                cid=cid,
                error_type=error.__class__.__name__,
                error=str(error),
            )

    # ---------- Stale reclamation ----------

    def sweep(self) -> list[str]:
        """Reclaim stalled in-progress references and drop their tasks.

        Returns:
            CIDs returned to pending
        """
        reclaimed = self.store.reclaim_stale(self.stale_threshold)
        for cid in reclaimed:
            task = self._tasks.pop(cid, None)
            if task is not None and not task.done():
                task.cancel()
            ref = self.store.get(cid)
            if ref is not None:
                STALE_RECLAIMS.labels(ref_class=ref.ref_class.value).inc()
        return reclaimed

    # ---------- Lifecycle ----------

    async def _class_loop(self, ref_class: RefClass) -> None:
        logger.info(
            "replication_loop_started",
            ref_class=ref_class.value,
            concurrency=self.concurrency[ref_class],
        )
        while True:
            try:
                claimed = await self.run_pass(ref_class)
                if claimed == 0 and not self.has_work(ref_class):
                    delay = self.rng.uniform(*self.idle_delay)
                    logger.debug(
                        "replication_idle",
                        ref_class=ref_class.value,
                        wait_seconds=round(delay, 1),
                    )
                else:
                    delay = self.rng.uniform(*self.pass_delay)
            except Exception as e:
                logger.error(
                    "replication_pass_error",
                    ref_class=ref_class.value,
                    error_type=e.__class__.__name__,
                    error=str(e),
                )
                delay = self.pass_delay[1]
            await self.sleep(delay)

    async def _sweep_loop(self) -> None:
        while True:
            await self.sleep(self.sweep_interval)
            self.sweep()
            self.publish_metrics()

    def start(self) -> None:
        """Start one loop per class plus the stale sweep."""
        if self._loops:
            return
        self._loops = [
            asyncio.create_task(self._class_loop(ref_class), name=f"loop:{ref_class.value}")
            for ref_class in RefClass
        ]
        self._loops.append(asyncio.create_task(self._sweep_loop(), name="stale-sweep"))

    async def stop(self) -> None:
        """Cancel the loops and any in-flight transfers."""
        pending = [*self._loops, *self._tasks.values()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._loops = []
        self._tasks.clear()
        logger.info("replication_stopped")

    async def wait_idle(self) -> None:
        """Wait until every in-flight transfer task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
