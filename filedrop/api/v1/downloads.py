"""Bounded slots for remote downloads."""

from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Gauge

ACTIVE_DOWNLOADS = Gauge(
    "filedrop_active_remote_downloads",
    "Remote downloads currently in flight",
)


class DownloadSlotsExhausted(Exception):
    """All remote download slots are taken."""

    def __init__(self, active: int, limit: int) -> None:
        super().__init__("Too many concurrent downloads")
        self.active = active
        self.limit = limit


class DownloadSlots:
    """Counter of in-flight remote downloads with a hard ceiling.

    Acquisition never waits: a request arriving while every slot is taken
    is rejected immediately.
    """

    def __init__(self, limit: int = 3) -> None:
        self.limit = limit
        self.active = 0

    def try_acquire(self) -> bool:
        if self.active >= self.limit:
            return False
        self.active += 1
        ACTIVE_DOWNLOADS.set(self.active)
        return True

    def release(self) -> None:
        self.active = max(0, self.active - 1)
        ACTIVE_DOWNLOADS.set(self.active)

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold a slot for the duration of the block.

        Raises:
            DownloadSlotsExhausted: If no slot is free
        """
        if not self.try_acquire():
            raise DownloadSlotsExhausted(self.active, self.limit)
        try:
            yield
        finally:
            self.release()
