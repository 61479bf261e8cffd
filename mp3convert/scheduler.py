"""Deferred deletion of converted files and their sources.

Entries live in a heap ordered by due time. A background task wakes up for the
earliest entry; tests drive :meth:`ExpiryScheduler.run_due` directly with a
fake clock instead.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .errors import CleanupError

LOGGER = logging.getLogger(__name__)


class CleanupHandle:
    def __init__(self, paths: Tuple[Path, ...], due: float) -> None:
        self.paths = paths
        self.due = due
        self.cancelled = False
        self.fired = False

    def cancel(self) -> bool:
        """Prevent the deletion; returns False if it already ran."""
        if self.fired:
            return False
        self.cancelled = True
        return True

    def __repr__(self) -> str:
        names = ", ".join(p.name for p in self.paths)
        return f"<CleanupHandle due={self.due:.1f} [{names}]>"


def _remove(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise CleanupError(f"could not delete {path}: {exc}") from exc
    return True


class ExpiryScheduler:
    def __init__(self, clock: Callable[[], float] = time.monotonic, max_idle: float = 30.0) -> None:
        self.clock = clock
        self.max_idle = max_idle
        self._heap: List[Tuple[float, int, CleanupHandle]] = []
        self._seq = itertools.count()
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)

    def schedule_cleanup(self, *paths: Path, after: float) -> CleanupHandle:
        handle = CleanupHandle(tuple(Path(p) for p in paths), self.clock() + max(after, 0.0))
        heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
        LOGGER.debug("Scheduled %r", handle)
        if self._wakeup is not None:
            self._wakeup.set()
        return handle

    def next_due(self) -> Optional[float]:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def run_due(self) -> int:
        """Delete everything whose time has come; returns how many entries fired."""

        now = self.clock()
        fired = 0
        while self._heap and self._heap[0][0] <= now:
            _, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            handle.fired = True
            fired += 1
            for path in handle.paths:
                try:
                    if _remove(path):
                        LOGGER.info("Expired %s", path.name)
                    else:
                        LOGGER.debug("Already gone: %s", path)
                except CleanupError as exc:
                    LOGGER.error("Cleanup error: %s", exc.message)
        return fired

    async def run_forever(self) -> None:
        self._wakeup = asyncio.Event()
        try:
            while True:
                try:
                    self.run_due()
                except Exception:
                    LOGGER.exception("Cleanup pass failed")
                due = self.next_due()
                delay = self.max_idle if due is None else min(max(due - self.clock(), 0.0), self.max_idle)
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._wakeup = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
