# pool.py
from __future__ import annotations

import threading
import time
from typing import AbstractSet, Callable, Dict, Iterable, List, Optional, Union

from .model import Worker, WorkerState


class _WouldBlock:
    """Returned by acquire() when no idle worker matches."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "WOULD_BLOCK"


WOULD_BLOCK = _WouldBlock()

HealthCheck = Callable[[Worker], bool]


def tags_satisfy(required: AbstractSet[str], offered: AbstractSet[str]) -> bool:
    """A worker can run a job iff the job's tags are a subset of the worker's."""
    return set(required) <= set(offered)


class WorkerPool:
    """
    Tag-matched pool of workers.

    acquire() never blocks: when nothing matches it registers the caller's
    `on_available` callback, which fires once a matching worker goes idle.
    Among idle matches the least recently released worker wins, so no idle
    worker is starved.

    All state changes happen under one lock; callbacks run after it is released.
    """

    def __init__(
        self,
        workers: Iterable[Worker] = (),
        health_check: Optional[HealthCheck] = None,
        *,
        recheck_interval: float = 0.0,
    ):
        self._lock = threading.Lock()
        self.recheck_interval = recheck_interval
        self._last_recheck: Optional[float] = None
        self._workers: Dict[str, Worker] = {}
        self._waiters: List[tuple[frozenset[str], Callable[[], None]]] = []
        self.health_check = health_check
        for w in workers:
            self.add(w)

    # ------------------------------------------------------------------
    # membership
    # ------------------------------------------------------------------
    def add(self, worker: Worker) -> None:
        with self._lock:
            if worker.id in self._workers:
                raise ValueError(f"Duplicate worker id: {worker.id}")
            self._workers[worker.id] = worker
            fire = self._take_waiters(worker) if worker.state == WorkerState.IDLE else []
        self._notify(fire)

    def get(self, worker_id: str) -> Worker:
        return self._workers[worker_id]

    def snapshot(self) -> Dict[str, WorkerState]:
        with self._lock:
            return {wid: w.state for wid, w in self._workers.items()}

    def can_ever_satisfy(self, required: AbstractSet[str]) -> bool:
        """True if any registered worker (whatever its state) advertises the tags."""
        with self._lock:
            return any(tags_satisfy(required, w.tags) for w in self._workers.values())

    def has_live_match(self, required: AbstractSet[str]) -> bool:
        """True if a matching worker is idle or busy, i.e. an acquire will resolve eventually."""
        with self._lock:
            return any(
                w.state != WorkerState.OFFLINE and tags_satisfy(required, w.tags)
                for w in self._workers.values()
            )

    def all_matching_lost(self, required: AbstractSet[str]) -> bool:
        """
        True when workers with these tags exist but every one is offline and
        nothing can bring them back (no health check configured).
        """
        with self._lock:
            matching = [w for w in self._workers.values() if tags_satisfy(required, w.tags)]
        if not matching or self.health_check is not None:
            return False
        return all(w.state == WorkerState.OFFLINE for w in matching)

    def __len__(self) -> int:
        return len(self._workers)

    # ------------------------------------------------------------------
    # acquire / release
    # ------------------------------------------------------------------
    def acquire(
        self,
        required: AbstractSet[str],
        on_available: Optional[Callable[[], None]] = None,
    ) -> Union[Worker, _WouldBlock]:
        required = frozenset(required)
        with self._lock:
            idle = [
                w for w in self._workers.values()
                if w.state == WorkerState.IDLE and tags_satisfy(required, w.tags)
            ]
            if idle:
                worker = min(idle, key=lambda w: w.last_released)
                worker.state = WorkerState.BUSY
                return worker

            if on_available is not None:
                self._waiters.append((required, on_available))
            return WOULD_BLOCK

    def release(self, worker: Worker) -> None:
        with self._lock:
            w = self._workers.get(worker.id)
            if w is None or w.state != WorkerState.BUSY:
                # offline workers stay out until readmitted
                return
            w.state = WorkerState.IDLE
            w.last_released = time.monotonic()
            fire = self._take_waiters(w)
        self._notify(fire)

    def withdraw(self, on_available: Callable[[], None]) -> None:
        """Drop interest registered by acquire(); a no-op if it already fired."""
        with self._lock:
            self._waiters = [(tags, cb) for tags, cb in self._waiters if cb is not on_available]

    def mark_offline(self, worker: Worker) -> None:
        with self._lock:
            w = self._workers.get(worker.id)
            if w is not None:
                w.state = WorkerState.OFFLINE

    # ------------------------------------------------------------------
    # health-check hook
    # ------------------------------------------------------------------
    def readmit(self, worker_id: str) -> bool:
        """Bring an offline worker back to idle. Returns False if it was not offline."""
        with self._lock:
            w = self._workers.get(worker_id)
            if w is None or w.state != WorkerState.OFFLINE:
                return False
            w.state = WorkerState.IDLE
            w.last_released = time.monotonic()
            fire = self._take_waiters(w)
        self._notify(fire)
        return True

    def recheck_offline(self) -> List[str]:
        """Run the health check against offline workers; readmit the ones that pass."""
        if self.health_check is None:
            return []
        now = time.monotonic()
        if self._last_recheck is not None and now - self._last_recheck < self.recheck_interval:
            return []
        with self._lock:
            offline = [w for w in self._workers.values() if w.state == WorkerState.OFFLINE]
        if not offline:
            return []
        self._last_recheck = now
        back = [w.id for w in offline if self.health_check(w)]
        return [wid for wid in back if self.readmit(wid)]

    # ------------------------------------------------------------------
    # internals (call with lock held)
    # ------------------------------------------------------------------
    def _take_waiters(self, worker: Worker) -> List[Callable[[], None]]:
        fire = [cb for tags, cb in self._waiters if tags_satisfy(tags, worker.tags)]
        self._waiters = [(tags, cb) for tags, cb in self._waiters if not tags_satisfy(tags, worker.tags)]
        return fire

    @staticmethod
    def _notify(callbacks: List[Callable[[], None]]) -> None:
        for cb in callbacks:
            cb()


def parse_worker(spec: str) -> Worker:
    """
    Parse "id=tag1,tag2" into a Worker.

    Used for --worker options and the RUNNERCI_WORKERS setting.
    """
    wid, sep, tags = spec.partition("=")
    wid = wid.strip()
    if not sep or not wid:
        raise ValueError(f"Worker must look like 'id=tag1,tag2', got: {spec!r}")
    tag_set = frozenset(t.strip() for t in tags.split(",") if t.strip())
    return Worker(id=wid, tags=tag_set)


def parse_workers(text: str) -> List[Worker]:
    """Parse "id=a,b;id2=c" (semicolon separated) into workers."""
    return [parse_worker(part) for part in text.split(";") if part.strip()]
