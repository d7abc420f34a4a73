"""
Delayed background repair of stores that missed a write.

A single worker thread owns every pending job. Callers never touch that state
directly: `schedule()` and `cancel()` post commands on a queue, attempts run
on a small executor and report back through the same queue. Each job is keyed
by (user_id, store); scheduling the same key again replaces the pending job.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from observability import build_log_context, log_event
from stores.normalizer import Profile

logger = logging.getLogger(__name__)

RepairKey = Tuple[str, str]
RepairFn = Callable[[str, str, Profile], Any]

DEFAULT_DELAYS = (5.0, 15.0, 45.0)


@dataclass(frozen=True)
class RepairJob:
    user_id: str
    store: str
    record: Profile
    started_at: float
    generation: int
    attempt: int = 0

    @property
    def key(self) -> RepairKey:
        return (self.user_id, self.store)


class RepairScheduler:
    """
    Retry writes against a single store at fixed offsets from the original call.

    `repair_fn(store_name, user_id, record)` performs one attempt and raises
    on failure. With the default delays a record is retried 5, 15 and 45
    seconds after the write that missed it; after the last failure it stays
    out of sync until the next reconciliation job.
    """

    def __init__(
        self,
        repair_fn: RepairFn,
        delays: Sequence[float] = DEFAULT_DELAYS,
        *,
        max_workers: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not delays:
            raise ValueError("delays must not be empty")
        self._repair_fn = repair_fn
        self.delays = tuple(float(d) for d in delays)
        self._clock = clock
        self._inbox: "queue.Queue[Tuple[Any, ...]]" = queue.Queue()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="repair")
        self._generations = itertools.count(1)
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._pending: FrozenSet[RepairKey] = frozenset()
        self._ctx = build_log_context(component="repair_scheduler")

        # Worker-owned state below; only touched from _run.
        self._jobs: Dict[RepairKey, RepairJob] = {}
        self._in_flight: Dict[RepairKey, int] = {}
        self._heap: List[Tuple[float, int, RepairKey, int]] = []

    def schedule(self, user_id: str, store_name: str, record: Profile, started_at: Optional[float] = None) -> None:
        """Queue repair attempts for one store. Never raises."""
        try:
            self.start()
            job = RepairJob(
                user_id=user_id,
                store=store_name,
                record=dict(record),
                started_at=self._clock() if started_at is None else started_at,
                generation=next(self._generations),
            )
            self._inbox.put(("schedule", job))
        except Exception as e:
            logger.error(f"Failed to schedule repair for {user_id} on {store_name}: {e}")

    def cancel(self, user_id: str, store_name: str) -> None:
        self._inbox.put(("cancel", (user_id, store_name)))

    def pending(self) -> FrozenSet[RepairKey]:
        """Keys with a repair still outstanding, as of the worker's last pass."""
        return self._pending

    def start(self) -> None:
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="repair-scheduler", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._start_lock:
            thread, self._thread = self._thread, None
        if thread is not None:
            self._inbox.put(("stop",))
            thread.join(timeout=timeout)
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            try:
                command = self._inbox.get(timeout=self._next_wait())
            except queue.Empty:
                command = None

            if command is not None:
                if command[0] == "stop":
                    return
                try:
                    self._handle(command)
                except Exception as e:
                    logger.error(f"Repair scheduler command {command[0]} failed: {e}")

            self._dispatch_due()
            self._pending = frozenset(self._jobs)

    def _next_wait(self) -> Optional[float]:
        if not self._heap:
            return None
        return max(0.0, self._heap[0][0] - self._clock())

    def _handle(self, command: Tuple[Any, ...]) -> None:
        kind = command[0]
        if kind == "schedule":
            job: RepairJob = command[1]
            if job.key in self._jobs:
                logger.debug(f"Replacing pending repair for {job.user_id} on {job.store}")
            self._jobs[job.key] = job
            self._push(job)
        elif kind == "cancel":
            key: RepairKey = command[1]
            if self._jobs.pop(key, None) is not None:
                logger.info(f"Cancelled pending repair for {key[0]} on {key[1]}")
        elif kind == "result":
            _, key, generation, error = command
            self._on_result(key, generation, error)

    def _push(self, job: RepairJob) -> None:
        due = job.started_at + self.delays[job.attempt]
        heapq.heappush(self._heap, (due, job.generation, job.key, job.attempt))

    def _dispatch_due(self) -> None:
        now = self._clock()
        while self._heap and self._heap[0][0] <= now:
            _, generation, key, attempt = heapq.heappop(self._heap)
            job = self._jobs.get(key)
            if job is None or job.generation != generation or job.attempt != attempt:
                continue
            if self._in_flight.get(key) == generation:
                continue
            self._in_flight[key] = generation
            self._executor.submit(self._attempt, job)

    def _attempt(self, job: RepairJob) -> None:
        error: Optional[str] = None
        try:
            self._repair_fn(job.store, job.user_id, job.record)
        except Exception as e:
            error = str(e) or e.__class__.__name__
        self._inbox.put(("result", job.key, job.generation, error))

    def _on_result(self, key: RepairKey, generation: int, error: Optional[str]) -> None:
        if self._in_flight.get(key) == generation:
            del self._in_flight[key]
        job = self._jobs.get(key)
        if job is None or job.generation != generation:
            return

        user_id, store = key
        number = job.attempt + 1
        if error is None:
            del self._jobs[key]
            logger.info(f"Repaired {store} for {user_id} on attempt {number}")
            log_event("repair_succeeded", ctx=self._ctx, data={"user_id": user_id, "store": store, "attempt": number})
            return

        if number < len(self.delays):
            logger.warning(f"Repair attempt {number} for {user_id} on {store} failed: {error}")
            retry = RepairJob(
                user_id=job.user_id,
                store=job.store,
                record=job.record,
                started_at=job.started_at,
                generation=job.generation,
                attempt=number,
            )
            self._jobs[key] = retry
            self._push(retry)
            return

        del self._jobs[key]
        logger.error(f"Repair of {user_id} on {store} exhausted after {number} attempts; out of sync until next reconciliation")
        log_event(
            "repair_exhausted",
            ctx=self._ctx,
            data={"user_id": user_id, "store": store, "attempts": number, "error": error},
        )
