"""
Store health monitoring and primary selection.

The monitor owns the only state shared between request handling and the
background check loop: an immutable HealthSnapshot. Each check cycle builds a
new snapshot and swaps the reference, so readers always see a complete
ranking and never take a lock.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from observability import build_log_context, log_event
from stores.base import PREFERENCE_ORDER, ProfileStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreHealth:
    name: str
    available: bool = True
    last_checked_at: Optional[float] = None
    consecutive_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        if self.last_checked_at is not None:
            d["last_checked_at"] = datetime.fromtimestamp(self.last_checked_at, tz=timezone.utc).isoformat()
        return d


def _preference(name: str) -> int:
    try:
        return PREFERENCE_ORDER.index(name)
    except ValueError:
        return len(PREFERENCE_ORDER)


def rank(healths: Mapping[str, StoreHealth]) -> Tuple[str, ...]:
    """Order by (available desc, consecutive_failures asc, preference)."""
    return tuple(
        sorted(
            healths,
            key=lambda n: (not healths[n].available, healths[n].consecutive_failures, _preference(n), n),
        )
    )


@dataclass(frozen=True)
class HealthSnapshot:
    healths: Tuple[StoreHealth, ...]
    ranked: Tuple[str, ...]
    taken_at: float

    @classmethod
    def build(cls, healths: Mapping[str, StoreHealth], taken_at: Optional[float] = None) -> "HealthSnapshot":
        ordered = tuple(healths[n] for n in sorted(healths, key=_preference))
        return cls(healths=ordered, ranked=rank(healths), taken_at=taken_at if taken_at is not None else time.time())

    @property
    def primary(self) -> Optional[str]:
        return self.ranked[0] if self.ranked else None

    def health(self, name: str) -> StoreHealth:
        for h in self.healths:
            if h.name == name:
                return h
        raise KeyError(name)

    def is_available(self, name: str) -> bool:
        return self.health(name).available

    def available(self) -> List[str]:
        return [n for n in self.ranked if self.is_available(n)]


class HealthMonitor:
    """
    Periodically pings every store and recomputes the ranked store order.

    Only the check loop (or an explicit `check_all()` call) replaces the
    snapshot; request-handling code reads it.
    """

    def __init__(
        self,
        stores: Mapping[str, ProfileStore],
        *,
        interval: float = 30.0,
        check_timeout: float = 5.0,
    ) -> None:
        self._stores = dict(stores)
        self.interval = interval
        self.check_timeout = check_timeout
        self._snapshot = HealthSnapshot.build({name: StoreHealth(name=name) for name in self._stores})
        self._stop = threading.Event()
        self._closed = False
        self._thread: Optional[threading.Thread] = None
        self._executor = ThreadPoolExecutor(max_workers=max(2, 2 * len(self._stores)), thread_name_prefix="health-check")
        self._ctx = build_log_context(component="health_monitor")

    @property
    def snapshot(self) -> HealthSnapshot:
        return self._snapshot

    @property
    def primary(self) -> Optional[str]:
        return self._snapshot.primary

    def ranked_stores(self) -> List[str]:
        return list(self._snapshot.ranked)

    def available_stores(self) -> List[str]:
        return self._snapshot.available()

    def _wait(self, future, deadline: float) -> Tuple[bool, Optional[str]]:
        try:
            ok = bool(future.result(timeout=max(0.0, deadline - time.monotonic())))
            return ok, None if ok else "ping returned false"
        except FutureTimeout:
            return False, f"ping timed out after {self.check_timeout}s"
        except Exception as e:
            return False, str(e)

    def check_all(self) -> HealthSnapshot:
        """
        Ping every store once and publish a new snapshot.

        Never raises: a failed ping only marks its store unavailable, and
        after stop() the last snapshot is returned unchanged.
        """
        previous = self._snapshot
        now = time.time()
        deadline = time.monotonic() + self.check_timeout
        try:
            futures = {name: self._executor.submit(store.ping) for name, store in self._stores.items()}
        except RuntimeError:
            logger.warning("Health monitor is stopped; keeping the last snapshot")
            return previous
        healths: Dict[str, StoreHealth] = {}
        for name, future in futures.items():
            before = previous.health(name)
            ok, error = self._wait(future, deadline)
            if ok:
                healths[name] = StoreHealth(name=name, available=True, last_checked_at=now, consecutive_failures=0)
            else:
                logger.warning(f"Health check failed for {name}: {error}")
                healths[name] = StoreHealth(
                    name=name,
                    available=False,
                    last_checked_at=before.last_checked_at,
                    consecutive_failures=before.consecutive_failures + 1,
                )

        snapshot = HealthSnapshot.build(healths, taken_at=now)
        self._snapshot = snapshot

        if snapshot.primary != previous.primary:
            logger.info(f"Switching primary store from {previous.primary} to {snapshot.primary}")
            log_event(
                "primary_changed",
                ctx=self._ctx,
                data={"from": previous.primary, "to": snapshot.primary, "ranked": list(snapshot.ranked)},
            )
        return snapshot

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.check_all()
            except Exception as e:
                logger.error(f"Health check loop error: {e}")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        if self._closed:
            raise RuntimeError("HealthMonitor cannot be restarted after stop()")
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="health-monitor", daemon=True)
        self._thread.start()
        logger.info(f"Health monitor started (interval={self.interval}s)")

    def stop(self) -> None:
        """Stop health checks for good; the snapshot stays readable."""
        self._closed = True
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.check_timeout + 1)
            self._thread = None
        self._executor.shutdown(wait=False)

    def status(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        return {
            "primary_store": snapshot.primary,
            "ranked": list(snapshot.ranked),
            "stores": [h.to_dict() for h in snapshot.healths],
        }
