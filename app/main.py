"""
Process entrypoint.

Builds the stores, the health monitor and the replicated store from
environment settings. Callers embedding the profile store import
`build_replicated_store()`; `python -m app.main` prints the startup status.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from app.core.settings import Settings
from observability.tracing import init_tracing
from replication import HealthMonitor, ProfileService, ReplicatedStore
from stores import build_profile_stores

logger = logging.getLogger(__name__)


def build_replicated_store(settings: Optional[Settings] = None, *, start_monitor: bool = True) -> ReplicatedStore:
    settings = settings or Settings()
    stores = build_profile_stores(settings)
    health = HealthMonitor(
        stores,
        interval=settings.HEALTH_CHECK_INTERVAL_SECONDS,
        check_timeout=settings.store_timeout,
    )
    health.check_all()
    if start_monitor:
        health.start()

    logger.info(f"{settings.PROJECT_NAME} {settings.VERSION} using {settings.STORE_BACKEND} stores, primary={health.primary}")
    return ReplicatedStore(
        stores,
        health,
        store_timeout=settings.store_timeout,
        max_retries=settings.READ_MAX_RETRIES,
        retry_delay=settings.read_retry_delay,
        repair_delays=settings.REPAIR_DELAYS_SECONDS,
        write_workers=settings.WRITE_WORKERS,
        sync_batch_size=settings.SYNC_BATCH_SIZE,
    )


def build_profile_service(settings: Optional[Settings] = None) -> ProfileService:
    return ProfileService(build_replicated_store(settings))


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_tracing()
    store = build_replicated_store(start_monitor=False)
    try:
        print(json.dumps(store.get_status(), indent=2, sort_keys=True))
    finally:
        store.health.stop()
        store.close()


if __name__ == "__main__":
    main()
