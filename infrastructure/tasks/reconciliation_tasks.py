"""
Celery tasks for reconciliation housekeeping.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from celery import shared_task

from core.logging_config import get_logger
from core.settings import get_reconciliation_settings
from domain.event.store import EventDeduplicationStore
from infrastructure.tasks.utils.base_task import BaseTask


logger = get_logger(__name__)


async def purge_processed_events(now: Optional[datetime] = None) -> int:
    cfg = get_reconciliation_settings()
    if cfg.dedup.backend != "sqlalchemy":
        # redis expires keys itself; memory lives only inside the API process
        logger.info("processed_events_purge_skipped", backend=cfg.dedup.backend)
        return 0

    from infrastructure.database import AsyncSessionLocal
    from infrastructure.repositories.processed_event_repository import SQLAlchemyProcessedEventRepository

    store = EventDeduplicationStore(
        SQLAlchemyProcessedEventRepository(AsyncSessionLocal),
        retention_hours=cfg.dedup.retention_hours,
    )
    return await store.purge_expired(now or datetime.now(timezone.utc))


@shared_task(name="reconciliation.purge_processed_events", base=BaseTask, bind=True, max_retries=3, default_retry_delay=60)
def task_purge_processed_events(self):
    try:
        removed = asyncio.run(purge_processed_events())
    except Exception as exc:
        logger.error("processed_events_purge_failed", error=str(exc))
        raise self.retry(exc=exc)
    return {"removed": removed}
