"""
事件去重存储 - 由对账调度器独占使用
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from core.logging_config import get_logger
from .entity import InboundEvent
from .repository import DedupResult, ProcessedEventRepository


logger = get_logger(__name__)

MIN_RETENTION_HOURS = 72


class EventDeduplicationStore:
    """
    去重存储 - 包装可注入的存储后端

    后端：内存（测试）、Redis（SET NX EX）、SQLAlchemy（唯一主键）。
    """

    def __init__(self, repository: ProcessedEventRepository, *, retention_hours: int = MIN_RETENTION_HOURS) -> None:
        if retention_hours < MIN_RETENTION_HOURS:
            raise ValueError(f"retention_hours must be >= {MIN_RETENTION_HOURS}, got {retention_hours}")
        self.repository = repository
        self.retention = timedelta(hours=retention_hours)

    async def record_if_new(self, event: InboundEvent) -> DedupResult:
        result = await self.repository.record_if_new(event)
        if result.was_new:
            logger.debug("inbound_event_recorded", event_id=event.event_id, reference=event.transaction_reference)
        elif result.conflicting_digest:
            logger.error(
                "inbound_event_payload_mismatch",
                event_id=event.event_id,
                reference=event.transaction_reference,
                recorded_digest=result.recorded_digest,
                received_digest=event.payload_digest,
            )
        else:
            logger.info("inbound_event_duplicate", event_id=event.event_id, reference=event.transaction_reference)
        return result

    async def forget(self, event: InboundEvent) -> None:
        await self.repository.forget(event.event_id)
        logger.warning("inbound_event_released", event_id=event.event_id, reference=event.transaction_reference)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - self.retention
        removed = await self.repository.purge_older_than(cutoff)
        logger.info("processed_events_purged", removed=removed, cutoff=cutoff.isoformat())
        return removed
