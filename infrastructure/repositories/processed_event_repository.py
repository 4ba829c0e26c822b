"""
已处理事件仓储实现 - SQLAlchemy（主键唯一约束）与 Redis（SET NX EX）两种后端
"""
from datetime import datetime
from typing import Optional

from redis import asyncio as aioredis
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.logging_config import get_logger
from domain.event.entity import InboundEvent
from domain.event.repository import DedupResult, ProcessedEventRepository
from domain.event.store import MIN_RETENTION_HOURS
from infrastructure.models.processed_event import ProcessedEventModel


logger = get_logger(__name__)


def _compare(recorded: Optional[str], received: str) -> DedupResult:
    if recorded is not None and recorded != received:
        return DedupResult(was_new=False, recorded_digest=recorded)
    return DedupResult(was_new=False)


class SQLAlchemyProcessedEventRepository(ProcessedEventRepository):
    """event_id 主键冲突即视为重复投递"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _to_model(event: InboundEvent) -> ProcessedEventModel:
        return ProcessedEventModel(
            event_id=event.event_id,
            event_type=event.event_type or "",
            transaction_reference=event.transaction_reference,
            transaction_id=event.transaction_id,
            reported_status=event.reported_status.value,
            amount_in_cents=event.amount_in_cents,
            currency=event.currency,
            payload_digest=event.payload_digest,
            sent_at=event.sent_at,
            received_at=event.received_at,
        )

    async def record_if_new(self, event: InboundEvent) -> DedupResult:
        async with self._session_factory() as session:
            session.add(self._to_model(event))
            try:
                await session.commit()
                return DedupResult(was_new=True)
            except IntegrityError:
                await session.rollback()

            result = await session.execute(
                select(ProcessedEventModel.payload_digest).where(ProcessedEventModel.event_id == event.event_id)
            )
            return _compare(result.scalar_one_or_none(), event.payload_digest)

    async def forget(self, event_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(ProcessedEventModel).where(ProcessedEventModel.event_id == event_id))
            await session.commit()

    async def purge_older_than(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ProcessedEventModel).where(ProcessedEventModel.received_at < cutoff)
            )
            await session.commit()
            return result.rowcount or 0


class RedisProcessedEventRepository(ProcessedEventRepository):
    """
    Redis 去重后端

    key = {namespace}:processed_event:{event_id}，value 为 payload 摘要，
    过期由 Redis TTL 负责，因此 purge_older_than 不做任何事。
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        namespace: str = "reconciliation",
        retention_hours: int = MIN_RETENTION_HOURS,
    ) -> None:
        self._client = client
        self._namespace = namespace.strip(":")
        self._ttl = int(retention_hours * 3600)

    def _format_key(self, event_id: str) -> str:
        return f"{self._namespace}:processed_event:{event_id}"

    async def record_if_new(self, event: InboundEvent) -> DedupResult:
        key = self._format_key(event.event_id)
        created = await self._client.set(key, event.payload_digest, nx=True, ex=self._ttl)
        if created:
            return DedupResult(was_new=True)
        recorded = await self._client.get(key)
        if isinstance(recorded, bytes):
            recorded = recorded.decode("utf-8")
        return _compare(recorded, event.payload_digest)

    async def forget(self, event_id: str) -> None:
        await self._client.delete(self._format_key(event_id))

    async def purge_older_than(self, cutoff: datetime) -> int:
        logger.debug("redis_dedup_purge_skipped", cutoff=cutoff.isoformat(), ttl=self._ttl)
        return 0
