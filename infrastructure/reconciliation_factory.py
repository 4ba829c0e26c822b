"""
对账引擎装配 - 按配置组装签名、账本、去重、网关、调度器与创建器

API 进程与测试共用同一装配逻辑；存储后端与网关可注入。
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from application.ports.payment_gateway import PaymentGateway
from application.services.creation_service import BackoffPolicy, RetrySafeCreator
from application.services.reconciliation_service import (
    AnomalyCallback,
    ReconciliationScheduler,
    StatusCallback,
)
from core.logging_config import get_logger
from core.settings import ReconciliationSettings
from domain.event.repository import ProcessedEventRepository
from domain.event.store import EventDeduplicationStore
from domain.services.signature import SignatureEngine
from domain.transaction.ledger import TransactionLedger
from domain.transaction.repository import TransactionRepository
from infrastructure.external.payments import get_payment_gateway
from infrastructure.repositories.memory import (
    InMemoryProcessedEventRepository,
    InMemoryTransactionRepository,
)
from infrastructure.repositories.processed_event_repository import (
    RedisProcessedEventRepository,
    SQLAlchemyProcessedEventRepository,
)
from infrastructure.repositories.transaction_repository import SQLAlchemyTransactionRepository


logger = get_logger(__name__)


@dataclass
class ReconciliationEngine:
    signer: SignatureEngine
    ledger: TransactionLedger
    dedup: EventDeduplicationStore
    gateway: PaymentGateway
    scheduler: ReconciliationScheduler
    creator: RetrySafeCreator

    async def start(self) -> None:
        await self.scheduler.resume()

    async def aclose(self) -> None:
        await self.scheduler.aclose()
        closer = getattr(self.gateway, "aclose", None)
        if closer is not None:
            await closer()


async def build_processed_event_repository(
    cfg: ReconciliationSettings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ProcessedEventRepository:
    backend = cfg.dedup.backend
    if backend == "memory":
        return InMemoryProcessedEventRepository()
    if backend == "redis":
        from core.config import settings
        from infrastructure.cache import init_redis_client

        client = await init_redis_client()
        return RedisProcessedEventRepository(
            client,
            namespace=settings.redis.namespace,
            retention_hours=cfg.dedup.retention_hours,
        )
    if session_factory is None:
        raise ValueError("sqlalchemy dedup backend requires a session factory")
    return SQLAlchemyProcessedEventRepository(session_factory)


def build_transaction_repository(
    cfg: ReconciliationSettings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> TransactionRepository:
    if cfg.ledger_backend == "memory":
        return InMemoryTransactionRepository()
    if session_factory is None:
        raise ValueError("sqlalchemy ledger backend requires a session factory")
    return SQLAlchemyTransactionRepository(session_factory)


async def build_reconciliation_engine(
    cfg: ReconciliationSettings,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[PaymentGateway] = None,
    transactions: Optional[TransactionRepository] = None,
    processed_events: Optional[ProcessedEventRepository] = None,
    on_status: Optional[StatusCallback] = None,
    on_anomaly: Optional[AnomalyCallback] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ReconciliationEngine:
    signer = SignatureEngine(cfg.secrets.signing_secret, cfg.secrets.verification_secret)
    if transactions is None:
        transactions = build_transaction_repository(cfg, session_factory)
    if processed_events is None:
        processed_events = await build_processed_event_repository(cfg, session_factory)

    ledger = TransactionLedger(transactions, policy=cfg.policy)
    dedup = EventDeduplicationStore(
        processed_events,
        retention_hours=cfg.dedup.retention_hours,
    )
    if gateway is None:
        gateway = get_payment_gateway(cfg)

    scheduler = ReconciliationScheduler(
        ledger,
        dedup,
        signer,
        gateway,
        on_status=on_status,
        on_anomaly=on_anomaly,
        grace_period=cfg.polling.grace_period,
        initial_delay=cfg.polling.initial_delay,
        max_delay=cfg.polling.max_delay,
        max_attempts=cfg.polling.max_attempts,
        query_timeout=cfg.timeouts.status_query,
        sleep=sleep,
    )
    creator = RetrySafeCreator(
        gateway,
        ledger,
        signer,
        max_retries=cfg.retry.max_retries,
        backoff=BackoffPolicy(
            base_delay=cfg.retry.base_delay,
            jitter=cfg.retry.jitter,
            max_delay=cfg.retry.max_delay,
        ),
        timeout=cfg.timeouts.creation,
        sleep=sleep,
        scheduler=scheduler,
    )
    logger.info(
        "reconciliation_engine_built",
        environment=cfg.environment,
        policy=cfg.policy.value,
        ledger_backend=cfg.ledger_backend,
        dedup_backend=cfg.dedup.backend,
        provider=getattr(gateway, "provider", None),
    )
    return ReconciliationEngine(
        signer=signer,
        ledger=ledger,
        dedup=dedup,
        gateway=gateway,
        scheduler=scheduler,
        creator=creator,
    )
