"""
交易仓储实现 - 使用SQLAlchemy实现账本数据访问

账本是独立组件，没有外层工作单元，因此每个操作都在自己的短事务内提交。
"""
import copy
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.logging_config import get_logger
from domain.transaction.entity import ObservationSource, Transaction, TransactionStatus
from domain.transaction.repository import TransactionRepository
from infrastructure.models.transaction import TransactionModel


logger = get_logger(__name__)


class SQLAlchemyTransactionRepository(TransactionRepository):
    """交易仓储的SQLAlchemy实现（version 列做乐观锁）"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _to_entity(model: TransactionModel) -> Transaction:
        """将数据库模型转换为领域实体"""
        return Transaction(
            reference=model.reference,
            transaction_id=model.transaction_id,
            amount_in_cents=int(model.amount_in_cents),
            currency=model.currency,
            status=TransactionStatus(model.status),
            status_source=ObservationSource(model.status_source),
            created_at=model.created_at,
            last_observed_at=model.last_observed_at,
            version=model.version,
            metadata=dict(model.extra_metadata or {}),
        )

    @staticmethod
    def _to_model(entity: Transaction) -> TransactionModel:
        """将领域实体转换为数据库模型"""
        return TransactionModel(
            reference=entity.reference,
            transaction_id=entity.transaction_id,
            amount_in_cents=entity.amount_in_cents,
            currency=entity.currency,
            status=entity.status.value,
            status_source=entity.status_source.value,
            version=0,
            created_at=entity.created_at,
            last_observed_at=entity.last_observed_at,
            extra_metadata=entity.metadata or None,
        )

    async def get(self, reference: str) -> Optional[Transaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TransactionModel).where(TransactionModel.reference == reference)
            )
            model = result.scalar_one_or_none()
            return self._to_entity(model) if model else None

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Transaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TransactionModel).where(TransactionModel.transaction_id == transaction_id)
            )
            model = result.scalars().first()
            return self._to_entity(model) if model else None

    async def insert_if_absent(self, transaction: Transaction) -> Tuple[Transaction, bool]:
        async with self._session_factory() as session:
            session.add(self._to_model(transaction))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug("transaction_insert_race", reference=transaction.reference)
            else:
                stored = copy.deepcopy(transaction)
                stored.version = 0
                return stored, True

        existing = await self.get(transaction.reference)
        if existing is None:
            raise RuntimeError(f"reference {transaction.reference} rejected by unique constraint but not found")
        return existing, False

    async def save(self, transaction: Transaction, expected_version: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(TransactionModel)
                .where(
                    TransactionModel.reference == transaction.reference,
                    TransactionModel.version == expected_version,
                )
                .values({
                    TransactionModel.transaction_id: transaction.transaction_id,
                    TransactionModel.status: transaction.status.value,
                    TransactionModel.status_source: transaction.status_source.value,
                    TransactionModel.last_observed_at: transaction.last_observed_at,
                    TransactionModel.extra_metadata: transaction.metadata or None,
                    TransactionModel.version: expected_version + 1,
                })
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            return False
        transaction.version = expected_version + 1
        return True

    async def list_by_status(
        self,
        status: TransactionStatus,
        older_than: Optional[datetime] = None,
        limit: Optional[int] = 500,
    ) -> List[Transaction]:
        query = select(TransactionModel).where(TransactionModel.status == status.value)
        if older_than is not None:
            query = query.where(TransactionModel.created_at <= older_than)
        query = query.order_by(TransactionModel.created_at.asc()).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [self._to_entity(m) for m in result.scalars().all()]
