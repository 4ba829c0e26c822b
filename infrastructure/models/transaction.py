"""
对账交易数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from datetime import datetime, timezone

from sqlalchemy import Column, BigInteger, Integer, String, DateTime, JSON, Index

from .base import Base


class TransactionModel(Base):
    """
    对账交易表

    业务规则都在 domain.transaction.entity.Transaction 中，
    version 列用于仓储层的乐观锁（compare-and-set）。
    """
    __tablename__ = "reconciliation_transactions"
    __table_args__ = (
        Index("ix_reconciliation_transactions_status_created", "status", "created_at"),
        {"comment": "对账交易账本"},
    )

    id = Column(Integer, primary_key=True, autoincrement=True, comment="主键ID")
    reference = Column(String(255), unique=True, nullable=False, comment="业务引用（唯一）")
    transaction_id = Column(String(128), nullable=True, index=True, comment="上游交易ID（只写一次）")

    amount_in_cents = Column(BigInteger, nullable=False, comment="金额（最小货币单位）")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")

    status = Column(String(16), nullable=False, default="PENDING", comment="PENDING/APPROVED/DECLINED/VOIDED/ERROR")
    status_source = Column(String(16), nullable=False, default="creation", comment="creation/webhook/polling")
    version = Column(Integer, nullable=False, default=0, comment="乐观锁版本号")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间",
    )
    last_observed_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="最近一次观测时间",
    )

    extra_metadata = Column("metadata", JSON, nullable=True, comment="附加元数据")

    def __repr__(self):
        return f"<TransactionModel(reference={self.reference}, status={self.status}, version={self.version})>"
