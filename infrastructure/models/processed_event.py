"""
已处理入站事件模型 - 去重账本
"""
from datetime import datetime, timezone

from sqlalchemy import Column, BigInteger, String, DateTime

from .base import Base


class ProcessedEventModel(Base):
    """event_id 为主键，重复插入由唯一约束拒绝"""
    __tablename__ = "processed_events"
    __table_args__ = ({"comment": "webhook 事件去重表"},)

    event_id = Column(String(128), primary_key=True, comment="事件ID")
    event_type = Column(String(64), nullable=False, default="", comment="事件类型")
    transaction_reference = Column(String(255), nullable=False, index=True, comment="交易引用")
    transaction_id = Column(String(128), nullable=True, comment="上游交易ID")
    reported_status = Column(String(16), nullable=False, comment="上报状态")
    amount_in_cents = Column(BigInteger, nullable=True, comment="金额（最小货币单位）")
    currency = Column(String(3), nullable=True, comment="货币代码")
    payload_digest = Column(String(64), nullable=False, comment="data 段规范化 JSON 的 SHA-256")
    sent_at = Column(String(64), nullable=True, comment="上游发送时间（原样保存）")
    received_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="接收时间",
    )

    def __repr__(self):
        return f"<ProcessedEventModel(event_id={self.event_id}, reference={self.transaction_reference})>"
