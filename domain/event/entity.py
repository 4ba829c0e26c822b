"""
入站事件实体 - webhook 投递的不可变快照
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from domain.transaction.entity import TransactionStatus


def canonical_digest(value: Any) -> str:
    """规范化 JSON（键排序、紧凑分隔符）后计算 SHA-256"""
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def derive_event_id(
    reference: str,
    status: TransactionStatus,
    *,
    transaction_id: Optional[str],
    amount_in_cents: Optional[int],
    currency: Optional[str],
) -> str:
    """
    由区分字段推导稳定的事件ID

    投递元数据（sent_at 等）不参与计算，因此同一逻辑事件的重投得到相同ID；
    状态变化后得到新的ID。
    """
    distinguishing = {
        "transaction_id": transaction_id,
        "reference": reference,
        "status": status.value,
        "amount_in_cents": amount_in_cents,
        "currency": currency,
    }
    base = f"{reference}|{status.value}|{canonical_digest(distinguishing)}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class InboundEvent:
    """
    入站事件

    创建于接收时，在去重存储中恰好持久化一次，之后不再修改。
    """

    event_id: str
    event_type: str
    transaction_reference: str
    reported_status: TransactionStatus
    payload_digest: str
    transaction_id: Optional[str] = None
    amount_in_cents: Optional[int] = None
    currency: Optional[str] = None
    sent_at: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
