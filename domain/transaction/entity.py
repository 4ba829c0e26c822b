"""
交易领域实体 - 对账账本中的交易记录与状态格
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from shared.codes.payment_codes import UPSTREAM_STATUS_TO_INTERNAL


class TransactionStatus(str, Enum):
    """交易状态枚举：PENDING 是唯一的非终态"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    VOIDED = "VOIDED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING

    @classmethod
    def parse(cls, raw: object) -> "TransactionStatus":
        """把上游状态字符串映射为内部状态（大小写不敏感）"""
        if isinstance(raw, TransactionStatus):
            return raw
        key = str(raw or "").strip().upper()
        mapped = UPSTREAM_STATUS_TO_INTERNAL.get(key)
        if mapped is None:
            raise DomainValidationException(f"未知的交易状态: {raw!r}", field="status")
        return cls(mapped)


class ObservationSource(str, Enum):
    """状态观测来源"""
    CREATION = "creation"
    WEBHOOK = "webhook"
    POLLING = "polling"


class Verdict(str, Enum):
    """状态格判定结果"""
    APPLY = "apply"
    NOOP = "noop"
    CONFLICT = "conflict"


def judge(current: TransactionStatus, reported: TransactionStatus) -> Verdict:
    """
    状态格规则：

    1. 相同状态 → 幂等 no-op
    2. PENDING → 任意终态 → 应用
    3. 终态之后再报告 PENDING → 乱序观测，忽略
    4. 终态之后报告不同终态 → 冲突
    """
    if current == reported:
        return Verdict.NOOP
    if not current.is_terminal:
        return Verdict.APPLY
    if not reported.is_terminal:
        return Verdict.NOOP
    return Verdict.CONFLICT


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Transaction:
    """
    交易记录 - 账本聚合根

    业务规则：
    1. reference 在账本生命周期内不可变且唯一
    2. 金额为非负整数（最小货币单位）
    3. status 只能沿状态格前进
    4. transaction_id 只写一次
    """

    reference: str
    amount_in_cents: int
    currency: str
    status: TransactionStatus = TransactionStatus.PENDING
    transaction_id: Optional[str] = None
    status_source: ObservationSource = ObservationSource.CREATION
    created_at: Optional[datetime] = None
    last_observed_at: Optional[datetime] = None
    version: int = 0
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        """初始化后验证"""
        self._validate_reference()
        self._validate_amount()
        self.currency = self._normalize_currency(self.currency)
        now = datetime.now(timezone.utc)
        self.created_at = _ensure_utc(self.created_at) or now
        self.last_observed_at = _ensure_utc(self.last_observed_at) or self.created_at
        if self.metadata is None:
            self.metadata = {}

    def _validate_reference(self) -> None:
        if not self.reference or not str(self.reference).strip():
            raise DomainValidationException("reference 不能为空", field="reference")

    def _validate_amount(self) -> None:
        """业务规则：金额必须是非负整数"""
        if isinstance(self.amount_in_cents, bool) or not isinstance(self.amount_in_cents, int):
            raise DomainValidationException(
                f"金额必须是整数（最小货币单位）: {self.amount_in_cents!r}",
                field="amount_in_cents",
            )
        if self.amount_in_cents < 0:
            raise DomainValidationException(
                f"金额不能为负数: {self.amount_in_cents}",
                field="amount_in_cents",
            )

    @staticmethod
    def _normalize_currency(currency: str) -> str:
        """业务规则：货币代码必须是3位字母"""
        if not currency or len(currency) != 3 or not currency.isalpha():
            raise DomainValidationException(f"无效的货币代码: {currency}", field="currency")
        return currency.upper()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def matches(self, amount_in_cents: int, currency: str) -> bool:
        """金额与币种是否与已有记录一致"""
        return self.amount_in_cents == amount_in_cents and self.currency == (currency or "").upper()

    def attach_id(self, transaction_id: Optional[str]) -> bool:
        """
        写入上游交易ID（只写一次）

        返回是否发生了写入。
        """
        if not transaction_id:
            return False
        if self.transaction_id is None:
            self.transaction_id = transaction_id
            return True
        if self.transaction_id != transaction_id:
            raise DomainValidationException(
                f"交易 {self.reference} 的上游ID已为 {self.transaction_id}，不能改为 {transaction_id}",
                field="transaction_id",
            )
        return False

    def touch(self, when: Optional[datetime] = None) -> None:
        self.last_observed_at = _ensure_utc(when) or datetime.now(timezone.utc)

    def advance(self, status: TransactionStatus, source: ObservationSource, when: Optional[datetime] = None) -> None:
        """应用一次状态迁移（调用方已完成状态格判定）"""
        self.status = status
        self.status_source = source
        self.touch(when)
