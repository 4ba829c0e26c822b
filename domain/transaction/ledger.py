"""
交易账本领域服务 - 状态格单调性的唯一串行化点

职责：
1. 以 reference 为键的互斥访问（进程内锁 + 仓储层 CAS）
2. 创建 PENDING 记录时的幂等与完整性校验
3. 状态迁移判定：应用 / 幂等 no-op / 冲突
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Union

from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.reconciliation.exceptions import (
    ReferenceConflict,
    ServerError,
    TransactionNotFound,
    ValidationError,
)
from .entity import (
    ObservationSource,
    Transaction,
    TransactionStatus,
    Verdict,
    judge,
)
from .repository import TransactionRepository


logger = get_logger(__name__)


class ObservationPolicy(str, Enum):
    """两个终态观测不一致时的处理策略"""
    FIRST_WINS = "first_wins"       # 先到者为准，冲突只上报
    WEBHOOK_WINS = "webhook_wins"   # webhook 覆盖轮询得到的终态（冲突仍上报）


@dataclass
class TransitionResult:
    applied: bool
    conflict: bool
    previous_status: TransactionStatus
    current_status: TransactionStatus
    transaction: Transaction
    overridden: bool = False

    @property
    def reached_terminal(self) -> bool:
        return self.applied and self.current_status.is_terminal


class KeyedLock:
    """按键分配的 asyncio 锁，无等待者时自动回收"""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class TransactionLedger:
    """
    交易账本 - 独占交易记录的所有权

    其他组件只能通过 create_pending / transition / attach_transaction_id 修改记录。
    """

    def __init__(
        self,
        repository: TransactionRepository,
        *,
        policy: ObservationPolicy = ObservationPolicy.FIRST_WINS,
        max_cas_retries: int = 5,
    ) -> None:
        self.repository = repository
        self.policy = ObservationPolicy(policy)
        self.max_cas_retries = max_cas_retries
        self._locks = KeyedLock()

    async def create_pending(
        self,
        reference: str,
        amount_in_cents: int,
        currency: str,
        transaction_id: Optional[str] = None,
        source: ObservationSource = ObservationSource.CREATION,
    ) -> Transaction:
        """
        创建 PENDING 记录

        业务规则：
        1. reference 已存在且金额/币种一致 → 幂等返回现有记录
        2. reference 已存在但金额/币种不一致 → ReferenceConflict
        """
        try:
            candidate = Transaction(
                reference=reference,
                amount_in_cents=amount_in_cents,
                currency=currency,
                transaction_id=transaction_id or None,
                status_source=ObservationSource(source),
            )
        except DomainValidationException as exc:
            raise ValidationError(exc.message, reference=reference, field=exc.field) from exc

        async with self._locks.hold(reference):
            existing, created = await self.repository.insert_if_absent(candidate)
            if created:
                logger.info(
                    "transaction_pending_recorded",
                    reference=reference,
                    transaction_id=existing.transaction_id,
                    amount_in_cents=existing.amount_in_cents,
                    currency=existing.currency,
                    source=existing.status_source.value,
                )
                return existing

            if not existing.matches(candidate.amount_in_cents, candidate.currency):
                logger.warning(
                    "transaction_reference_conflict",
                    reference=reference,
                    recorded_amount=existing.amount_in_cents,
                    recorded_currency=existing.currency,
                    requested_amount=candidate.amount_in_cents,
                    requested_currency=candidate.currency,
                )
                raise ReferenceConflict(
                    reference,
                    message=f"Reference {reference} already recorded with a different amount or currency",
                    details={
                        "recorded_amount": existing.amount_in_cents,
                        "recorded_currency": existing.currency,
                    },
                )

            if transaction_id and existing.transaction_id != transaction_id:
                return await self._attach_locked(reference, transaction_id)
            return existing

    async def transition(
        self,
        reference: str,
        new_status: Union[TransactionStatus, str],
        source: Union[ObservationSource, str],
        transaction_id: Optional[str] = None,
    ) -> TransitionResult:
        """按状态格应用一次观测，返回判定结果"""
        try:
            reported = TransactionStatus.parse(new_status)
        except DomainValidationException as exc:
            raise ValidationError(exc.message, reference=reference, field="status") from exc
        source = ObservationSource(source)

        async with self._locks.hold(reference):
            for _ in range(self.max_cas_retries):
                tx = await self.repository.get(reference)
                if tx is None:
                    raise TransactionNotFound(reference)

                expected_version = tx.version
                previous = tx.status
                try:
                    tx.attach_id(transaction_id)
                except DomainValidationException as exc:
                    raise ValidationError(exc.message, reference=reference, field=exc.field) from exc

                verdict = judge(previous, reported)
                overridden = False
                if verdict is Verdict.APPLY:
                    tx.advance(reported, source)
                elif verdict is Verdict.CONFLICT and self._should_override(tx, source):
                    tx.advance(reported, source)
                    overridden = True
                else:
                    tx.touch()

                if not await self.repository.save(tx, expected_version):
                    logger.info("transaction_cas_retry", reference=reference, expected_version=expected_version)
                    continue

                result = TransitionResult(
                    applied=verdict is Verdict.APPLY or overridden,
                    conflict=verdict is Verdict.CONFLICT,
                    previous_status=previous,
                    current_status=tx.status,
                    transaction=tx,
                    overridden=overridden,
                )
                self._log_result(reference, reported, source, result)
                return result

        raise ServerError(
            f"Ledger write contention for {reference}",
            reference=reference,
            details={"cas_retries": self.max_cas_retries},
        )

    async def attach_transaction_id(self, reference: str, transaction_id: str) -> Transaction:
        async with self._locks.hold(reference):
            return await self._attach_locked(reference, transaction_id)

    async def _attach_locked(self, reference: str, transaction_id: str) -> Transaction:
        for _ in range(self.max_cas_retries):
            tx = await self.repository.get(reference)
            if tx is None:
                raise TransactionNotFound(reference)
            expected_version = tx.version
            try:
                changed = tx.attach_id(transaction_id)
            except DomainValidationException as exc:
                raise ValidationError(exc.message, reference=reference, field=exc.field) from exc
            if not changed:
                return tx
            if await self.repository.save(tx, expected_version):
                logger.info("transaction_id_attached", reference=reference, transaction_id=transaction_id)
                return tx
        raise ServerError(f"Ledger write contention for {reference}", reference=reference)

    async def get(self, reference: str) -> Transaction:
        tx = await self.repository.get(reference)
        if tx is None:
            raise TransactionNotFound(reference)
        return tx

    async def find(self, reference: str) -> Optional[Transaction]:
        return await self.repository.get(reference)

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Transaction]:
        return await self.repository.get_by_transaction_id(transaction_id)

    async def list_pending(self, older_than: Optional[timedelta] = None, limit: Optional[int] = 500) -> List[Transaction]:
        """列出仍为 PENDING 的交易，供轮询在重启后恢复"""
        cutoff: Optional[datetime] = None
        if older_than is not None:
            cutoff = datetime.now(timezone.utc) - older_than
        return await self.repository.list_by_status(TransactionStatus.PENDING, older_than=cutoff, limit=limit)

    def _should_override(self, tx: Transaction, source: ObservationSource) -> bool:
        return (
            self.policy is ObservationPolicy.WEBHOOK_WINS
            and source is ObservationSource.WEBHOOK
            and tx.status_source is ObservationSource.POLLING
        )

    @staticmethod
    def _log_result(
        reference: str,
        reported: TransactionStatus,
        source: ObservationSource,
        result: TransitionResult,
    ) -> None:
        if result.conflict:
            logger.warning(
                "transaction_status_conflict",
                reference=reference,
                recorded=result.previous_status.value,
                reported=reported.value,
                source=source.value,
                overridden=result.overridden,
            )
        elif result.applied:
            logger.info(
                "transaction_transition_applied",
                reference=reference,
                previous=result.previous_status.value,
                current=result.current_status.value,
                source=source.value,
            )
        else:
            logger.debug(
                "transaction_transition_noop",
                reference=reference,
                current=result.current_status.value,
                reported=reported.value,
                source=source.value,
            )
