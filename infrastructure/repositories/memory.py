"""
内存仓储实现 - 单进程部署与测试使用

账本的 insert-if-absent 与 CAS 在一次同步调用内完成读写；去重写入另由
asyncio.Lock 串行化。
"""
from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from domain.event.entity import InboundEvent
from domain.event.repository import DedupResult, ProcessedEventRepository
from domain.transaction.entity import Transaction, TransactionStatus
from domain.transaction.repository import TransactionRepository


class InMemoryTransactionRepository(TransactionRepository):
    """以 reference 为键的内存账本；读写都使用副本，避免调用方绕过 save 修改"""

    def __init__(self) -> None:
        self._rows: Dict[str, Transaction] = {}

    async def get(self, reference: str) -> Optional[Transaction]:
        row = self._rows.get(reference)
        return copy.deepcopy(row) if row is not None else None

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Transaction]:
        for row in self._rows.values():
            if row.transaction_id == transaction_id:
                return copy.deepcopy(row)
        return None

    async def insert_if_absent(self, transaction: Transaction) -> Tuple[Transaction, bool]:
        existing = self._rows.get(transaction.reference)
        if existing is not None:
            return copy.deepcopy(existing), False
        stored = copy.deepcopy(transaction)
        stored.version = 0
        self._rows[stored.reference] = stored
        return copy.deepcopy(stored), True

    async def save(self, transaction: Transaction, expected_version: int) -> bool:
        current = self._rows.get(transaction.reference)
        if current is None or current.version != expected_version:
            return False
        stored = copy.deepcopy(transaction)
        stored.version = expected_version + 1
        self._rows[stored.reference] = stored
        transaction.version = stored.version
        return True

    async def list_by_status(
        self,
        status: TransactionStatus,
        older_than: Optional[datetime] = None,
        limit: Optional[int] = 500,
    ) -> List[Transaction]:
        rows = [
            row for row in self._rows.values()
            if row.status is status and (older_than is None or row.created_at <= older_than)
        ]
        rows.sort(key=lambda r: r.created_at)
        return [copy.deepcopy(r) for r in rows[:limit]]

    def __len__(self) -> int:
        return len(self._rows)


class InMemoryProcessedEventRepository(ProcessedEventRepository):
    def __init__(self) -> None:
        self._events: Dict[str, InboundEvent] = {}
        self._lock = asyncio.Lock()

    async def record_if_new(self, event: InboundEvent) -> DedupResult:
        async with self._lock:
            existing = self._events.get(event.event_id)
            if existing is None:
                self._events[event.event_id] = event
                return DedupResult(was_new=True)
        if existing.payload_digest != event.payload_digest:
            return DedupResult(was_new=False, recorded_digest=existing.payload_digest)
        return DedupResult(was_new=False)

    async def forget(self, event_id: str) -> None:
        async with self._lock:
            self._events.pop(event_id, None)

    async def purge_older_than(self, cutoff: datetime) -> int:
        expired = [eid for eid, ev in self._events.items() if ev.received_at < cutoff]
        for eid in expired:
            del self._events[eid]
        return len(expired)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    def __len__(self) -> int:
        return len(self._events)
