"""
已处理事件仓储接口 - 去重账本的存储后端抽象
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .entity import InboundEvent


@dataclass
class DedupResult:
    """插入结果：was_new 为 True 时调用方获得处理权"""
    was_new: bool
    recorded_digest: Optional[str] = None

    @property
    def conflicting_digest(self) -> bool:
        return self.recorded_digest is not None


class ProcessedEventRepository(ABC):
    """去重存储抽象接口 - insert-if-absent 语义"""

    @abstractmethod
    async def record_if_new(self, event: InboundEvent) -> DedupResult:
        """
        原子地记录事件

        同一 event_id 的并发调用中恰好一个得到 was_new=True。
        已存在时返回 was_new=False；若已记录的 payload_digest 与本次不同，
        在 recorded_digest 中返回已记录的摘要（摘要相同时为 None）。
        """
        pass

    @abstractmethod
    async def purge_older_than(self, cutoff: datetime) -> int:
        """删除 cutoff 之前记录的事件，返回删除数量"""
        pass

    @abstractmethod
    async def forget(self, event_id: str) -> None:
        """释放已记录的事件，使后续重投可以重新处理"""
        pass
