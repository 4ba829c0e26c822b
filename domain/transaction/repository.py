"""
交易仓储接口 - 定义账本数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from .entity import Transaction, TransactionStatus


class TransactionRepository(ABC):
    """交易仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def get(self, reference: str) -> Optional[Transaction]:
        """根据 reference 获取交易（返回副本，修改后需调用 save）"""
        pass

    @abstractmethod
    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Transaction]:
        """根据上游交易ID获取交易"""
        pass

    @abstractmethod
    async def insert_if_absent(self, transaction: Transaction) -> Tuple[Transaction, bool]:
        """
        原子插入：reference 不存在时写入

        返回 (记录, 是否新插入)；已存在时返回现有记录。
        """
        pass

    @abstractmethod
    async def save(self, transaction: Transaction, expected_version: int) -> bool:
        """
        按版本号比较并写入（CAS）

        仅当存储中的版本等于 expected_version 时写入，并把版本加一。
        返回是否写入成功。
        """
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: TransactionStatus,
        older_than: Optional[datetime] = None,
        limit: Optional[int] = 500,
    ) -> List[Transaction]:
        """按状态列出交易（可选：创建时间早于 older_than；limit 为 None 时不截断）"""
        pass
