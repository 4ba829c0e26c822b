"""
API依赖项 - 对账引擎注入
"""
from fastapi import Request

from application.services.creation_service import RetrySafeCreator
from application.services.reconciliation_service import ReconciliationScheduler
from domain.transaction.ledger import TransactionLedger
from infrastructure.reconciliation_factory import ReconciliationEngine
from shared.codes import BusinessCode
from domain.common.exceptions import BusinessException


def get_reconciliation_engine(request: Request) -> ReconciliationEngine:
    """从 app.state 获取生命周期内构建的引擎"""
    engine = getattr(request.app.state, "reconciliation", None)
    if engine is None:
        raise BusinessException(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message="Reconciliation engine is not running",
            error_type="ServiceUnavailable",
        )
    return engine


def get_scheduler(request: Request) -> ReconciliationScheduler:
    return get_reconciliation_engine(request).scheduler


def get_ledger(request: Request) -> TransactionLedger:
    return get_reconciliation_engine(request).ledger


def get_creator(request: Request) -> RetrySafeCreator:
    return get_reconciliation_engine(request).creator
