"""
对账引擎异常分类

每个异常都携带 error_class（RETRYABLE / FATAL / CONFLICT / AMBIGUOUS），
重试与上报策略只依据该分类，不依赖异常的具体类型。
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import ReconciliationCode


class ErrorClass(str, Enum):
    """失败分类"""
    RETRYABLE = "retryable"   # 5xx / 限流
    FATAL = "fatal"           # 4xx（冲突除外）
    CONFLICT = "conflict"     # 重复 reference
    AMBIGUOUS = "ambiguous"   # 超时 / 连接中断，结果未知


class ReconciliationError(BusinessException):
    """对账异常基类"""

    error_class: ErrorClass = ErrorClass.FATAL

    def __init__(
        self,
        message: str,
        *,
        code: int,
        error_type: str,
        reference: Optional[str] = None,
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        full_details = {"error_class": self.error_class.value}
        if reference is not None:
            full_details["reference"] = reference
        if details:
            full_details.update(details)
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=full_details,
            field=field,
        )
        self.reference = reference


class ValidationError(ReconciliationError):
    """请求参数非法（不重试）"""

    error_class = ErrorClass.FATAL

    def __init__(self, message: str, *, reference: Optional[str] = None, details: Optional[dict] = None, field: Optional[str] = None):
        super().__init__(
            message,
            code=ReconciliationCode.VALIDATION_ERROR,
            error_type="ValidationError",
            reference=reference,
            details=details,
            field=field,
        )


class AuthError(ReconciliationError):
    """凭证无效（不重试，需要轮换密钥）"""

    error_class = ErrorClass.FATAL

    def __init__(self, message: str, *, reference: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=ReconciliationCode.AUTH_ERROR,
            error_type="AuthError",
            reference=reference,
            details=details,
        )


class ReferenceConflict(ReconciliationError):
    """reference 已被占用（金额/币种不一致，或非本引擎创建）"""

    error_class = ErrorClass.CONFLICT

    def __init__(self, reference: str, *, message: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            message or f"Reference {reference} already exists",
            code=ReconciliationCode.REFERENCE_CONFLICT,
            error_type="ReferenceConflict",
            reference=reference,
            details=details,
            field="reference",
        )


class RateLimited(ReconciliationError):
    error_class = ErrorClass.RETRYABLE

    def __init__(self, message: str = "Upstream rate limit reached", *, reference: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=ReconciliationCode.RATE_LIMITED,
            error_type="RateLimited",
            reference=reference,
            details=details,
        )


class ServerError(ReconciliationError):
    error_class = ErrorClass.RETRYABLE

    def __init__(self, message: str = "Upstream server error", *, reference: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=ReconciliationCode.SERVER_ERROR,
            error_type="ServerError",
            reference=reference,
            details=details,
        )


class AmbiguousOutcome(ReconciliationError):
    """调用结果未知：必须先查账本，再决定是否重试"""

    error_class = ErrorClass.AMBIGUOUS

    def __init__(self, message: str = "Outcome of upstream call is unknown", *, reference: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=ReconciliationCode.AMBIGUOUS_OUTCOME,
            error_type="Ambiguous",
            reference=reference,
            details=details,
        )


class ChecksumInvalid(ReconciliationError):
    """入站事件校验和不通过，直接拒绝"""

    error_class = ErrorClass.FATAL

    def __init__(self, reason: str, *, reference: Optional[str] = None, details: Optional[dict] = None):
        merged = {"reason": reason}
        if details:
            merged.update(details)
        super().__init__(
            f"Inbound event checksum rejected: {reason}",
            code=ReconciliationCode.CHECKSUM_INVALID,
            error_type="ChecksumInvalid",
            reference=reference,
            details=merged,
        )
        self.reason = reason


class StatusConflict(ReconciliationError):
    """两个终态观测不一致，需要人工或上游介入"""

    error_class = ErrorClass.CONFLICT

    def __init__(self, reference: str, *, current: str, reported: str, source: str, overridden: bool = False):
        super().__init__(
            f"Terminal status conflict for {reference}: recorded {current}, reported {reported} by {source}",
            code=ReconciliationCode.STATUS_CONFLICT,
            error_type="StatusConflict",
            reference=reference,
            details={"current": current, "reported": reported, "source": source, "overridden": overridden},
        )
        self.current = current
        self.reported = reported
        self.source = source
        self.overridden = overridden


class EventPayloadMismatch(ReconciliationError):
    """同一 event_id 的两次投递内容不同"""

    error_class = ErrorClass.CONFLICT

    def __init__(self, event_id: str, *, reference: Optional[str], recorded_digest: str, received_digest: str):
        super().__init__(
            f"Event {event_id} redelivered with different payload",
            code=ReconciliationCode.EVENT_PAYLOAD_MISMATCH,
            error_type="EventPayloadMismatch",
            reference=reference,
            details={"event_id": event_id, "recorded_digest": recorded_digest, "received_digest": received_digest},
        )
        self.event_id = event_id


class TransactionNotFound(ReconciliationError):
    error_class = ErrorClass.FATAL

    def __init__(self, identifier: str):
        super().__init__(
            f"Transaction not found: {identifier}",
            code=ReconciliationCode.TRANSACTION_NOT_FOUND,
            error_type="TransactionNotFound",
            reference=identifier,
        )


class PollingExhausted(ReconciliationError):
    error_class = ErrorClass.FATAL

    def __init__(self, reference: str, *, attempts: int):
        super().__init__(
            f"Status polling for {reference} gave up after {attempts} attempts",
            code=ReconciliationCode.POLLING_EXHAUSTED,
            error_type="PollingExhausted",
            reference=reference,
            details={"attempts": attempts},
        )
        self.attempts = attempts
