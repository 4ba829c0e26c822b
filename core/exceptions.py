"""
业务码到 HTTP 状态的映射与全局异常处理器
"""
import traceback
import uuid
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette import status as http_status

from .response import error_response
from shared.codes import BusinessCode
from shared.codes.payment_codes import ReconciliationCode
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from domain.reconciliation.exceptions import ErrorClass, ReconciliationError


_CODE_TO_HTTP_STATUS = {
    BusinessCode.PARAM_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    BusinessCode.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.UNAUTHORIZED: http_status.HTTP_401_UNAUTHORIZED,
    BusinessCode.FORBIDDEN: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    BusinessCode.TOO_MANY_REQUESTS: http_status.HTTP_429_TOO_MANY_REQUESTS,

    # 上游凭证/故障对调用方而言是网关错误
    ReconciliationCode.VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    ReconciliationCode.AUTH_ERROR: http_status.HTTP_502_BAD_GATEWAY,
    ReconciliationCode.REFERENCE_CONFLICT: http_status.HTTP_409_CONFLICT,
    ReconciliationCode.RATE_LIMITED: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    ReconciliationCode.SERVER_ERROR: http_status.HTTP_502_BAD_GATEWAY,
    ReconciliationCode.AMBIGUOUS_OUTCOME: http_status.HTTP_504_GATEWAY_TIMEOUT,
    ReconciliationCode.CHECKSUM_INVALID: http_status.HTTP_401_UNAUTHORIZED,
    ReconciliationCode.STATUS_CONFLICT: http_status.HTTP_409_CONFLICT,
    ReconciliationCode.EVENT_PAYLOAD_MISMATCH: http_status.HTTP_409_CONFLICT,
    ReconciliationCode.TRANSACTION_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    ReconciliationCode.POLLING_EXHAUSTED: http_status.HTTP_504_GATEWAY_TIMEOUT,
}

_HTTP_STATUS_TO_CODE = {
    401: BusinessCode.UNAUTHORIZED,
    403: BusinessCode.FORBIDDEN,
    404: BusinessCode.NOT_FOUND,
    429: BusinessCode.TOO_MANY_REQUESTS,
    503: BusinessCode.SERVICE_UNAVAILABLE,
}

# 可重试失败提示调用方稍后再试（秒）
_RETRY_AFTER_SECONDS = "5"


def business_code_to_http_status(code: int) -> int:
    """根据业务码映射HTTP状态码（默认400）。"""
    return _CODE_TO_HTTP_STATUS.get(code, http_status.HTTP_400_BAD_REQUEST)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _retry_headers(exc: BusinessException) -> Optional[dict]:
    if isinstance(exc, ReconciliationError) and exc.error_class is ErrorClass.RETRYABLE:
        return {"Retry-After": _RETRY_AFTER_SECONDS}
    return None


def register_exception_handlers(app: FastAPI):
    """注册全局异常处理器"""

    logger = get_logger(__name__)

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        status_code = business_code_to_http_status(exc.code)
        if isinstance(exc, ReconciliationError):
            logger.info(
                "reconciliation_error_response",
                error_type=exc.error_type,
                error_class=exc.error_class.value,
                reference=exc.reference,
                status_code=status_code,
            )
        response = error_response(
            code=exc.code,
            message=exc.message,
            error_type=exc.error_type,
            details=jsonable_encoder(exc.details) if exc.details else None,
            field=exc.field,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=status_code,
            content=response.model_dump(mode="json"),
            headers=_retry_headers(exc),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first_error = errors[0] if errors else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", [])[1:])

        response = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first_error.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": jsonable_encoder(errors)},
            field=field,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=response.model_dump(mode="json"),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        response = error_response(
            code=_HTTP_STATUS_TO_CODE.get(exc.status_code, BusinessCode.SYSTEM_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=response.model_dump(mode="json"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        request_id = _request_id(request)
        details = None
        if app.debug:
            details = {"exception": str(exc), "traceback": traceback.format_exc()}

        logger.error("unhandled_exception", request_id=request_id, error=str(exc), exc_info=True)
        response = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )
        return JSONResponse(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(mode="json"),
        )
