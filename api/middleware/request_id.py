"""
Request ID 中间件

生成或透传追踪ID并绑定到 structlog 上下文。webhook 的后台处理任务由
asyncio.create_task 复制上下文，因此同一投递的所有日志共享 request_id。
"""
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


# 代理头按优先级排列
_FORWARDED_HEADERS = ("X-Forwarded-For", "X-Real-IP")


def _client_ip(request: Request) -> str:
    for header in _FORWARDED_HEADERS:
        value = request.headers.get(header)
        if value:
            return value.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """从 X-Request-ID 取追踪ID（缺失时生成），写入 request.state 与响应头"""

    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        client_ip = _client_ip(request)

        request.state.request_id = request_id
        request.state.client_ip = client_ip

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response
