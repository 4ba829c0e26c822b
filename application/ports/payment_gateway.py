"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
Adapters report failures in raw form (HTTP status + structured error body, or
a transport failure); classification happens in the application layer.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import CreateTransactionRequest, GatewayTransaction


class GatewayResponseError(Exception):
    """Upstream answered with a non-2xx status."""

    def __init__(
        self,
        status_code: int,
        *,
        error_type: Optional[str] = None,
        messages: Any = None,
        body: Any = None,
    ) -> None:
        self.status_code = status_code
        self.error_type = error_type
        self.messages = messages
        self.body = body
        super().__init__(f"upstream responded {status_code} ({error_type or 'unknown'})")


class GatewayTransportError(Exception):
    """No usable response: timeout, connection reset, DNS failure."""

    def __init__(self, message: str, *, timeout: bool = False) -> None:
        self.timeout = timeout
        super().__init__(message)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the external payment system.

    Implementations should be async and side-effect free beyond IO, and must
    not retry internally: retry policy belongs to the creator.
    """

    provider: str

    async def create_transaction(self, req: CreateTransactionRequest) -> GatewayTransaction: ...

    async def get_transaction(self, transaction_id: str) -> GatewayTransaction: ...
