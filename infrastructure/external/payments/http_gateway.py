"""
HTTP adapter for the upstream transactions API.

POST /transactions creates a transaction, GET /transactions/{id} reads one.
Success bodies are accepted bare or wrapped as ``{"data": {...}}``.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from application.dtos.payments import CreateTransactionRequest, GatewayTransaction
from application.ports.payment_gateway import GatewayTransportError
from infrastructure.external.payments.base import BaseGatewayClient


class HttpPaymentGateway(BaseGatewayClient):
    provider = "http"

    def __init__(
        self,
        base_url: str,
        *,
        public_key: Optional[str] = None,
        private_key: Optional[str] = None,
        timeouts: Optional[dict[str, float]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(base_url, timeouts=timeouts, transport=transport)
        self.public_key = public_key
        self.private_key = private_key

    async def create_transaction(self, req: CreateTransactionRequest) -> GatewayTransaction:
        self._log("gateway_create_transaction", reference=req.reference, amount_in_cents=req.amount_in_cents)
        body = await self._request(
            "POST",
            "/transactions",
            json=req.to_wire(),
            bearer=self.private_key or self.public_key,
        )
        return self._parse_transaction(body)

    async def get_transaction(self, transaction_id: str) -> GatewayTransaction:
        body = await self._request(
            "GET",
            f"/transactions/{transaction_id}",
            bearer=self.public_key or self.private_key,
        )
        return self._parse_transaction(body)

    @staticmethod
    def _parse_transaction(body: Any) -> GatewayTransaction:
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        try:
            return GatewayTransaction.model_validate(body)
        except PydanticValidationError as exc:
            raise GatewayTransportError(f"unexpected transaction body: {exc.error_count()} error(s)") from exc
