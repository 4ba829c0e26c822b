"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

import httpx

from core.settings import ReconciliationSettings
from application.ports.payment_gateway import PaymentGateway


def get_payment_gateway(
    cfg: ReconciliationSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PaymentGateway:
    from .http_gateway import HttpPaymentGateway

    return HttpPaymentGateway(
        cfg.gateway.base_url,
        public_key=cfg.gateway.public_key,
        private_key=cfg.gateway.private_key,
        timeouts=cfg.timeouts.model_dump(include={"connect", "read", "write", "total"}),
        transport=transport,
    )
