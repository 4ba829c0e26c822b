"""
Reconciliation API routes.

Thin surface over the engine: webhook intake (acknowledged before the
checksum is even verified), transaction creation, and a ledger read API.
"""
from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_creator, get_ledger, get_scheduler
from application.dtos.payments import CreateTransactionCommand, TransactionView
from application.services.creation_service import RetrySafeCreator
from application.services.reconciliation_service import ReconciliationScheduler
from core.logging_config import get_logger
from core.response import success_response
from domain.common.exceptions import BusinessException
from domain.transaction.ledger import TransactionLedger
from shared.codes import BusinessCode


router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])
logger = get_logger(__name__)


@router.post("/webhooks")
async def receive_webhook(request: Request, scheduler: ReconciliationScheduler = Depends(get_scheduler)):
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"null")
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.warning("webhook_body_not_json_object", content_length=len(raw_body))
        raise BusinessException(
            code=BusinessCode.PARAM_ERROR,
            message="Webhook body must be a JSON object",
            error_type="InvalidWebhookBody",
        )

    ack = scheduler.accept_webhook(payload)
    return success_response(data=ack.model_dump(mode="json"), message="Accepted")


@router.post("/transactions")
async def create_transaction(
    command: CreateTransactionCommand,
    creator: RetrySafeCreator = Depends(get_creator),
):
    tx = await creator.create(
        command.reference,
        command.amount_in_cents,
        command.currency,
        command.payment_method,
        customer_email=command.customer_email,
        expiration_time=command.expiration_time,
    )
    return success_response(data=TransactionView.from_entity(tx).model_dump(mode="json"))


@router.get("/transactions/{reference}")
async def get_transaction(reference: str, ledger: TransactionLedger = Depends(get_ledger)):
    tx = await ledger.get(reference)
    return success_response(data=TransactionView.from_entity(tx).model_dump(mode="json"))
