"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RECONCILIATION__ENVIRONMENT", "test")
os.environ.setdefault("RECONCILIATION__SECRETS__SIGNING_SECRET", "test_integrity_secret")
os.environ.setdefault("RECONCILIATION__SECRETS__VERIFICATION_SECRET", "test_events_secret")

import asyncio
from typing import Any, Callable, Optional

import pytest

from application.dtos.payments import CreateTransactionRequest, GatewayTransaction
from application.services.creation_service import BackoffPolicy, RetrySafeCreator
from application.services.reconciliation_service import ReconciliationScheduler
from domain.event.store import EventDeduplicationStore
from domain.services.signature import SignatureEngine, resolve_path, _digest
from domain.transaction.ledger import TransactionLedger
from infrastructure.repositories.memory import (
    InMemoryProcessedEventRepository,
    InMemoryTransactionRepository,
)


SIGNING_SECRET = "test_integrity_secret"
VERIFICATION_SECRET = "test_events_secret"
DEFAULT_PROPERTIES = ["transaction.id", "transaction.status", "transaction.amount_in_cents"]


class FakeGateway:
    """Scripted gateway: each create/get call pops the next scripted outcome.

    An outcome may be a GatewayTransaction, an exception instance, or an async
    callable taking the request (for side effects during the call).
    """

    provider = "fake"

    def __init__(self) -> None:
        self.create_script: list[Any] = []
        self.get_script: dict[str, list[Any]] = {}
        self.default_get: dict[str, str] = {}
        self.create_calls: list[CreateTransactionRequest] = []
        self.get_calls: list[str] = []

    async def _resolve(self, outcome: Any, arg: Any) -> GatewayTransaction:
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(arg)
        return outcome

    async def create_transaction(self, req: CreateTransactionRequest) -> GatewayTransaction:
        self.create_calls.append(req)
        outcome = self.create_script.pop(0) if self.create_script else GatewayTransaction(
            id=f"tx-{len(self.create_calls)}", reference=req.reference, status="PENDING",
            amount_in_cents=req.amount_in_cents, currency=req.currency,
        )
        return await self._resolve(outcome, req)

    async def get_transaction(self, transaction_id: str) -> GatewayTransaction:
        self.get_calls.append(transaction_id)
        script = self.get_script.get(transaction_id)
        if script:
            return await self._resolve(script.pop(0), transaction_id)
        status = self.default_get.get(transaction_id, "PENDING")
        return GatewayTransaction(id=transaction_id, reference="", status=status)


class RecordingSleep:
    """Injectable sleep: records requested delays and yields control once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class Recorder:
    """Async callback collecting everything it is called with."""

    def __init__(self) -> None:
        self.calls: list[Any] = []

    async def __call__(self, item: Any) -> None:
        self.calls.append(item)


def sign_webhook(
    data: dict,
    *,
    secret: str = VERIFICATION_SECRET,
    properties: Optional[list[str]] = None,
    timestamp: Optional[int] = None,
    event: str = "transaction.updated",
    sent_at: str = "2026-10-18T09:00:00.000Z",
) -> dict:
    props = list(properties or DEFAULT_PROPERTIES)
    material = "".join(resolve_path(data, p) for p in props)
    if timestamp is not None:
        material += str(timestamp)
    payload: dict[str, Any] = {
        "event": event,
        "data": data,
        "sent_at": sent_at,
        "signature": {"properties": props, "checksum": _digest(material + secret)},
    }
    if timestamp is not None:
        payload["timestamp"] = timestamp
    return payload


def webhook_for(
    reference: str,
    status: str,
    *,
    transaction_id: str = "T1",
    amount_in_cents: int = 5000000,
    currency: str = "COP",
    **kwargs: Any,
) -> dict:
    data = {
        "transaction": {
            "id": transaction_id,
            "reference": reference,
            "status": status,
            "amount_in_cents": amount_in_cents,
            "currency": currency,
        }
    }
    return sign_webhook(data, **kwargs)


@pytest.fixture
def signer() -> SignatureEngine:
    return SignatureEngine(SIGNING_SECRET, VERIFICATION_SECRET)


@pytest.fixture
def transactions() -> InMemoryTransactionRepository:
    return InMemoryTransactionRepository()


@pytest.fixture
def processed_events() -> InMemoryProcessedEventRepository:
    return InMemoryProcessedEventRepository()


@pytest.fixture
def ledger(transactions) -> TransactionLedger:
    return TransactionLedger(transactions)


@pytest.fixture
def dedup(processed_events) -> EventDeduplicationStore:
    return EventDeduplicationStore(processed_events)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def on_status() -> Recorder:
    return Recorder()


@pytest.fixture
def on_anomaly() -> Recorder:
    return Recorder()


@pytest.fixture
def make_scheduler(ledger, dedup, signer, gateway, on_status, on_anomaly, fake_sleep) -> Callable[..., ReconciliationScheduler]:
    def _make(**overrides: Any) -> ReconciliationScheduler:
        params: dict[str, Any] = dict(
            on_status=on_status,
            on_anomaly=on_anomaly,
            grace_period=0,
            initial_delay=2.0,
            max_delay=30.0,
            max_attempts=20,
            query_timeout=1.0,
            sleep=fake_sleep,
        )
        params.update(overrides)
        return ReconciliationScheduler(ledger, dedup, signer, gateway, **params)
    return _make


@pytest.fixture
def make_creator(ledger, signer, gateway, fake_sleep) -> Callable[..., RetrySafeCreator]:
    def _make(**overrides: Any) -> RetrySafeCreator:
        params: dict[str, Any] = dict(
            max_retries=3,
            backoff=BackoffPolicy(base_delay=0.5, jitter=0.0, max_delay=8.0),
            timeout=1.0,
            sleep=fake_sleep,
        )
        params.update(overrides)
        return RetrySafeCreator(gateway, ledger, signer, **params)
    return _make


@pytest.fixture
def signed_webhook() -> Callable[..., dict]:
    """Factory for correctly signed webhook payloads."""
    return webhook_for


@pytest.fixture
def sign_payload() -> Callable[..., dict]:
    return sign_webhook
