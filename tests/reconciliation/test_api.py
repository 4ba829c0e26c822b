from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.middleware import RequestIDMiddleware
from api.routes import reconciliation as reconciliation_routes
from core.exceptions import register_exception_handlers
from core.settings import ReconciliationSettings
from infrastructure.reconciliation_factory import build_reconciliation_engine


WEBHOOKS = "/api/v1/reconciliation/webhooks"
TRANSACTIONS = "/api/v1/reconciliation/transactions"


@pytest.fixture
def make_app(gateway, transactions, processed_events, on_status, on_anomaly):
    def _make(seed=None, *, with_engine: bool = True) -> FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            app.state.reconciliation = None
            if with_engine:
                cfg = ReconciliationSettings(
                    secrets={"signing_secret": "test_integrity_secret", "verification_secret": "test_events_secret"},
                    polling={"grace_period": 3600},
                )
                engine = await build_reconciliation_engine(
                    cfg,
                    gateway=gateway,
                    transactions=transactions,
                    processed_events=processed_events,
                    on_status=on_status,
                    on_anomaly=on_anomaly,
                )
                if seed is not None:
                    await seed(engine)
                app.state.reconciliation = engine
            yield
            if app.state.reconciliation is not None:
                await app.state.reconciliation.aclose()

        app = FastAPI(lifespan=lifespan)
        app.add_middleware(RequestIDMiddleware)
        register_exception_handlers(app)
        app.include_router(reconciliation_routes.router, prefix="/api/v1")
        return app
    return _make


def test_webhook_is_acknowledged_and_processed(make_app, on_status, signed_webhook):
    async def seed(engine):
        await engine.ledger.create_pending("REF-1", 5000000, "COP", transaction_id="T1")

    with TestClient(make_app(seed)) as client:
        resp = client.post(WEBHOOKS, json=signed_webhook("REF-1", "APPROVED"))
        assert resp.status_code == 200
        body = resp.json()
        assert body["code"] == 0
        assert body["data"]["accepted"] is True
        assert resp.headers["X-Request-ID"]

        view = None
        for _ in range(50):
            view = client.get(f"{TRANSACTIONS}/REF-1").json()["data"]
            if view["status"] == "APPROVED":
                break
        assert view["status"] == "APPROVED"
        assert view["terminal"] is True
        assert view["status_source"] == "webhook"


def test_invalid_checksum_is_still_acknowledged(make_app, sign_payload):
    payload = sign_payload({"transaction": {"id": "T1", "reference": "R", "status": "APPROVED"}}, secret="wrong")
    with TestClient(make_app()) as client:
        resp = client.post(WEBHOOKS, json=payload)
        assert resp.status_code == 200


def test_non_object_body_is_rejected(make_app):
    with TestClient(make_app()) as client:
        resp = client.post(WEBHOOKS, content=b"[1, 2, 3]", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"]["type"] == "InvalidWebhookBody"


def test_create_and_read_transaction(make_app, gateway):
    with TestClient(make_app()) as client:
        resp = client.post(TRANSACTIONS, json={"reference": "REF-9", "amount_in_cents": 150000, "currency": "cop"})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["reference"] == "REF-9"
        assert data["currency"] == "COP"
        assert data["status"] == "PENDING"
        assert data["transaction_id"] == "tx-1"

        conflict = client.post(TRANSACTIONS, json={"reference": "REF-9", "amount_in_cents": 1, "currency": "COP"})
        assert conflict.status_code == 409
        assert conflict.json()["error"]["type"] == "ReferenceConflict"

    assert len(gateway.create_calls) == 1


def test_create_validates_body(make_app):
    with TestClient(make_app()) as client:
        resp = client.post(TRANSACTIONS, json={"reference": "REF-9", "amount_in_cents": -1, "currency": "COP"})
        assert resp.status_code == 422


def test_unknown_reference_is_404(make_app):
    with TestClient(make_app()) as client:
        resp = client.get(f"{TRANSACTIONS}/NOPE")
        assert resp.status_code == 404
        assert resp.json()["error"]["type"] == "TransactionNotFound"


def test_engine_not_running_is_503(make_app):
    with TestClient(make_app(with_engine=False)) as client:
        resp = client.get(f"{TRANSACTIONS}/REF-1")
        assert resp.status_code == 503
