import asyncio

import pytest

from application.dtos.payments import GatewayTransaction
from application.ports.payment_gateway import GatewayResponseError, GatewayTransportError
from domain.reconciliation.exceptions import AuthError, PollingExhausted
from domain.transaction.entity import ObservationSource, TransactionStatus
from domain.transaction.events import PollingGaveUp


def _snapshot(status: str, tx_id: str = "T1") -> GatewayTransaction:
    return GatewayTransaction(id=tx_id, reference="REF-1", status=status)


async def _wait_for_polling_to_stop(scheduler, reference: str) -> None:
    for _ in range(200):
        if not scheduler.is_polling(reference):
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"polling for {reference} still running")


def test_poll_delay_is_capped(make_scheduler):
    scheduler = make_scheduler(initial_delay=2.0, max_delay=30.0)
    assert [scheduler.poll_delay(i) for i in range(6)] == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


@pytest.mark.asyncio
async def test_polling_finalizes_pending_transaction(make_scheduler, ledger, gateway, on_status, fake_sleep):
    scheduler = make_scheduler(grace_period=10.0)
    gateway.get_script["T1"] = [_snapshot("PENDING"), _snapshot("PENDING"), _snapshot("APPROVED")]
    await ledger.create_pending("REF-1", 1000, "COP", transaction_id="T1")

    assert scheduler.track("REF-1")
    assert not scheduler.track("REF-1")
    await _wait_for_polling_to_stop(scheduler, "REF-1")

    tx = await ledger.get("REF-1")
    assert tx.status is TransactionStatus.APPROVED
    assert tx.status_source is ObservationSource.POLLING
    assert gateway.get_calls == ["T1", "T1", "T1"]
    assert fake_sleep.delays == [10.0, 2.0, 4.0]
    assert len(on_status.calls) == 1


@pytest.mark.asyncio
async def test_webhook_cancels_polling(make_scheduler, ledger, gateway, on_status, signed_webhook):
    scheduler = make_scheduler(grace_period=0, initial_delay=0.01, max_delay=0.01, sleep=asyncio.sleep)
    await ledger.create_pending("REF-1", 5000000, "COP", transaction_id="T1")
    scheduler.track("REF-1")
    for _ in range(100):
        if gateway.get_calls:
            break
        await asyncio.sleep(0.005)
    assert gateway.get_calls

    await scheduler.process_webhook(signed_webhook("REF-1", "APPROVED"))
    await _wait_for_polling_to_stop(scheduler, "REF-1")
    calls_after_webhook = len(gateway.get_calls)
    await asyncio.sleep(0.05)

    assert len(gateway.get_calls) == calls_after_webhook
    assert len(on_status.calls) == 1
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_polling_skips_ticks_without_transaction_id(make_scheduler, ledger, gateway, on_anomaly):
    scheduler = make_scheduler(max_attempts=3)
    await ledger.create_pending("REF-1", 1000, "COP")

    scheduler.track("REF-1")
    await _wait_for_polling_to_stop(scheduler, "REF-1")

    assert gateway.get_calls == []
    assert isinstance(on_anomaly.calls[-1], PollingExhausted)


@pytest.mark.asyncio
async def test_polling_gives_up_after_max_attempts(make_scheduler, ledger, gateway, on_anomaly, fake_sleep):
    scheduler = make_scheduler(max_attempts=4, grace_period=0)
    await ledger.create_pending("REF-1", 1000, "COP", transaction_id="T1")

    scheduler.track("REF-1")
    await _wait_for_polling_to_stop(scheduler, "REF-1")

    assert len(gateway.get_calls) == 4
    assert fake_sleep.delays == [0, 2.0, 4.0, 8.0]
    exhausted = on_anomaly.calls[-1]
    assert isinstance(exhausted, PollingExhausted)
    assert exhausted.attempts == 4
    gave_up = [e for e in scheduler.drain_events() if isinstance(e, PollingGaveUp)]
    assert gave_up[0].reason == "exhausted"
    assert (await ledger.get("REF-1")).status is TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_transient_query_failures_keep_polling(make_scheduler, ledger, gateway, on_status):
    scheduler = make_scheduler()
    gateway.get_script["T1"] = [
        GatewayTransportError("reset"),
        GatewayResponseError(503),
        _snapshot("DECLINED"),
    ]
    await ledger.create_pending("REF-1", 1000, "COP", transaction_id="T1")

    scheduler.track("REF-1")
    await _wait_for_polling_to_stop(scheduler, "REF-1")

    assert (await ledger.get("REF-1")).status is TransactionStatus.DECLINED
    assert len(on_status.calls) == 1


@pytest.mark.asyncio
async def test_fatal_query_failure_stops_polling(make_scheduler, ledger, gateway, on_anomaly):
    scheduler = make_scheduler()
    gateway.get_script["T1"] = [GatewayResponseError(401, error_type="INVALID_ACCESS_TOKEN")]
    await ledger.create_pending("REF-1", 1000, "COP", transaction_id="T1")

    scheduler.track("REF-1")
    await _wait_for_polling_to_stop(scheduler, "REF-1")

    assert gateway.get_calls == ["T1"]
    assert isinstance(on_anomaly.calls[-1], AuthError)


@pytest.mark.asyncio
async def test_resume_tracks_every_pending_reference(make_scheduler, ledger, gateway):
    scheduler = make_scheduler(grace_period=3600, sleep=asyncio.sleep)
    await ledger.create_pending("A", 1, "COP", transaction_id="TA")
    await ledger.create_pending("B", 1, "COP", transaction_id="TB")
    await ledger.create_pending("C", 1, "COP", transaction_id="TC")
    await ledger.transition("C", "APPROVED", ObservationSource.WEBHOOK)

    assert await scheduler.resume() == 2
    assert scheduler.is_polling("A") and scheduler.is_polling("B")
    assert not scheduler.is_polling("C")

    await scheduler.aclose()
    assert not scheduler.is_polling("A")
    assert not scheduler.track("A")


@pytest.mark.asyncio
async def test_resume_is_not_truncated(make_scheduler, ledger):
    scheduler = make_scheduler(grace_period=3600, sleep=asyncio.sleep)
    for i in range(501):
        await ledger.create_pending(f"REF-{i:03d}", 1, "COP", transaction_id=f"T{i}")

    assert len(await ledger.list_pending()) == 500
    assert await scheduler.resume() == 501
    assert scheduler.is_polling("REF-500")

    await scheduler.aclose()
