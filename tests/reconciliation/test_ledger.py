import asyncio

import pytest

from domain.reconciliation.exceptions import ReferenceConflict, TransactionNotFound, ValidationError
from domain.transaction.entity import ObservationSource, TransactionStatus, Verdict, judge
from domain.transaction.ledger import KeyedLock, ObservationPolicy, TransactionLedger
from infrastructure.repositories.memory import InMemoryTransactionRepository


S = TransactionStatus


@pytest.mark.parametrize(
    "current,reported,verdict",
    [
        (S.PENDING, S.PENDING, Verdict.NOOP),
        (S.PENDING, S.APPROVED, Verdict.APPLY),
        (S.PENDING, S.ERROR, Verdict.APPLY),
        (S.APPROVED, S.APPROVED, Verdict.NOOP),
        (S.APPROVED, S.PENDING, Verdict.NOOP),
        (S.APPROVED, S.DECLINED, Verdict.CONFLICT),
        (S.VOIDED, S.APPROVED, Verdict.CONFLICT),
    ],
)
def test_status_lattice(current, reported, verdict):
    assert judge(current, reported) is verdict


def test_status_parse_is_case_insensitive():
    assert S.parse("approved") is S.APPROVED
    assert S.parse(S.DECLINED) is S.DECLINED


@pytest.mark.asyncio
async def test_create_pending_is_idempotent(ledger):
    first = await ledger.create_pending("REF-1", 1000, "cop")
    second = await ledger.create_pending("REF-1", 1000, "COP")
    assert first.reference == second.reference
    assert second.status is S.PENDING
    assert second.currency == "COP"
    assert len(ledger.repository) == 1


@pytest.mark.asyncio
async def test_create_pending_attaches_id_on_repeat(ledger):
    await ledger.create_pending("REF-1", 1000, "COP")
    tx = await ledger.create_pending("REF-1", 1000, "COP", transaction_id="T1")
    assert tx.transaction_id == "T1"
    assert (await ledger.get_by_transaction_id("T1")).reference == "REF-1"


@pytest.mark.asyncio
async def test_create_pending_rejects_mismatched_amount(ledger):
    await ledger.create_pending("REF-1", 1000, "COP")
    with pytest.raises(ReferenceConflict):
        await ledger.create_pending("REF-1", 2000, "COP")
    with pytest.raises(ReferenceConflict):
        await ledger.create_pending("REF-1", 1000, "USD")


@pytest.mark.asyncio
@pytest.mark.parametrize("amount,currency", [(-1, "COP"), (10, "CO"), (10, "")])
async def test_create_pending_validates_input(ledger, amount, currency):
    with pytest.raises(ValidationError):
        await ledger.create_pending("REF-1", amount, currency)


@pytest.mark.asyncio
async def test_transition_applies_once(ledger):
    await ledger.create_pending("REF-1", 1000, "COP", transaction_id="T1")

    first = await ledger.transition("REF-1", "APPROVED", ObservationSource.WEBHOOK)
    assert first.applied and first.reached_terminal
    assert first.previous_status is S.PENDING

    again = await ledger.transition("REF-1", "APPROVED", ObservationSource.POLLING)
    assert not again.applied and not again.conflict
    assert again.transaction.status_source is ObservationSource.WEBHOOK


@pytest.mark.asyncio
async def test_pending_after_terminal_is_ignored(ledger):
    await ledger.create_pending("REF-1", 1000, "COP")
    await ledger.transition("REF-1", S.DECLINED, ObservationSource.POLLING)
    result = await ledger.transition("REF-1", S.PENDING, ObservationSource.WEBHOOK)
    assert not result.applied and not result.conflict
    assert (await ledger.get("REF-1")).status is S.DECLINED


@pytest.mark.asyncio
async def test_conflicting_terminal_keeps_first_under_first_wins(ledger):
    await ledger.create_pending("REF-1", 1000, "COP")
    await ledger.transition("REF-1", S.APPROVED, ObservationSource.POLLING)
    result = await ledger.transition("REF-1", S.DECLINED, ObservationSource.WEBHOOK)
    assert result.conflict and not result.applied and not result.overridden
    assert (await ledger.get("REF-1")).status is S.APPROVED


@pytest.mark.asyncio
async def test_webhook_overrides_polling_under_webhook_wins():
    ledger = TransactionLedger(InMemoryTransactionRepository(), policy=ObservationPolicy.WEBHOOK_WINS)
    await ledger.create_pending("REF-1", 1000, "COP")
    await ledger.transition("REF-1", S.APPROVED, ObservationSource.POLLING)

    result = await ledger.transition("REF-1", S.DECLINED, ObservationSource.WEBHOOK)
    assert result.conflict and result.applied and result.overridden
    tx = await ledger.get("REF-1")
    assert tx.status is S.DECLINED
    assert tx.status_source is ObservationSource.WEBHOOK

    # a polling report never overrides a webhook-sourced status
    back = await ledger.transition("REF-1", S.APPROVED, ObservationSource.POLLING)
    assert back.conflict and not back.applied
    assert (await ledger.get("REF-1")).status is S.DECLINED


@pytest.mark.asyncio
async def test_transition_unknown_reference(ledger):
    with pytest.raises(TransactionNotFound):
        await ledger.transition("NOPE", S.APPROVED, ObservationSource.WEBHOOK)


@pytest.mark.asyncio
async def test_transition_unknown_status(ledger):
    await ledger.create_pending("REF-1", 1000, "COP")
    with pytest.raises(ValidationError):
        await ledger.transition("REF-1", "REFUNDED", ObservationSource.WEBHOOK)


@pytest.mark.asyncio
async def test_transaction_id_is_write_once(ledger):
    await ledger.create_pending("REF-1", 1000, "COP", transaction_id="T1")
    with pytest.raises(ValidationError):
        await ledger.attach_transaction_id("REF-1", "T2")


@pytest.mark.asyncio
async def test_concurrent_terminal_reports_apply_exactly_once(ledger):
    await ledger.create_pending("REF-1", 1000, "COP")
    results = await asyncio.gather(
        *(ledger.transition("REF-1", S.APPROVED, src) for src in (ObservationSource.WEBHOOK, ObservationSource.POLLING) * 5)
    )
    assert sum(r.applied for r in results) == 1
    assert not any(r.conflict for r in results)


@pytest.mark.asyncio
async def test_list_pending(ledger):
    await ledger.create_pending("A", 1, "COP")
    await ledger.create_pending("B", 1, "COP")
    await ledger.transition("B", S.APPROVED, ObservationSource.WEBHOOK)
    assert [tx.reference for tx in await ledger.list_pending()] == ["A"]


@pytest.mark.asyncio
async def test_keyed_lock_releases_idle_keys():
    locks = KeyedLock()
    async with locks.hold("a"):
        assert len(locks) == 1
    assert len(locks) == 0
