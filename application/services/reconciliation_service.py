"""
Reconciliation scheduler: merges the webhook and polling observation streams.

Webhooks are acknowledged immediately and processed in a tracked background
task (verify -> parse -> dedup -> adopt -> observe). Every PENDING reference
gets at most one polling task, which queries upstream status on an
exponential schedule and feeds the same observation path. Terminal
transitions are handed to the status callback exactly once; integrity
anomalies go to the anomaly callback and never break the engine.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from application.dtos.payments import WebhookAck, WebhookEnvelope, WebhookOutcome
from application.ports.payment_gateway import (
    GatewayResponseError,
    GatewayTransportError,
    PaymentGateway,
)
from application.services.error_classifier import ErrorClassifier, default_classifier
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.event.entity import InboundEvent, canonical_digest, derive_event_id
from domain.event.store import EventDeduplicationStore
from domain.reconciliation.exceptions import (
    ChecksumInvalid,
    ErrorClass,
    EventPayloadMismatch,
    PollingExhausted,
    ReconciliationError,
    StatusConflict,
    ValidationError,
)
from domain.services.signature import SignatureEngine
from domain.transaction.entity import ObservationSource, Transaction, TransactionStatus
from domain.transaction.events import (
    EventPayloadMismatchDetected,
    InboundEventRejected,
    PollingGaveUp,
    ReconciliationEvent,
    StatusConflictDetected,
    TransactionFinalized,
)
from domain.transaction.ledger import TransactionLedger, TransitionResult


logger = get_logger(__name__)

StatusCallback = Callable[[Transaction], Awaitable[Any]]
AnomalyCallback = Callable[[ReconciliationError], Awaitable[Any]]

_QUERY_FAILURES = (
    GatewayResponseError,
    GatewayTransportError,
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
    ReconciliationError,
)


def _peek_reference(raw_payload: Any) -> Optional[str]:
    try:
        ref = raw_payload["data"]["transaction"]["reference"]
    except (KeyError, TypeError):
        return None
    return ref if isinstance(ref, str) else None


class ReconciliationScheduler:
    def __init__(
        self,
        ledger: TransactionLedger,
        dedup: EventDeduplicationStore,
        signer: SignatureEngine,
        gateway: PaymentGateway,
        *,
        classifier: ErrorClassifier = default_classifier,
        on_status: Optional[StatusCallback] = None,
        on_anomaly: Optional[AnomalyCallback] = None,
        grace_period: float = 10.0,
        initial_delay: float = 2.0,
        max_delay: float = 30.0,
        max_attempts: int = 20,
        query_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.dedup = dedup
        self.signer = signer
        self.gateway = gateway
        self.classifier = classifier
        self.on_status = on_status
        self.on_anomaly = on_anomaly
        self.grace_period = grace_period
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.query_timeout = query_timeout
        self._sleep = sleep

        self.events: List[ReconciliationEvent] = []
        self._polls: Dict[str, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._closed = False

    # ---- webhook path -------------------------------------------------

    def accept_webhook(self, raw_payload: Mapping[str, Any]) -> WebhookAck:
        """Schedule processing and acknowledge without waiting for it."""
        task = asyncio.create_task(self._run_webhook(raw_payload))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        logger.debug("webhook_accepted", reference=_peek_reference(raw_payload), inflight=len(self._inflight))
        return WebhookAck()

    async def _run_webhook(self, raw_payload: Mapping[str, Any]) -> Optional[WebhookOutcome]:
        try:
            return await self.process_webhook(raw_payload)
        except ReconciliationError as exc:
            logger.warning(
                "webhook_processing_failed",
                reference=exc.reference,
                error_type=exc.error_type,
                error=exc.message,
            )
        except Exception:
            logger.exception("webhook_processing_crashed", reference=_peek_reference(raw_payload))
        return None

    async def process_webhook(self, raw_payload: Mapping[str, Any]) -> WebhookOutcome:
        reference = _peek_reference(raw_payload)

        verification = self.signer.verify(raw_payload)
        if not verification:
            logger.warning(
                "webhook_checksum_invalid",
                security=True,
                reference=reference,
                reason=verification.reason,
            )
            self.events.append(InboundEventRejected(reference=reference, reason=verification.reason or ""))
            await self._notify_anomaly(ChecksumInvalid(verification.reason or "checksum_mismatch", reference=reference))
            return WebhookOutcome(status="rejected", reference=reference, reason=verification.reason)

        event = self._parse(raw_payload)
        reference = event.transaction_reference

        known = await self.ledger.find(reference)
        if known is None and (event.amount_in_cents is None or event.currency is None):
            raise ValidationError(
                "Cannot adopt an unknown reference without amount and currency",
                reference=reference,
            )

        dedup = await self.dedup.record_if_new(event)
        if not dedup.was_new:
            if dedup.conflicting_digest:
                self.events.append(EventPayloadMismatchDetected(reference=reference, inbound_event_id=event.event_id))
                await self._notify_anomaly(
                    EventPayloadMismatch(
                        event.event_id,
                        reference=reference,
                        recorded_digest=dedup.recorded_digest,
                        received_digest=event.payload_digest,
                    )
                )
                return WebhookOutcome(
                    status="anomaly",
                    event_id=event.event_id,
                    reference=reference,
                    reason="payload_mismatch",
                )
            return WebhookOutcome(status="duplicate", event_id=event.event_id, reference=reference)

        try:
            if known is None:
                logger.info("webhook_reference_adopted", reference=reference, transaction_id=event.transaction_id)
                await self.ledger.create_pending(
                    reference,
                    event.amount_in_cents,
                    event.currency,
                    transaction_id=event.transaction_id,
                    source=ObservationSource.WEBHOOK,
                )
            result = await self.observe(
                reference, event.reported_status, ObservationSource.WEBHOOK, event.transaction_id
            )
        except Exception:
            # release the dedup entry so a redelivery is processed again
            await self.dedup.forget(event)
            raise

        if not result.current_status.is_terminal:
            self.track(reference)
        return WebhookOutcome(
            status="processed",
            event_id=event.event_id,
            reference=reference,
            applied=result.applied,
            conflict=result.conflict,
            current_status=result.current_status.value,
        )

    def _parse(self, raw_payload: Mapping[str, Any]) -> InboundEvent:
        reference = _peek_reference(raw_payload)
        try:
            envelope = WebhookEnvelope.model_validate(raw_payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Malformed webhook payload",
                reference=reference,
                details={"detail": str(exc)},
            ) from exc
        txn = envelope.data.transaction
        try:
            status = TransactionStatus.parse(txn.status)
        except DomainValidationException as exc:
            raise ValidationError(exc.message, reference=txn.reference, field="data.transaction.status") from exc

        currency = txn.currency.upper() if txn.currency else None
        # top-level event ids are not covered by the checksum, so the key is always derived
        event_id = derive_event_id(
            txn.reference,
            status,
            transaction_id=txn.id,
            amount_in_cents=txn.amount_in_cents,
            currency=currency,
        )
        return InboundEvent(
            event_id=event_id,
            event_type=envelope.event,
            transaction_reference=txn.reference,
            reported_status=status,
            payload_digest=canonical_digest(raw_payload.get("data")),
            transaction_id=txn.id,
            amount_in_cents=txn.amount_in_cents,
            currency=currency,
            sent_at=envelope.sent_at,
        )

    # ---- shared observation path --------------------------------------

    async def observe(
        self,
        reference: str,
        status: Union[TransactionStatus, str],
        source: Union[ObservationSource, str],
        transaction_id: Optional[str] = None,
    ) -> TransitionResult:
        source = ObservationSource(source)
        result = await self.ledger.transition(reference, status, source, transaction_id)

        if result.conflict:
            reported = TransactionStatus.parse(status)
            self.events.append(
                StatusConflictDetected(
                    reference=reference,
                    current=result.previous_status.value,
                    reported=reported.value,
                    source=source.value,
                    overridden=result.overridden,
                )
            )
            await self._notify_anomaly(
                StatusConflict(
                    reference,
                    current=result.previous_status.value,
                    reported=reported.value,
                    source=source.value,
                    overridden=result.overridden,
                )
            )
        elif result.reached_terminal:
            tx = result.transaction
            self.events.append(
                TransactionFinalized(
                    reference=reference,
                    status=tx.status.value,
                    source=source.value,
                    transaction_id=tx.transaction_id,
                )
            )
            await self._notify_status(tx)

        if result.current_status.is_terminal:
            self._cancel_polling(reference)
        return result

    # ---- polling path -------------------------------------------------

    def track(self, reference: str) -> bool:
        """Start polling a PENDING reference; returns False if already polling."""
        if self._closed:
            return False
        existing = self._polls.get(reference)
        if existing is not None and not existing.done():
            return False
        task = asyncio.create_task(self._poll(reference))
        self._polls[reference] = task
        task.add_done_callback(lambda t, ref=reference: self._forget_poll(ref, t))
        logger.info("polling_started", reference=reference, grace_period=self.grace_period)
        return True

    def is_polling(self, reference: str) -> bool:
        task = self._polls.get(reference)
        return task is not None and not task.done()

    def _forget_poll(self, reference: str, task: asyncio.Task) -> None:
        if self._polls.get(reference) is task:
            del self._polls[reference]

    def _cancel_polling(self, reference: str) -> None:
        task = self._polls.get(reference)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        logger.info("polling_cancelled", reference=reference)

    def poll_delay(self, attempt_index: int) -> float:
        return min(self.initial_delay * (2 ** attempt_index), self.max_delay)

    async def _poll(self, reference: str) -> None:
        try:
            await self._sleep(self.grace_period)
            for attempt in range(self.max_attempts):
                tx = await self.ledger.find(reference)
                if tx is None:
                    logger.warning("polling_reference_missing", reference=reference)
                    return
                if tx.is_terminal:
                    logger.debug("polling_stopped_terminal", reference=reference, status=tx.status.value)
                    return

                if tx.transaction_id is None:
                    logger.debug("polling_tick_skipped", reference=reference, attempt=attempt + 1)
                else:
                    try:
                        if await self._poll_once(tx):
                            return
                    except _QUERY_FAILURES as exc:
                        klass = self.classifier.classify(exc)
                        if klass is ErrorClass.FATAL:
                            error = self.classifier.to_exception(exc, reference)
                            logger.error(
                                "polling_fatal_error",
                                reference=reference,
                                attempt=attempt + 1,
                                error_type=error.error_type,
                                error=str(exc),
                            )
                            self.events.append(
                                PollingGaveUp(reference=reference, attempts=attempt + 1, reason=error.error_type)
                            )
                            await self._notify_anomaly(error)
                            return
                        logger.warning(
                            "polling_query_failed",
                            reference=reference,
                            attempt=attempt + 1,
                            error_class=klass.value,
                            error=str(exc),
                        )

                if attempt + 1 < self.max_attempts:
                    await self._sleep(self.poll_delay(attempt))

            logger.warning("polling_exhausted", reference=reference, attempts=self.max_attempts)
            self.events.append(PollingGaveUp(reference=reference, attempts=self.max_attempts, reason="exhausted"))
            await self._notify_anomaly(PollingExhausted(reference, attempts=self.max_attempts))
        except asyncio.CancelledError:
            logger.debug("polling_task_cancelled", reference=reference)
            raise

    async def _poll_once(self, tx: Transaction) -> bool:
        snapshot = await asyncio.wait_for(
            self.gateway.get_transaction(tx.transaction_id),
            timeout=self.query_timeout,
        )
        try:
            status = TransactionStatus.parse(snapshot.status)
        except DomainValidationException:
            logger.warning("polling_unknown_status", reference=tx.reference, status=snapshot.status)
            return False
        result = await self.observe(tx.reference, status, ObservationSource.POLLING, snapshot.id)
        return result.current_status.is_terminal

    # ---- lifecycle ----------------------------------------------------

    async def resume(self) -> int:
        """Restart polling for every PENDING record, e.g. after a process restart."""
        pending = await self.ledger.list_pending(limit=None)
        started = sum(1 for tx in pending if self.track(tx.reference))
        logger.info("polling_resumed", pending=len(pending), started=started)
        return started

    async def drain(self) -> None:
        """Wait for in-flight webhook tasks."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def aclose(self) -> None:
        self._closed = True
        polls = list(self._polls.values())
        for task in polls:
            task.cancel()
        if polls:
            await asyncio.gather(*polls, return_exceptions=True)
        await self.drain()
        logger.info("reconciliation_scheduler_closed", cancelled_polls=len(polls))

    def drain_events(self) -> List[ReconciliationEvent]:
        events, self.events = self.events, []
        return events

    # ---- callbacks ----------------------------------------------------

    async def _notify_status(self, tx: Transaction) -> None:
        if self.on_status is None:
            return
        try:
            await self.on_status(tx)
        except Exception:
            logger.exception("status_callback_failed", reference=tx.reference, status=tx.status.value)

    async def _notify_anomaly(self, error: ReconciliationError) -> None:
        logger.warning(
            "reconciliation_anomaly",
            reference=error.reference,
            error_type=error.error_type,
            error=error.message,
        )
        if self.on_anomaly is None:
            return
        try:
            await self.on_anomaly(error)
        except Exception:
            logger.exception("anomaly_callback_failed", reference=error.reference, error_type=error.error_type)
