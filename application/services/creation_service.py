"""
Retry-safe creation of upstream transactions.

A creation call whose outcome is unknown (timeout, connection reset) is never
blindly resubmitted: the ledger is consulted by reference first, and only a
miss there allows the attempt to be retried. Retry timing goes through
tenacity with an injectable sleep so the schedule is observable in tests.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

import httpx
from pydantic import ValidationError as PydanticValidationError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from application.dtos.payments import CreateTransactionRequest, GatewayTransaction
from application.ports.payment_gateway import (
    GatewayResponseError,
    GatewayTransportError,
    PaymentGateway,
)
from application.services.error_classifier import ErrorClassifier, default_classifier
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.reconciliation.exceptions import (
    ErrorClass,
    ReconciliationError,
    ReferenceConflict,
    ValidationError,
)
from domain.services.signature import SignatureEngine
from domain.transaction.entity import ObservationSource, Transaction, TransactionStatus
from domain.transaction.ledger import TransactionLedger

if TYPE_CHECKING:  # pragma: no cover
    from application.services.reconciliation_service import ReconciliationScheduler


logger = get_logger(__name__)

_RAW_FAILURES = (
    GatewayResponseError,
    GatewayTransportError,
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
)


class CreationState(str, Enum):
    NOT_STARTED = "not_started"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_FATAL = "failed_fatal"
    FAILED_AMBIGUOUS = "failed_ambiguous"


@dataclass
class CreationAttempt:
    """In-memory bookkeeping for one create() call; discarded when it resolves."""

    reference: str
    attempts: int = 0
    state: CreationState = CreationState.NOT_STARTED
    next_retry_at: Optional[datetime] = None
    last_error_class: Optional[ErrorClass] = None
    ambiguous_seen: bool = False
    delays: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class BackoffPolicy:
    """delay = min(base * 2^attempt + uniform(0, jitter), max_delay)"""

    base_delay: float = 0.5
    jitter: float = 0.25
    max_delay: float = 8.0

    def compute(self, attempt_index: int) -> float:
        jitter = random.uniform(0, self.jitter) if self.jitter > 0 else 0.0
        return min(self.base_delay * (2 ** attempt_index) + jitter, self.max_delay)

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.compute(retry_state.attempt_number - 1)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ReconciliationError) and exc.error_class in (ErrorClass.RETRYABLE, ErrorClass.AMBIGUOUS)


class RetrySafeCreator:
    def __init__(
        self,
        gateway: PaymentGateway,
        ledger: TransactionLedger,
        signer: SignatureEngine,
        *,
        classifier: ErrorClassifier = default_classifier,
        max_retries: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        scheduler: Optional["ReconciliationScheduler"] = None,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.signer = signer
        self.classifier = classifier
        self.max_retries = max_retries
        self.backoff = backoff or BackoffPolicy()
        self.timeout = timeout
        self._sleep = sleep
        self.scheduler = scheduler

    def attach_scheduler(self, scheduler: "ReconciliationScheduler") -> None:
        self.scheduler = scheduler

    async def create(
        self,
        reference: str,
        amount_in_cents: int,
        currency: str,
        method_payload: Optional[dict[str, Any]] = None,
        *,
        customer_email: Optional[str] = None,
        expiration_time: Optional[str] = None,
    ) -> Transaction:
        existing = await self.ledger.find(reference)
        if existing is not None:
            if not existing.matches(amount_in_cents, currency):
                raise ReferenceConflict(
                    reference,
                    message=f"Reference {reference} already recorded with a different amount or currency",
                )
            logger.info("creation_reference_already_recorded", reference=reference, status=existing.status.value)
            return existing

        request = self._build_request(reference, amount_in_cents, currency, method_payload, customer_email, expiration_time)
        attempt = CreationAttempt(reference=reference)
        logger.info(
            "creation_request",
            reference=reference,
            amount_in_cents=amount_in_cents,
            currency=request.currency,
            provider=getattr(self.gateway, "provider", None),
        )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self.backoff,
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._before_sleep(attempt),
            reraise=True,
        )
        try:
            async for retry_attempt in retrying:
                with retry_attempt:
                    return await self._attempt_once(attempt, request)
        except ReconciliationError as exc:
            logger.error(
                "creation_failed",
                reference=reference,
                attempts=attempt.attempts,
                state=attempt.state.value,
                error_type=exc.error_type,
                error_class=exc.error_class.value,
            )
            raise
        raise AssertionError("unreachable")  # pragma: no cover

    def _build_request(
        self,
        reference: str,
        amount_in_cents: int,
        currency: str,
        method_payload: Optional[dict[str, Any]],
        customer_email: Optional[str],
        expiration_time: Optional[str],
    ) -> CreateTransactionRequest:
        try:
            return CreateTransactionRequest(
                reference=reference,
                amount_in_cents=amount_in_cents,
                currency=currency,
                signature=self.signer.sign(reference, amount_in_cents, (currency or "").upper(), expiration_time),
                customer_email=customer_email,
                payment_method=method_payload,
                expiration_time=expiration_time,
            )
        except (PydanticValidationError, TypeError, ValueError) as exc:
            raise ValidationError(
                "Invalid creation request",
                reference=reference,
                details={"detail": str(exc)},
            ) from exc

    def _before_sleep(self, attempt: CreationAttempt) -> Callable[[RetryCallState], None]:
        def _hook(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            attempt.delays.append(delay)
            attempt.next_retry_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "creation_retry_scheduled",
                reference=attempt.reference,
                attempt=attempt.attempts,
                delay=round(delay, 3),
                error_class=attempt.last_error_class.value if attempt.last_error_class else None,
                error=str(exc) if exc else None,
            )
        return _hook

    async def _attempt_once(self, attempt: CreationAttempt, request: CreateTransactionRequest) -> Transaction:
        attempt.attempts += 1
        attempt.state = CreationState.IN_FLIGHT
        try:
            response = await asyncio.wait_for(self.gateway.create_transaction(request), timeout=self.timeout)
        except _RAW_FAILURES as exc:
            return await self._resolve_failure(attempt, request, exc)

        attempt.state = CreationState.SUCCEEDED
        logger.info(
            "creation_response",
            reference=request.reference,
            transaction_id=response.id,
            status=response.status,
            attempts=attempt.attempts,
        )
        return await self._record_success(request, response)

    async def _resolve_failure(
        self,
        attempt: CreationAttempt,
        request: CreateTransactionRequest,
        exc: BaseException,
    ) -> Transaction:
        reference = request.reference
        klass = self.classifier.classify(exc)
        attempt.last_error_class = klass
        error = self.classifier.to_exception(exc, reference)

        if klass is ErrorClass.AMBIGUOUS:
            attempt.state = CreationState.FAILED_AMBIGUOUS
            attempt.ambiguous_seen = True
            recovered = await self.ledger.find(reference)
            if recovered is not None:
                attempt.state = CreationState.SUCCEEDED
                logger.info(
                    "creation_ambiguous_recovered",
                    reference=reference,
                    transaction_id=recovered.transaction_id,
                    status=recovered.status.value,
                )
                self._track(recovered)
                return recovered
            attempt.state = CreationState.FAILED_RETRYABLE
            raise error from exc

        if klass is ErrorClass.RETRYABLE:
            attempt.state = CreationState.FAILED_RETRYABLE
            raise error from exc

        if klass is ErrorClass.CONFLICT:
            recovered = await self.ledger.find(reference)
            if recovered is not None:
                attempt.state = CreationState.SUCCEEDED
                logger.info("creation_conflict_own_reference", reference=reference)
                return recovered
            if attempt.ambiguous_seen:
                # an earlier ambiguous attempt of this call reached the upstream
                tx = await self.ledger.create_pending(reference, request.amount_in_cents, request.currency)
                attempt.state = CreationState.SUCCEEDED
                logger.warning("creation_recovered_from_conflict", reference=reference)
                self._track(tx)
                return tx

        attempt.state = CreationState.FAILED_FATAL
        raise error from exc

    async def _record_success(self, request: CreateTransactionRequest, response: GatewayTransaction) -> Transaction:
        tx = await self.ledger.create_pending(
            request.reference,
            request.amount_in_cents,
            request.currency,
            transaction_id=response.id,
        )
        try:
            status = TransactionStatus.parse(response.status)
        except DomainValidationException:
            logger.warning("creation_unknown_status", reference=request.reference, status=response.status)
            status = TransactionStatus.PENDING

        if status.is_terminal:
            if self.scheduler is not None:
                await self.scheduler.observe(request.reference, status, ObservationSource.CREATION, response.id)
            else:
                await self.ledger.transition(request.reference, status, ObservationSource.CREATION, response.id)
            return await self.ledger.get(request.reference)

        self._track(tx)
        return tx

    def _track(self, tx: Transaction) -> None:
        if self.scheduler is not None and not tx.is_terminal:
            self.scheduler.track(tx.reference)
