"""
Error classification shared by the creator and the polling producer.

Maps a raw failure (HTTP status + structured error body, or a transport-level
failure) onto one ErrorClass and, when needed, the matching taxonomy exception.
"""
from __future__ import annotations

import asyncio
from typing import Any, Iterable, Optional

import httpx

from application.ports.payment_gateway import GatewayResponseError, GatewayTransportError
from domain.reconciliation.exceptions import (
    AmbiguousOutcome,
    AuthError,
    ErrorClass,
    RateLimited,
    ReconciliationError,
    ReferenceConflict,
    ServerError,
    ValidationError,
)
from shared.codes.payment_codes import DUPLICATE_REFERENCE_ERROR_TYPES


_TRANSPORT_FAILURES = (
    GatewayTransportError,
    httpx.TransportError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)

_DUPLICATE_MARKERS = ("duplicate", "already", "ya ha sido usada", "in use")


def _flatten(messages: Any) -> Iterable[str]:
    if messages is None:
        return
    if isinstance(messages, str):
        yield messages
    elif isinstance(messages, dict):
        for key, value in messages.items():
            yield str(key)
            yield from _flatten(value)
    elif isinstance(messages, (list, tuple)):
        for item in messages:
            yield from _flatten(item)
    else:
        yield str(messages)


def _is_duplicate_reference(err: GatewayResponseError) -> bool:
    if err.status_code == 409:
        return True
    if (err.error_type or "").upper() in DUPLICATE_REFERENCE_ERROR_TYPES:
        return True
    if isinstance(err.messages, dict) and "reference" in err.messages:
        text = " ".join(_flatten(err.messages["reference"])).lower()
        return any(marker in text for marker in _DUPLICATE_MARKERS)
    return False


class ErrorClassifier:
    """Single source of truth for retry / surface / fatal decisions."""

    def classify(self, exc: BaseException) -> ErrorClass:
        if isinstance(exc, ReconciliationError):
            return exc.error_class
        if isinstance(exc, _TRANSPORT_FAILURES):
            return ErrorClass.AMBIGUOUS
        if isinstance(exc, GatewayResponseError):
            status = exc.status_code
            if status == 429 or status >= 500:
                return ErrorClass.RETRYABLE
            if 400 <= status < 500:
                return ErrorClass.CONFLICT if _is_duplicate_reference(exc) else ErrorClass.FATAL
            return ErrorClass.FATAL
        return ErrorClass.FATAL

    def to_exception(self, exc: BaseException, reference: Optional[str] = None) -> ReconciliationError:
        """Build the taxonomy exception carrying the class and the original detail."""
        if isinstance(exc, ReconciliationError):
            return exc

        details: dict[str, Any] = {"cause": type(exc).__name__, "detail": str(exc)}
        if isinstance(exc, GatewayResponseError):
            details.update(
                status_code=exc.status_code,
                upstream_error_type=exc.error_type,
                upstream_messages=exc.messages,
            )

        klass = self.classify(exc)
        if klass is ErrorClass.AMBIGUOUS:
            return AmbiguousOutcome(reference=reference, details=details)
        if klass is ErrorClass.CONFLICT:
            return ReferenceConflict(reference or "", details=details)
        if klass is ErrorClass.RETRYABLE:
            if isinstance(exc, GatewayResponseError) and exc.status_code == 429:
                return RateLimited(reference=reference, details=details)
            return ServerError(reference=reference, details=details)
        if isinstance(exc, GatewayResponseError) and exc.status_code in (401, 403):
            return AuthError("Upstream rejected credentials", reference=reference, details=details)
        return ValidationError(str(exc) or "Request rejected by upstream", reference=reference, details=details)


default_classifier = ErrorClassifier()
