"""
Reconciliation specific codes and upstream status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class ReconciliationCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Request / validation errors (6xxxx)
    VALIDATION_ERROR = 60000
    AUTH_ERROR = 60001
    REFERENCE_CONFLICT = 60002

    # Recoverable upstream errors (61xxx)
    RATE_LIMITED = 61000
    SERVER_ERROR = 61001
    AMBIGUOUS_OUTCOME = 61002

    # Integrity anomalies (62xxx)
    CHECKSUM_INVALID = 62000
    STATUS_CONFLICT = 62001
    EVENT_PAYLOAD_MISMATCH = 62002
    TRANSACTION_NOT_FOUND = 62003
    POLLING_EXHAUSTED = 62004


# Upstream status strings → internal TransactionStatus values
UPSTREAM_STATUS_TO_INTERNAL = {
    "PENDING": "PENDING",
    "APPROVED": "APPROVED",
    "DECLINED": "DECLINED",
    "VOIDED": "VOIDED",
    "ERROR": "ERROR",
}

# Upstream error types that denote a duplicate reference
DUPLICATE_REFERENCE_ERROR_TYPES = {
    "DUPLICATE_REFERENCE",
    "REFERENCE_ALREADY_EXISTS",
}
