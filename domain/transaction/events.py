"""
Transaction domain events.

Dataclass events record reconciliation facts the hosting application must be
able to observe (terminal transitions and integrity anomalies). Domain remains
free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class ReconciliationEvent:
    reference: Optional[str]
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TransactionFinalized(ReconciliationEvent):
    status: str = ""
    source: str = ""
    transaction_id: Optional[str] = None


@dataclass
class StatusConflictDetected(ReconciliationEvent):
    current: str = ""
    reported: str = ""
    source: str = ""
    overridden: bool = False


@dataclass
class InboundEventRejected(ReconciliationEvent):
    reason: str = ""


@dataclass
class EventPayloadMismatchDetected(ReconciliationEvent):
    inbound_event_id: str = ""


@dataclass
class PollingGaveUp(ReconciliationEvent):
    attempts: int = 0
    reason: str = ""
