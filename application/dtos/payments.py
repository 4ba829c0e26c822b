"""
Reconciliation DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


class CreateTransactionRequest(BaseModel):
    """Outbound creation payload; `signature` carries the integrity digest."""

    reference: str = Field(min_length=1)
    amount_in_cents: int = Field(ge=0)
    currency: str
    signature: str
    customer_email: Optional[str] = None
    payment_method: Optional[dict[str, Any]] = None
    expiration_time: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _validate_currency(v)

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "reference": self.reference,
            "amount_in_cents": self.amount_in_cents,
            "currency": self.currency,
            "signature": {"integrity": self.signature},
        }
        if self.customer_email:
            body["customer_email"] = self.customer_email
        if self.payment_method:
            body["payment_method"] = self.payment_method
        if self.expiration_time:
            body["expiration_time"] = self.expiration_time
        return body


class GatewayTransaction(BaseModel):
    """Success body of creation and status-query calls."""

    id: str
    reference: str
    status: str
    amount_in_cents: Optional[int] = None
    currency: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class WebhookTransaction(BaseModel):
    id: Optional[str] = None
    reference: str = Field(min_length=1)
    status: str
    amount_in_cents: Optional[int] = None
    currency: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class WebhookData(BaseModel):
    transaction: WebhookTransaction

    model_config = ConfigDict(extra="allow")


class WebhookEnvelope(BaseModel):
    """Inbound webhook body: {event, data.transaction, signature, sent_at}."""

    event: str = ""
    data: WebhookData
    sent_at: Optional[str] = None
    timestamp: Optional[int] = None
    event_id: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class WebhookAck(BaseModel):
    accepted: bool = True
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


WebhookOutcomeStatus = Literal["processed", "duplicate", "rejected", "anomaly"]


class WebhookOutcome(BaseModel):
    status: WebhookOutcomeStatus
    event_id: Optional[str] = None
    reference: Optional[str] = None
    applied: bool = False
    conflict: bool = False
    current_status: Optional[str] = None
    reason: Optional[str] = None


class TransactionView(BaseModel):
    """Read model returned by the ledger query API."""

    reference: str
    transaction_id: Optional[str] = None
    amount_in_cents: int
    currency: str
    status: str
    status_source: str
    created_at: datetime
    last_observed_at: datetime
    terminal: bool

    @classmethod
    def from_entity(cls, tx: Any) -> "TransactionView":
        return cls(
            reference=tx.reference,
            transaction_id=tx.transaction_id,
            amount_in_cents=tx.amount_in_cents,
            currency=tx.currency,
            status=tx.status.value,
            status_source=tx.status_source.value,
            created_at=tx.created_at,
            last_observed_at=tx.last_observed_at,
            terminal=tx.is_terminal,
        )


class CreateTransactionCommand(BaseModel):
    """Hosting-side creation request; the engine signs and submits it."""

    reference: str = Field(min_length=1, max_length=255)
    amount_in_cents: int = Field(ge=0)
    currency: str
    customer_email: Optional[str] = None
    payment_method: Optional[dict[str, Any]] = None
    expiration_time: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _validate_currency(v)
