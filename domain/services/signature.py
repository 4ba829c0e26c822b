"""
Integrity signing for outbound requests and checksum verification for inbound events.

Everything here is pure: no IO, no clock, no global state. The list of fields
covered by an inbound checksum is declared inside the payload itself
(``signature.properties``) and must never be hardcoded, because the upstream
signer adds or removes covered fields per event type.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Union


_MISSING = object()


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    derived_digest: Optional[str] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.valid


def _digest(material: str) -> str:
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def _render(value: Any) -> str:
    if value is _MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def _walk(tree: Any, dotted_path: str) -> Any:
    node = tree
    for segment in dotted_path.split("."):
        if isinstance(node, Mapping):
            node = node.get(segment, _MISSING)
        elif isinstance(node, list) and segment.isdigit():
            index = int(segment)
            node = node[index] if index < len(node) else _MISSING
        else:
            return _MISSING
        if node is _MISSING:
            return _MISSING
    return node


def resolve_path(tree: Any, dotted_path: str) -> str:
    """Resolve ``a.b.0.c`` against a dict/list tree; missing segments give ``""``."""
    if not isinstance(dotted_path, str) or not dotted_path:
        return ""
    return _render(_walk(tree, dotted_path))


def sign(
    reference: str,
    amount_in_cents: int,
    currency: str,
    secret: str,
    expiration_time: Optional[Union[str, datetime]] = None,
) -> str:
    """Integrity digest: sha256(reference + amount + currency + [expiration] + secret)."""
    parts = [str(reference), str(int(amount_in_cents)), str(currency)]
    if expiration_time is not None:
        parts.append(expiration_time.isoformat() if isinstance(expiration_time, datetime) else str(expiration_time))
    parts.append(secret)
    return _digest("".join(parts))


def verify(raw_payload: Any, secret: str) -> VerificationResult:
    """
    Verify an inbound event checksum.

    Never raises: malformed payloads come back as ``valid=False`` with a reason.
    """
    if not isinstance(raw_payload, Mapping):
        return VerificationResult(False, reason="malformed_payload")
    signature = raw_payload.get("signature")
    if not isinstance(signature, Mapping):
        return VerificationResult(False, reason="missing_signature")
    checksum = signature.get("checksum")
    if not isinstance(checksum, str) or not checksum:
        return VerificationResult(False, reason="missing_checksum")
    properties = signature.get("properties")
    if not isinstance(properties, list) or not all(isinstance(p, str) for p in properties):
        return VerificationResult(False, reason="missing_properties")

    data = raw_payload.get("data")
    if data is not None and not isinstance(data, Mapping):
        return VerificationResult(False, reason="malformed_payload")

    material = "".join(resolve_path(data or {}, path) for path in properties)
    # 上游格式：存在顶层 timestamp 时拼接在 properties 之后、密钥之前
    timestamp = raw_payload.get("timestamp")
    if timestamp is not None and not isinstance(timestamp, bool):
        material += str(timestamp)
    derived = _digest(material + secret)

    if hmac.compare_digest(derived.encode("ascii"), checksum.strip().lower().encode("utf-8")):
        return VerificationResult(True, derived_digest=derived)
    return VerificationResult(False, derived_digest=derived, reason="checksum_mismatch")


class SignatureEngine:
    """Binds the signing and verification secrets of one deployment environment."""

    def __init__(self, signing_secret: str, verification_secret: str) -> None:
        if not signing_secret or not verification_secret:
            raise ValueError("both signing and verification secrets are required")
        if hmac.compare_digest(signing_secret.encode("utf-8"), verification_secret.encode("utf-8")):
            raise ValueError("signing and verification secrets must differ")
        self._signing_secret = signing_secret
        self._verification_secret = verification_secret

    def sign(
        self,
        reference: str,
        amount_in_cents: int,
        currency: str,
        expiration_time: Optional[Union[str, datetime]] = None,
    ) -> str:
        return sign(reference, amount_in_cents, currency, self._signing_secret, expiration_time)

    def verify(self, raw_payload: Any) -> VerificationResult:
        return verify(raw_payload, self._verification_secret)
