import hashlib

import pytest

from domain.services.signature import SignatureEngine, resolve_path, sign, verify


def _sha(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _payload(**overrides):
    payload = {
        "data": {"transaction": {"id": "T1", "status": "APPROVED", "amount_in_cents": 5000000}},
        "signature": {
            "properties": ["transaction.id", "transaction.status", "transaction.amount_in_cents"],
            "checksum": _sha("T1" + "APPROVED" + "5000000" + "SEC"),
        },
    }
    payload.update(overrides)
    return payload


def test_checksum_concatenates_declared_properties_then_secret():
    result = verify(_payload(), "SEC")
    assert result.valid
    assert result.derived_digest == _sha("T1APPROVED5000000SEC")


def test_checksum_accepts_uppercase_hex():
    payload = _payload()
    payload["signature"]["checksum"] = payload["signature"]["checksum"].upper()
    assert verify(payload, "SEC")


def test_tampered_amount_is_rejected():
    payload = _payload()
    payload["data"]["transaction"]["amount_in_cents"] = 5000001
    result = verify(payload, "SEC")
    assert not result.valid
    assert result.reason == "checksum_mismatch"


def test_timestamp_is_appended_before_secret():
    payload = _payload(timestamp=1530291411)
    payload["signature"]["checksum"] = _sha("T1APPROVED50000001530291411SEC")
    assert verify(payload, "SEC")


def test_properties_come_from_payload_not_a_fixed_list():
    payload = _payload()
    payload["signature"] = {
        "properties": ["transaction.status"],
        "checksum": _sha("APPROVED" + "SEC"),
    }
    assert verify(payload, "SEC")


@pytest.mark.parametrize(
    "payload,reason",
    [
        ("not-a-dict", "malformed_payload"),
        ({"data": {}}, "missing_signature"),
        ({"data": {}, "signature": {"properties": []}}, "missing_checksum"),
        ({"data": {}, "signature": {"checksum": "abc"}}, "missing_properties"),
        ({"data": [], "signature": {"checksum": "abc", "properties": []}}, "malformed_payload"),
    ],
)
def test_malformed_payloads_never_raise(payload, reason):
    result = verify(payload, "SEC")
    assert not result
    assert result.reason == reason


def test_wrong_secret_is_rejected():
    assert not verify(_payload(), "OTHER")


def test_resolve_path_walks_dicts_and_lists():
    tree = {"a": {"b": [{"c": 7}, {"c": True}], "n": None}}
    assert resolve_path(tree, "a.b.0.c") == "7"
    assert resolve_path(tree, "a.b.1.c") == "true"
    assert resolve_path(tree, "a.b.5.c") == ""
    assert resolve_path(tree, "a.missing") == ""
    assert resolve_path(tree, "a.n") == ""
    assert resolve_path(tree, "") == ""


def test_sign_integrity_digest():
    assert sign("REF-1", 2490000, "COP", "test_integrity") == _sha("REF-12490000COPtest_integrity")
    assert sign("REF-1", 2490000, "COP", "s", "2026-10-18T09:00:00.000Z") == _sha(
        "REF-12490000COP2026-10-18T09:00:00.000Zs"
    )


def test_engine_binds_separate_secrets():
    engine = SignatureEngine("test_integrity", "test_events")
    assert engine.sign("R", 100, "COP") == sign("R", 100, "COP", "test_integrity")
    assert engine.verify(_payload()).valid is False

    payload = _payload()
    payload["signature"]["checksum"] = _sha("T1APPROVED5000000test_events")
    assert engine.verify(payload)


@pytest.mark.parametrize("signing,verification", [("", "x"), ("x", ""), ("same", "same")])
def test_engine_rejects_missing_or_shared_secrets(signing, verification):
    with pytest.raises(ValueError):
        SignatureEngine(signing, verification)
