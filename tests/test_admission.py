# tests/test_admission.py
from __future__ import annotations

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat

from carbonledger.crypto.sig import actor_id_for_private_key, sign_tx_envelope_dict, verify_tx_signature
from carbonledger.ledger.state import LedgerView
from carbonledger.runtime.tx_admission import TxEnvelope, admit_tx
from carbonledger.testing.sigtools import actor, make_tx, sign_tx_dict


def _ledger(nonces=None) -> LedgerView:
    return LedgerView.from_ledger({"nonces": dict(nonces or {})})


def test_signed_profile_create_is_admitted() -> None:
    tx = make_tx("alice", "PROFILE_CREATE", 1)
    v = admit_tx(tx=tx, ledger=_ledger(), context="mempool")
    assert v.ok is True
    ok, rej = v
    assert ok is True and rej is None


def test_envelope_object_is_admitted() -> None:
    tx = make_tx("alice", "EMISSION_LOG", 1, {"units": 5, "category": 2})
    env = TxEnvelope.from_json(tx)
    assert admit_tx(tx=env, ledger=_ledger(), context="mempool").ok is True


def test_unsupported_tx_type_rejected() -> None:
    tx = make_tx("alice", "PROFILE_DELETE", 1)
    v = admit_tx(tx=tx, ledger=_ledger(), context="mempool")
    assert v.ok is False
    assert v.code == "unsupported_tx"


@pytest.mark.parametrize(
    "tx,reason",
    [
        ({"tx_type": "PROFILE_CREATE", "signer": "x", "nonce": 1, "payload": {}, "sig": "00"}, None),
        ({"signer": "x", "nonce": 1, "payload": {}}, "missing_tx_type"),
        ({"tx_type": "PROFILE_CREATE", "nonce": 1, "payload": {}}, "missing_signer"),
        ({"tx_type": "PROFILE_CREATE", "signer": "x", "nonce": 0, "payload": {}}, "nonce_must_be_positive"),
        ({"tx_type": "PROFILE_CREATE", "signer": "x", "nonce": True, "payload": {}}, "nonce_must_be_int"),
        ({"tx_type": "PROFILE_CREATE", "signer": "x", "nonce": "abc", "payload": {}}, "envelope_parse_failed"),
    ],
)
def test_bad_shapes_rejected(tx, reason) -> None:
    v = admit_tx(tx=tx, ledger=_ledger(), context="mempool")
    assert v.ok is False
    if reason is None:
        # well-formed but garbage signature
        assert v.code == "bad_sig"
    else:
        assert v.code == "bad_shape"
        assert v.reason == reason


def test_non_dict_tx_rejected() -> None:
    v = admit_tx(tx=["PROFILE_CREATE"], ledger=None)
    assert v.ok is False
    assert v.reason == "tx_must_be_object"


@pytest.mark.parametrize(
    "payload",
    [
        {"units": "50", "category": 1},
        {"units": 50, "category": True},
        {"units": 50.0, "category": 1},
        {"units": 50},
        {"units": 50, "category": 1, "extra": 1},
    ],
)
def test_emission_payload_schema_enforced(payload) -> None:
    tx = make_tx("alice", "EMISSION_LOG", 1, payload)
    v = admit_tx(tx=tx, ledger=_ledger(), context="mempool")
    assert v.ok is False
    assert v.code == "invalid_payload"
    assert v.reason == "schema_validation_failed"


def test_out_of_range_units_pass_admission() -> None:
    # Range rules are applied at block time, after the profile check.
    tx = make_tx("alice", "EMISSION_LOG", 1, {"units": 10_001, "category": 4})
    assert admit_tx(tx=tx, ledger=_ledger(), context="mempool").ok is True


def test_profile_create_rejects_unknown_payload_keys() -> None:
    tx = make_tx("alice", "PROFILE_CREATE", 1, {"name": "alice"})
    v = admit_tx(tx=tx, ledger=_ledger(), context="mempool")
    assert v.code == "invalid_payload"


def test_payload_limits(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CARBON_MAX_TX_PAYLOAD_KEYS", "1")
    tx = make_tx("alice", "EMISSION_LOG", 1, {"units": 5, "category": 1})
    v = admit_tx(tx=tx, ledger=_ledger(), context="mempool")
    assert v.reason == "payload_too_many_keys"

    monkeypatch.setenv("CARBON_MAX_TX_PAYLOAD_KEYS", "16")
    monkeypatch.setenv("CARBON_MAX_TX_PAYLOAD_BYTES", "10")
    v2 = admit_tx(tx=tx, ledger=_ledger(), context="mempool")
    assert v2.code == "payload_too_large"


def test_mempool_nonce_window() -> None:
    alice = actor("alice")
    led = _ledger({alice: 3})

    stale = make_tx("alice", "PROFILE_CREATE", 3)
    v = admit_tx(tx=stale, ledger=led, context="mempool")
    assert v.code == "bad_nonce"
    assert v.details == {"expected": 4, "got": 3, "max_gap": 32}

    assert admit_tx(tx=make_tx("alice", "PROFILE_CREATE", 4), ledger=led, context="mempool").ok is True
    assert admit_tx(tx=make_tx("alice", "PROFILE_CREATE", 36), ledger=led, context="mempool").ok is True
    assert admit_tx(tx=make_tx("alice", "PROFILE_CREATE", 37), ledger=led, context="mempool").code == "bad_nonce"

    # The nonce window is a mempool rule only.
    assert admit_tx(tx=stale, ledger=led, context="block").ok is True


def test_signature_must_match_signer() -> None:
    tx = make_tx("alice", "PROFILE_CREATE", 1)

    # Claim to be bob while signing with alice's key.
    forged = dict(tx)
    forged["signer"] = actor("bob")
    v = admit_tx(tx=forged, ledger=_ledger(), context="mempool")
    assert v.code == "bad_sig"

    # Tampering with the payload after signing breaks the signature.
    tx2 = make_tx("alice", "EMISSION_LOG", 1, {"units": 5, "category": 1})
    tx2["payload"] = {"units": 6, "category": 1}
    assert admit_tx(tx=tx2, ledger=_ledger(), context="mempool").code == "bad_sig"


def test_unsigned_txs_only_in_unsafe_dev_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    tx = {"tx_type": "PROFILE_CREATE", "signer": "local-actor", "nonce": 1, "payload": {}}

    monkeypatch.setenv("CARBON_ALLOW_UNSIGNED_TXS", "1")
    assert admit_tx(tx=tx, ledger=_ledger(), context="mempool").code == "bad_sig"

    monkeypatch.setenv("CARBON_MODE", "dev")
    assert admit_tx(tx=tx, ledger=_ledger(), context="mempool").code == "bad_sig"

    monkeypatch.setenv("CARBON_UNSAFE_DEV", "1")
    assert admit_tx(tx=tx, ledger=_ledger(), context="mempool").ok is True


def test_sign_tx_dict_fills_in_signer() -> None:
    tx = sign_tx_dict({"tx_type": "PROFILE_CREATE", "nonce": 1, "payload": {}}, label="carol")
    assert tx["signer"] == actor("carol")
    assert admit_tx(tx=tx, ledger=_ledger(), context="mempool").ok is True


@pytest.mark.parametrize("encoding", ["hex", "b64"])
def test_client_signing_helper_produces_admissible_tx(encoding: str) -> None:
    sk = Ed25519PrivateKey.generate()
    seed = sk.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()).hex()
    tx = {
        "tx_type": "EMISSION_LOG",
        "signer": actor_id_for_private_key(sk),
        "nonce": 1,
        "payload": {"units": 12, "category": 3},
    }

    signed = sign_tx_envelope_dict(tx=tx, privkey=seed, encoding=encoding)
    assert verify_tx_signature(signed) is True
    assert admit_tx(tx=signed, ledger=_ledger(), context="mempool").ok is True

    with pytest.raises(ValueError):
        sign_tx_envelope_dict(tx=tx, privkey="abcd")
