from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional, Tuple

from carbonledger.crypto.sig import verify_tx_signature
from carbonledger.ledger.state import LedgerView
from carbonledger.runtime.supported_txs import is_supported
from carbonledger.runtime.tx_admission_types import TxEnvelope, TxVerdict
from carbonledger.runtime.tx_schema import validate_payload

Json = Dict[str, Any]

_TRUE = {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    return default if raw is None else raw.strip().lower() in _TRUE


def unsigned_txs_allowed() -> bool:
    """Signature checks are skipped only with all three of
    CARBON_MODE=dev, CARBON_UNSAFE_DEV=1 and CARBON_ALLOW_UNSIGNED_TXS=1."""
    if (os.getenv("CARBON_MODE") or "").strip().lower() != "dev":
        return False
    return _env_flag("CARBON_UNSAFE_DEV", False) and _env_flag("CARBON_ALLOW_UNSIGNED_TXS", False)


def _check_payload_limits(payload: Json) -> Optional[TxVerdict]:
    max_keys = _env_int("CARBON_MAX_TX_PAYLOAD_KEYS", 16)
    if len(payload) > max_keys:
        return TxVerdict.reject("invalid_payload", "payload_too_many_keys", {"keys": len(payload), "max_keys": max_keys})

    try:
        size = len(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))
    except (TypeError, ValueError):
        return TxVerdict.reject("invalid_payload", "payload_not_json")

    max_bytes = _env_int("CARBON_MAX_TX_PAYLOAD_BYTES", 4 * 1024)
    if size > max_bytes:
        return TxVerdict.reject("payload_too_large", "payload_exceeds_size_limit", {"bytes": size, "max_bytes": max_bytes})
    return None


def _read_envelope(tx: Any) -> Tuple[Optional[TxEnvelope], Optional[TxVerdict]]:
    if isinstance(tx, TxEnvelope):
        return tx, None
    if not isinstance(tx, dict):
        return None, TxVerdict.reject("bad_shape", "tx_must_be_object", {"type": type(tx).__name__})
    # bool is an int subclass and would otherwise read as nonce 0/1.
    if isinstance(tx.get("nonce"), bool):
        return None, TxVerdict.reject("bad_shape", "nonce_must_be_int")
    try:
        return TxEnvelope.from_json(tx), None
    except (TypeError, ValueError) as e:
        return None, TxVerdict.reject("bad_shape", "envelope_parse_failed", {"error": str(e)})


def _check_nonce_window(env: TxEnvelope, ledger: LedgerView) -> Optional[TxVerdict]:
    expected = ledger.get_nonce(env.signer) + 1
    gap = max(0, _env_int("CARBON_MEMPOOL_MAX_FUTURE_NONCE_GAP", 32))
    got = int(env.nonce)
    if expected <= got <= expected + gap:
        return None
    return TxVerdict.reject("bad_nonce", "nonce_out_of_window", {"expected": expected, "got": got, "max_gap": gap})


def admit_tx(*, tx: Any, ledger: Optional[LedgerView], context: str = "mempool") -> TxVerdict:
    """Decide whether a tx envelope may enter the mempool (or a block).

    Checks, in order: envelope shape, supported tx type, payload size limits,
    payload schema, nonce window (mempool context with a ledger only) and the
    Ed25519 signature. Ledger rules (profile existence, emission ranges, one
    emission per tick) are not checked here; they are decided at apply time
    and surface in the block receipt.
    """
    env, bad = _read_envelope(tx)
    if env is None:
        return bad or TxVerdict.reject("bad_shape", "envelope_parse_failed")

    if not env.tx_type:
        return TxVerdict.reject("bad_shape", "missing_tx_type")
    if not env.signer:
        return TxVerdict.reject("bad_shape", "missing_signer")
    if int(env.nonce) <= 0:
        return TxVerdict.reject("bad_shape", "nonce_must_be_positive", {"nonce": int(env.nonce)})

    if not is_supported(env.tx_type):
        return TxVerdict.reject("unsupported_tx", "tx_type_not_supported", {"tx_type": env.tx_type})

    verdict = _check_payload_limits(env.payload)
    if verdict is not None:
        return verdict

    if _env_flag("CARBON_ENFORCE_TX_SCHEMA", True):
        ok, err = validate_payload(env.tx_type, env.payload)
        if not ok:
            return TxVerdict.reject("invalid_payload", "schema_validation_failed", err)

    if ledger is not None and str(context or "").strip().lower() == "mempool":
        verdict = _check_nonce_window(env, ledger)
        if verdict is not None:
            return verdict

    if not unsigned_txs_allowed():
        signed = tx if isinstance(tx, dict) else env.to_json()
        if not verify_tx_signature(signed):
            return TxVerdict.reject(
                "bad_sig", "signature_verification_failed", {"signer": env.signer, "tx_type": env.tx_type}
            )

    return TxVerdict.admit()


__all__ = ["TxEnvelope", "TxVerdict", "admit_tx", "unsigned_txs_allowed"]
