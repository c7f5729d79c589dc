# src/carbonledger/crypto/sig.py
"""Ed25519 signing / verification for tx envelopes.

Actor identity is self-certifying: an actor id is the hex-encoded raw Ed25519
public key, and a tx is accepted only if `sig` verifies against the key named
by its own `signer` field. Nobody can act as an actor without its private key.

Signed bytes are the canonical JSON of {tx_type, signer, nonce, payload};
`sig` itself and any node-stamped fields are outside the message.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

Json = Dict[str, Any]


def decode_key_material(text: str) -> bytes:
    """Hex first, then base64 / base64url. Raises ValueError if neither parses."""
    s = str(text or "").strip()
    if not s:
        raise ValueError("empty key material")
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    std = s.replace("-", "+").replace("_", "/")
    try:
        return base64.b64decode(std + "=" * (-len(std) % 4), validate=True)
    except binascii.Error as e:
        raise ValueError("key material is neither hex nor base64") from e


def canonical_tx_message(tx: Json) -> bytes:
    payload = tx.get("payload")
    msg: Json = {
        "tx_type": str(tx.get("tx_type") or "").strip(),
        "signer": str(tx.get("signer") or "").strip(),
        "nonce": int(tx.get("nonce") or 0),
        "payload": payload if isinstance(payload, dict) else {},
    }
    return json.dumps(msg, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def actor_id_for_private_key(key: Ed25519PrivateKey) -> str:
    return key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()


def verify_tx_signature(tx: Json) -> bool:
    """True iff tx["sig"] is a valid signature by the key tx["signer"] names."""
    sig = str(tx.get("sig") or "").strip()
    signer = str(tx.get("signer") or "").strip()
    if not sig or not signer:
        return False
    try:
        pub = Ed25519PublicKey.from_public_bytes(decode_key_material(signer))
        pub.verify(decode_key_material(sig), canonical_tx_message(tx))
    except (InvalidSignature, ValueError):
        return False
    return True


def sign_tx_envelope_dict(*, tx: Json, privkey: str, encoding: str = "hex") -> Json:
    """Return a copy of `tx` with "sig" set, signed by a 32-byte Ed25519 seed.

    privkey: the seed as hex or base64. encoding: "hex" (default) or "b64".
    """
    seed = decode_key_material(privkey)
    if len(seed) != 32:
        raise ValueError("ed25519 privkey must be a 32-byte seed")
    if encoding not in {"hex", "b64", "base64"}:
        raise ValueError(f"unsupported signature encoding: {encoding!r}")

    out = dict(tx)
    if not isinstance(out.get("payload"), dict):
        out["payload"] = {}
    raw = Ed25519PrivateKey.from_private_bytes(seed).sign(canonical_tx_message(out))
    out["sig"] = raw.hex() if encoding == "hex" else base64.b64encode(raw).decode("ascii")
    return out
