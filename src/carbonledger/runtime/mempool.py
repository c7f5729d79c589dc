from __future__ import annotations

import hashlib
import json
import os
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from carbonledger.crypto.sig import decode_key_material
from carbonledger.runtime.sqlite_db import SqliteDB, _canon_json

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if raw in {"1", "true", "yes", "y", "on"}:
        return True
    if raw in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _canonical_sig(sig: Any) -> str:
    text = str(sig or "").strip()
    if not text:
        return ""
    try:
        return decode_key_material(text).hex()
    except ValueError:
        return text


def canonical_envelope(env: Json) -> Json:
    """The envelope reduced to what its signature covers.

    Fields are normalized the way verification reads them: tx_type and signer
    stripped, nonce as int, and `sig` as lowercase hex of the decoded bytes.
    Two encodings of one signed tx therefore share a canonical form and a
    tx_id. Node stamps and unknown top-level keys are dropped; values that
    admission must still reject (bool nonce, non-object payload) are kept.
    """
    nonce = env.get("nonce")
    if not isinstance(nonce, bool):
        try:
            nonce = int(nonce or 0)
        except (TypeError, ValueError):
            nonce = str(nonce)
    payload = env.get("payload")
    return {
        "tx_type": str(env.get("tx_type") or "").strip(),
        "signer": str(env.get("signer") or "").strip(),
        "nonce": nonce,
        "payload": {} if payload is None else payload,
        "sig": _canonical_sig(env.get("sig")),
    }


def compute_tx_id(env: Json) -> str:
    """"tx:" + sha256 of the canonical envelope."""
    return "tx:" + hashlib.sha256(_canon_json(canonical_envelope(env)).encode("utf-8")).hexdigest()


def _rows_to_envelopes(rows: List[sqlite3.Row]) -> List[Json]:
    envs = (json.loads(str(r["envelope_json"])) for r in rows)
    return [e for e in envs if isinstance(e, dict)]


@dataclass
class PersistentMempool:
    """Pending tx envelopes, persisted in the node database.

    The caller never chooses a tx_id: it is recomputed from content on every
    insert, so resubmitting the same signed envelope is a no-op that reports
    `duplicate: True`. Entries expire after a TTL and are returned oldest
    first (received_ms, then tx_id).

    Limits (env):
      CARBON_MEMPOOL_TTL_MS, CARBON_MEMPOOL_MAX, CARBON_MEMPOOL_MAX_PER_SIGNER,
      CARBON_MEMPOOL_PRUNE_ON_ADD
    """

    db: SqliteDB

    default_ttl_ms: int = 30 * 60 * 1000
    max_items: int = 50_000
    max_per_signer: int = 2_000
    prune_on_add: bool = True

    def __post_init__(self) -> None:
        self.db.init_schema()
        self.default_ttl_ms = _env_int("CARBON_MEMPOOL_TTL_MS", self.default_ttl_ms)
        self.max_items = max(0, _env_int("CARBON_MEMPOOL_MAX", self.max_items))
        self.max_per_signer = max(0, _env_int("CARBON_MEMPOOL_MAX_PER_SIGNER", self.max_per_signer))
        self.prune_on_add = _env_flag("CARBON_MEMPOOL_PRUNE_ON_ADD", self.prune_on_add)

    def _capacity_error(self, con: sqlite3.Connection, signer: str) -> Optional[Json]:
        if self.max_items > 0:
            n = int(con.execute("SELECT COUNT(1) AS n FROM mempool;").fetchone()["n"])
            if n >= self.max_items:
                return {"ok": False, "error": "mempool_full", "details": {"max": self.max_items}}
        if self.max_per_signer > 0:
            n = int(con.execute("SELECT COUNT(1) AS n FROM mempool WHERE signer=?;", (signer,)).fetchone()["n"])
            if n >= self.max_per_signer:
                return {
                    "ok": False,
                    "error": "mempool_signer_quota",
                    "details": {"signer": signer, "max": self.max_per_signer},
                }
        return None

    def add(self, env: Json) -> Json:
        if not isinstance(env, dict):
            return {"ok": False, "error": "bad_env:not_object"}

        content = canonical_envelope(env)
        signer, tx_type = content["signer"], content["tx_type"]
        if not signer:
            return {"ok": False, "error": "bad_env:missing_signer"}
        if not tx_type:
            return {"ok": False, "error": "bad_env:missing_tx_type"}

        tx_id = compute_tx_id(content)
        claimed = str(env.get("tx_id") or "").strip()
        if claimed and claimed != tx_id:
            return {"ok": False, "error": "bad_env:tx_id_mismatch"}

        now = _now_ms()
        stamped: Json = dict(content, tx_id=tx_id, received_ms=now, expires_ms=now + int(self.default_ttl_ms))

        with self.db.write_tx() as con:
            if self.prune_on_add:
                con.execute("DELETE FROM mempool WHERE expires_ms <= ?;", (now,))

            row = con.execute("SELECT received_ms, expires_ms FROM mempool WHERE tx_id=?;", (tx_id,)).fetchone()
            if row is not None:
                return {
                    "ok": True,
                    "tx_id": tx_id,
                    "received_ms": int(row["received_ms"]),
                    "expires_ms": int(row["expires_ms"]),
                    "duplicate": True,
                }

            err = self._capacity_error(con, signer)
            if err is not None:
                return err

            con.execute(
                "INSERT INTO mempool(tx_id, envelope_json, signer, tx_type, received_ms, expires_ms) VALUES(?,?,?,?,?,?);",
                (tx_id, _canon_json(stamped), signer, tx_type, now, stamped["expires_ms"]),
            )

        return {"ok": True, "tx_id": tx_id, "received_ms": now, "expires_ms": stamped["expires_ms"]}

    def contains(self, tx_id: str) -> bool:
        with self.db.connection() as con:
            return con.execute("SELECT 1 FROM mempool WHERE tx_id=?;", (str(tx_id),)).fetchone() is not None

    def remove(self, tx_id: str) -> None:
        with self.db.write_tx() as con:
            con.execute("DELETE FROM mempool WHERE tx_id=?;", (str(tx_id).strip(),))

    def peek(self, *, limit: int = 1000) -> List[Json]:
        """Up to `limit` live envelopes in inclusion order; nothing is removed."""
        n = int(limit) if int(limit) > 0 else 1000
        with self.db.connection() as con:
            rows = con.execute(
                "SELECT envelope_json FROM mempool WHERE expires_ms > ? ORDER BY received_ms, tx_id LIMIT ?;",
                (_now_ms(), n),
            ).fetchall()
        return _rows_to_envelopes(rows)

    def size(self) -> int:
        with self.db.connection() as con:
            return int(con.execute("SELECT COUNT(1) AS n FROM mempool;").fetchone()["n"])

    def prune_expired(self) -> int:
        with self.db.write_tx() as con:
            return int(con.execute("DELETE FROM mempool WHERE expires_ms <= ?;", (_now_ms(),)).rowcount or 0)
