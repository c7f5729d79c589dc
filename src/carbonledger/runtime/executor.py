from __future__ import annotations

import copy
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from carbonledger.ledger.state import LedgerView
from carbonledger.ledger.types import Profile
from carbonledger.runtime.block_hash import (
    compute_block_hash,
    compute_receipts_root,
    ensure_block_hash,
    make_block_header,
)
from carbonledger.runtime.domain_apply import ApplyError, apply_tx_atomic, consumed_nonce
from carbonledger.runtime.mempool import PersistentMempool, canonical_envelope, compute_tx_id
from carbonledger.runtime.metrics import inc_counter, set_gauge
from carbonledger.runtime.runtime_logging import log_event
from carbonledger.runtime.sqlite_db import SqliteDB, SqliteLedgerStore, _canon_json, upsert_snapshot
from carbonledger.runtime.state_invariants import aggregate_violations, ensure_state
from carbonledger.runtime.tx_admission import admit_tx
from carbonledger.runtime.tx_admission_types import TxEnvelope

Json = Dict[str, Any]

log = logging.getLogger("carbonledger.executor")

# Numeric status carried by successful receipts; failures carry ApplyError.status.
STATUS_OK = 200
STATUS_REJECTED = 400


def _now_ms() -> int:
    return int(time.time() * 1000)


def _safe_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


@dataclass
class ExecutorMeta:
    ok: bool
    error: str = ""
    height: int = 0
    block_id: str = ""
    applied_count: int = 0
    rejected_count: int = 0
    receipts: List[Json] = field(default_factory=list)


class ExecutorError(RuntimeError):
    pass


def _receipt(
    *,
    tx_id: str,
    env: Json,
    ok: bool,
    code: int,
    err: str = "",
    reason: str = "",
    result: Any = None,
    details: Any = None,
) -> Json:
    r: Json = {
        "tx_id": tx_id,
        "tx_type": str(env.get("tx_type") or "").strip().upper(),
        "signer": str(env.get("signer") or "").strip(),
        "ok": bool(ok),
        "code": int(code),
        "err": str(err),
        "reason": str(reason),
        "result": result,
    }
    if details is not None:
        r["details"] = details
    return r


def _order_by_signer_nonce(txs: List[Json]) -> List[Json]:
    """Keep mempool slots but sort each signer's txs by nonce within them.

    Txs received in the same millisecond are ordered by tx_id, which is a
    content hash; without this a signer's nonce 2 could land ahead of nonce 1.
    """
    slots: Dict[str, List[int]] = {}
    per_signer: Dict[str, List[Json]] = {}
    for i, env in enumerate(txs):
        s = str(env.get("signer") or "")
        slots.setdefault(s, []).append(i)
        per_signer.setdefault(s, []).append(env)

    out: List[Json] = list(txs)
    for s, idxs in slots.items():
        ordered = sorted(per_signer[s], key=lambda e: _safe_int(e.get("nonce"), 0))
        for i, env in zip(idxs, ordered):
            out[i] = env
    return out


class LedgerExecutor:
    """Single-node block producer over one SQLite file.

    The database holds the ledger snapshot, committed blocks, the tx index
    and the mempool. Boot refuses to continue (ExecutorError) when any of
    them disagree with each other or with the configured chain id.
    """

    def __init__(self, *, db_path: str, node_id: str, chain_id: str) -> None:
        self.node_id = str(node_id)
        self.chain_id = str(chain_id)
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = SqliteDB(path=self.db_path)
        self._db.init_schema()
        self._store = SqliteLedgerStore(db=self._db)
        self._mempool = PersistentMempool(db=self._db)

        fresh = not self._store.exists()
        self.state = self._genesis_state() if fresh else self._store.read()
        self._verify_boot_state()
        if fresh or not self.state.get("chain_id"):
            self.state["chain_id"] = self.chain_id
            self._store.write(self.state)

        set_gauge("height", self.height)
        log_event(log, "executor_boot", chain_id=self.chain_id, node_id=self.node_id, height=self.height)

    def _genesis_state(self) -> Json:
        return ensure_state(
            {
                "chain_id": self.chain_id,
                "height": 0,
                "tip": "",
                "tip_hash": "",
                "tip_ts_ms": 0,
                "created_ms": _now_ms(),
            }
        )

    def _verify_boot_state(self) -> None:
        stored_chain = str(self.state.get("chain_id") or "").strip()
        if stored_chain and stored_chain != self.chain_id:
            raise ExecutorError(f"chain_id mismatch: db={stored_chain!r} executor={self.chain_id!r}. Refuse to start.")

        try:
            ensure_state(self.state)
        except TypeError as e:
            raise ExecutorError(f"state_invariant_violation: {e}. Refuse to start.") from e

        self._verify_tip_against_blocks()

        problems = aggregate_violations(self.state)
        if problems:
            raise ExecutorError(f"state_invariant_violation: {problems[:3]}. Refuse to start.")

    def _verify_tip_against_blocks(self) -> None:
        """The snapshot must sit exactly on the last persisted block."""
        height = self.height
        with self._db.connection() as con:
            top = con.execute("SELECT COALESCE(MAX(height), 0) AS top FROM blocks;").fetchone()
        persisted = int(top["top"]) if top is not None else 0

        if height != persisted:
            raise ExecutorError(
                f"db_invariant_violation: snapshot height {height} but persisted blocks reach {persisted}. Refuse to start."
            )
        if height == 0:
            return

        blk = self.get_block_by_height(height)
        if blk is None:
            raise ExecutorError(f"db_invariant_violation: snapshot height {height} has no persisted block. Refuse to start.")

        header = blk.get("header")
        expected = compute_block_hash(header=header) if isinstance(header, dict) else ""
        if not expected or expected != str(blk.get("block_hash") or "") or expected != str(self.state.get("tip_hash") or ""):
            raise ExecutorError("db_invariant_violation: tip_hash does not match the last block. Refuse to start.")

    # ----------------------------
    # Public accessors
    # ----------------------------

    @property
    def mempool(self) -> PersistentMempool:
        return self._mempool

    @property
    def height(self) -> int:
        return _safe_int(self.state.get("height"), 0)

    def read_state(self) -> Json:
        return self.state

    def ledger_view(self) -> LedgerView:
        return LedgerView.from_ledger(self.state)

    def total_emissions(self, actor: str) -> int:
        return self.ledger_view().total_emissions(actor)

    def emission_history(self, actor: str) -> Json:
        return self.ledger_view().emission_history(actor)

    def emissions_by_category(self, actor: str, category: int) -> int:
        return self.ledger_view().emissions_by_category(actor, category)

    def get_profile(self, actor: str) -> Optional[Profile]:
        return self.ledger_view().get_profile(actor)

    # ----------------------------
    # Tx submission
    # ----------------------------

    def submit_tx(self, env: Json) -> Json:
        if not isinstance(env, dict):
            return {"ok": False, "error": "bad_env:not_object"}

        verdict = admit_tx(tx=env, ledger=self.ledger_view(), context="mempool")
        if not verdict.ok:
            inc_counter("tx_admission_rejected_total", 1)
            return {"ok": False, "error": verdict.code, "reason": verdict.reason, "details": verdict.details}

        res = self._mempool.add(env)
        if res.get("ok"):
            inc_counter("tx_submitted_total", 1)
            set_gauge("mempool_size", self._mempool.size())
        return res

    # ----------------------------
    # Block production
    # ----------------------------

    def produce_block(self, *, max_txs: int = 1000) -> ExecutorMeta:
        """Drain up to max_txs from the mempool into the next block.

        An empty mempool produces nothing and reports ok.
        """
        txs = self._mempool.peek(limit=int(max_txs))
        stale = self._already_included([str(t.get("tx_id") or "") for t in txs])
        for tx_id in stale:
            self._mempool.remove(tx_id)
        txs = [t for t in txs if str(t.get("tx_id") or "") not in stale]
        if not txs:
            return ExecutorMeta(ok=True, height=self.height, block_id=str(self.state.get("tip") or ""))

        block, new_state, receipts = self.build_block_candidate(_order_by_signer_nonce(txs))
        return self.commit_block_candidate(block=block, new_state=new_state, receipts=receipts)

    def execute_block(self, txs: List[Json]) -> ExecutorMeta:
        """Apply `txs` in the given order as the next block, bypassing the mempool.

        Every tx in the batch shares the new block's logical time; an empty
        batch still produces a block and so advances the clock by one tick.
        """
        block, new_state, receipts = self.build_block_candidate([dict(t) for t in txs if isinstance(t, dict)])
        return self.commit_block_candidate(block=block, new_state=new_state, receipts=receipts)

    def _execute_tx(self, working: Json, env: Json, *, tx_id: str, tick: int) -> Json:
        verdict = admit_tx(tx=env, ledger=None, context="block")
        if not verdict.ok:
            return _receipt(
                tx_id=tx_id,
                env=env,
                ok=False,
                code=STATUS_REJECTED,
                err=verdict.code,
                reason=verdict.reason,
                details=verdict.details,
            )

        tx = TxEnvelope.from_json(env)
        have = consumed_nonce(working, tx.signer)
        if int(tx.nonce) <= have:
            return _receipt(
                tx_id=tx_id,
                env=env,
                ok=False,
                code=STATUS_REJECTED,
                err="bad_nonce",
                reason="nonce_already_consumed",
                details={"consumed": have, "got": int(tx.nonce)},
            )

        try:
            meta = apply_tx_atomic(working, tx, logical_time=tick, consume_nonce_on_fail=True)
        except ApplyError as e:
            return _receipt(
                tx_id=tx_id,
                env=env,
                ok=False,
                code=e.status,
                err=e.code,
                reason=e.reason,
                details=e.details,
            )

        return _receipt(
            tx_id=tx_id,
            env=env,
            ok=True,
            code=STATUS_OK,
            result=(meta or {}).get("result", True),
        )

    def _already_included(self, tx_ids: List[str]) -> set[str]:
        ids = [t for t in tx_ids if t]
        if not ids:
            return set()
        with self._db.connection() as con:
            rows = con.execute(
                f"SELECT tx_id FROM tx_index WHERE tx_id IN ({','.join('?' * len(ids))});", ids
            ).fetchall()
        return {str(r["tx_id"]) for r in rows}

    def build_block_candidate(self, txs: List[Json]) -> Tuple[Json, Json, List[Json]]:
        """Apply txs on a copy of the state; return (block, new_state, receipts).

        The live state is untouched until commit_block_candidate succeeds.
        """
        tip = str(self.state.get("tip") or "")
        tip_hash = str(self.state.get("tip_hash") or "")
        last_ts = _safe_int(self.state.get("tip_ts_ms"), 0)
        ts_ms = max(_now_ms(), last_ts)

        new_height = self.height + 1
        working: Json = copy.deepcopy(self.state)

        block_txs: List[Json] = []
        receipts: List[Json] = []
        bases = [canonical_envelope(env) for env in txs]
        seen: set[str] = self._already_included([compute_tx_id(b) for b in bases])
        for base in bases:
            tx_id = compute_tx_id(base)
            if tx_id in seen:
                continue
            seen.add(tx_id)

            receipts.append(self._execute_tx(working, base, tx_id=tx_id, tick=new_height))
            base["tx_id"] = tx_id
            block_txs.append(base)

        tx_ids = [str(t["tx_id"]) for t in block_txs]
        block_id = f"{new_height}:{ts_ms}:{len(block_txs)}"
        header = make_block_header(
            chain_id=self.chain_id,
            height=new_height,
            prev_block_hash=tip_hash,
            block_ts_ms=ts_ms,
            tx_ids=tx_ids,
            receipts_root=compute_receipts_root(receipts),
        )
        block, bh = ensure_block_hash(
            {
                "block_id": block_id,
                "height": new_height,
                "prev_block_id": tip,
                "prev_block_hash": tip_hash,
                "block_ts_ms": ts_ms,
                "header": header,
                "txs": block_txs,
                "receipts": receipts,
            }
        )

        working["height"] = new_height
        working["tip"] = block_id
        working["tip_hash"] = bh
        working["tip_ts_ms"] = ts_ms

        return block, working, receipts

    def commit_block_candidate(self, *, block: Json, new_state: Json, receipts: List[Json]) -> ExecutorMeta:
        """Atomically persist block + tx index + mempool cleanup + ledger snapshot.

        A crash during commit must not leave a block row without the matching
        ledger_state update.
        """
        height = _safe_int(block.get("height"), 0)
        block_id = str(block.get("block_id") or "")
        if not block_id or height != self.height + 1:
            return ExecutorMeta(ok=False, error="bad_block", height=self.height, block_id=str(self.state.get("tip") or ""))

        block2, _bh = ensure_block_hash(block)
        now = _now_ms()

        with self._db.write_tx() as con:
            con.execute(
                "INSERT INTO blocks(height, block_id, block_json, created_ts_ms) VALUES(?,?,?,?);",
                (height, block_id, _canon_json(block2), now),
            )
            for r in receipts:
                tx_id = str(r.get("tx_id") or "")
                con.execute("DELETE FROM mempool WHERE tx_id=?;", (tx_id,))
                con.execute(
                    """
                    INSERT INTO tx_index(tx_id, height, block_id, tx_type, signer, receipt_json, included_ts_ms)
                    VALUES(?,?,?,?,?,?,?);
                    """,
                    (tx_id, height, block_id, str(r.get("tx_type") or ""), str(r.get("signer") or ""), _canon_json(r), now),
                )
            upsert_snapshot(con, new_state, now_ms=now)

        self.state = new_state

        applied = sum(1 for r in receipts if r.get("ok"))
        rejected = len(receipts) - applied
        inc_counter("blocks_produced_total", 1)
        inc_counter("txs_applied_total", applied)
        inc_counter("txs_rejected_total", rejected)
        set_gauge("height", height)
        set_gauge("mempool_size", self._mempool.size())
        log_event(
            log,
            "block_committed",
            height=height,
            block_id=block_id,
            txs=len(receipts),
            applied=applied,
            rejected=rejected,
        )

        return ExecutorMeta(
            ok=True,
            height=height,
            block_id=block_id,
            applied_count=applied,
            rejected_count=rejected,
            receipts=list(receipts),
        )

    # ----------------------------
    # Block + receipt APIs
    # ----------------------------

    def get_block_by_height(self, height: int) -> Optional[Json]:
        with self._db.connection() as con:
            row = con.execute("SELECT block_json FROM blocks WHERE height=? LIMIT 1;", (int(height),)).fetchone()
        if row is None:
            return None
        blk = json.loads(str(row["block_json"]))
        return blk if isinstance(blk, dict) else None

    def get_tx_receipt(self, tx_id: str) -> Optional[Json]:
        """Receipt plus inclusion info, or a pending marker while still in the mempool."""
        t = str(tx_id or "").strip()
        if not t:
            return None
        with self._db.connection() as con:
            row = con.execute(
                "SELECT height, block_id, receipt_json FROM tx_index WHERE tx_id=? LIMIT 1;", (t,)
            ).fetchone()
        if row is not None:
            out = json.loads(str(row["receipt_json"]))
            out["status"] = "included"
            out["height"] = int(row["height"])
            out["block_id"] = str(row["block_id"])
            return out
        if self._mempool.contains(t):
            return {"tx_id": t, "status": "pending"}
        return None

    # ----------------------------
    # Maintenance
    # ----------------------------

    def prune_mempool_expired(self) -> int:
        return self._mempool.prune_expired()
