from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest

from carbonledger.runtime.executor import ExecutorError, LedgerExecutor
from carbonledger.runtime.executor_boot import ExecutorBootConfig, boot_config_from_env, build_executor
from carbonledger.runtime.sqlite_db import SqliteDB
from carbonledger.testing.sigtools import actor, make_tx


def _ex(db_path: str, chain_id: str = "carbon-test") -> LedgerExecutor:
    return LedgerExecutor(db_path=db_path, node_id="node-1", chain_id=chain_id)


def _seed(ex: LedgerExecutor) -> None:
    ex.execute_block([make_tx("alice", "PROFILE_CREATE", 1)])
    ex.execute_block([make_tx("alice", "EMISSION_LOG", 2, {"units": 40, "category": 1})])


def test_state_survives_restart(tmp_path: Path) -> None:
    db_path = str(tmp_path / "carbon.db")
    ex1 = _ex(db_path)
    _seed(ex1)
    tip_hash = ex1.read_state()["tip_hash"]

    ex2 = _ex(db_path)
    assert ex2.height == 2
    assert ex2.read_state()["tip_hash"] == tip_hash
    assert ex2.total_emissions(actor("alice")) == 40
    assert ex2.ledger_view().last_emission_tick(actor("alice")) == 2

    # Same tick guard continues across restarts: the next block is tick 3.
    meta = ex2.execute_block([make_tx("alice", "EMISSION_LOG", 3, {"units": 2, "category": 3})])
    assert meta.height == 3
    assert meta.receipts[0]["ok"] is True


def test_pending_mempool_survives_restart(tmp_path: Path) -> None:
    db_path = str(tmp_path / "carbon.db")
    ex1 = _ex(db_path)
    res = ex1.submit_tx(make_tx("alice", "PROFILE_CREATE", 1))
    assert res["ok"] is True

    ex2 = _ex(db_path)
    assert ex2.get_tx_receipt(res["tx_id"]) == {"tx_id": res["tx_id"], "status": "pending"}
    assert ex2.produce_block(max_txs=10).applied_count == 1
    assert ex2.get_tx_receipt(res["tx_id"])["status"] == "included"


def test_boot_refuses_chain_id_mismatch(tmp_path: Path) -> None:
    db_path = str(tmp_path / "carbon.db")
    _seed(_ex(db_path))

    with pytest.raises(ExecutorError, match="chain_id mismatch"):
        _ex(db_path, chain_id="other-chain")


def _tamper_state(db_path: str, mut) -> None:
    db = SqliteDB(path=db_path)
    with db.write_tx() as con:
        row = con.execute("SELECT state_json FROM ledger_state WHERE id=1;").fetchone()
        st = json.loads(str(row["state_json"]))
        mut(st)
        con.execute("UPDATE ledger_state SET state_json=? WHERE id=1;", (json.dumps(st),))


def test_boot_refuses_inconsistent_aggregate(tmp_path: Path) -> None:
    db_path = str(tmp_path / "carbon.db")
    _seed(_ex(db_path))

    _tamper_state(db_path, lambda st: st["profiles"][actor("alice")].update(total_emissions=999))

    with pytest.raises(ExecutorError, match="state_invariant_violation"):
        _ex(db_path)


def test_boot_refuses_tip_hash_mismatch(tmp_path: Path) -> None:
    db_path = str(tmp_path / "carbon.db")
    _seed(_ex(db_path))

    _tamper_state(db_path, lambda st: st.update(tip_hash="00" * 32))

    with pytest.raises(ExecutorError, match="db_invariant_violation"):
        _ex(db_path)


def test_boot_refuses_snapshot_behind_blocks(tmp_path: Path) -> None:
    db_path = str(tmp_path / "carbon.db")
    _seed(_ex(db_path))

    _tamper_state(db_path, lambda st: st.update(height=1))

    with pytest.raises(ExecutorError, match="db_invariant_violation"):
        _ex(db_path)


def test_build_executor_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = str(tmp_path / "env.db")
    monkeypatch.setenv("CARBON_DB_PATH", db_path)
    monkeypatch.setenv("CARBON_NODE_ID", "node-env")
    monkeypatch.setenv("CARBON_CHAIN_ID", "carbon-env")

    cfg = boot_config_from_env()
    assert cfg == ExecutorBootConfig(db_path=db_path, node_id="node-env", chain_id="carbon-env")

    ex = build_executor(cfg)
    assert ex.chain_id == "carbon-env"
    assert ex.read_state()["chain_id"] == "carbon-env"


def test_mempool_add_is_idempotent(executor) -> None:
    tx = make_tx("alice", "PROFILE_CREATE", 1)
    first = executor.submit_tx(tx)
    again = executor.submit_tx(dict(tx))

    assert first["ok"] is True and again["ok"] is True
    assert again["tx_id"] == first["tx_id"]
    assert again.get("duplicate") is True
    assert executor.mempool.size() == 1


def test_mempool_rejects_mismatched_tx_id(executor) -> None:
    tx = make_tx("alice", "PROFILE_CREATE", 1)
    tx["tx_id"] = "tx:" + "0" * 64
    res = executor.mempool.add(tx)
    assert res == {"ok": False, "error": "bad_env:tx_id_mismatch"}


def test_reencoded_copies_of_a_signed_tx_share_one_tx_id(executor) -> None:
    executor.execute_block([make_tx("alice", "PROFILE_CREATE", 1)])
    tx = make_tx("alice", "EMISSION_LOG", 2, {"units": 30, "category": 2})
    first = executor.submit_tx(tx)
    assert first["ok"] is True

    copies = [
        dict(tx, sig=base64.b64encode(bytes.fromhex(tx["sig"])).decode("ascii")),
        dict(tx, sig=tx["sig"].upper()),
        dict(tx, sig=f"  {tx['sig']} "),
        dict(tx, tx_type=" EMISSION_LOG ", signer=f" {tx['signer']}"),
        dict(tx, nonce="2", extra="ignored"),
    ]
    for copy in copies:
        res = executor.submit_tx(copy)
        assert res["ok"] is True
        assert res["tx_id"] == first["tx_id"]
        assert res.get("duplicate") is True
    assert executor.mempool.size() == 1

    meta = executor.produce_block()
    assert [r["tx_id"] for r in meta.receipts] == [first["tx_id"]]
    assert meta.receipts[0]["ok"] is True
    assert executor.get_tx_receipt(first["tx_id"])["status"] == "included"
    assert executor.total_emissions(actor("alice")) == 30


def test_execute_block_drops_reencoded_duplicates(executor) -> None:
    executor.execute_block([make_tx("alice", "PROFILE_CREATE", 1)])
    tx = make_tx("alice", "EMISSION_LOG", 2, {"units": 30, "category": 2})
    b64 = dict(tx, sig=base64.b64encode(bytes.fromhex(tx["sig"])).decode("ascii"))

    meta = executor.execute_block([tx, b64])
    assert len(meta.receipts) == 1
    assert meta.receipts[0]["ok"] is True
    assert executor.get_block_by_height(2)["txs"][0]["sig"] == tx["sig"]


def test_mempool_signer_quota(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CARBON_MEMPOOL_MAX_PER_SIGNER", "1")
    ex = _ex(str(tmp_path / "carbon.db"))

    assert ex.submit_tx(make_tx("alice", "PROFILE_CREATE", 1))["ok"] is True
    res = ex.submit_tx(make_tx("alice", "EMISSION_LOG", 2, {"units": 1, "category": 1}))
    assert res["ok"] is False
    assert res["error"] == "mempool_signer_quota"


def test_expired_mempool_entries_are_pruned(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CARBON_MEMPOOL_TTL_MS", "-1")
    ex = _ex(str(tmp_path / "carbon.db"))

    assert ex.submit_tx(make_tx("alice", "PROFILE_CREATE", 1))["ok"] is True
    assert ex.mempool.peek(limit=10) == []
    assert ex.prune_mempool_expired() == 1
    assert ex.mempool.size() == 0
