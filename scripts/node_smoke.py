#!/usr/bin/env python3

"""End-to-end smoke run for a carbon ledger node.

It verifies:
  - executor boots on a fresh SQLite db
  - FastAPI app boots and serves /v1/health + /v1/status
  - a signed PROFILE_CREATE and EMISSION_LOG submitted over HTTP are included
    by the block loop and show up in the actor's total

Usage:
  python3 scripts/node_smoke.py

Optional env overrides:
  CARBON_BLOCK_INTERVAL_MS=500
  CARBON_BLOCK_LOOP_FAIL_FAST_AFTER=10
"""

from __future__ import annotations

import os
import tempfile
import time

from fastapi.testclient import TestClient

from carbonledger.api.app import create_app
from carbonledger.runtime.block_loop import BlockLoopConfig, BlockProducerLoop
from carbonledger.testing.sigtools import actor, make_tx


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return int(default)


def _wait_for(client: TestClient, tx_id: str, deadline: float) -> dict:
    while time.time() < deadline:
        j = client.get(f"/v1/tx/{tx_id}").json()
        if j.get("status") == "included":
            return j
        time.sleep(0.1)
    raise RuntimeError(f"tx not included before deadline: {tx_id}")


def main() -> int:
    with tempfile.TemporaryDirectory(prefix="carbon-smoke-") as td:
        os.environ["CARBON_DB_PATH"] = os.path.join(td, "carbonledger.db")
        os.environ.setdefault("CARBON_NODE_ID", "smoke-node")
        os.environ.setdefault("CARBON_CHAIN_ID", "smoke-chain")

        app = create_app(boot_runtime=True)
        ex = app.state.executor

        cfg = BlockLoopConfig(
            interval_ms=max(250, _env_int("CARBON_BLOCK_INTERVAL_MS", 500)),
            produce_empty_blocks=False,
            enabled=True,
            lock_path=os.path.join(td, "block_loop.lock"),
            max_block_txs=_env_int("CARBON_BLOCK_MAX_TXS", 1000),
            fail_fast_after=_env_int("CARBON_BLOCK_LOOP_FAIL_FAST_AFTER", 10),
            error_backoff_min_ms=_env_int("CARBON_BLOCK_LOOP_ERROR_BACKOFF_MIN_MS", 250),
            error_backoff_max_ms=_env_int("CARBON_BLOCK_LOOP_ERROR_BACKOFF_MAX_MS", 10_000),
        )
        loop = BlockProducerLoop(executor=ex, cfg=cfg)
        if not loop.start():
            raise RuntimeError("failed to start block loop")

        try:
            c = TestClient(app)
            r = c.get("/v1/health")
            assert r.status_code == 200, r.text
            assert bool(r.json().get("ok")) is True

            r = c.get("/v1/status")
            assert r.status_code == 200, r.text
            assert r.json().get("chain_id") == os.environ["CARBON_CHAIN_ID"]

            deadline = time.time() + 8.0

            r = c.post("/v1/tx/submit", json=make_tx("smoke", "PROFILE_CREATE", 1))
            assert r.status_code == 200, r.text
            _wait_for(c, r.json()["tx_id"], deadline)

            r = c.post("/v1/tx/submit", json=make_tx("smoke", "EMISSION_LOG", 2, {"units": 42, "category": 2}))
            assert r.status_code == 200, r.text
            inc = _wait_for(c, r.json()["tx_id"], deadline)
            assert inc["receipt"]["ok"] is True, inc

            total = c.get(f"/v1/actors/{actor('smoke')}/total").json()["total_emissions"]
            if total != 42:
                raise RuntimeError(f"unexpected total: {total}")
        finally:
            loop.stop()

        print("OK: health/status + profile and emission included", {"height": ex.height})
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
