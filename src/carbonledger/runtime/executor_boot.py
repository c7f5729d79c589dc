# src/carbonledger/runtime/executor_boot.py

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from carbonledger.runtime.executor import LedgerExecutor


@dataclass
class ExecutorBootConfig:
    db_path: str
    node_id: str
    chain_id: str


def boot_config_from_env() -> ExecutorBootConfig:
    return ExecutorBootConfig(
        db_path=os.environ.get("CARBON_DB_PATH", "./data/carbonledger.db"),
        node_id=os.environ.get("CARBON_NODE_ID", "local-node"),
        chain_id=os.environ.get("CARBON_CHAIN_ID", "carbon-dev"),
    )


def build_executor(cfg: Optional[ExecutorBootConfig] = None) -> LedgerExecutor:
    """Build a LedgerExecutor from an explicit boot config or from env vars.

    carbonledger.api.app calls this with no args in production.
    """
    c = cfg or boot_config_from_env()
    return LedgerExecutor(db_path=c.db_path, node_id=c.node_id, chain_id=c.chain_id)
