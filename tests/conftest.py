from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Ensure local "src/" takes precedence over any globally-installed "carbonledger" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)


@pytest.fixture(autouse=True)
def _isolate_carbon_env(monkeypatch: pytest.MonkeyPatch):
    """Drop CARBON_* vars for the test and restore the process env afterwards.

    create_app(boot_runtime=True) exports chain config into os.environ, which
    would otherwise leak into later tests.
    """
    saved = dict(os.environ)
    for k in list(os.environ):
        if k.startswith("CARBON_"):
            monkeypatch.delenv(k, raising=False)

    from carbonledger.runtime import metrics

    metrics.reset()
    yield
    os.environ.clear()
    os.environ.update(saved)


@pytest.fixture
def executor(tmp_path: Path):
    from carbonledger.runtime.executor import LedgerExecutor

    return LedgerExecutor(db_path=str(tmp_path / "carbon.db"), node_id="node-1", chain_id="carbon-test")
