# src/carbonledger/runtime/block_hash.py

from __future__ import annotations

import hashlib
from typing import Any, Dict, List, Tuple

from carbonledger.runtime.sqlite_db import _canon_json

Json = Dict[str, Any]


def compute_block_hash(*, header: Json) -> str:
    """sha256 hex digest over the canonical JSON of a block header."""
    return hashlib.sha256(_canon_json(header).encode("utf-8")).hexdigest()


def make_block_header(
    *,
    chain_id: str,
    height: int,
    prev_block_hash: str,
    block_ts_ms: int,
    tx_ids: List[str],
    receipts_root: str,
) -> Json:
    """Create the canonical header structure used for hashing.

    receipts_root commits to the per-tx outcomes, so two blocks carrying the
    same txs but disagreeing on which of them were rejected hash differently.
    """
    return {
        "chain_id": str(chain_id),
        "height": int(height),
        "prev_block_hash": str(prev_block_hash or ""),
        "block_ts_ms": int(block_ts_ms),
        "tx_ids": [str(t) for t in tx_ids],
        "receipts_root": str(receipts_root),
    }


def compute_receipts_root(receipts: List[Json]) -> str:
    return hashlib.sha256(_canon_json(list(receipts)).encode("utf-8")).hexdigest()


def ensure_block_hash(block: Json) -> Tuple[Json, str]:
    """Return (block_with_hash, block_hash).

    If the block already carries `block_hash` it is returned unchanged;
    otherwise the hash is computed from `block["header"]`.
    """
    existing = block.get("block_hash")
    if isinstance(existing, str) and existing:
        return block, existing

    header = block.get("header")
    if not isinstance(header, dict):
        raise ValueError("block is missing header")

    bh = compute_block_hash(header=header)
    block["block_hash"] = bh
    return block, bh
