from __future__ import annotations

import copy
from typing import Any, Dict, Optional

from carbonledger.runtime.domain_dispatch import apply_tx
from carbonledger.runtime.errors import ApplyError
from carbonledger.runtime.tx_admission_types import TxEnvelope

Json = Dict[str, Any]


def consumed_nonce(state: Json, signer: str) -> int:
    """Highest nonce already used by `signer` (0 if none)."""
    table = state.get("nonces")
    if not isinstance(table, dict):
        return 0
    try:
        return int(table.get(signer) or 0)
    except (TypeError, ValueError):
        return 0


def _mark_nonce_used(state: Json, tx: TxEnvelope) -> None:
    # Nonce 0 is the unsequenced direct-API path and never touches the table.
    if not tx.signer or int(tx.nonce) <= 0:
        return
    table = state.setdefault("nonces", {})
    if int(tx.nonce) > consumed_nonce(state, tx.signer):
        table[tx.signer] = int(tx.nonce)


def apply_tx_atomic(
    state: Json,
    env: Any,
    *,
    logical_time: int,
    consume_nonce_on_fail: bool = True,
) -> Optional[Json]:
    """Apply one tx all-or-nothing.

    The tx runs against a deep copy of `state`; only a successful run is
    swapped back in (in place, so existing references stay valid). When the
    applier raises ApplyError, the only change left behind is the consumed
    nonce, and only if `consume_nonce_on_fail` is set. That keeps a rejected
    tx from being replayed into a later block.
    """
    tx = TxEnvelope.from_json(env)
    work = copy.deepcopy(state)

    try:
        result = apply_tx(work, tx, logical_time=logical_time)
    except ApplyError:
        if consume_nonce_on_fail:
            _mark_nonce_used(state, tx)
        raise

    _mark_nonce_used(work, tx)
    state.clear()
    state.update(work)
    return result


__all__ = ["ApplyError", "apply_tx", "apply_tx_atomic", "consumed_nonce"]
