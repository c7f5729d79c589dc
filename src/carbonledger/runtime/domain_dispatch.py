from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Tuple

from carbonledger.runtime.apply.emissions import apply_emissions
from carbonledger.runtime.errors import ApplyError
from carbonledger.runtime.state_invariants import ensure_state
from carbonledger.runtime.tx_admission_types import TxEnvelope

Json = Dict[str, Any]
ApplyFn = Callable[..., Optional[Json]]

# Each applier returns None for tx types it does not own.
DOMAIN_APPLIERS: Tuple[ApplyFn, ...] = (apply_emissions,)


def _as_apply_error(exc: Exception, *, tx_type: str, domain: str) -> ApplyError:
    code = getattr(exc, "code", None)
    reason = getattr(exc, "reason", None)
    if code is None and reason is None:
        return ApplyError("domain_error", type(exc).__name__, {"tx_type": tx_type, "domain": domain, "error": str(exc)})
    details = getattr(exc, "details", None)
    if details is None:
        details = {"tx_type": tx_type, "domain": domain}
    return ApplyError(str(code or "domain_error"), str(reason or type(exc).__name__), details)


def apply_tx(state: Json, env: Any, *, logical_time: int) -> Json:
    """Route one envelope to the domain applier that owns its tx type.

    `logical_time` is the tick the tx executes in; the executor passes the
    block height, so every tx in a block sees the same value. Anything other
    than ApplyError escaping an applier is converted into one.
    """
    ensure_state(state)
    tx = TxEnvelope.from_json(env)
    if not tx.tx_type:
        raise ApplyError("invalid_tx", "missing_tx_type", {"tx_type": ""})
    if isinstance(logical_time, bool) or not isinstance(logical_time, int) or logical_time < 0:
        raise ApplyError("invalid_tx", "logical_time_must_be_uint", {"logical_time": logical_time})

    for fn in DOMAIN_APPLIERS:
        try:
            out = fn(state, tx, logical_time=logical_time)
        except ApplyError:
            raise
        except Exception as e:
            raise _as_apply_error(e, tx_type=tx.tx_type, domain=fn.__name__) from e
        if out is not None:
            return out

    raise ApplyError("tx_unimplemented", "tx_type_not_implemented", {"tx_type": tx.tx_type})
