# src/carbonledger/runtime/apply/__init__.py
"""Domain-specific apply modules.

These modules implement deterministic ledger state transitions for subsets
of tx types. The router in domain_dispatch.py offers each envelope to every
applier in turn; an applier returns None for tx types it does not own.

NOTE: Keep this package import-safe (no imports of domain_dispatch).
"""

from __future__ import annotations

__all__ = [
    "emissions",
]
