# src/carbonledger/runtime/chain_config.py
"""Operator chain config.

A node is configured from, in order of precedence:

  1. CARBON_* environment variables already set (including a loaded .env)
  2. a JSON file named by CARBON_CHAIN_CONFIG_PATH
  3. the built-in defaults below

load_chain_config() covers (2) and (3) and validates the result;
apply_chain_config_to_env() then fills in only the env vars that are unset.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

Json = Dict[str, Any]

MODES = ("dev", "testnet", "prod")
MIN_BLOCK_INTERVAL_MS = 250

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


@dataclass(frozen=True)
class ChainConfig:
    chain_id: str = "carbon-dev"
    node_id: str = "local-node"
    mode: str = "prod"

    # Snapshot, blocks, mempool and tx index all live in this one SQLite file.
    db_path: str = "./data/carbonledger.db"

    block_interval_ms: int = 5_000
    max_txs_per_block: int = 1_000

    api_host: str = "127.0.0.1"
    api_port: int = 8000

    allow_unsigned_txs: bool = False
    log_level: str = "INFO"


# ChainConfig field -> env var it is exported as.
_ENV_NAMES: Dict[str, str] = {
    "chain_id": "CARBON_CHAIN_ID",
    "node_id": "CARBON_NODE_ID",
    "mode": "CARBON_MODE",
    "db_path": "CARBON_DB_PATH",
    "block_interval_ms": "CARBON_BLOCK_INTERVAL_MS",
    "max_txs_per_block": "CARBON_BLOCK_MAX_TXS",
    "api_host": "CARBON_API_HOST",
    "api_port": "CARBON_API_PORT",
    "allow_unsigned_txs": "CARBON_ALLOW_UNSIGNED_TXS",
    "log_level": "CARBON_LOG_LEVEL",
}


def _coerce(value: Any, default: Any) -> Any:
    """Coerce a raw JSON value to the type of `default`; unusable values fall back."""
    if value is None:
        return default
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        s = str(value).strip().lower()
        return True if s in _TRUE else False if s in _FALSE else default
    if isinstance(default, int):
        if isinstance(value, bool):
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            return default
    s = str(value)
    return s if s.strip() else default


def validate_chain_config(cfg: ChainConfig) -> None:
    """Raise ValueError on the first bad setting."""
    for name in ("chain_id", "node_id", "db_path"):
        v = getattr(cfg, name)
        if not isinstance(v, str) or not v.strip():
            raise ValueError(f"{name} must be a non-empty string")

    mode = str(cfg.mode or "").strip().lower()
    if mode not in MODES:
        raise ValueError(f"mode must be one of {list(MODES)}; got {cfg.mode!r}")
    if not 0 < int(cfg.api_port) <= 65535:
        raise ValueError(f"api_port must be 1..65535; got {cfg.api_port}")
    if int(cfg.block_interval_ms) < MIN_BLOCK_INTERVAL_MS:
        raise ValueError(f"block_interval_ms must be >= {MIN_BLOCK_INTERVAL_MS}; got {cfg.block_interval_ms}")
    if int(cfg.max_txs_per_block) <= 0:
        raise ValueError(f"max_txs_per_block must be > 0; got {cfg.max_txs_per_block}")
    if cfg.allow_unsigned_txs and mode != "dev":
        raise ValueError("allow_unsigned_txs is only permitted in dev mode")


def default_chain_config() -> ChainConfig:
    # No config file means the strict posture: prod mode, signatures required.
    return ChainConfig()


def read_chain_config_file(path: str) -> ChainConfig:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("chain config must be a JSON object")

    base = default_chain_config()
    values = {f.name: _coerce(raw.get(f.name), getattr(base, f.name)) for f in fields(ChainConfig)}
    cfg = replace(base, **values)
    cfg = replace(cfg, mode=cfg.mode.strip().lower(), log_level=cfg.log_level.strip().upper())

    validate_chain_config(cfg)
    return cfg


def load_chain_config(*, config_path: Optional[str] = None) -> ChainConfig:
    path = config_path or os.environ.get("CARBON_CHAIN_CONFIG_PATH")
    cfg = read_chain_config_file(path) if path else default_chain_config()
    validate_chain_config(cfg)
    return cfg


def apply_chain_config_to_env(cfg: ChainConfig) -> None:
    """Export `cfg` as CARBON_* env vars; values the operator already set win."""
    validate_chain_config(cfg)
    for name, env_name in _ENV_NAMES.items():
        v = getattr(cfg, name)
        if isinstance(v, bool):
            text = "1" if v else "0"
        elif name == "mode":
            text = str(v).strip().lower()
        else:
            text = str(v)
        os.environ.setdefault(env_name, text)
