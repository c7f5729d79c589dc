"""Process-local counters and gauges, exposed at /v1/metrics when enabled."""

from __future__ import annotations

import os
import threading
import time
from typing import Dict

_lock = threading.Lock()
_counters: Dict[str, int] = {}
_gauges: Dict[str, int] = {}
_BOOT_MS = int(time.time() * 1000)


def metrics_enabled() -> bool:
    return (os.environ.get("CARBON_METRICS_ENABLED") or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def inc_counter(name: str, value: int = 1) -> None:
    key = (name or "").strip()
    if key:
        with _lock:
            _counters[key] = _counters.get(key, 0) + int(value)


def set_gauge(name: str, value: int) -> None:
    key = (name or "").strip()
    if key:
        with _lock:
            _gauges[key] = int(value)


def reset() -> None:
    with _lock:
        _counters.clear()
        _gauges.clear()


def snapshot() -> dict:
    now_ms = int(time.time() * 1000)
    with _lock:
        counters, gauges = dict(_counters), dict(_gauges)
    return {
        "ts_ms": now_ms,
        "started_ms": _BOOT_MS,
        "uptime_ms": now_ms - _BOOT_MS,
        "counters": counters,
        "gauges": gauges,
    }


def format_prometheus(prefix: str = "carbon_") -> str:
    pre = (prefix or "").strip() or "carbon_"
    snap = snapshot()
    out = [f"{pre}uptime_ms {snap['uptime_ms']}"]
    for kind in ("counter", "gauge"):
        values = snap[f"{kind}s"]
        for name in sorted(values):
            out += [f"# TYPE {pre}{name} {kind}", f"{pre}{name} {values[name]}"]
    return "\n".join(out) + "\n"
