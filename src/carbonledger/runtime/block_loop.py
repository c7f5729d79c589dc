from __future__ import annotations

import fcntl
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Optional, TextIO

from carbonledger.runtime.metrics import inc_counter, set_gauge
from carbonledger.runtime.runtime_logging import log_event


log = logging.getLogger("carbonledger.block_loop")


@dataclass(frozen=True, slots=True)
class BlockLoopConfig:
    interval_ms: int
    produce_empty_blocks: bool
    enabled: bool
    lock_path: str
    max_block_txs: int

    # Consecutive failed ticks before the loop gives up and marks the node unhealthy.
    fail_fast_after: int
    error_backoff_min_ms: int
    error_backoff_max_ms: int


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_ms(name: str, default: int, *, floor: int) -> int:
    try:
        v = int((os.environ.get(name) or "").strip() or default)
    except ValueError:
        v = int(default)
    return max(floor, v)


def block_loop_config_from_env() -> BlockLoopConfig:
    backoff_min = _env_ms("CARBON_BLOCK_LOOP_ERROR_BACKOFF_MIN_MS", 250, floor=50)
    return BlockLoopConfig(
        interval_ms=_env_ms("CARBON_BLOCK_INTERVAL_MS", 5_000, floor=250),
        produce_empty_blocks=_env_flag("CARBON_PRODUCE_EMPTY_BLOCKS", False),
        enabled=_env_flag("CARBON_BLOCK_LOOP_ENABLED", True),
        lock_path=os.environ.get("CARBON_BLOCK_LOOP_LOCK_PATH", "./data/block_loop.lock"),
        max_block_txs=_env_ms("CARBON_BLOCK_MAX_TXS", 1000, floor=1),
        fail_fast_after=_env_ms("CARBON_BLOCK_LOOP_FAIL_FAST_AFTER", 10, floor=3),
        error_backoff_min_ms=backoff_min,
        error_backoff_max_ms=_env_ms("CARBON_BLOCK_LOOP_ERROR_BACKOFF_MAX_MS", 10_000, floor=backoff_min),
    )


def backoff_ms(failures: int, cfg: BlockLoopConfig) -> int:
    """Delay after the n-th consecutive failure: min * 2^(n-1), capped at max."""
    n = max(1, int(failures))
    return min(int(cfg.error_backoff_max_ms), int(cfg.error_backoff_min_ms) << min(10, n - 1))


class _FileLock:
    """Advisory flock held for the loop's lifetime: one producer per database."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._fh: Optional[TextIO] = None

    def acquire(self) -> bool:
        parent = os.path.dirname(self._path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        fh = open(self._path, "a+", encoding="utf-8")
        try:
            fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fh.close()
            return False
        fh.truncate(0)
        fh.write(f"pid={os.getpid()}\n")
        fh.flush()
        self._fh = fh
        return True

    def release(self) -> None:
        fh, self._fh = self._fh, None
        if fh is not None:
            try:
                fcntl.flock(fh, fcntl.LOCK_UN)
            finally:
                fh.close()


class BlockProducerLoop:
    """Background thread turning the mempool into blocks every interval.

    Health is published as attributes on the executor so /v1/health can
    report it without holding a reference to the loop:
    block_loop_running, block_loop_unhealthy, block_loop_last_error and
    block_loop_consecutive_failures.
    """

    def __init__(self, *, executor: Any, cfg: Optional[BlockLoopConfig] = None) -> None:
        self._executor = executor
        self._cfg = cfg or block_loop_config_from_env()
        self._lock = _FileLock(self._cfg.lock_path)
        self._halt = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._failures = 0

        self._publish(running=False, unhealthy=False, last_error="")

    def _publish(self, **status: Any) -> None:
        for k, v in status.items():
            setattr(self._executor, f"block_loop_{k}", v)
        self._executor.block_loop_consecutive_failures = self._failures

    @property
    def started(self) -> bool:
        return self._thread is not None

    def start(self) -> bool:
        if self._thread is not None:
            return True
        if not self._cfg.enabled:
            return False
        if not self._lock.acquire():
            log_event(log, "block_loop_lock_busy", lock_path=self._cfg.lock_path)
            return False

        self._halt.clear()
        self._thread = threading.Thread(target=self._run, name="carbon-block-loop", daemon=True)
        self._thread.start()
        self._publish(running=True)
        inc_counter("block_loop_start_total", 1)
        log_event(log, "block_loop_started", interval_ms=self._cfg.interval_ms, lock_path=self._cfg.lock_path)
        return True

    def stop(self) -> None:
        self._halt.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self._lock.release()
        self._publish(running=False)
        inc_counter("block_loop_stop_total", 1)
        log_event(log, "block_loop_stopped")

    def tick(self) -> None:
        """Prune expired txs, then commit one block if there is anything to commit."""
        ex = self._executor
        ex.prune_mempool_expired()

        if int(ex.mempool.size()) > 0:
            meta = ex.produce_block(max_txs=int(self._cfg.max_block_txs))
        elif self._cfg.produce_empty_blocks:
            meta = ex.execute_block([])
        else:
            return

        if not meta.ok:
            raise RuntimeError(f"produce_block failed: {meta.error}")
        inc_counter("block_loop_produce_ok_total", 1)

    def _on_failure(self, err: Exception) -> None:
        self._failures += 1
        inc_counter("block_loop_errors_total", 1)
        set_gauge("block_loop_consecutive_failures", self._failures)
        self._publish(last_error=f"{type(err).__name__}: {err}")
        log.exception("block loop tick failed (consecutive=%s)", self._failures)

    def _on_success(self) -> None:
        if self._failures:
            self._failures = 0
            set_gauge("block_loop_consecutive_failures", 0)
            self._publish(last_error="")

    def _run(self) -> None:
        interval_s = self._cfg.interval_ms / 1000.0
        while not self._halt.is_set():
            inc_counter("block_loop_ticks_total", 1)
            try:
                self.tick()
            except Exception as err:
                self._on_failure(err)
                if self._failures >= int(self._cfg.fail_fast_after):
                    set_gauge("block_loop_unhealthy", 1)
                    inc_counter("block_loop_failfast_total", 1)
                    self._publish(running=False, unhealthy=True)
                    log_event(log, "block_loop_fail_fast", failures=self._failures)
                    return
                self._halt.wait(backoff_ms(self._failures, self._cfg) / 1000.0)
                continue

            self._on_success()
            self._halt.wait(interval_s)
