# src/carbonledger/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple

Json = Dict[str, Any]

SCHEMA_VERSION = 1

# One statement per entry; executed in order by SqliteDB.init_schema().
_SCHEMA: Tuple[str, ...] = (
    "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);",
    # Single-row snapshot of the whole ledger state dict.
    """
    CREATE TABLE IF NOT EXISTS ledger_state (
      id INTEGER PRIMARY KEY CHECK (id = 1),
      height INTEGER NOT NULL,
      block_id TEXT NOT NULL,
      state_json TEXT NOT NULL,
      updated_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS blocks (
      height INTEGER PRIMARY KEY,
      block_id TEXT NOT NULL,
      block_json TEXT NOT NULL,
      created_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS mempool (
      tx_id TEXT PRIMARY KEY,
      envelope_json TEXT NOT NULL,
      signer TEXT NOT NULL,
      tx_type TEXT NOT NULL,
      received_ms INTEGER NOT NULL,
      expires_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_mempool_order ON mempool(received_ms, tx_id);",
    "CREATE INDEX IF NOT EXISTS idx_mempool_signer ON mempool(signer);",
    # One receipt per included tx; a tx_id can only ever be included once.
    """
    CREATE TABLE IF NOT EXISTS tx_index (
      tx_id TEXT PRIMARY KEY,
      height INTEGER NOT NULL,
      block_id TEXT NOT NULL,
      tx_type TEXT NOT NULL,
      signer TEXT NOT NULL,
      receipt_json TEXT NOT NULL,
      included_ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_tx_index_height ON tx_index(height);",
)

_SYNC_LEVELS = ("OFF", "NORMAL", "FULL", "EXTRA")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    """Sorted-key compact JSON; used for persistence and for hashing.

    No default= fallback: a value that is not plain JSON raises TypeError.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def upsert_snapshot(con: sqlite3.Connection, st: Json, *, now_ms: int) -> None:
    """Write `st` as the single ledger_state row inside the caller's transaction."""
    con.execute(
        """
        INSERT INTO ledger_state(id, height, block_id, state_json, updated_ts_ms)
        VALUES(1, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
          height=excluded.height,
          block_id=excluded.block_id,
          state_json=excluded.state_json,
          updated_ts_ms=excluded.updated_ts_ms;
        """,
        (int(st.get("height", 0) or 0), str(st.get("tip") or ""), _canon_json(st), int(now_ms)),
    )


def _is_busy(e: sqlite3.OperationalError) -> bool:
    msg = str(e).lower()
    return "locked" in msg or "busy" in msg


class SqliteDB:
    """Connection factory for the node database.

    Every caller gets its own short-lived connection, so the executor, the
    block loop thread and request handlers never share one. Writers go
    through write_tx(), which takes the SQLite writer lock up front
    (BEGIN IMMEDIATE) and retries lock contention until
    CARBON_SQLITE_WRITE_DEADLINE_MS runs out.
    """

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    @staticmethod
    def _synchronous_level() -> str:
        # FULL in prod, NORMAL elsewhere; CARBON_SQLITE_SYNCHRONOUS overrides.
        mode = (os.environ.get("CARBON_MODE") or "prod").strip().lower()
        fallback = "FULL" if mode == "prod" else "NORMAL"
        level = (os.environ.get("CARBON_SQLITE_SYNCHRONOUS") or fallback).strip().upper()
        return level if level in _SYNC_LEVELS else fallback

    def _pragmas(self, connect_timeout_ms: int) -> List[Tuple[str, Any]]:
        return [
            ("synchronous", self._synchronous_level()),
            ("foreign_keys", "ON"),
            ("temp_store", "MEMORY"),
            ("wal_autocheckpoint", max(1, _env_int("CARBON_SQLITE_WAL_AUTOCHECKPOINT", 1000))),
            ("busy_timeout", max(0, _env_int("CARBON_SQLITE_BUSY_TIMEOUT_MS", connect_timeout_ms))),
        ]

    def _open(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        timeout_ms = _env_int("CARBON_SQLITE_CONNECT_TIMEOUT_MS", 30_000)

        # isolation_level=None: transactions are opened explicitly by write_tx().
        con = sqlite3.connect(self.path, timeout=timeout_ms / 1000.0, isolation_level=None, check_same_thread=False)
        con.row_factory = sqlite3.Row

        journal = str(con.execute("PRAGMA journal_mode=WAL;").fetchone()[0]).lower()
        non_wal_ok = (os.environ.get("CARBON_SQLITE_ALLOW_NON_WAL") or "").strip().lower() in {"1", "true"}
        if journal != "wal" and not non_wal_ok:
            con.close()
            raise RuntimeError(f"sqlite journal_mode is {journal!r}; the node requires WAL")

        for name, value in self._pragmas(timeout_ms):
            con.execute(f"PRAGMA {name}={value};")
        return con

    def init_schema(self) -> None:
        """Create tables if missing; refuse a database written by another schema version."""
        with self.write_tx() as con:
            for ddl in _SCHEMA:
                con.execute(ddl)

            row = con.execute("SELECT value FROM meta WHERE key='schema_version';").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(SCHEMA_VERSION),))
                return

            found = str(row["value"]).strip()
            if found != str(SCHEMA_VERSION):
                raise RuntimeError(f"sqlite schema_version is {found!r}, this build expects {SCHEMA_VERSION}")

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._open()
        try:
            yield con
        finally:
            con.close()

    def _sleep_before_retry(self, attempt: int) -> None:
        base_ms = max(1, _env_int("CARBON_SQLITE_WRITE_BACKOFF_BASE_MS", 5))
        cap_ms = max(base_ms, _env_int("CARBON_SQLITE_WRITE_BACKOFF_MAX_MS", 250))
        delay_ms = min(cap_ms, base_ms * (2 ** min(attempt, 8)))
        time.sleep(delay_ms * random.uniform(0.5, 1.5) / 1000.0)

    def _execute_with_retry(self, con: sqlite3.Connection, sql: str, deadline_ms: int) -> None:
        attempt = 0
        while True:
            try:
                con.execute(sql)
                return
            except sqlite3.OperationalError as e:
                if not _is_busy(e) or _now_ms() >= deadline_ms:
                    raise
            self._sleep_before_retry(attempt)
            attempt += 1

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Run the body in one IMMEDIATE transaction; roll back on any exception."""
        deadline_ms = _now_ms() + max(250, _env_int("CARBON_SQLITE_WRITE_DEADLINE_MS", 30_000))

        with self.connection() as con:
            self._execute_with_retry(con, "BEGIN IMMEDIATE;", deadline_ms)
            try:
                yield con
                self._execute_with_retry(con, "COMMIT;", deadline_ms)
            except BaseException:
                con.execute("ROLLBACK;")
                raise


class SqliteLedgerStore:
    """The persisted ledger snapshot (ledger_state row id=1)."""

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    @staticmethod
    def _load(row: Any) -> Json:
        if row is None:
            raise FileNotFoundError("ledger_state row is missing")
        st = json.loads(str(row["state_json"]))
        if not isinstance(st, dict):
            raise ValueError("ledger_state is not a JSON object")
        return st

    def exists(self) -> bool:
        with self._db.connection() as con:
            return con.execute("SELECT 1 FROM ledger_state WHERE id=1;").fetchone() is not None

    def read(self) -> Json:
        with self._db.connection() as con:
            return self._load(con.execute("SELECT state_json FROM ledger_state WHERE id=1;").fetchone())

    def write(self, st: Json) -> None:
        if not isinstance(st, dict):
            raise ValueError("ledger snapshot must be a dict")
        with self._db.write_tx() as con:
            upsert_snapshot(con, st, now_ms=_now_ms())
