# quarry/modules/db.py
"""
Package database for quarry.

Features:
- Thread-safe sqlite3 wrapper (check_same_thread=False, every statement under an RLock)
- Row factory (sqlite3.Row) for column access by name
- Configurable pragmas (WAL, foreign_keys, busy_timeout, synchronous)
- Transaction context manager (commit/rollback)
- Simple migrations (quarry_migrations table + apply_migrations)
- PackageDatabase: the get/put/list contract over installed records, per-name
  serialization, plus the catalog of added package definitions
- Explicit lifecycle: open() once, close() on shutdown, or use as a context manager;
  ":memory:" gives a private in-memory database
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence, Tuple, Union

from quarry.modules import config
from quarry.modules.errors import StorageError
from quarry.modules.logging import get_logger
from quarry.modules.spec import InstalledRecord, PackageSpec

_logger = get_logger("db")

MEMORY = ":memory:"


@dataclass
class DBConfig:
    """Connection settings (sane defaults)."""
    path: str
    timeout: float = 30.0  # seconds for sqlite connect busy timeout
    journal_mode: str = "WAL"
    foreign_keys: bool = True
    busy_timeout_ms: int = 5000
    synchronous: str = "NORMAL"  # OFF, NORMAL, FULL

    @classmethod
    def from_config(cls, path: Optional[Union[str, Path]] = None) -> "DBConfig":
        db_cfg = config.get_db_config()
        return cls(
            path=str(path) if path is not None else config.get_db_path(),
            timeout=float(db_cfg.get("timeout") or 30.0),
            journal_mode=str(db_cfg.get("journal_mode") or "WAL"),
            busy_timeout_ms=int(db_cfg.get("busy_timeout_ms") or 5000),
            synchronous=str(db_cfg.get("synchronous") or "NORMAL"),
        )


class DB:
    """
    sqlite3 wrapper.

        db = DB(DBConfig(path=":memory:"))
        with db:
            rows = db.fetchall("SELECT * FROM installed_packages")
    """

    def __init__(self, cfg: DBConfig) -> None:
        self._cfg = cfg
        self._memory = cfg.path == MEMORY
        self._path = Path(MEMORY) if self._memory else Path(cfg.path).expanduser().resolve()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------
    # Connection and pragmas
    # ------------------------
    def connect(self) -> sqlite3.Connection:
        """Open the connection (once) and apply pragmas."""
        with self._lock:
            if self._conn is not None:
                return self._conn
            if not self._memory:
                try:
                    self._path.parent.mkdir(parents=True, exist_ok=True)
                except OSError:
                    _logger.exception("db: cannot create directory %s", self._path.parent)
            try:
                conn = sqlite3.connect(
                    MEMORY if self._memory else str(self._path),
                    timeout=self._cfg.timeout,
                    check_same_thread=False,  # shared across worker threads, guarded by self._lock
                )
                conn.row_factory = sqlite3.Row
                cur = conn.cursor()
                try:
                    if self._cfg.journal_mode and not self._memory:
                        cur.execute(f"PRAGMA journal_mode = {self._cfg.journal_mode};")
                    if self._cfg.foreign_keys:
                        cur.execute("PRAGMA foreign_keys = ON;")
                    if self._cfg.busy_timeout_ms:
                        cur.execute(f"PRAGMA busy_timeout = {int(self._cfg.busy_timeout_ms)};")
                    if self._cfg.synchronous:
                        cur.execute(f"PRAGMA synchronous = {self._cfg.synchronous};")
                finally:
                    cur.close()
                self._conn = conn
                _logger.debug("db: connected to %s", self._path)
                return self._conn
            except sqlite3.Error as e:
                _logger.exception("db: cannot connect to %s", self._path)
                raise StorageError(f"cannot open database {self._path}: {e}") from e

    def is_connected(self) -> bool:
        with self._lock:
            return self._conn is not None

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
                _logger.debug("db: connection closed: %s", self._path)
            except sqlite3.Error:
                _logger.exception("db: error closing connection")
            finally:
                self._conn = None

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError(f"database {self._path} is not open")
        return self._conn

    # ------------------------
    # Statements
    # ------------------------
    def execute(self, sql: str, params: Optional[Sequence[Any]] = None, commit: bool = False,
                many: bool = False) -> sqlite3.Cursor:
        with self._lock:
            conn = self._require()
            try:
                cur = conn.cursor()
                if many:
                    cur.executemany(sql, params or [])
                elif params is not None:
                    cur.execute(sql, params)
                else:
                    cur.execute(sql)
                if commit:
                    conn.commit()
                return cur
            except sqlite3.Error as e:
                _logger.exception("db: SQL failed: %s | params=%s", sql, params)
                try:
                    conn.rollback()
                except sqlite3.Error:
                    _logger.debug("db: rollback failed", exc_info=True)
                raise StorageError(f"SQL failed: {e}") from e

    def executescript(self, script: str, commit: bool = True) -> None:
        with self._lock:
            conn = self._require()
            cur = conn.cursor()
            try:
                cur.executescript(script)
                if commit:
                    conn.commit()
            except sqlite3.Error as e:
                _logger.exception("db: script failed")
                raise StorageError(f"SQL script failed: {e}") from e
            finally:
                cur.close()

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[sqlite3.Row]:
        with self._lock:
            cur = self.execute(sql, params)
            try:
                return cur.fetchone()
            finally:
                cur.close()

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[sqlite3.Row]:
        with self._lock:
            cur = self.execute(sql, params)
            try:
                return cur.fetchall()
            finally:
                cur.close()

    @contextlib.contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """
        Commit on success, rollback on error. The lock is held for the whole block,
        so a transaction is atomic with respect to other threads.
        """
        with self._lock:
            conn = self._require()
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(f"transaction failed: {e}") from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                cur.close()

    # ------------------------
    # Migrations
    # ------------------------
    def _ensure_migrations_table(self) -> None:
        self.execute(
            """
            CREATE TABLE IF NOT EXISTS quarry_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT,
                applied_at TEXT
            );
            """,
            commit=True,
        )

    def get_current_version(self) -> int:
        row = self.fetchone("SELECT MAX(version) AS v FROM quarry_migrations;")
        if row is None or row["v"] is None:
            return 0
        return int(row["v"])

    def apply_migrations(self, migrations: Iterable[Tuple[int, str, str]]) -> List[int]:
        """Apply (version, name, sql) migrations newer than the current version."""
        applied: List[int] = []
        with self._lock:
            self._ensure_migrations_table()
            current = self.get_current_version()
            for version, name, sql in sorted(migrations, key=lambda x: int(x[0])):
                if int(version) <= current:
                    continue
                _logger.debug("db: applying migration %s: %s", version, name)
                self.executescript(sql, commit=True)
                now = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
                self.execute(
                    "INSERT INTO quarry_migrations (version, name, applied_at) VALUES (?, ?, ?);",
                    (int(version), name, now),
                    commit=True,
                )
                applied.append(int(version))
        return applied

    @property
    def path(self) -> Path:
        return self._path


# ------------------------
# Schema
# ------------------------
MIGRATIONS: List[Tuple[int, str, str]] = [
    (1, "installed packages", """
        CREATE TABLE IF NOT EXISTS installed_packages (
            name TEXT PRIMARY KEY,
            version TEXT NOT NULL,
            checksum TEXT NOT NULL,
            files TEXT NOT NULL,
            installed_at REAL NOT NULL,
            reason TEXT NOT NULL DEFAULT 'dependency'
        );
    """),
    (2, "catalog", """
        CREATE TABLE IF NOT EXISTS catalog (
            name TEXT NOT NULL,
            version TEXT NOT NULL,
            spec TEXT NOT NULL,
            added_at REAL NOT NULL,
            PRIMARY KEY (name, version)
        );
        CREATE INDEX IF NOT EXISTS idx_catalog_name ON catalog(name);
    """),
]


def _record_from_row(row: sqlite3.Row) -> InstalledRecord:
    return InstalledRecord(
        name=row["name"],
        version=row["version"],
        checksum=row["checksum"],
        files=tuple(json.loads(row["files"])),
        installed_at=float(row["installed_at"]),
        reason=row["reason"],
    )


class PackageDatabase:
    """
    Single source of truth for installed packages.

    Every call is atomic. Writes to one name are serialized through a per-name
    lock; a put() followed by get() of the same name observes the new record.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, cfg: Optional[DBConfig] = None):
        self._db = DB(cfg or DBConfig.from_config(path))
        self._name_locks: Dict[str, threading.Lock] = {}
        self._name_locks_guard = threading.Lock()

    # ------------------------
    # Lifecycle
    # ------------------------
    def open(self) -> "PackageDatabase":
        self._db.connect()
        self._db.apply_migrations(MIGRATIONS)
        _logger.info("db: opened package database %s", self._db.path)
        return self

    def close(self) -> None:
        self._db.close()

    @property
    def is_open(self) -> bool:
        return self._db.is_connected()

    @property
    def path(self) -> Path:
        return self._db.path

    def __enter__(self) -> "PackageDatabase":
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def lock_for(self, name: str) -> threading.Lock:
        with self._name_locks_guard:
            lock = self._name_locks.get(name)
            if lock is None:
                lock = self._name_locks[name] = threading.Lock()
            return lock

    # ------------------------
    # Installed records
    # ------------------------
    def get(self, name: str) -> Optional[InstalledRecord]:
        with self.lock_for(name):
            row = self._db.fetchone("SELECT * FROM installed_packages WHERE name = ?;", (name,))
        return _record_from_row(row) if row is not None else None

    def put(self, name: str, record: InstalledRecord) -> None:
        """Insert or atomically replace the record for `name`."""
        if record.name != name:
            raise ValueError(f"record for {record.name} stored under {name}")
        with self.lock_for(name):
            with self._db.transaction() as cur:
                cur.execute(
                    "INSERT OR REPLACE INTO installed_packages "
                    "(name, version, checksum, files, installed_at, reason) VALUES (?, ?, ?, ?, ?, ?);",
                    (name, str(record.version), record.checksum, json.dumps(list(record.files)),
                     float(record.installed_at), record.reason),
                )
        _logger.debug("db: recorded %s %s", name, record.version)

    def list(self) -> List[InstalledRecord]:
        rows = self._db.fetchall("SELECT * FROM installed_packages ORDER BY name;")
        return [_record_from_row(r) for r in rows]

    # ------------------------
    # Catalog of added definitions
    # ------------------------
    def add_spec(self, spec: PackageSpec) -> None:
        with self._db.transaction() as cur:
            cur.execute(
                "INSERT OR REPLACE INTO catalog (name, version, spec, added_at) VALUES (?, ?, ?, ?);",
                (spec.name, str(spec.version), json.dumps(spec.to_dict(), sort_keys=True), time.time()),
            )
        _logger.info("db: added %s to catalog", spec.key)

    def get_specs(self, name: str) -> List[PackageSpec]:
        rows = self._db.fetchall("SELECT spec FROM catalog WHERE name = ?;", (name,))
        return [PackageSpec.from_dict(json.loads(r["spec"])) for r in rows]

    def list_specs(self) -> List[PackageSpec]:
        rows = self._db.fetchall("SELECT spec FROM catalog ORDER BY name, version;")
        return [PackageSpec.from_dict(json.loads(r["spec"])) for r in rows]
