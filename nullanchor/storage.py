"""
nullanchor - SQLite Store Base

Shared plumbing for the ledger, the receipt registry and the relayer's
durable state. Each store owns one connection and one re-entrant lock;
every read and every read-modify-write runs under that lock, so the store
is the single point of serialization for its tables.

A single-node deployment gets its atomicity from this lock plus the sqlite
transaction. Multi-node deployments must use a store that provides atomic
read-modify-write itself; the lock here does not span processes.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from .errors import AppendOnlyViolation, TransientInfraError


class SQLiteStore:
    """Base class for sqlite-backed stores."""

    SCHEMA = ""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._connection.row_factory = sqlite3.Row
        self._init_db()

    @property
    def _conn(self) -> sqlite3.Connection:
        return self._connection

    def _init_db(self):
        """Create tables, triggers and indexes."""
        with self._lock, self._conn:
            self._conn.executescript(self.SCHEMA)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize and wrap a unit of work in one transaction."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                if "append-only" in str(exc):
                    raise AppendOnlyViolation(str(exc)) from exc
                raise
            except sqlite3.OperationalError as exc:
                self._conn.rollback()
                raise TransientInfraError(f"Store unavailable: {exc}") from exc
            except Exception:
                self._conn.rollback()
                raise

    def _query_one(self, sql: str, params: tuple = ()):
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _query_all(self, sql: str, params: tuple = ()) -> list:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def close(self):
        with self._lock:
            self._conn.close()
