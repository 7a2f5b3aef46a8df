"""DuckDB access for MoneySync's local state.

One ``SyncDatabase`` owns one DuckDB connection holding the change queue, dead
letters, cursors, the local entity cache and the job queue. Stores share it so
that a single ``transaction()`` can span all of them.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import duckdb

from moneysync.errors import StorageError

logger = logging.getLogger(__name__)


class SyncDatabase:
    """DuckDB connection with schema bootstrap and nestable transactions.

    Transactions are synchronous blocks: callers must not ``await`` while one is
    open, which keeps concurrent asyncio tasks from interleaving their writes.
    """

    CATALOG = "moneysync_state"

    SCHEMA_FILES = [
        "sync_schema.sql",
        "sync_change_queue.sql",
        "sync_dead_letters.sql",
        "sync_cursors.sql",
        "sync_local_entities.sql",
        "jobs_job_queue.sql",
    ]

    def __init__(self, database_path: Path | str, create_dirs: bool = True):
        """Open the database and create any missing tables.

        Args:
            database_path: Path to the DuckDB file, or ``":memory:"``
            create_dirs: Create the parent directory if it does not exist
        """
        self.database_path = Path(database_path)
        self.sql_dir = Path(__file__).parent / "sql" / "schema"
        self._lock = threading.RLock()
        self._depth = 0

        target = str(database_path)
        if target != ":memory:" and create_dirs:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = self._connect(target)
        except duckdb.Error as e:
            raise StorageError(f"Cannot open database {target}: {e}") from e

        self.create_tables()
        logger.debug(f"Opened sync database: {target}")

    @classmethod
    def _connect(cls, target: str) -> duckdb.DuckDBPyConnection:
        if target == ":memory:":
            return duckdb.connect(target)

        # DuckDB names a file's catalog after its stem, so files such as
        # sync.duckdb would make "sync.<table>" ambiguous. Attach under a fixed
        # name instead.
        conn = duckdb.connect()
        try:
            escaped = target.replace("'", "''")
            conn.execute(f"ATTACH '{escaped}' AS {cls.CATALOG}")
            conn.execute(f"USE {cls.CATALOG}")
        except duckdb.Error:
            conn.close()
            raise
        return conn

    def create_tables(self) -> None:
        """Create sync and job tables by executing SQL schema files in order."""
        with self._lock:
            for sql_file in self.SCHEMA_FILES:
                sql_path = self.sql_dir / sql_file
                if not sql_path.exists():
                    raise FileNotFoundError(f"SQL schema file not found: {sql_path}")

                with open(sql_path) as f:
                    sql_content = f.read()
                try:
                    self._conn.execute(sql_content)
                except duckdb.Error as e:
                    raise StorageError(f"Failed to apply {sql_file}: {e}") from e
                logger.debug(f"Executed schema file: {sql_file}")

    @contextmanager
    def transaction(self) -> Iterator["SyncDatabase"]:
        """Run a block atomically.

        Nested calls join the outermost transaction. Any exception rolls back
        every write made inside the outermost block and propagates.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            try:
                self._conn.begin()
            except duckdb.Error as e:
                raise StorageError(f"Cannot begin transaction: {e}") from e

            self._depth = 1
            try:
                yield self
            except BaseException:
                self._rollback()
                raise
            else:
                try:
                    self._conn.commit()
                except duckdb.Error as e:
                    self._rollback()
                    raise StorageError(f"Commit failed: {e}") from e
            finally:
                self._depth = 0

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except duckdb.Error as e:
            logger.error(f"Rollback failed: {e}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def execute(self, sql: str, params: list[Any] | None = None) -> duckdb.DuckDBPyConnection:
        with self._lock:
            try:
                return self._conn.execute(sql, params or [])
            except duckdb.Error as e:
                raise StorageError(str(e)) from e

    def fetchone(self, sql: str, params: list[Any] | None = None) -> tuple[Any, ...] | None:
        with self._lock:
            return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: list[Any] | None = None) -> list[tuple[Any, ...]]:
        with self._lock:
            return self.execute(sql, params).fetchall()

    def execute_count(self, sql: str, params: list[Any] | None = None) -> int:
        """Execute an INSERT, UPDATE or DELETE and return the affected row count."""
        row = self.fetchone(sql, params)
        return int(row[0]) if row else 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()
