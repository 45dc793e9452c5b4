"""Read-only SQLite store reader"""

import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from ..exceptions import QueryError, StoreUnavailableError, TableMissingError
from .base import StoreReader, quote_identifier


# Number of SQLite VM instructions between deadline checks
_PROGRESS_STEPS = 1000

# Errors that mean the handle itself is unusable, not just one statement
_STORE_ERRORS = (
    "disk i/o error",
    "unable to open database file",
    "file is not a database",
    "database disk image is malformed",
)


class SQLiteReader(StoreReader):
    """
    SQLite store reader

    The file is opened through a ``mode=ro`` URI so the owning application's
    data is never modified. ``timeout`` bounds both the wait for a locked
    database and the run time of any single statement.
    """

    def __init__(self, connection_string: str, timeout: float = 1.0):
        super().__init__(connection_string, timeout)
        self._deadline: Optional[float] = None
        self._file_id: Optional[Tuple[int, int]] = None

    def connect(self) -> None:
        """Open the SQLite file read-only"""
        path = Path(self.connection_string)
        if not path.exists():
            raise StoreUnavailableError(f"SQLite database not found: {self.connection_string}")

        try:
            self.connection = sqlite3.connect(
                f"{path.resolve().as_uri()}?mode=ro",
                uri=True,
                timeout=self.timeout,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to open SQLite database {self.connection_string}: {e}") from e

        self.connection.row_factory = sqlite3.Row
        self.connection.set_progress_handler(self._check_deadline, _PROGRESS_STEPS)
        self._file_id = self._identify(path)
        logger.debug(f"Opened SQLite database read-only: {self.connection_string}")

    def disconnect(self) -> None:
        """Close SQLite connection"""
        if self.connection:
            self.connection.close()
            self.connection = None
            self._file_id = None
            logger.debug("SQLite connection closed")

    def is_stale(self) -> bool:
        """Check whether the file was deleted or replaced since it was opened"""
        if self.connection is None:
            return False
        try:
            return self._identify(Path(self.connection_string)) != self._file_id
        except OSError:
            return True

    @staticmethod
    def _identify(path: Path) -> Tuple[int, int]:
        stat = path.stat()
        return stat.st_dev, stat.st_ino

    def _check_deadline(self) -> int:
        # A non-zero return interrupts the running statement
        if self._deadline is not None and time.monotonic() > self._deadline:
            return 1
        return 0

    def _execute(self, query: str, params: Sequence[Any] = (), table_name: Optional[str] = None) -> List[sqlite3.Row]:
        if self.connection is None:
            raise StoreUnavailableError("SQLite database is not open")

        target = table_name or "sqlite_master"
        self._deadline = time.monotonic() + self.timeout
        try:
            cursor = self.connection.execute(query, params)
            return cursor.fetchall()
        except sqlite3.Error as e:
            message = str(e).lower()
            if table_name and "no such table" in message:
                raise TableMissingError(f"Table not found: {table_name}") from e
            if any(marker in message for marker in _STORE_ERRORS):
                raise StoreUnavailableError(f"SQLite database unreadable: {e}") from e
            raise QueryError(f"Query failed on {target}: {e}") from e
        finally:
            self._deadline = None

    def get_tables(self) -> List[str]:
        """Get list of all tables in the database"""
        rows = self._execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row[0] for row in rows]

    def table_exists(self, table_name: str) -> bool:
        rows = self._execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
            (table_name,),
        )
        return bool(rows)

    def get_row_count(self, table_name: str) -> int:
        """Get total row count for a table"""
        quoted = quote_identifier(table_name)
        rows = self._execute(f"SELECT COUNT(*) FROM {quoted}", table_name=table_name)
        return rows[0][0]

    def get_max_value(self, table_name: str, column: str = "id") -> Optional[Any]:
        quoted = quote_identifier(table_name)
        quoted_column = quote_identifier(column)
        rows = self._execute(f"SELECT MAX({quoted_column}) FROM {quoted}", table_name=table_name)
        return rows[0][0] if rows else None

    def get_rows_after(self, table_name: str, last_id: Any, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        quoted = quote_identifier(table_name)
        query = f"SELECT * FROM {quoted} WHERE id > ? ORDER BY id ASC"
        params: List[Any] = [last_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self._execute(query, params, table_name=table_name)
        return [dict(row) for row in rows]

    def get_latest_rows(self, table_name: str, limit: int, offset: int = 0, order_by: str = "id") -> List[Dict[str, Any]]:
        quoted = quote_identifier(table_name)
        quoted_order = quote_identifier(order_by)
        rows = self._execute(
            f"SELECT * FROM {quoted} ORDER BY {quoted_order} DESC LIMIT ? OFFSET ?",
            (limit, offset),
            table_name=table_name,
        )
        return [dict(row) for row in rows]

    def get_config_value(self, key: str) -> Optional[str]:
        rows = self._execute(
            "SELECT value FROM configs WHERE key = ? ORDER BY rowid DESC LIMIT 1",
            (key,),
            table_name="configs",
        )
        if not rows:
            return None
        return rows[0][0]
