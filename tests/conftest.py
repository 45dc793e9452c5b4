"""
Shared fixtures: a VRCX-shaped SQLite database written by the test,
the way the VRCX application writes it while the service reads.
"""

import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional

import pytest

from vrcx_realtime.connectors.sqlite import SQLiteReader


USER_A = "usr_aaaa-1111"
TOKEN_A = "usraaaa1111"
USER_B = "usr_bbbb-2222"
TOKEN_B = "usrbbbb2222"

ACTIVE_USER_KEY = "config:lastuserloggedin"


class VrcxDatabase:
    """Writer side of a test database"""

    def __init__(self, path: str):
        self.path = path
        self.conn = sqlite3.connect(path)
        self._clock = datetime(2024, 1, 1, 12, 0, 0)

    def create_configs(self) -> None:
        self.conn.execute("CREATE TABLE IF NOT EXISTS configs (key TEXT PRIMARY KEY, value TEXT)")
        self.conn.commit()

    def set_active_user(self, user_id: str) -> None:
        self.create_configs()
        self.conn.execute(
            "INSERT OR REPLACE INTO configs (key, value) VALUES (?, ?)",
            (ACTIVE_USER_KEY, user_id),
        )
        self.conn.commit()

    def create_table(self, name: str) -> None:
        self.conn.execute(
            f"CREATE TABLE IF NOT EXISTS {name} "
            "(id INTEGER PRIMARY KEY, created_at TEXT, display_name TEXT, details TEXT)"
        )
        self.conn.commit()

    def drop_table(self, name: str) -> None:
        self.conn.execute(f"DROP TABLE IF EXISTS {name}")
        self.conn.commit()

    def insert(self, table: str, count: int = 1, created_at: Optional[str] = None) -> List[int]:
        """Append rows, each one second newer than the last"""
        ids = []
        for _ in range(count):
            self._clock += timedelta(seconds=1)
            cursor = self.conn.execute(
                f"INSERT INTO {table} (created_at, display_name, details) VALUES (?, ?, ?)",
                (created_at or self._clock.isoformat() + "Z", "someone", "details"),
            )
            ids.append(cursor.lastrowid)
        self.conn.commit()
        return ids

    def close(self) -> None:
        self.conn.close()


@pytest.fixture
def vrcx_db(tmp_path):
    """Create an empty database file."""
    db = VrcxDatabase(str(tmp_path / "VRCX.sqlite3"))
    yield db
    db.close()


@pytest.fixture
def reader_factory(vrcx_db):
    """Factory for read-only readers on the test database."""
    def factory():
        return SQLiteReader(vrcx_db.path, timeout=1.0)
    return factory


@pytest.fixture
def reader(reader_factory):
    """An open reader."""
    with reader_factory() as store:
        yield store
