import enum
import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger(__name__)


class Outcome(enum.Enum):
    OK = "ok"
    NOT_REGISTERED = "not_registered"
    PERMISSION_DENIED = "permission_denied"
    STORAGE_FAILURE = "storage_failure"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class Reminder:
    id: int
    user_id: int
    group_id: int
    chat_id: int
    time: str
    text: str


@dataclass(frozen=True)
class Result:
    outcome: Outcome
    reminder: Optional[Reminder] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


class RecordStore:
    """SQLite file holding groups, users and reminders."""

    def __init__(self, path: str):
        self.path = path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def init_schema(self):
        conn = self.connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS groups (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id INTEGER UNIQUE,
                    name TEXT
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id INTEGER,
                    username TEXT,
                    UNIQUE (chat_id, username)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS reminders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    group_id INTEGER,
                    time TEXT,
                    text TEXT,
                    FOREIGN KEY (user_id) REFERENCES users (id),
                    FOREIGN KEY (group_id) REFERENCES groups (id)
                );
                """
            )
            # one reminder per (user, group); edit and cancel address rows by this pair.
            # Older databases may hold several; keep the earliest of each.
            cur.execute(
                """
                DELETE FROM reminders WHERE id NOT IN (
                    SELECT MIN(id) FROM reminders GROUP BY user_id, group_id
                );
                """
            )
            if cur.rowcount > 0:
                log.warning(f"Removed {cur.rowcount} duplicate reminder(s) before indexing owners")
            cur.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS reminders_owner ON reminders (user_id, group_id);"
            )
            conn.commit()
        finally:
            conn.close()
        log.info(f"Record store ready at {self.path}")
