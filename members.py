import logging
import sqlite3
from typing import List

from store import RecordStore

log = logging.getLogger(__name__)

FALLBACK_GROUP_NAME = "Unnamed Group"


def normalize_handle(name: str) -> str:
    name = name.strip().lstrip("@")
    return f"@{name}"


class Registrar:
    """Keeps the groups and users tables in step with who has been seen where."""

    def __init__(self, store: RecordStore):
        self.store = store

    def register(self, chat_id: int, chat_name: str, username: str):
        """Ensure rows exist for the chat and for the user inside it.

        Safe to call on every interaction; storage errors are logged, not raised.
        """
        handle = normalize_handle(username)
        try:
            conn = self.store.connect()
            try:
                cur = conn.cursor()
                cur.execute(
                    "INSERT INTO groups (chat_id, name) VALUES (?, ?) ON CONFLICT(chat_id) DO NOTHING",
                    (chat_id, chat_name or FALLBACK_GROUP_NAME),
                )
                if cur.rowcount:
                    log.info(f"Registered group {chat_id} ({chat_name or FALLBACK_GROUP_NAME})")
                cur.execute(
                    "INSERT INTO users (chat_id, username) VALUES (?, ?) ON CONFLICT(chat_id, username) DO NOTHING",
                    (chat_id, handle),
                )
                if cur.rowcount:
                    log.info(f"Registered {handle} in {chat_id}")
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error:
            log.exception(f"Failed to register {handle} in {chat_id}")

    def add_user(self, chat_id: int, username: str) -> bool:
        """Returns False if the user was already listed for this chat."""
        conn = self.store.connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO users (chat_id, username) VALUES (?, ?) ON CONFLICT(chat_id, username) DO NOTHING",
                (chat_id, normalize_handle(username)),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def remove_user(self, chat_id: int, username: str) -> bool:
        handle = normalize_handle(username)
        conn = self.store.connect()
        try:
            cur = conn.cursor()
            # rows written before handles were normalized may lack the "@"
            cur.execute(
                "DELETE FROM users WHERE chat_id=? AND username IN (?, ?)",
                (chat_id, handle, handle[1:]),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def handles(self, chat_id: int) -> List[str]:
        conn = self.store.connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT username FROM users WHERE chat_id=? ORDER BY id", (chat_id,))
            rows = cur.fetchall()
        finally:
            conn.close()
        seen = []
        for (username,) in rows:
            if not username:
                continue
            handle = normalize_handle(username)
            if handle not in seen:
                seen.append(handle)
        return seen
