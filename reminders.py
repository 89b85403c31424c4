import logging
import re
import sqlite3
from typing import List, Optional, Tuple

from members import normalize_handle
from store import Outcome, RecordStore, Reminder, Result

log = logging.getLogger(__name__)

TIME_RE = re.compile(r"^(\d{2}):(\d{2})$")

SELECT_REMINDER = """
    SELECT r.id, r.user_id, r.group_id, g.chat_id, r.time, r.text
    FROM reminders r JOIN groups g ON g.id = r.group_id
"""


def parse_time_of_day(raw: str) -> Optional[str]:
    """Validate a strict HH:MM 24-hour time; returns it unchanged or None."""
    m = TIME_RE.match(raw.strip())
    if not m:
        return None
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


class ReminderRepository:
    def __init__(self, store: RecordStore):
        self.store = store

    def _owner(self, cur, chat_id: int, username: str) -> Optional[Tuple[int, int]]:
        cur.execute(
            "SELECT id FROM users WHERE chat_id=? AND username=?",
            (chat_id, normalize_handle(username)),
        )
        user_row = cur.fetchone()
        if not user_row:
            return None
        cur.execute("SELECT id FROM groups WHERE chat_id=?", (chat_id,))
        group_row = cur.fetchone()
        if not group_row:
            return None
        return user_row[0], group_row[0]

    def _fetch(self, cur, user_id: int, group_id: int) -> Optional[Reminder]:
        cur.execute(SELECT_REMINDER + " WHERE r.user_id=? AND r.group_id=? ORDER BY r.id", (user_id, group_id))
        row = cur.fetchone()
        return Reminder(*row) if row else None

    def create(self, chat_id: int, username: str, time: str, text: str) -> Result:
        try:
            conn = self.store.connect()
            try:
                cur = conn.cursor()
                owner = self._owner(cur, chat_id, username)
                if owner is None:
                    return Result(Outcome.NOT_REGISTERED)
                user_id, group_id = owner
                existing = self._fetch(cur, user_id, group_id)
                if existing:
                    return Result(Outcome.ALREADY_EXISTS, existing)
                cur.execute(
                    "INSERT INTO reminders (user_id, group_id, time, text) VALUES (?, ?, ?, ?)",
                    (user_id, group_id, time, text),
                )
                reminder = Reminder(cur.lastrowid, user_id, group_id, chat_id, time, text)
                conn.commit()
            finally:
                conn.close()
        except sqlite3.IntegrityError:
            # lost a race against another create for the same owner
            log.warning(f"Reminder for {username} in {chat_id} already exists")
            return Result(Outcome.ALREADY_EXISTS)
        except sqlite3.Error:
            log.exception(f"Failed to create reminder for {username} in {chat_id}")
            return Result(Outcome.STORAGE_FAILURE)
        log.info(f"Reminder {reminder.id} created for {username} in {chat_id} at {time}")
        return Result(Outcome.OK, reminder)

    def edit(self, chat_id: int, username: str, time: str, text: str) -> Result:
        try:
            conn = self.store.connect()
            try:
                cur = conn.cursor()
                owner = self._owner(cur, chat_id, username)
                if owner is None:
                    return Result(Outcome.NOT_REGISTERED)
                user_id, group_id = owner
                cur.execute(
                    "UPDATE reminders SET time=?, text=? WHERE user_id=? AND group_id=?",
                    (time, text, user_id, group_id),
                )
                if not cur.rowcount:
                    return Result(Outcome.NOT_FOUND)
                reminder = self._fetch(cur, user_id, group_id)
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error:
            log.exception(f"Failed to edit reminder for {username} in {chat_id}")
            return Result(Outcome.STORAGE_FAILURE)
        log.info(f"Reminder {reminder.id} in {chat_id} edited to {time}")
        return Result(Outcome.OK, reminder)

    def cancel(self, chat_id: int, username: str) -> Result:
        try:
            conn = self.store.connect()
            try:
                cur = conn.cursor()
                owner = self._owner(cur, chat_id, username)
                if owner is None:
                    return Result(Outcome.NOT_REGISTERED)
                user_id, group_id = owner
                reminder = self._fetch(cur, user_id, group_id)
                cur.execute(
                    "DELETE FROM reminders WHERE user_id=? AND group_id=?",
                    (user_id, group_id),
                )
                deleted = cur.rowcount
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error:
            log.exception(f"Failed to cancel reminder for {username} in {chat_id}")
            return Result(Outcome.STORAGE_FAILURE)
        if not deleted:
            return Result(Outcome.NOT_FOUND)
        log.info(f"Canceled {deleted} reminder(s) for {username} in {chat_id}")
        return Result(Outcome.OK, reminder)

    def due_at(self, hhmm: str) -> List[Reminder]:
        conn = self.store.connect()
        try:
            cur = conn.cursor()
            cur.execute(SELECT_REMINDER + " WHERE r.time=? ORDER BY r.id", (hhmm,))
            return [Reminder(*row) for row in cur.fetchall()]
        finally:
            conn.close()
