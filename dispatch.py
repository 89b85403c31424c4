import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional, Set, Tuple

import discord
import pytz
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from members import Registrar, normalize_handle
from reminders import ReminderRepository
from store import Reminder

log = logging.getLogger(__name__)

SWEEP_JOB_ID = "reminders:sweep"
EDITED_PREFIX = "Edited reminder: "

Sender = Callable[[int, str], Awaitable[None]]


def compose_broadcast(handles: Iterable[str], text: str) -> str:
    mentions = []
    for h in handles:
        h = normalize_handle(h)
        if h not in mentions:
            mentions.append(h)
    return " ".join(part for part in (" ".join(mentions), text) if part)


def next_occurrence(hhmm: str, now: datetime) -> datetime:
    """Next instant strictly after ``now`` whose wall-clock time in now's zone is hhmm."""
    hour, minute = (int(x) for x in hhmm.split(":"))
    tz = now.tzinfo
    day = now.date()
    for _ in range(2):
        naive = datetime(day.year, day.month, day.day, hour, minute)
        candidate = tz.localize(naive) if hasattr(tz, "localize") else naive.replace(tzinfo=tz)
        if candidate > now:
            return candidate
        day += timedelta(days=1)
    return candidate


def one_shot_job_id(reminder_id: int) -> str:
    return f"reminder:{reminder_id}:once"


class Dispatcher:
    """Sends reminders when their time of day comes round.

    Two triggers feed ``deliver``: the per-minute sweep over the reminders table,
    which survives restarts, and an in-memory one-shot registered when a reminder
    is created or edited. Both go through an occurrence ledger so a reminder is
    sent once per (day, time) even when both fire.
    """

    def __init__(
        self,
        reminders: ReminderRepository,
        members: Registrar,
        send: Sender,
        scheduler,
        tz_name: str,
    ):
        self.reminders = reminders
        self.members = members
        self.send = send
        self.scheduler = scheduler
        self.tz = pytz.timezone(tz_name)
        self._delivered: Set[Tuple[int, str, str]] = set()

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def start(self):
        self.scheduler.add_job(
            self.sweep,
            trigger=CronTrigger(minute="*", timezone=self.tz),
            id=SWEEP_JOB_ID,
            replace_existing=True,
        )
        log.info(f"Reminder sweep scheduled every minute ({self.tz.zone})")

    def _claim(self, reminder_id: int, now: datetime, hhmm: str) -> bool:
        """Record an occurrence; False if this reminder already went out at hhmm today."""
        today = now.date().isoformat()
        self._delivered = {k for k in self._delivered if k[1] == today}
        key = (reminder_id, today, hhmm)
        if key in self._delivered:
            return False
        self._delivered.add(key)
        return True

    async def sweep(self, now: Optional[datetime] = None):
        now = now or self.now()
        tick = now.strftime("%H:%M")
        try:
            due = self.reminders.due_at(tick)
        except sqlite3.Error:
            log.exception(f"Reminder sweep at {tick} failed to query reminders")
            return
        for reminder in due:
            if not self._claim(reminder.id, now, tick):
                log.info(f"Reminder {reminder.id} already delivered at {tick}")
                continue
            log.info(f"Reminder {reminder.id} due at {tick} for chat {reminder.chat_id}")
            try:
                await self.deliver(reminder.chat_id, reminder.text)
            except Exception:
                # one broken chat must not starve the rest of this tick
                log.exception(f"Delivery of reminder {reminder.id} to chat {reminder.chat_id} failed")

    async def fire_once(
        self, reminder_id: int, chat_id: int, text: str, hhmm: str, now: Optional[datetime] = None
    ):
        now = now or self.now()
        if not self._claim(reminder_id, now, hhmm):
            log.info(f"One-shot for reminder {reminder_id} skipped, sweep already delivered it")
            return
        await self.deliver(chat_id, text)

    def schedule_once(self, reminder: Reminder, prefix: str = "", now: Optional[datetime] = None) -> datetime:
        run_at = next_occurrence(reminder.time, now or self.now())
        self.scheduler.add_job(
            self.fire_once,
            trigger=DateTrigger(run_date=run_at),
            args=[reminder.id, reminder.chat_id, f"{prefix}{reminder.text}", reminder.time],
            id=one_shot_job_id(reminder.id),
            replace_existing=True,
        )
        log.info(f"One-shot for reminder {reminder.id} scheduled at {run_at.isoformat()}")
        return run_at

    def unschedule(self, reminder_id: int):
        try:
            self.scheduler.remove_job(one_shot_job_id(reminder_id))
        except JobLookupError:
            pass

    async def deliver(self, chat_id: int, text: str):
        try:
            handles = self.members.handles(chat_id)
        except sqlite3.Error:
            log.exception(f"Could not load members of chat {chat_id}")
            return
        body = compose_broadcast(handles, text)
        if not body:
            return
        try:
            await self.send(chat_id, body)
        except discord.DiscordException:
            log.exception(f"Failed to deliver reminder to chat {chat_id}")
