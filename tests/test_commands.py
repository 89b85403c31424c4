import asyncio
import importlib
import sqlite3
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from discord import app_commands

from tests.fakes import FakeGuild, FakeScheduler, make_interaction

OWNER = 1
ADMIN = 2
MEMBER = 3


def reload_bot(monkeypatch, tmp_path):
    monkeypatch.setenv("DISCORD_BOT_TOKEN", "aaa.bbb.ccc")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "bot.sqlite"))
    monkeypatch.setenv("REMINDER_TIMEZONE", "Asia/Ho_Chi_Minh")
    sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
    sys.modules.pop("bot", None)
    return importlib.import_module("bot")


@pytest.fixture
def app(monkeypatch, tmp_path):
    app = reload_bot(monkeypatch, tmp_path)
    app.store.init_schema()
    monkeypatch.setattr(app.dispatcher, "scheduler", FakeScheduler())
    return app


@pytest.fixture
def guild():
    return FakeGuild(owner_id=OWNER, admins={ADMIN})


def run(command, interaction, **kwargs):
    asyncio.run(command.callback(interaction, **kwargs))
    return interaction.response.messages


def reminder_rows(app):
    conn = app.store.connect()
    try:
        return conn.execute("SELECT time, text FROM reminders").fetchall()
    finally:
        conn.close()


def test_invalid_token_exits(monkeypatch, tmp_path):
    monkeypatch.setenv("DISCORD_BOT_TOKEN", "not-a-token")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "bot.sqlite"))
    sys.modules.pop("bot", None)
    with pytest.raises(SystemExit):
        importlib.import_module("bot")


def test_unknown_timezone_exits(monkeypatch, tmp_path):
    monkeypatch.setenv("DISCORD_BOT_TOKEN", "aaa.bbb.ccc")
    monkeypatch.setenv("REMINDER_TIMEZONE", "Mars/Olympus")
    sys.modules.pop("bot", None)
    with pytest.raises(SystemExit):
        importlib.import_module("bot")


def test_start_registers_invoker(app, guild):
    messages = run(app.start, make_interaction(MEMBER, "carol", guild))
    assert "Use /remind HH:MM" in messages[0][0]
    assert app.registrar.handles(100) == ["@carol"]


def test_remind_by_owner_creates_and_schedules(app, guild):
    messages = run(app.remind, make_interaction(OWNER, "alice", guild), time="09:00", text="Standup")

    assert messages == [('New reminder set at 09:00 with content: "Standup".', False)]
    assert reminder_rows(app) == [("09:00", "Standup")]
    assert "reminder:1:once" in app.dispatcher.scheduler.jobs


def test_remind_by_admin_is_allowed(app, guild):
    run(app.remind, make_interaction(ADMIN, "dave", guild), time="18:30", text="Wrap up")
    assert reminder_rows(app) == [("18:30", "Wrap up")]


def test_remind_by_non_admin_is_denied(app, guild):
    messages = run(app.remind, make_interaction(MEMBER, "carol", guild), time="09:00", text="Standup")

    assert messages == [("You do not have permission to set reminders.", True)]
    assert reminder_rows(app) == []
    assert app.dispatcher.scheduler.jobs == {}


def test_remind_rejects_malformed_time(app, guild):
    messages = run(app.remind, make_interaction(OWNER, "alice", guild), time="9am", text="Standup")
    assert messages[0][0].startswith("❌ Time must be HH:MM")
    assert reminder_rows(app) == []


def test_second_remind_points_to_edit(app, guild):
    run(app.remind, make_interaction(OWNER, "alice", guild), time="09:00", text="Standup")
    messages = run(app.remind, make_interaction(OWNER, "alice", guild), time="10:00", text="Retro")

    assert "Use /editremind" in messages[0][0]
    assert reminder_rows(app) == [("09:00", "Standup")]


def test_editremind_updates_and_reschedules(app, guild):
    run(app.remind, make_interaction(OWNER, "alice", guild), time="09:00", text="Standup")
    messages = run(app.editremind, make_interaction(OWNER, "alice", guild), time="10:15", text="Planning")

    assert messages == [('Reminder edited to 10:15 with content: "Planning".', False)]
    assert reminder_rows(app) == [("10:15", "Planning")]
    job = app.dispatcher.scheduler.jobs["reminder:1:once"]
    assert job.args[2] == "Edited reminder: Planning"


def test_editremind_without_reminder_changes_nothing(app, guild):
    messages = run(app.editremind, make_interaction(OWNER, "alice", guild), time="10:15", text="Planning")

    assert messages == [("You have no reminder in this chat.", True)]
    assert reminder_rows(app) == []
    assert app.dispatcher.scheduler.jobs == {}


def test_cancelremind_deletes_and_unschedules(app, guild):
    run(app.remind, make_interaction(OWNER, "alice", guild), time="09:00", text="Standup")
    messages = run(app.cancelremind, make_interaction(OWNER, "alice", guild))

    assert messages == [("Your reminder has been canceled.", False)]
    assert reminder_rows(app) == []
    assert app.dispatcher.scheduler.jobs == {}


def test_cancelremind_by_non_admin_is_denied(app, guild):
    run(app.remind, make_interaction(OWNER, "alice", guild), time="09:00", text="Standup")
    messages = run(app.cancelremind, make_interaction(MEMBER, "carol", guild))

    assert messages == [("You do not have permission to cancel reminders.", True)]
    assert reminder_rows(app) == [("09:00", "Standup")]


def test_tagall_lists_registered_members(app, guild):
    run(app.start, make_interaction(MEMBER, "carol", guild))
    run(app.adduser, make_interaction(OWNER, "alice", guild), name="@bob")

    messages = run(app.tagall, make_interaction(MEMBER, "carol", guild))

    assert messages == [("@carol @alice @bob", False)]


def test_tagall_in_empty_chat(app, guild, monkeypatch):
    monkeypatch.setattr(app, "observe", lambda interaction: None)
    messages = run(app.tagall, make_interaction(MEMBER, "carol", guild))
    assert messages == [("No members to tag.", False)]


def test_adduser_reports_duplicates(app, guild):
    run(app.adduser, make_interaction(OWNER, "alice", guild), name="@bob")
    messages = run(app.adduser, make_interaction(OWNER, "alice", guild), name="bob")
    assert messages == [("Member @bob already exists in the list.", False)]


def test_adduser_by_non_admin_is_denied(app, guild):
    messages = run(app.adduser, make_interaction(MEMBER, "carol", guild), name="@bob")
    assert messages == [("You do not have permission to add members.", True)]
    assert "@bob" not in app.registrar.handles(100)


def test_removeuser(app, guild):
    run(app.adduser, make_interaction(OWNER, "alice", guild), name="@bob")
    messages = run(app.removeuser, make_interaction(OWNER, "alice", guild), name="@bob")
    assert messages == [("Member @bob removed from the list.", False)]

    messages = run(app.removeuser, make_interaction(OWNER, "alice", guild), name="@bob")
    assert messages == [("Member @bob is not in the list.", False)]


def test_adduser_rejects_bad_names(app, guild):
    messages = run(app.adduser, make_interaction(OWNER, "alice", guild), name="bob smith")
    assert messages[0][0] == "❌ Give a username like @alice."


def make_message(name="erin", bot_author=False, guild=True):
    return SimpleNamespace(
        author=SimpleNamespace(name=name, bot=bot_author),
        guild=SimpleNamespace(name="Team") if guild else None,
        channel=SimpleNamespace(id=100, name="general"),
    )


def test_plain_message_registers_author(app):
    asyncio.run(app.on_message(make_message()))
    assert app.registrar.handles(100) == ["@erin"]


def test_plain_message_from_bot_or_dm_is_ignored(app):
    asyncio.run(app.on_message(make_message(name="helper", bot_author=True)))
    asyncio.run(app.on_message(make_message(name="frank", guild=False)))
    assert app.registrar.handles(100) == []


def test_storage_error_in_command_replies_with_failure(app, guild, monkeypatch):
    def locked(chat_id, username):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(app.registrar, "add_user", locked)
    interaction = make_interaction(OWNER, "alice", guild)
    interaction.command = app.adduser

    with pytest.raises(sqlite3.OperationalError) as excinfo:
        asyncio.run(app.adduser.callback(interaction, name="@bob"))
    error = app_commands.CommandInvokeError(app.adduser, excinfo.value)
    asyncio.run(app.on_command_error(interaction, error))

    assert interaction.response.messages == [
        ("Something went wrong while saving. Please try again later.", True)
    ]


def test_send_to_chat_skips_channels_without_send(app, monkeypatch, caplog):
    monkeypatch.setattr(app.bot, "get_channel", lambda chat_id: SimpleNamespace(id=chat_id))
    asyncio.run(app.send_to_chat(100, "@alice Standup"))
    assert "cannot post there" in caplog.text
