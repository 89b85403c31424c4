# bot.py
import os
import re
import sys
import logging
from pathlib import Path
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands
from apscheduler.schedulers.asyncio import AsyncIOScheduler

import pytz
from dotenv import load_dotenv

from dispatch import EDITED_PREFIX, Dispatcher, compose_broadcast
from members import FALLBACK_GROUP_NAME, Registrar, normalize_handle
from reminders import ReminderRepository, parse_time_of_day
from store import Outcome, RecordStore, Result

# ---------- Token / Env ----------
env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(dotenv_path=env_path)
TOKEN = os.getenv("DISCORD_BOT_TOKEN", "").strip()
DB_PATH = os.getenv("DB_PATH", "remindbot.db")
REMINDER_TIMEZONE = os.getenv("REMINDER_TIMEZONE", "Asia/Ho_Chi_Minh")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ---------- Logging ----------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
    datefmt="[%Y-%m-%d %H:%M:%S]"
)
log = logging.getLogger(__name__)


def token_looks_valid(t: str) -> bool:
    return bool(t) and t.count(".") == 2 and not t.startswith("mfa.")


if not token_looks_valid(TOKEN):
    sys.exit(
        "DISCORD_BOT_TOKEN missing or malformed.\n"
        "• Put it in .env as: DISCORD_BOT_TOKEN=AAA.BBB.CCC (no quotes)\n"
        f"• Loaded .env from: {env_path}"
    )

try:
    pytz.timezone(REMINDER_TIMEZONE)
except pytz.UnknownTimeZoneError:
    sys.exit(f"REMINDER_TIMEZONE {REMINDER_TIMEZONE!r} is not a known IANA timezone.")

# ---------- Intents / Bot ----------
INTENTS = discord.Intents.default()
INTENTS.guilds = True
INTENTS.members = True
INTENTS.message_content = False

bot = commands.Bot(command_prefix="!", intents=INTENTS)
tree = bot.tree
scheduler = AsyncIOScheduler(timezone=pytz.timezone(REMINDER_TIMEZONE))


async def send_to_chat(chat_id: int, body: str):
    channel = bot.get_channel(chat_id) or await bot.fetch_channel(chat_id)
    if not isinstance(channel, discord.abc.Messageable):
        log.warning(f"Chat {chat_id} is a {type(channel).__name__}; cannot post there")
        return
    await channel.send(body)


store = RecordStore(DB_PATH)
registrar = Registrar(store)
reminders = ReminderRepository(store)
dispatcher = Dispatcher(reminders, registrar, send_to_chat, scheduler, REMINDER_TIMEZONE)

USERNAME_RE = re.compile(r"^@?[\w.]+$")

REPLIES = {
    Outcome.PERMISSION_DENIED: "You do not have permission to {action}.",
    Outcome.NOT_REGISTERED: "You are not registered. Please try again!",
    Outcome.NOT_FOUND: "You have no reminder in this chat.",
    Outcome.ALREADY_EXISTS: "You already have a reminder in this chat. Use /editremind to change it.",
    Outcome.STORAGE_FAILURE: "Something went wrong while saving. Please try again later.",
}


# ---------- Helpers ----------
def chat_name(interaction: discord.Interaction) -> str:
    channel = interaction.channel
    name = getattr(channel, "name", None)
    if not name and interaction.guild:
        name = interaction.guild.name
    return name or FALLBACK_GROUP_NAME


def observe(interaction: discord.Interaction):
    """Register the invoking user and chat before handling any command."""
    if interaction.channel_id is None or interaction.user.bot:
        return
    registrar.register(interaction.channel_id, chat_name(interaction), interaction.user.name)


async def holds_admin_role(interaction: discord.Interaction) -> bool:
    """Owner or administrator, checked against the live member rather than the cache."""
    guild = interaction.guild
    if guild is None:
        return False
    try:
        member = await guild.fetch_member(interaction.user.id)
    except discord.DiscordException as e:
        log.warning(f"Could not fetch member {interaction.user.id} in guild {guild.id}: {e}")
        return False
    return member.id == guild.owner_id or member.guild_permissions.administrator


async def reply(interaction: discord.Interaction, content: str, ephemeral: bool = False):
    await interaction.response.send_message(content, ephemeral=ephemeral)


async def reply_failure(interaction: discord.Interaction, result: Result, action: str = "manage reminders"):
    await reply(interaction, REPLIES[result.outcome].format(action=action), ephemeral=True)


async def check_admin(interaction: discord.Interaction, action: str) -> bool:
    if await holds_admin_role(interaction):
        return True
    await reply_failure(interaction, Result(Outcome.PERMISSION_DENIED), action)
    return False


async def parse_time_arg(interaction: discord.Interaction, raw: str) -> Optional[str]:
    hhmm = parse_time_of_day(raw)
    if hhmm is None:
        await reply(interaction, "❌ Time must be HH:MM in 24-hour format, e.g. 09:00.", ephemeral=True)
    return hhmm


# ---------- Commands ----------
@tree.command(name="start", description="Register yourself and show how to set reminders")
async def start(interaction: discord.Interaction):
    observe(interaction)
    await reply(interaction, "Hello! Use /remind HH:MM <text> to set a daily reminder.")


@tree.command(name="remind", description="Set a daily reminder that tags everyone registered here")
@app_commands.describe(time="Time of day, HH:MM (24-hour)", text="What to remind")
async def remind(interaction: discord.Interaction, time: str, text: str):
    observe(interaction)
    if not await check_admin(interaction, "set reminders"):
        return
    hhmm = await parse_time_arg(interaction, time)
    if hhmm is None:
        return

    result = reminders.create(interaction.channel_id, interaction.user.name, hhmm, text)
    if not result.ok:
        await reply_failure(interaction, result)
        return
    dispatcher.schedule_once(result.reminder)
    await reply(interaction, f'New reminder set at {hhmm} with content: "{text}".')


@tree.command(name="editremind", description="Change the time and text of your reminder here")
@app_commands.describe(time="Time of day, HH:MM (24-hour)", text="New reminder text")
async def editremind(interaction: discord.Interaction, time: str, text: str):
    observe(interaction)
    if not await check_admin(interaction, "edit reminders"):
        return
    hhmm = await parse_time_arg(interaction, time)
    if hhmm is None:
        return

    result = reminders.edit(interaction.channel_id, interaction.user.name, hhmm, text)
    if not result.ok:
        await reply_failure(interaction, result)
        return
    dispatcher.schedule_once(result.reminder, prefix=EDITED_PREFIX)
    await reply(interaction, f'Reminder edited to {hhmm} with content: "{text}".')


@tree.command(name="cancelremind", description="Cancel your reminder here")
async def cancelremind(interaction: discord.Interaction):
    observe(interaction)
    if not await check_admin(interaction, "cancel reminders"):
        return

    result = reminders.cancel(interaction.channel_id, interaction.user.name)
    if not result.ok:
        await reply_failure(interaction, result)
        return
    if result.reminder:
        dispatcher.unschedule(result.reminder.id)
    await reply(interaction, "Your reminder has been canceled.")


@tree.command(name="tagall", description="Mention everyone registered in this chat")
async def tagall(interaction: discord.Interaction):
    observe(interaction)
    mentions = compose_broadcast(registrar.handles(interaction.channel_id), "")
    await reply(interaction, mentions or "No members to tag.")


@tree.command(name="adduser", description="Add a member to this chat's tag list")
@app_commands.describe(name="Username, e.g. @alice")
async def adduser(interaction: discord.Interaction, name: str):
    observe(interaction)
    if not await check_admin(interaction, "add members"):
        return
    if not USERNAME_RE.match(name.strip()):
        await reply(interaction, "❌ Give a username like @alice.", ephemeral=True)
        return

    handle = normalize_handle(name)
    if registrar.add_user(interaction.channel_id, handle):
        await reply(interaction, f"Member {handle} added to the list.")
    else:
        await reply(interaction, f"Member {handle} already exists in the list.")


@tree.command(name="removeuser", description="Remove a member from this chat's tag list")
@app_commands.describe(name="Username, e.g. @alice")
async def removeuser(interaction: discord.Interaction, name: str):
    observe(interaction)
    if not await check_admin(interaction, "remove members"):
        return
    if not USERNAME_RE.match(name.strip()):
        await reply(interaction, "❌ Give a username like @alice.", ephemeral=True)
        return

    handle = normalize_handle(name)
    if registrar.remove_user(interaction.channel_id, handle):
        await reply(interaction, f"Member {handle} removed from the list.")
    else:
        await reply(interaction, f"Member {handle} is not in the list.")


@tree.error
async def on_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    log.error(f"Command {interaction.command.name if interaction.command else '?'} failed", exc_info=error)
    if not interaction.response.is_done():
        await reply_failure(interaction, Result(Outcome.STORAGE_FAILURE))


# ---------- Lifecycle ----------
@bot.event
async def on_message(message: discord.Message):
    if message.author.bot or message.guild is None:
        return
    name = getattr(message.channel, "name", None) or message.guild.name
    registrar.register(message.channel.id, name, message.author.name)


@bot.event
async def on_ready():
    store.init_schema()
    await tree.sync()
    if not scheduler.running:
        scheduler.start()
        dispatcher.start()
    log.info(f"Logged in as {bot.user} (ID: {bot.user.id})")
    log.info("Bot is ready.")


if __name__ == "__main__":
    bot.run(TOKEN)
