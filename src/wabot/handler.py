"""Default handler module.

Bound to a connection by :class:`wabot.event_router.EventRouter`; every
export takes ``(conn, payload)``. The router can reload this file at
runtime, so module state is limited to the context passed to ``setup``.
"""

from __future__ import annotations

from typing import Any

from wabot.chat_store import remember_chat
from wabot.config import BotConfig
from wabot.event_router import BotContext
from wabot.logger import logger
from wabot.plugins.registry import PluginContext
from wabot.types import (
    Connection,
    IncomingMessage,
    MessagesUpsert,
    MessageUpdate,
    ParticipantsUpdate,
)
from wabot.utils import jid_user

_context: BotContext | None = None

DENIED = {
    "owner": "This command can only be used by the bot owner.",
    "group": "This command can only be used in groups.",
    "private": "This command can only be used in private chat.",
}


def setup(context: BotContext) -> None:
    global _context
    _context = context


def _is_owner(conn: Connection, ctx: BotContext, sender: str) -> bool:
    number = jid_user(sender)
    if number in ctx.settings.bot.owners:
        return True
    return conn.user is not None and jid_user(conn.user.jid) == number


def parse_command(text: str, ctx: BotContext) -> tuple[str, str, list[str]] | None:
    """Split ``<prefix><command> args...``; None when *text* is not a command."""
    match = ctx.settings.prefix_pattern.match(text)
    if match is None:
        return None
    parts = text[match.end() :].strip().split()
    if not parts:
        return None
    return match.group(0), parts[0].lower(), parts[1:]


async def handler(conn: Connection, upsert: MessagesUpsert) -> None:
    ctx = _context
    if ctx is None:
        logger.warning("Handler called before setup(), dropping messages")
        return
    for message in upsert.messages:
        try:
            await _handle_message(conn, ctx, message)
        except Exception:
            logger.exception("Message handling failed", chat=message.chat, id=message.id)


async def _handle_message(conn: Connection, ctx: BotContext, message: IncomingMessage) -> None:
    remember_chat(
        conn.chats,
        message.chat,
        name=None if message.is_group else (message.push_name or None),
        last_message_at=message.timestamp or None,
    )
    if not message.text:
        return
    parsed = parse_command(message.text, ctx)
    if parsed is None:
        return
    prefix, command, args = parsed

    record = ctx.registry.find_command(command)
    if record is None:
        return
    plugin = record.plugin

    is_owner = _is_owner(conn, ctx, message.sender)
    denial = None
    if plugin.owner_only and not is_owner:
        denial = DENIED["owner"]
    elif plugin.group_only and not message.is_group:
        denial = DENIED["group"]
    elif plugin.private_only and message.is_group:
        denial = DENIED["private"]
    if denial is not None:
        await conn.send_message(message.chat, {"text": denial}, {"quoted": message})
        return

    plugin_ctx = PluginContext(
        conn=conn,
        message=message,
        command=command,
        args=args,
        prefix=prefix,
        is_owner=is_owner,
        facade=ctx.facade,
        registry=ctx.registry,
        settings=ctx.settings,
    )
    logger.info("Command", command=command, plugin=record.identifier, chat=message.chat)
    try:
        assert plugin.handle is not None
        await plugin.handle(plugin_ctx)
    except Exception as exc:
        logger.exception("Plugin failed", plugin=record.identifier, command=command)
        try:
            await conn.send_message(
                message.chat,
                {"text": f"*{record.identifier}* failed: {exc}"},
                {"quoted": message},
            )
        except Exception as send_exc:
            logger.warning("Could not report plugin failure", err=str(send_exc))


async def participants_update(conn: Connection, update: ParticipantsUpdate) -> None:
    ctx = _context
    if ctx is None or not ctx.settings.bot.announce_participants:
        return
    bot = ctx.settings.bot
    templates = {
        "add": bot.welcome,
        "remove": bot.bye,
        "promote": bot.promote,
        "demote": bot.demote,
    }
    template = templates.get(update.action)
    if not template:
        return
    group = conn.chats.get(update.id, {})
    subject = group.get("subject") or jid_user(update.id)
    for participant in update.participants:
        text = template.replace("@user", "@" + jid_user(participant)).replace("@group", subject)
        try:
            await conn.send_message(update.id, {"text": text, "mentions": [participant]})
        except Exception as exc:
            logger.warning(
                "Participant announcement failed",
                group=update.id,
                action=update.action,
                err=str(exc),
            )


def group_settings_text(update: dict[str, Any], bot: BotConfig) -> str:
    """Announcement for the group settings changed in *update*; empty if none apply."""
    lines: list[str] = []
    if update.get("desc"):
        lines.append(bot.group_desc.replace("@desc", update["desc"]))
    if update.get("subject"):
        lines.append(bot.group_subject.replace("@group", update["subject"]))
    if update.get("icon"):
        lines.append(bot.group_icon)
    if update.get("revoke"):
        lines.append(bot.group_revoke.replace("@revoke", update["revoke"]))
    if update.get("announce") is not None:
        lines.append(bot.group_announce_on if update["announce"] else bot.group_announce_off)
    if update.get("restrict") is not None:
        lines.append(bot.group_restrict_on if update["restrict"] else bot.group_restrict_off)
    return "\n".join(line for line in lines if line)


async def groups_update(conn: Connection, updates: list[dict[str, Any]]) -> None:
    ctx = _context
    for update in updates:
        jid = update.get("id")
        if not jid:
            continue
        remember_chat(
            conn.chats,
            jid,
            subject=update.get("subject"),
            desc=update.get("desc"),
            announce=update.get("announce"),
            restrict=update.get("restrict"),
        )
        logger.info("Group updated", group=jid, fields=sorted(k for k in update if k != "id"))

        if ctx is None or not ctx.settings.bot.announce_group_settings:
            continue
        text = group_settings_text(update, ctx.settings.bot)
        if not text:
            continue
        try:
            await conn.send_message(jid, {"text": text})
        except Exception as exc:
            logger.warning("Group settings announcement failed", group=jid, err=str(exc))


async def delete_update(conn: Connection, payload: dict[str, Any]) -> None:
    logger.info(
        "Message deleted",
        chat=payload.get("chat"),
        id=payload.get("id"),
        sender=payload.get("sender"),
    )


async def presence_update(conn: Connection, payload: dict[str, Any]) -> None:
    jid = payload.get("id")
    if not jid:
        return
    presences = payload.get("presences") or {}
    remember_chat(conn.chats, jid, presences=presences)
    logger.debug("Presence updated", chat=jid, participants=len(presences))


async def poll_update(conn: Connection, updates: list[MessageUpdate]) -> None:
    for update in updates:
        votes = update.update.get("poll_updates")
        if votes:
            logger.info("Poll votes received", chat=update.chat, id=update.id, votes=len(votes))
        elif update.status:
            logger.debug("Message status", chat=update.chat, id=update.id, status=update.status)
