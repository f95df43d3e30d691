"""Picks Steam IDs out of ticket channel messages and records low-confidence links."""
from __future__ import annotations

import logging

import discord
from discord.ext import commands

from bot.checks import is_staff_member
from bot.errors import RosterError
from bot.models import LinkSource
from bot.services.steam_id import extract_steam_ids

logger = logging.getLogger("roster.listeners.tickets")


def is_ticket_channel(channel, prefix: str) -> bool:
    name = getattr(channel, "name", None)
    return bool(prefix and name and name.lower().startswith(prefix.lower()))


def is_staff_author(author, role_groups) -> bool:
    """Staff paste players' IDs into tickets; those must not be linked to the staff member."""
    group = role_groups.highest_member_group(author)
    return bool(group and group.staff) or is_staff_member(author)


async def _handle_message(message: discord.Message, bot: commands.Bot) -> None:
    if message.author.bot or message.guild is None:
        return
    services = bot.services
    if not is_ticket_channel(message.channel, services.settings.ticket_channel_prefix):
        return
    steam_ids = extract_steam_ids(message.content)
    if not steam_ids:
        return
    if is_staff_author(message.author, services.role_groups):
        logger.debug("Ignoring Steam ID posted by staff member %s in a ticket", message.author.id)
        return
    if len(steam_ids) > 1:
        logger.info(
            "Ticket message from %s has %d Steam IDs, linking only %s", message.author.id, len(steam_ids), steam_ids[0]
        )
    try:
        result = await services.links.create_or_update_link(
            message.author.id,
            steam_ids[0],
            link_source=LinkSource.TICKET_DETECTED,
            metadata={"channel_id": str(message.channel.id), "message_id": str(message.id)},
        )
    except RosterError as e:
        logger.info("Ticket link for %s to %s skipped: %s", message.author.id, steam_ids[0], e)
        return
    if result.created:
        logger.info("Ticket link recorded: %s -> %s", message.author.id, steam_ids[0])


def setup(bot: commands.Bot) -> None:
    """Register the ticket message listener."""

    async def on_message(message: discord.Message) -> None:
        await _handle_message(message, bot)

    bot.add_listener(on_message, "on_message")
