from __future__ import annotations

import logging

import discord
from discord.ext import commands

from core.bot import TicketBot
from services.discord_gateway import message_to_transcript

LOGGER = logging.getLogger(__name__)


class EventsCog(commands.Cog):
    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        for guild in self.bot.guilds:
            await self.bot.guild_repo.get_or_create(guild.id)

    @commands.Cog.listener()
    async def on_guild_join(self, guild: discord.Guild) -> None:
        await self.bot.guild_repo.get_or_create(guild.id)
        LOGGER.info("Registered settings for new guild %s", guild.id, extra={"guild_id": guild.id})

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        # Bot and webhook messages are part of the transcript.
        if not message.guild or not isinstance(message.channel, discord.TextChannel):
            return
        stored = await self.bot.ticket_service.record_message(message.channel.id, message_to_transcript(message))
        if stored:
            LOGGER.debug("Captured message %s in ticket channel %s", message.id, message.channel.id)


async def setup(bot: TicketBot) -> None:
    await bot.add_cog(EventsCog(bot))
