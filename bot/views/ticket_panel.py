from __future__ import annotations

from typing import TYPE_CHECKING

import discord

from core.errors import AlreadyOpenError, ValidationError, handle_view_error
from utils.embeds import error_embed, success_embed, ticket_opened_embed
from views.ticket_controls import TicketControlsView

if TYPE_CHECKING:
    from core.bot import TicketBot


class TicketPanelView(discord.ui.View):
    """The create-ticket panel posted by ``ticket setup``."""

    def __init__(self, bot: TicketBot) -> None:
        super().__init__(timeout=None)
        self.bot = bot

    @discord.ui.button(
        label="Create Ticket",
        style=discord.ButtonStyle.primary,
        emoji="🎫",
        custom_id="ticket:create",
    )
    async def create_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        if not interaction.guild or not isinstance(interaction.user, discord.Member):
            raise ValidationError("Guild context is required.")
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            result = await self.bot.ticket_service.request_create(
                interaction.guild.id, interaction.user.id, interaction.user.name
            )
        except AlreadyOpenError as exc:
            where = f" <#{exc.channel_id}>" if exc.channel_id else ""
            await interaction.followup.send(embed=error_embed(f"{exc.user_message}{where}"), ephemeral=True)
            return

        channel = interaction.guild.get_channel(result.channel.channel_id)
        if isinstance(channel, discord.TextChannel):
            await channel.send(
                content=interaction.user.mention,
                embed=ticket_opened_embed(result.ticket),
                view=TicketControlsView(self.bot),
            )
        await interaction.followup.send(
            embed=success_embed(f"Your ticket has been created: <#{result.channel.channel_id}>"),
            ephemeral=True,
        )

    async def on_error(
        self, interaction: discord.Interaction, error: Exception, item: discord.ui.Item[discord.ui.View]
    ) -> None:
        await handle_view_error(interaction, error)
