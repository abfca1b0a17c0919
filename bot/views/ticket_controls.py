from __future__ import annotations

from typing import TYPE_CHECKING

import discord

from core.errors import NotStaffError, ValidationError, handle_view_error
from utils.decorators import member_is_staff, require_staff_member
from utils.embeds import close_prompt_embed, success_embed, ticket_claimed_embed, ticket_closed_embed

if TYPE_CHECKING:
    from core.bot import TicketBot
    from services.ticket_service import CloseRequest


def _member(interaction: discord.Interaction) -> discord.Member:
    if not interaction.guild or not isinstance(interaction.user, discord.Member) or interaction.channel_id is None:
        raise ValidationError("Guild context is required.")
    return interaction.user


class CloseConfirmView(discord.ui.View):
    def __init__(self, bot: TicketBot, request: CloseRequest) -> None:
        super().__init__(timeout=120)
        self.bot = bot
        self.request = request

    async def _check_actor(self, member: discord.Member) -> None:
        if member.id == self.request.requested_by_id:
            return
        await require_staff_member(self.bot, member)

    @discord.ui.button(label="Confirm", style=discord.ButtonStyle.danger, emoji="🔒")
    async def confirm_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        member = _member(interaction)
        await self._check_actor(member)
        await interaction.response.defer(thinking=True)
        result = await self.bot.ticket_service.confirm_close(self.request.channel_id, member.id)
        self.stop()
        embed = ticket_closed_embed(result.ticket, result.transcript_url, result.delete_after)
        await interaction.followup.send(embed=embed)
        await self.bot.post_ticket_log(result.ticket.guild_id, embed)

    @discord.ui.button(label="Cancel", style=discord.ButtonStyle.secondary, emoji="✖️")
    async def cancel_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        member = _member(interaction)
        await self._check_actor(member)
        await self.bot.ticket_service.cancel_close(self.request.channel_id)
        self.stop()
        await interaction.response.edit_message(embed=success_embed("Close cancelled."), view=None)

    async def on_error(
        self, interaction: discord.Interaction, error: Exception, item: discord.ui.Item[discord.ui.View]
    ) -> None:
        await handle_view_error(interaction, error)


class TicketControlsView(discord.ui.View):
    """Buttons posted in every ticket channel; registered once as a persistent view."""

    def __init__(self, bot: TicketBot) -> None:
        super().__init__(timeout=None)
        self.bot = bot

    @discord.ui.button(label="Claim", style=discord.ButtonStyle.primary, emoji="🛠️", custom_id="ticket:claim")
    async def claim_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        member = _member(interaction)
        await require_staff_member(self.bot, member)
        ticket = await self.bot.ticket_service.claim(interaction.channel_id, member.id)
        await interaction.response.send_message(embed=ticket_claimed_embed(ticket))

    @discord.ui.button(label="Close", style=discord.ButtonStyle.danger, emoji="🔒", custom_id="ticket:close")
    async def close_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        member = _member(interaction)
        ticket = await self.bot.ticket_service.get_ticket(interaction.channel_id)
        if member.id != ticket.user_id and not await member_is_staff(self.bot, member):
            raise NotStaffError()
        request = await self.bot.ticket_service.request_close(interaction.channel_id, member.id)
        await interaction.response.send_message(
            embed=close_prompt_embed(ticket),
            view=CloseConfirmView(self.bot, request),
        )

    @discord.ui.button(
        label="Transcript", style=discord.ButtonStyle.secondary, emoji="📄", custom_id="ticket:transcript"
    )
    async def transcript_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        member = _member(interaction)
        await require_staff_member(self.bot, member)
        await interaction.response.defer(ephemeral=True, thinking=True)
        ref = await self.bot.ticket_service.export_transcript(interaction.channel_id)
        url = self.bot.transcript_service.url_for(ref.transcript_id)
        await interaction.followup.send(
            embed=success_embed(f"Transcript saved ({ref.message_count} messages): {url}"),
            ephemeral=True,
        )

    async def on_error(
        self, interaction: discord.Interaction, error: Exception, item: discord.ui.Item[discord.ui.View]
    ) -> None:
        await handle_view_error(interaction, error)
