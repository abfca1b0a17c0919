from __future__ import annotations

import logging

import discord
from discord.ext import commands, tasks

from core.bot import TicketBot
from core.errors import NotStaffError, ValidationError
from utils.constants import TICKET_STATUSES
from utils.decorators import guild_admin_only, member_is_staff, staff_only
from utils.embeds import (
    bot_status_embed,
    close_prompt_embed,
    make_embed,
    panel_embed,
    stats_embed,
    success_embed,
    ticket_claimed_embed,
    ticket_closed_embed,
    ticket_opened_embed,
    ticket_status_embed,
)
from views.ticket_controls import CloseConfirmView, TicketControlsView
from views.ticket_panel import TicketPanelView

LOGGER = logging.getLogger(__name__)

MAX_PREFIX_LENGTH = 5


def _guild_member(ctx: commands.Context[TicketBot]) -> tuple[discord.Guild, discord.Member]:
    if not ctx.guild or not isinstance(ctx.author, discord.Member):
        raise ValidationError("Guild context is required.")
    return ctx.guild, ctx.author


class TicketsCog(commands.Cog):
    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        self.bot.add_view(TicketPanelView(self.bot))
        self.bot.add_view(TicketControlsView(self.bot))
        self.retention_sweep.change_interval(minutes=self.bot.config.tickets.retention_sweep_minutes)
        self.retention_sweep.start()

    async def cog_unload(self) -> None:
        self.retention_sweep.cancel()

    @commands.hybrid_group(name="ticket", with_app_command=True, description="Ticket command group.")
    async def ticket(self, ctx: commands.Context[TicketBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply(
                embed=make_embed(
                    "Ticket Commands",
                    "`ticket setup <channel>` post the ticket panel\n"
                    "`ticket create` open a ticket\n"
                    "`ticket claim` claim the current ticket\n"
                    "`ticket close` / `ticket force-close` close the current ticket\n"
                    "`ticket transcript` save the transcript now\n"
                    "`ticket stats` / `ticket status` / `ticket info` reporting\n"
                    "`ticket add-staff <role>` / `ticket user-staff <member>` manage staff\n"
                    "`ticket log-channel <channel>` set the close log channel\n"
                    "`ticket prefix <prefix>` change the command prefix",
                ),
                mention_author=False,
            )

    @ticket.command(name="setup", description="Post the ticket panel in a channel.")
    @guild_admin_only()
    async def ticket_setup(self, ctx: commands.Context[TicketBot], channel: discord.TextChannel) -> None:
        guild, _ = _guild_member(ctx)
        await channel.send(embed=panel_embed(), view=TicketPanelView(self.bot))
        await self.bot.guild_repo.upsert(guild.id, {"setup_channel_id": channel.id})
        await ctx.reply(embed=success_embed(f"Ticket panel posted in {channel.mention}."), mention_author=False)

    @ticket.command(name="create", description="Open a ticket without using the panel.")
    async def ticket_create(self, ctx: commands.Context[TicketBot], *, subject: str | None = None) -> None:
        guild, member = _guild_member(ctx)
        result = await self.bot.ticket_service.request_create(guild.id, member.id, member.name, subject=subject)
        channel = guild.get_channel(result.channel.channel_id)
        if isinstance(channel, discord.TextChannel):
            await channel.send(
                content=member.mention,
                embed=ticket_opened_embed(result.ticket),
                view=TicketControlsView(self.bot),
            )
        await ctx.reply(
            embed=success_embed(f"Ticket created: <#{result.channel.channel_id}>"),
            mention_author=False,
            ephemeral=True,
        )

    @ticket.command(name="claim", description="Claim the current ticket.")
    @staff_only()
    async def ticket_claim(self, ctx: commands.Context[TicketBot]) -> None:
        _, member = _guild_member(ctx)
        ticket = await self.bot.ticket_service.claim(ctx.channel.id, member.id)
        await ctx.reply(embed=ticket_claimed_embed(ticket), mention_author=False)

    @ticket.command(name="close", description="Request to close the current ticket.")
    async def ticket_close(self, ctx: commands.Context[TicketBot]) -> None:
        _, member = _guild_member(ctx)
        ticket = await self.bot.ticket_service.get_ticket(ctx.channel.id)
        if member.id != ticket.user_id and not await member_is_staff(self.bot, member):
            raise NotStaffError()
        request = await self.bot.ticket_service.request_close(ctx.channel.id, member.id)
        await ctx.reply(
            embed=close_prompt_embed(ticket),
            view=CloseConfirmView(self.bot, request),
            mention_author=False,
        )

    @ticket.command(name="force-close", description="Close the current ticket immediately.")
    @staff_only()
    async def ticket_force_close(self, ctx: commands.Context[TicketBot]) -> None:
        _, member = _guild_member(ctx)
        await ctx.defer()
        result = await self.bot.ticket_service.force_close(ctx.channel.id, member.id)
        embed = ticket_closed_embed(result.ticket, result.transcript_url, result.delete_after)
        await ctx.reply(embed=embed, mention_author=False)
        await self.bot.post_ticket_log(result.ticket.guild_id, embed)

    @ticket.command(name="transcript", description="Save a transcript of the current ticket.")
    @staff_only()
    async def ticket_transcript(self, ctx: commands.Context[TicketBot]) -> None:
        await ctx.defer(ephemeral=True)
        ref = await self.bot.ticket_service.export_transcript(ctx.channel.id)
        url = self.bot.transcript_service.url_for(ref.transcript_id)
        await ctx.reply(
            embed=success_embed(f"Transcript saved ({ref.message_count} messages): {url}"),
            mention_author=False,
            ephemeral=True,
        )

    @ticket.command(name="stats", description="Show ticket statistics.")
    @staff_only()
    async def ticket_stats(
        self,
        ctx: commands.Context[TicketBot],
        channel: discord.TextChannel | None = None,
        days: int = 7,
    ) -> None:
        guild, _ = _guild_member(ctx)
        if days < 1 or days > 90:
            raise ValidationError("Days must be between 1 and 90.")
        stats = await self.bot.stats_service.snapshot(guild.id)
        history = await self.bot.stats_service.history(guild.id, days)
        embed = stats_embed(stats, history)
        if channel is None or channel.id == ctx.channel.id:
            await ctx.reply(embed=embed, mention_author=False)
            return
        await channel.send(embed=embed)
        await ctx.reply(embed=success_embed(f"Statistics sent to {channel.mention}."), mention_author=False)

    @ticket.command(name="status", description="Show bot status.")
    async def ticket_status(self, ctx: commands.Context[TicketBot]) -> None:
        guild, _ = _guild_member(ctx)
        stats = await self.bot.stats_service.snapshot(guild.id)
        await ctx.reply(
            embed=bot_status_embed(self.bot.latency * 1000, len(self.bot.guilds), stats),
            mention_author=False,
        )

    @ticket.command(name="info", description="Show the current ticket.")
    async def ticket_info(self, ctx: commands.Context[TicketBot]) -> None:
        ticket = await self.bot.ticket_service.get_ticket(ctx.channel.id)
        await ctx.reply(embed=ticket_status_embed(ticket), mention_author=False)

    @ticket.command(name="list", description="List tickets in this server.")
    @staff_only()
    async def ticket_list(self, ctx: commands.Context[TicketBot], status: str | None = None) -> None:
        guild, _ = _guild_member(ctx)
        statuses = [status.lower()] if status else ["open", "claimed"]
        if any(item not in TICKET_STATUSES for item in statuses):
            raise ValidationError(f"Status must be one of: {', '.join(TICKET_STATUSES)}")
        tickets = await self.bot.ticket_service.list_tickets(guild.id, statuses, limit=25)
        if not tickets:
            await ctx.reply(embed=success_embed("No matching tickets found."), mention_author=False)
            return
        lines = [
            f"`{ticket.display_id}` <#{ticket.channel_id}> | {ticket.status} | {ticket.priority} | <@{ticket.user_id}>"
            for ticket in tickets
        ]
        await ctx.reply(embed=make_embed("Tickets", "\n".join(lines)), mention_author=False)

    @ticket.command(name="add-staff", description="Grant a role staff access to tickets.")
    @guild_admin_only()
    async def ticket_add_staff(self, ctx: commands.Context[TicketBot], role: discord.Role) -> None:
        guild, _ = _guild_member(ctx)
        await self.bot.staff_service.add_staff_role(guild.id, role.id)
        await self.bot.audit_service.emit("staff_role_add", {"guild_id": guild.id, "role_id": role.id})
        await ctx.reply(embed=success_embed(f"{role.mention} is now a staff role."), mention_author=False)

    @ticket.command(name="user-staff", description="Grant a member staff access to tickets.")
    @guild_admin_only()
    async def ticket_user_staff(self, ctx: commands.Context[TicketBot], member: discord.Member) -> None:
        guild, _ = _guild_member(ctx)
        await self.bot.staff_service.add_staff_user(guild.id, member.id)
        await self.bot.audit_service.emit("staff_user_add", {"guild_id": guild.id, "user_id": member.id})
        await ctx.reply(embed=success_embed(f"{member.mention} is now a staff member."), mention_author=False)

    @ticket.command(name="staff", description="List staff roles and members.")
    @staff_only()
    async def ticket_staff(self, ctx: commands.Context[TicketBot]) -> None:
        guild, _ = _guild_member(ctx)
        listing = await self.bot.staff_service.list_staff(guild.id)
        roles = ", ".join(f"<@&{role_id}>" for role_id in listing.role_ids) or "None"
        users = ", ".join(f"<@{user_id}>" for user_id in listing.user_ids) or "None"
        embed = make_embed("Ticket Staff", "Principals with staff access to tickets.")
        embed.add_field(name="Roles", value=roles[:1024], inline=False)
        embed.add_field(name="Members", value=users[:1024], inline=False)
        await ctx.reply(embed=embed, mention_author=False)

    @ticket.command(name="log-channel", description="Set the channel that receives closed ticket summaries.")
    @guild_admin_only()
    async def ticket_log_channel(self, ctx: commands.Context[TicketBot], channel: discord.TextChannel) -> None:
        guild, _ = _guild_member(ctx)
        await self.bot.guild_repo.upsert(guild.id, {"log_channel_id": channel.id})
        await ctx.reply(embed=success_embed(f"Ticket logs will be posted in {channel.mention}."), mention_author=False)

    @ticket.command(name="prefix", description="Change the command prefix for this server.")
    @guild_admin_only()
    async def ticket_prefix(self, ctx: commands.Context[TicketBot], prefix: str) -> None:
        guild, _ = _guild_member(ctx)
        prefix = prefix.strip()
        if not prefix or len(prefix) > MAX_PREFIX_LENGTH or any(char.isspace() for char in prefix):
            raise ValidationError(f"Prefix must be 1-{MAX_PREFIX_LENGTH} characters without spaces.")
        await self.bot.guild_repo.upsert(guild.id, {"prefix": prefix})
        await ctx.reply(embed=success_embed(f"Prefix set to `{prefix}`."), mention_author=False)

    @tasks.loop(minutes=60)
    async def retention_sweep(self) -> None:
        removed = await self.bot.ticket_service.purge_expired()
        if removed:
            LOGGER.info("Retention sweep removed %s tickets", removed)

    @retention_sweep.before_loop
    async def before_retention_sweep(self) -> None:
        await self.bot.wait_until_ready()

    @retention_sweep.error
    async def retention_sweep_error(self, error: BaseException) -> None:
        LOGGER.error("Retention sweep failed", exc_info=error)


async def setup(bot: TicketBot) -> None:
    await bot.add_cog(TicketsCog(bot))
