from __future__ import annotations

from datetime import UTC, datetime

import discord

from database.models import DailyStats, GuildStats, TicketRecord


def make_embed(
    title: str,
    description: str,
    color: discord.Color | None = None,
    footer: str | None = None,
) -> discord.Embed:
    resolved_color = color if color is not None else discord.Color.blurple()
    embed = discord.Embed(
        title=title,
        description=description,
        color=resolved_color,
        timestamp=datetime.now(UTC),
    )
    if footer:
        embed.set_footer(text=footer)
    return embed


def success_embed(message: str) -> discord.Embed:
    return make_embed(title="Success", description=message, color=discord.Color.green())


def error_embed(message: str) -> discord.Embed:
    return make_embed(title="Error", description=message, color=discord.Color.red())


def panel_embed() -> discord.Embed:
    return make_embed(
        title="Support Tickets",
        description="Press the button below to open a private support ticket.",
        footer="One open ticket per member",
    )


def ticket_opened_embed(ticket: TicketRecord) -> discord.Embed:
    embed = make_embed(
        title=f"Ticket {ticket.display_id}",
        description=(
            f"Welcome <@{ticket.user_id}>! Describe your issue and a staff member will be with you shortly."
        ),
        color=discord.Color.green(),
    )
    embed.add_field(name="Status", value=ticket.status.title(), inline=True)
    embed.add_field(name="Priority", value=ticket.priority.title(), inline=True)
    if ticket.subject:
        embed.add_field(name="Subject", value=ticket.subject[:1024], inline=False)
    return embed


def ticket_claimed_embed(ticket: TicketRecord) -> discord.Embed:
    return make_embed(
        title="Ticket Claimed",
        description=f"<@{ticket.claimed_by_id}> is now handling ticket {ticket.display_id}.",
        color=discord.Color.gold(),
    )


def close_prompt_embed(ticket: TicketRecord) -> discord.Embed:
    return make_embed(
        title="Close Ticket?",
        description=f"Confirm to close ticket {ticket.display_id}. A transcript will be saved first.",
        color=discord.Color.orange(),
    )


def ticket_closed_embed(ticket: TicketRecord, transcript_url: str, delete_after: float) -> discord.Embed:
    embed = make_embed(
        title="Ticket Closed",
        description=f"Ticket {ticket.display_id} was closed by <@{ticket.closed_by_id}>.",
        color=discord.Color.red(),
        footer=f"This channel will be deleted in {delete_after:g} seconds",
    )
    embed.add_field(name="Transcript", value=transcript_url, inline=False)
    return embed


def transcript_notice_embed(ticket: TicketRecord, transcript_url: str) -> discord.Embed:
    embed = make_embed(
        title="Your ticket has been closed",
        description=f"Ticket {ticket.display_id} is closed. The full transcript is available below.",
    )
    embed.add_field(name="Transcript", value=transcript_url, inline=False)
    return embed


def stats_embed(stats: GuildStats, history: list[DailyStats] | None = None) -> discord.Embed:
    embed = make_embed(title="Ticket Statistics", description="Current ticket counts for this server.")
    embed.add_field(name="Total", value=str(stats.total), inline=True)
    embed.add_field(name="Open", value=str(stats.open), inline=True)
    embed.add_field(name="Claimed", value=str(stats.claimed), inline=True)
    embed.add_field(name="Closed", value=str(stats.closed), inline=True)
    if history:
        lines = [f"`{day.day}` +{day.created} / {day.claimed} claimed / {day.closed} closed" for day in history]
        embed.add_field(name="Recent activity", value="\n".join(lines)[:1024], inline=False)
    return embed


def ticket_status_embed(ticket: TicketRecord) -> discord.Embed:
    embed = make_embed(title=f"Ticket {ticket.display_id}", description=f"Opened by <@{ticket.user_id}>")
    embed.add_field(name="Status", value=ticket.status.title(), inline=True)
    embed.add_field(name="Priority", value=ticket.priority.title(), inline=True)
    embed.add_field(
        name="Claimed by",
        value=f"<@{ticket.claimed_by_id}>" if ticket.claimed_by_id else "Nobody",
        inline=True,
    )
    if ticket.created_at:
        embed.add_field(name="Created", value=ticket.created_at, inline=False)
    return embed


def bot_status_embed(latency_ms: float, guild_count: int, stats: GuildStats) -> discord.Embed:
    embed = make_embed(title="Bot Status", description="Ticket system health.", color=discord.Color.green())
    embed.add_field(name="Ping", value=f"{latency_ms:.0f}ms", inline=True)
    embed.add_field(name="Guilds", value=str(guild_count), inline=True)
    embed.add_field(name="Active tickets", value=str(stats.open), inline=True)
    return embed
