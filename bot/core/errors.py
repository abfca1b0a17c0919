from __future__ import annotations

import logging
from dataclasses import dataclass

import discord
from discord import app_commands
from discord.ext import commands

LOGGER = logging.getLogger(__name__)


class BotError(RuntimeError):
    user_message: str = "An unexpected error occurred."


@dataclass(slots=True)
class ValidationError(BotError):
    user_message: str = "The provided input is not valid."


class TicketError(BotError):
    """Base class for every ticket lifecycle failure."""


@dataclass(slots=True)
class AlreadyOpenError(TicketError):
    user_message: str = "You already have an open ticket."
    channel_id: int | None = None


@dataclass(slots=True)
class NotATicketChannelError(TicketError):
    user_message: str = "This command can only be used inside a ticket channel."
    channel_id: int | None = None


@dataclass(slots=True)
class TicketNotFoundError(TicketError):
    user_message: str = "The requested ticket could not be found."


@dataclass(slots=True)
class AlreadyClaimedError(TicketError):
    user_message: str = "This ticket has already been claimed."
    claimed_by_id: int | None = None


@dataclass(slots=True)
class NotStaffError(TicketError):
    user_message: str = "Only staff members can perform this action."


@dataclass(slots=True)
class AlreadyPresentError(TicketError):
    user_message: str = "That entry is already in the staff list."


@dataclass(slots=True)
class ArchiveFailedError(TicketError):
    user_message: str = "The transcript could not be archived. The ticket was left unchanged."


@dataclass(slots=True)
class ProvisioningFailedError(TicketError):
    user_message: str = "The ticket channel could not be prepared. Please try again."


@dataclass(slots=True)
class PersistenceFailedError(TicketError):
    user_message: str = "A database error occurred. Please try again."
    detail: str | None = None


async def send_error_response(
    target: commands.Context[commands.Bot] | discord.Interaction[commands.Bot], message: str
) -> None:
    embed = discord.Embed(title="Error", description=message, color=discord.Color.red())
    if isinstance(target, commands.Context):
        await target.reply(embed=embed, mention_author=False)
        return
    if target.response.is_done():
        await target.followup.send(embed=embed, ephemeral=True)
    else:
        await target.response.send_message(embed=embed, ephemeral=True)


def _unwrap(error: Exception) -> Exception:
    original = getattr(error, "original", None)
    if isinstance(original, Exception):
        return original
    return error


def humanize_error(error: Exception) -> str:
    error = _unwrap(error)
    if isinstance(error, BotError):
        return error.user_message
    if isinstance(error, (commands.CommandOnCooldown, app_commands.CommandOnCooldown)):
        return f"Cooldown active. Retry in {error.retry_after:.1f} seconds."
    if isinstance(error, commands.MissingPermissions):
        return "You are missing required Discord permissions."
    if isinstance(error, (commands.CheckFailure, app_commands.CheckFailure)):
        return "You are not authorized for this command."
    if isinstance(error, (commands.BadArgument, commands.MissingRequiredArgument)):
        return "Command argument was invalid."
    return "An unexpected command error occurred."


def _log_failure(kind: str, command: str | None, guild_id: int | None, user_id: int | None, error: Exception) -> None:
    unwrapped = _unwrap(error)
    if isinstance(unwrapped, BotError) and not isinstance(unwrapped, PersistenceFailedError):
        LOGGER.info(
            "%s command rejected. command=%s guild=%s user=%s error=%s",
            kind,
            command,
            guild_id,
            user_id,
            type(unwrapped).__name__,
        )
        return
    LOGGER.exception(
        "%s command failed. command=%s guild=%s user=%s",
        kind,
        command,
        guild_id,
        user_id,
        exc_info=unwrapped,
    )


async def handle_prefix_command_error(
    ctx: commands.Context[commands.Bot], error: commands.CommandError
) -> None:
    if isinstance(error, commands.CommandNotFound):
        return
    _log_failure(
        "Prefix",
        getattr(ctx.command, "qualified_name", None),
        getattr(ctx.guild, "id", None),
        ctx.author.id,
        error,
    )
    await send_error_response(ctx, humanize_error(error))


async def handle_app_command_error(
    interaction: discord.Interaction[commands.Bot], error: app_commands.AppCommandError
) -> None:
    _log_failure(
        "Slash",
        getattr(interaction.command, "qualified_name", None),
        getattr(interaction.guild, "id", None),
        interaction.user.id if interaction.user else None,
        error,
    )
    await send_error_response(interaction, humanize_error(error))


async def handle_view_error(interaction: discord.Interaction[commands.Bot], error: Exception) -> None:
    custom_id = (interaction.data or {}).get("custom_id")
    _log_failure(
        "Component",
        str(custom_id) if custom_id else None,
        getattr(interaction.guild, "id", None),
        interaction.user.id if interaction.user else None,
        error,
    )
    await send_error_response(interaction, humanize_error(error))
