from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

import discord
from discord.ext import commands

from core.errors import NotStaffError

if TYPE_CHECKING:
    from core.bot import TicketBot

F = TypeVar("F", bound=Callable[..., Any])


async def member_is_staff(bot: TicketBot, member: discord.Member) -> bool:
    # Server administrators always act as staff.
    if member.guild_permissions.administrator:
        return True
    return await bot.staff_service.is_staff(member.guild.id, member.id, [role.id for role in member.roles])


async def require_staff_member(bot: TicketBot, member: discord.Member) -> None:
    if not await member_is_staff(bot, member):
        raise NotStaffError()


def staff_only() -> Callable[[F], F]:
    async def predicate(ctx: commands.Context[TicketBot]) -> bool:
        if not ctx.guild or not isinstance(ctx.author, discord.Member):
            raise commands.NoPrivateMessage()
        if not await member_is_staff(ctx.bot, ctx.author):
            raise commands.CheckFailure(NotStaffError().user_message)
        return True

    return commands.check(predicate)


def guild_admin_only() -> Callable[[F], F]:
    return commands.has_guild_permissions(administrator=True)
