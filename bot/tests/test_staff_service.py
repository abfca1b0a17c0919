from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import Harness
from core.errors import AlreadyPresentError, NotStaffError
from utils.decorators import member_is_staff, require_staff_member


@pytest.mark.asyncio
async def test_add_staff_role_and_user(harness: Harness) -> None:
    await harness.staff.add_staff_role(1, 500)
    config = await harness.staff.add_staff_user(1, 42)

    assert config.staff_role_ids == [500]
    assert config.staff_user_ids == [42]
    assert await harness.staff.is_staff(1, 42, [])
    assert await harness.staff.is_staff(1, 99, [12, 500])
    assert not await harness.staff.is_staff(1, 99, [12])


@pytest.mark.asyncio
async def test_duplicate_staff_entries_are_rejected(harness: Harness) -> None:
    await harness.staff.add_staff_role(1, 500)
    with pytest.raises(AlreadyPresentError):
        await harness.staff.add_staff_role(1, 500)

    listing = await harness.staff.list_staff(1)
    assert listing.role_ids == [500]
    assert listing.user_ids == []


@pytest.mark.asyncio
async def test_staff_lists_are_per_guild(harness: Harness) -> None:
    await harness.staff.add_staff_user(1, 42)
    assert not await harness.staff.is_staff(2, 42, [])


@pytest.mark.asyncio
async def test_staff_list_survives_new_channels(harness: Harness) -> None:
    await harness.staff.add_staff_role(1, 500)
    created = await harness.service.request_create(1, 42, "someone")
    assert harness.gateway.permissions[created.ticket.channel_id].staff_role_ids == [500]


def _member(admin: bool, role_ids: list[int], member_id: int = 42) -> MagicMock:
    member = MagicMock()
    member.id = member_id
    member.guild.id = 1
    member.guild_permissions.administrator = admin
    member.roles = [SimpleNamespace(id=role_id) for role_id in role_ids]
    return member


@pytest.mark.asyncio
async def test_administrators_always_count_as_staff() -> None:
    bot = SimpleNamespace(staff_service=SimpleNamespace(is_staff=AsyncMock(return_value=False)))

    assert await member_is_staff(bot, _member(admin=True, role_ids=[])) is True
    bot.staff_service.is_staff.assert_not_awaited()

    assert await member_is_staff(bot, _member(admin=False, role_ids=[3])) is False
    bot.staff_service.is_staff.assert_awaited_with(1, 42, [3])
    with pytest.raises(NotStaffError):
        await require_staff_member(bot, _member(admin=False, role_ids=[3]))


@pytest.mark.asyncio
async def test_staff_member_check_uses_guild_staff_list(harness: Harness) -> None:
    bot = SimpleNamespace(staff_service=harness.staff)
    await harness.staff.add_staff_role(1, 500)

    await require_staff_member(bot, _member(admin=False, role_ids=[500]))
    with pytest.raises(NotStaffError):
        await require_staff_member(bot, _member(admin=False, role_ids=[501]))
