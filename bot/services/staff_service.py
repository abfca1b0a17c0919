from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from core.errors import AlreadyPresentError
from database.base import Database
from database.models import GuildConfig
from database.repositories import GuildRepository

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class StaffListing:
    role_ids: list[int]
    user_ids: list[int]


def is_staff_config(config: GuildConfig, actor_id: int, actor_role_ids: Iterable[int]) -> bool:
    if actor_id in config.staff_user_ids:
        return True
    return not set(config.staff_role_ids).isdisjoint(actor_role_ids)


class StaffService:
    def __init__(self, db: Database, guild_repo: GuildRepository) -> None:
        self.db = db
        self.guild_repo = guild_repo

    async def is_staff(self, guild_id: int, actor_id: int, actor_role_ids: Iterable[int]) -> bool:
        config = await self.guild_repo.get_or_create(guild_id)
        return is_staff_config(config, actor_id, actor_role_ids)

    async def add_staff_role(self, guild_id: int, role_id: int) -> GuildConfig:
        return await self._add(guild_id, "staff_role_ids", role_id)

    async def add_staff_user(self, guild_id: int, user_id: int) -> GuildConfig:
        return await self._add(guild_id, "staff_user_ids", user_id)

    async def list_staff(self, guild_id: int) -> StaffListing:
        config = await self.guild_repo.get_or_create(guild_id)
        return StaffListing(role_ids=list(config.staff_role_ids), user_ids=list(config.staff_user_ids))

    async def _add(self, guild_id: int, field_name: str, principal_id: int) -> GuildConfig:
        async with self.db.transaction() as session:
            config = await self.guild_repo.get_or_create(guild_id, session)
            current: list[int] = getattr(config, field_name)
            if principal_id in current:
                raise AlreadyPresentError()
            updated = await self.guild_repo.upsert(guild_id, {field_name: [*current, principal_id]}, session)
        LOGGER.info(
            "Staff entry added. guild=%s field=%s id=%s",
            guild_id,
            field_name,
            principal_id,
            extra={"guild_id": guild_id},
        )
        return updated
