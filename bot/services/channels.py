from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from database.models import TicketRecord, TranscriptMessage
from utils.time import epoch_millis


@dataclass(slots=True)
class PermissionSpec:
    """Principals that may see a freshly provisioned ticket channel."""

    requester_id: int
    staff_role_ids: list[int] = field(default_factory=list)
    staff_user_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class ProvisionedChannel:
    channel_id: int
    name: str
    category_id: int | None = None


class ChannelGateway(Protocol):
    async def ensure_category(self, guild_id: int, category_id: int | None, name: str) -> int | None: ...

    async def create(
        self,
        guild_id: int,
        name: str,
        parent_category_id: int | None,
        permissions: PermissionSpec,
        topic: str | None = None,
    ) -> ProvisionedChannel: ...

    async def delete(self, channel_id: int) -> None: ...

    async def fetch_history(self, channel_id: int, limit: int) -> list[TranscriptMessage]: ...

    async def grant(self, channel_id: int, principal_id: int, is_role: bool, level: str) -> None: ...

    async def send_transcript_notice(self, user_id: int, ticket: TicketRecord, transcript_url: str) -> None: ...


def sanitize_channel_fragment(name: str) -> str:
    name = name.strip().lower()
    name = re.sub(r"[^a-z0-9-]+", "-", name)
    name = re.sub(r"-{2,}", "-", name).strip("-")
    return name[:32] or "user"


def build_channel_name(prefix: str, requester_name: str, now: datetime) -> str:
    # Last four digits of the creation time disambiguate repeat requesters.
    suffix = str(epoch_millis(now))[-4:]
    return f"{prefix}-{sanitize_channel_fragment(requester_name)}-{suffix}"[:95]
