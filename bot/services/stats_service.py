from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from database.base import DatabaseSession
from database.models import DailyStats, GuildStats
from database.repositories import StatsRepository, TicketRepository
from services.cache import CacheBackend
from utils.constants import TICKET_STATUS_CLAIMED, TICKET_STATUS_OPEN
from utils.time import day_key, days_ago, utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StatsDelta:
    created: int = 0
    claimed: int = 0
    closed: int = 0

    def __post_init__(self) -> None:
        for name in ("created", "claimed", "closed"):
            if getattr(self, name) < 0:
                raise ValueError(f"Stats delta '{name}' cannot be negative")

    @property
    def is_empty(self) -> bool:
        return not (self.created or self.claimed or self.closed)


class StatsService:
    """Ticket counts per guild.

    Lifetime ``total`` and ``closed`` are summed from the per-day rows written
    by ``increment``, which retention never deletes. ``open`` and ``claimed``
    are counted from live ticket rows. Snapshots are only cached for display.
    """

    def __init__(
        self,
        ticket_repo: TicketRepository,
        stats_repo: StatsRepository,
        cache: CacheBackend,
        cache_ttl: int = 60,
    ) -> None:
        self.ticket_repo = ticket_repo
        self.stats_repo = stats_repo
        self.cache = cache
        self.cache_ttl = cache_ttl

    @staticmethod
    def _cache_key(guild_id: int) -> str:
        return f"stats:{guild_id}"

    async def snapshot(self, guild_id: int, use_cache: bool = True) -> GuildStats:
        if use_cache:
            cached = await self.cache.get(self._cache_key(guild_id))
            if cached:
                return GuildStats(guild_id=guild_id, **cached)

        counts = await self.ticket_repo.count_by_status(guild_id)
        totals = await self.stats_repo.lifetime_totals(guild_id)
        stats = GuildStats(
            guild_id=guild_id,
            total=totals["created"],
            open=counts[TICKET_STATUS_OPEN] + counts[TICKET_STATUS_CLAIMED],
            claimed=counts[TICKET_STATUS_CLAIMED],
            closed=totals["closed"],
        )
        await self.cache.set(self._cache_key(guild_id), stats.as_dict(), ttl=self.cache_ttl)
        return stats

    async def increment(
        self,
        guild_id: int,
        delta: StatsDelta,
        session: DatabaseSession | None = None,
        when: datetime | None = None,
    ) -> None:
        if delta.is_empty:
            return
        await self.stats_repo.increment(
            guild_id,
            day_key(when or utc_now()),
            created=delta.created,
            claimed=delta.claimed,
            closed=delta.closed,
            session=session,
        )

    async def invalidate(self, guild_id: int) -> None:
        await self.cache.delete(self._cache_key(guild_id))

    async def history(self, guild_id: int, days: int = 7) -> list[DailyStats]:
        if days < 1:
            raise ValueError("days must be at least 1")
        since = day_key(days_ago(days - 1))
        return await self.stats_repo.history(guild_id, since)
