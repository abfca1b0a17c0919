from __future__ import annotations

import itertools
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

import pytest
import pytest_asyncio

from core.config import AppConfig, DiscordConfig, TicketConfig, TranscriptConfig
from core.errors import ProvisioningFailedError
from database.base import Database
from database.migrations.runner import run_migrations
from database.models import TicketRecord, TranscriptMessage
from database.repositories import GuildRepository, MessageRepository, StatsRepository, TicketRepository
from services.cache import MemoryCache
from services.channels import PermissionSpec, ProvisionedChannel
from services.scheduler import DeletionScheduler
from services.staff_service import StaffService
from services.stats_service import StatsService
from services.ticket_service import TicketService, TicketServiceDeps
from services.transcript_service import TranscriptService

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "database" / "migrations"


class FakeGateway:
    """In-memory channel provisioning used instead of Discord."""

    def __init__(self) -> None:
        self._ids = itertools.count(9000)
        self.channels: dict[int, ProvisionedChannel] = {}
        self.permissions: dict[int, PermissionSpec] = {}
        self.deleted: list[int] = []
        self.grants: list[tuple[int, int, bool, str]] = []
        self.notices: list[tuple[int, str]] = []
        self.history: dict[int, list[TranscriptMessage]] = {}
        self.fail_create = False
        self.fail_history = False
        self.fail_notice = False

    async def ensure_category(self, guild_id: int, category_id: int | None, name: str) -> int | None:
        return category_id or 555

    async def create(
        self,
        guild_id: int,
        name: str,
        parent_category_id: int | None,
        permissions: PermissionSpec,
        topic: str | None = None,
    ) -> ProvisionedChannel:
        if self.fail_create:
            raise ProvisioningFailedError()
        channel = ProvisionedChannel(channel_id=next(self._ids), name=name, category_id=parent_category_id)
        self.channels[channel.channel_id] = channel
        self.permissions[channel.channel_id] = permissions
        return channel

    async def delete(self, channel_id: int) -> None:
        self.channels.pop(channel_id, None)
        self.deleted.append(channel_id)

    async def fetch_history(self, channel_id: int, limit: int) -> list[TranscriptMessage]:
        if self.fail_history:
            raise ProvisioningFailedError()
        return list(self.history.get(channel_id, []))[:limit]

    async def grant(self, channel_id: int, principal_id: int, is_role: bool, level: str) -> None:
        self.grants.append((channel_id, principal_id, is_role, level))

    async def send_transcript_notice(self, user_id: int, ticket: TicketRecord, transcript_url: str) -> None:
        if self.fail_notice:
            raise RuntimeError("Cannot send messages to this user")
        self.notices.append((user_id, transcript_url))


@dataclass(slots=True)
class Harness:
    config: AppConfig
    db: Database
    guild_repo: GuildRepository
    ticket_repo: TicketRepository
    message_repo: MessageRepository
    stats_repo: StatsRepository
    stats: StatsService
    staff: StaffService
    transcripts: TranscriptService
    gateway: FakeGateway
    scheduler: DeletionScheduler
    service: TicketService


def make_message(message_id: int, content: str, author_id: int = 42, timestamp: str | None = None) -> TranscriptMessage:
    return TranscriptMessage(
        message_id=message_id,
        author_id=author_id,
        author_username=f"user{author_id}",
        content=content,
        timestamp=timestamp or f"2024-01-01T00:00:{message_id % 60:02d}.000+00:00",
    )


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncIterator[Database]:
    database = Database(url=f"sqlite:///{tmp_path / 'tickets.db'}")
    await database.connect()
    await run_migrations(database, MIGRATIONS_DIR)
    yield database
    await database.close()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        discord=DiscordConfig(token="x"),
        transcripts=TranscriptConfig(
            storage_directory=str(tmp_path / "transcripts"),
            public_base_url="http://tickets.test",
        ),
        tickets=TicketConfig(close_delete_delay_seconds=0.01),
    )


@pytest_asyncio.fixture
async def harness(db: Database, app_config: AppConfig) -> AsyncIterator[Harness]:
    guild_repo = GuildRepository(db)
    ticket_repo = TicketRepository(db)
    message_repo = MessageRepository(db)
    stats_repo = StatsRepository(db)
    stats = StatsService(ticket_repo, stats_repo, MemoryCache(), cache_ttl=60)
    transcripts = TranscriptService(app_config.transcripts, message_repo)
    gateway = FakeGateway()
    scheduler = DeletionScheduler(gateway.delete, app_config.tickets.close_delete_delay_seconds)
    service = TicketService(
        app_config,
        TicketServiceDeps(
            db=db,
            guild_repo=guild_repo,
            ticket_repo=ticket_repo,
            message_repo=message_repo,
            stats=stats,
            transcripts=transcripts,
            gateway=gateway,
            scheduler=scheduler,
        ),
    )
    yield Harness(
        config=app_config,
        db=db,
        guild_repo=guild_repo,
        ticket_repo=ticket_repo,
        message_repo=message_repo,
        stats_repo=stats_repo,
        stats=stats,
        staff=StaffService(db, guild_repo),
        transcripts=transcripts,
        gateway=gateway,
        scheduler=scheduler,
        service=service,
    )
    await scheduler.shutdown(flush=False)
