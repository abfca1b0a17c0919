from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from conftest import make_message
from database.base import Database, IntegrityViolationError, _qmark_to_dollar, _status_rowcount, parse_database_dsn
from database.migrations.runner import MIGRATIONS_DIR, run_migrations
from database.models import TicketRecord, format_ticket_id
from database.repositories import GuildRepository, MessageRepository, StatsRepository, TicketRepository
from services.channels import build_channel_name, sanitize_channel_fragment
from utils.time import epoch_millis


def _ticket(number: int, channel_id: int, user_id: int, guild_id: int = 1) -> TicketRecord:
    return TicketRecord(
        id=f"row-{guild_id}-{number}",
        ticket_number=number,
        ticket_id=format_ticket_id(number),
        guild_id=guild_id,
        channel_id=channel_id,
        channel_name=f"ticket-{number}",
        user_id=user_id,
        status="open",
    )


def test_dsn_and_placeholder_helpers() -> None:
    assert parse_database_dsn("sqlite:///./data/x.db").driver == "sqlite"
    assert parse_database_dsn("postgresql://u@h/db").driver == "postgresql"
    with pytest.raises(ValueError):
        parse_database_dsn("mysql://nope")
    assert _qmark_to_dollar("SELECT ? , ?") == "SELECT $1 , $2"
    assert _status_rowcount("UPDATE 1") == 1
    assert _status_rowcount("INSERT 0 3") == 3


def test_format_ticket_id_is_zero_padded() -> None:
    assert format_ticket_id(7) == "000007"
    assert format_ticket_id(1234567) == "1234567"


@pytest.mark.asyncio
async def test_migrations_apply_once(db: Database) -> None:
    assert await run_migrations(db, MIGRATIONS_DIR) == []


@pytest.mark.asyncio
async def test_guild_defaults_and_staff_dedupe(db: Database) -> None:
    repo = GuildRepository(db)
    config = await repo.get_or_create(5)
    assert config.prefix == "t?"
    assert config.staff_role_ids == []

    updated = await repo.upsert(5, {"staff_role_ids": [1, 2, 1], "prefix": "!"})
    assert updated.staff_role_ids == [1, 2]
    assert updated.prefix == "!"

    with pytest.raises(ValueError):
        await repo.upsert(5, {"colour": "blue"})


@pytest.mark.asyncio
async def test_reserve_ticket_number_is_sequential_under_concurrency(db: Database) -> None:
    repo = GuildRepository(db)
    numbers = await asyncio.gather(*(repo.reserve_ticket_number(9) for _ in range(10)))
    assert sorted(numbers) == list(range(1, 11))


@pytest.mark.asyncio
async def test_open_uniqueness_constraints(db: Database) -> None:
    repo = TicketRepository(db)
    await repo.create(_ticket(1, channel_id=100, user_id=42))

    with pytest.raises(IntegrityViolationError):
        await repo.create(_ticket(2, channel_id=101, user_id=42))
    with pytest.raises(IntegrityViolationError):
        await repo.create(_ticket(3, channel_id=100, user_id=43))


@pytest.mark.asyncio
async def test_update_rejects_half_written_pairs(db: Database) -> None:
    repo = TicketRepository(db)
    await repo.create(_ticket(1, channel_id=100, user_id=42))

    with pytest.raises(ValueError):
        await repo.update(100, {"claimed_by_id": 7})
    with pytest.raises(ValueError):
        await repo.update(100, {"closed_by_id": 7, "closed_at": None})
    with pytest.raises(ValueError):
        await repo.update(100, {"channel_id": 5})

    assert await repo.update(100, {"priority": "high", "subject": "Billing"}) == 1
    ticket = await repo.find_open_by_channel(100)
    assert ticket is not None
    assert ticket.priority == "high"
    assert ticket.subject == "Billing"


@pytest.mark.asyncio
async def test_claim_and_close_are_conditional(db: Database) -> None:
    repo = TicketRepository(db)
    await repo.create(_ticket(1, channel_id=100, user_id=42))

    assert await repo.claim(100, 7, "2024-01-01T00:00:00.000+00:00") == 1
    assert await repo.claim(100, 8, "2024-01-01T00:00:01.000+00:00") == 0
    assert await repo.close(100, 7, "000001-1", "2024-01-01T00:01:00.000+00:00") == 1
    assert await repo.close(100, 7, "000001-2", "2024-01-01T00:02:00.000+00:00") == 0

    ticket = await repo.get_by_id("row-1-1")
    assert ticket is not None
    assert ticket.status == "closed"
    assert ticket.claimed_by_id == 7
    assert ticket.transcript_id == "000001-1"
    assert await repo.find_open_by_channel(100) is None

    # A closed ticket releases both the channel and the requester.
    await repo.create(_ticket(2, channel_id=100, user_id=42))


@pytest.mark.asyncio
async def test_message_append_is_idempotent_and_ordered(db: Database) -> None:
    tickets = TicketRepository(db)
    messages = MessageRepository(db)
    await tickets.create(_ticket(1, channel_id=100, user_id=42))

    assert await messages.append("row-1-1", make_message(2, "second")) is True
    assert await messages.append("row-1-1", make_message(1, "first")) is True
    assert await messages.append("row-1-1", make_message(1, "edited")) is False

    stored = await messages.list_for_ticket("row-1-1")
    assert [message.content for message in stored] == ["first", "second"]
    assert await messages.count("row-1-1") == 2


@pytest.mark.asyncio
async def test_stats_rows_accumulate_per_day(db: Database) -> None:
    repo = StatsRepository(db)
    await repo.increment(1, "2024-01-01", created=1)
    await repo.increment(1, "2024-01-01", created=1, claimed=1)
    await repo.increment(1, "2024-01-02", closed=1)
    await repo.increment(2, "2024-01-02", created=5)

    history = await repo.history(1, "2024-01-01")
    assert [(day.day, day.created, day.claimed, day.closed) for day in history] == [
        ("2024-01-01", 2, 1, 0),
        ("2024-01-02", 0, 0, 1),
    ]


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(db: Database) -> None:
    repo = TicketRepository(db)
    with pytest.raises(RuntimeError):
        async with db.transaction() as session:
            await repo.create(_ticket(1, channel_id=100, user_id=42), session)
            raise RuntimeError("boom")
    assert await repo.find_open_by_channel(100) is None


def test_channel_names_are_sanitized() -> None:
    assert sanitize_channel_fragment("Hello World !!!") == "hello-world"
    assert sanitize_channel_fragment("***") == "user"
    at = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)
    suffix = str(epoch_millis(at))[-4:]
    assert build_channel_name("ticket", "Some User", at) == f"ticket-some-user-{suffix}"
