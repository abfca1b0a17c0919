from __future__ import annotations

import asyncio
import gc
import json
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import Harness, make_message
from core.errors import (
    AlreadyClaimedError,
    AlreadyOpenError,
    ArchiveFailedError,
    NotATicketChannelError,
    ProvisioningFailedError,
    ValidationError,
)
from utils.constants import ACCESS_STAFF, CLOSE_MODE_CONFIRMED, CLOSE_MODE_FORCED
from utils.time import utc_now

GUILD_ID = 123


@pytest.mark.asyncio
async def test_create_claim_close_flow(harness: Harness) -> None:
    service = harness.service
    created = await service.request_create(GUILD_ID, 42, "Requester One")
    ticket = created.ticket
    assert ticket.ticket_id == "000001"
    assert ticket.status == "open"
    assert created.channel.name.startswith("ticket-requester-one-")
    assert harness.gateway.permissions[ticket.channel_id].requester_id == 42

    claimed = await service.claim(ticket.channel_id, 7)
    assert claimed.status == "claimed"
    assert claimed.claimed_by_id == 7
    assert claimed.claimed_at is not None
    assert (ticket.channel_id, 7, False, ACCESS_STAFF) in harness.gateway.grants

    with pytest.raises(AlreadyClaimedError):
        await service.claim(ticket.channel_id, 8)

    await service.record_message(ticket.channel_id, make_message(1, "hello"))
    await service.record_message(ticket.channel_id, make_message(2, "thanks", author_id=7))

    request = await service.request_close(ticket.channel_id, 42)
    result = await service.confirm_close(request.channel_id, 42)
    assert result.mode == CLOSE_MODE_CONFIRMED
    assert result.ticket.status == "closed"
    assert result.ticket.closed_by_id == 42
    assert result.ticket.transcript_id == result.transcript.transcript_id
    assert result.notified is True
    assert harness.gateway.notices == [(42, result.transcript_url)]
    assert result.transcript_url == f"http://tickets.test/transcript/{result.transcript.transcript_id}"

    artifact = json.loads(Path(result.transcript.path).read_text(encoding="utf-8"))
    assert artifact["ticketId"] == "000001"
    assert artifact["guildId"] == str(GUILD_ID)
    assert artifact["closedAt"] is not None
    assert [msg["content"] for msg in artifact["messages"]] == ["hello", "thanks"]

    stats = await harness.stats.snapshot(GUILD_ID)
    assert (stats.total, stats.open, stats.claimed, stats.closed) == (1, 0, 0, 1)

    with pytest.raises(NotATicketChannelError):
        await service.get_ticket(ticket.channel_id)


@pytest.mark.asyncio
async def test_channel_deleted_after_grace_delay(harness: Harness) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    await harness.service.force_close(created.ticket.channel_id, 7)
    assert harness.scheduler.is_pending(created.ticket.channel_id)
    await asyncio.sleep(0.1)
    assert harness.gateway.deleted == [created.ticket.channel_id]
    assert harness.scheduler.pending_count == 0


@pytest.mark.asyncio
async def test_second_create_for_same_user_is_rejected(harness: Harness) -> None:
    first = await harness.service.request_create(GUILD_ID, 42, "someone")
    with pytest.raises(AlreadyOpenError) as exc_info:
        await harness.service.request_create(GUILD_ID, 42, "someone")
    assert exc_info.value.channel_id == first.ticket.channel_id

    stats = await harness.stats.snapshot(GUILD_ID, use_cache=False)
    assert stats.total == 1
    assert len(harness.gateway.channels) == 1


@pytest.mark.asyncio
async def test_user_can_open_again_after_close(harness: Harness) -> None:
    first = await harness.service.request_create(GUILD_ID, 42, "someone")
    await harness.service.force_close(first.ticket.channel_id, 7)
    second = await harness.service.request_create(GUILD_ID, 42, "someone")
    assert second.ticket.ticket_id == "000002"


@pytest.mark.asyncio
async def test_cancelled_close_leaves_ticket_untouched(harness: Harness, tmp_path: Path) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    request = await harness.service.request_close(created.ticket.channel_id, 42)
    ticket = await harness.service.cancel_close(request.channel_id)

    assert ticket.status == "open"
    assert ticket.transcript_id is None
    assert list((tmp_path / "transcripts").glob("*.json")) == []
    assert not harness.scheduler.is_pending(created.ticket.channel_id)


@pytest.mark.asyncio
async def test_concurrent_creates_get_distinct_ids(harness: Harness) -> None:
    results = await asyncio.gather(
        *(harness.service.request_create(GUILD_ID, 100 + index, f"user{index}") for index in range(8))
    )
    ids = {result.ticket.ticket_id for result in results}
    channels = {result.ticket.channel_id for result in results}
    assert len(ids) == 8
    assert len(channels) == 8
    assert sorted(ids) == [f"{number:06d}" for number in range(1, 9)]


@pytest.mark.asyncio
async def test_concurrent_creates_for_same_user_open_one_ticket(harness: Harness) -> None:
    outcomes = await asyncio.gather(
        *(harness.service.request_create(GUILD_ID, 42, "someone") for _ in range(4)),
        return_exceptions=True,
    )
    successes = [item for item in outcomes if not isinstance(item, BaseException)]
    failures = [item for item in outcomes if isinstance(item, AlreadyOpenError)]
    assert len(successes) == 1
    assert len(failures) == 3


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(harness: Harness) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    outcomes = await asyncio.gather(
        harness.service.claim(created.ticket.channel_id, 7),
        harness.service.claim(created.ticket.channel_id, 8),
        return_exceptions=True,
    )
    winners = [item for item in outcomes if not isinstance(item, BaseException)]
    losers = [item for item in outcomes if isinstance(item, AlreadyClaimedError)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].claimed_by_id == winners[0].claimed_by_id


@pytest.mark.asyncio
async def test_concurrent_closes_close_once(harness: Harness) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    outcomes = await asyncio.gather(
        harness.service.force_close(created.ticket.channel_id, 7),
        harness.service.force_close(created.ticket.channel_id, 8),
        return_exceptions=True,
    )
    assert len([item for item in outcomes if not isinstance(item, BaseException)]) == 1
    assert len([item for item in outcomes if isinstance(item, NotATicketChannelError)]) == 1
    stats = await harness.stats.snapshot(GUILD_ID, use_cache=False)
    assert stats.closed == 1


@pytest.mark.asyncio
async def test_archive_failure_keeps_ticket_open(harness: Harness) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    harness.gateway.fail_history = True

    with pytest.raises(ArchiveFailedError):
        await harness.service.force_close(created.ticket.channel_id, 7)

    ticket = await harness.service.get_ticket(created.ticket.channel_id)
    assert ticket.status == "open"
    assert ticket.closed_at is None
    assert not harness.scheduler.is_pending(created.ticket.channel_id)


@pytest.mark.asyncio
async def test_transcript_delivery_failure_does_not_fail_close(harness: Harness) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    harness.gateway.fail_notice = True

    result = await harness.service.force_close(created.ticket.channel_id, 7)

    assert result.mode == CLOSE_MODE_FORCED
    assert result.notified is False
    assert result.ticket.status == "closed"


@pytest.mark.asyncio
async def test_provisioning_failure_creates_nothing(harness: Harness) -> None:
    harness.gateway.fail_create = True
    with pytest.raises(ProvisioningFailedError):
        await harness.service.request_create(GUILD_ID, 42, "someone")
    assert await harness.ticket_repo.find_open_by_user(GUILD_ID, 42) is None

    harness.gateway.fail_create = False
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    # The reserved number is not reused.
    assert created.ticket.ticket_id == "000002"


@pytest.mark.asyncio
async def test_claim_outside_ticket_channel(harness: Harness) -> None:
    with pytest.raises(NotATicketChannelError):
        await harness.service.claim(424242, 7)


@pytest.mark.asyncio
async def test_invalid_priority_is_rejected(harness: Harness) -> None:
    with pytest.raises(ValidationError):
        await harness.service.request_create(GUILD_ID, 42, "someone", priority="whenever")


@pytest.mark.asyncio
async def test_export_keeps_ticket_open(harness: Harness) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    harness.gateway.history[created.ticket.channel_id] = [make_message(1, "first"), make_message(2, "second")]

    ref = await harness.service.export_transcript(created.ticket.channel_id)

    assert ref.message_count == 2
    payload = await harness.transcripts.load(ref.transcript_id)
    assert payload is not None
    assert payload["closedAt"] is None
    ticket = await harness.service.get_ticket(created.ticket.channel_id)
    assert ticket.status == "open"
    # Backfilled history is stored for the close-time archive.
    assert await harness.message_repo.count(ticket.id) == 2


@pytest.mark.asyncio
async def test_record_message_ignores_other_channels(harness: Harness) -> None:
    assert await harness.service.record_message(1, make_message(1, "hi")) is False
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    assert await harness.service.record_message(created.ticket.channel_id, make_message(1, "hi")) is True
    assert await harness.service.record_message(created.ticket.channel_id, make_message(1, "hi")) is False


@pytest.mark.asyncio
async def test_purge_expired_removes_old_closed_tickets(harness: Harness) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    await harness.service.record_message(created.ticket.channel_id, make_message(1, "hi"))
    result = await harness.service.force_close(created.ticket.channel_id, 7)
    still_open = await harness.service.request_create(GUILD_ID, 43, "other")

    assert await harness.service.purge_expired() == 0
    removed = await harness.service.purge_expired(now=utc_now() + timedelta(days=31))

    assert removed == 1
    assert await harness.ticket_repo.get_by_id(result.ticket.id) is None
    assert await harness.message_repo.count(result.ticket.id) == 0
    assert await harness.ticket_repo.get_by_id(still_open.ticket.id) is not None
    # Artifacts outlive the ticket rows.
    assert Path(result.transcript.path).exists()


@pytest.mark.asyncio
async def test_list_tickets_filters_by_status(harness: Harness) -> None:
    first = await harness.service.request_create(GUILD_ID, 42, "a")
    await harness.service.request_create(GUILD_ID, 43, "b")
    await harness.service.claim(first.ticket.channel_id, 7)

    claimed = await harness.service.list_tickets(GUILD_ID, ["claimed"])
    everything = await harness.service.list_tickets(GUILD_ID)

    assert [ticket.user_id for ticket in claimed] == [42]
    assert len(everything) == 2
    with pytest.raises(ValidationError):
        await harness.service.list_tickets(GUILD_ID, ["pending"])


@pytest.mark.asyncio
async def test_record_message_waits_for_an_in_flight_close(harness: Harness) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    channel_id = created.ticket.channel_id
    lock = harness.service._channel_lock(channel_id)

    async with lock:
        pending = asyncio.create_task(harness.service.record_message(channel_id, make_message(1, "late")))
        await asyncio.sleep(0.01)
        assert not pending.done()
        # The close commits while the capture is still waiting.
        await harness.ticket_repo.close(channel_id, 7, "000001-1", "2024-01-01T00:00:00.000+00:00")

    assert await pending is False
    assert await harness.message_repo.count(created.ticket.id) == 0


@pytest.mark.asyncio
async def test_message_after_close_is_not_stored(harness: Harness) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    channel_id = created.ticket.channel_id
    result = await harness.service.force_close(channel_id, 7)

    assert await harness.service.record_message(channel_id, make_message(1, "late")) is False
    assert await harness.message_repo.count(result.ticket.id) == 0


@pytest.mark.asyncio
async def test_locks_are_released_once_idle(harness: Harness) -> None:
    created = await harness.service.request_create(GUILD_ID, 42, "someone")
    await harness.service.claim(created.ticket.channel_id, 7)
    await harness.service.record_message(created.ticket.channel_id, make_message(1, "hi"))
    await harness.service.force_close(created.ticket.channel_id, 7)
    gc.collect()

    assert len(harness.service._guild_locks) == 0
    assert len(harness.service._channel_locks) == 0
