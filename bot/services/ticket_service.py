from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from core.config import AppConfig
from core.errors import (
    AlreadyClaimedError,
    AlreadyOpenError,
    NotATicketChannelError,
    ProvisioningFailedError,
    TicketNotFoundError,
    ValidationError,
)
from database.base import Database, IntegrityViolationError
from database.models import TicketRecord, TranscriptMessage, TranscriptRef, format_ticket_id
from database.repositories import GuildRepository, MessageRepository, TicketRepository
from services.audit_service import AuditService
from services.channels import ChannelGateway, PermissionSpec, ProvisionedChannel, build_channel_name
from services.scheduler import DeletionScheduler
from services.stats_service import StatsDelta, StatsService
from services.transcript_service import TranscriptService
from utils.constants import (
    ACCESS_STAFF,
    CLOSE_MODE_CONFIRMED,
    CLOSE_MODE_FORCED,
    DEFAULT_PRIORITY,
    PRIORITY_LEVELS,
    TICKET_STATUS_OPEN,
    TICKET_STATUSES,
)
from utils.time import days_ago, to_iso, utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TicketServiceDeps:
    db: Database
    guild_repo: GuildRepository
    ticket_repo: TicketRepository
    message_repo: MessageRepository
    stats: StatsService
    transcripts: TranscriptService
    gateway: ChannelGateway
    scheduler: DeletionScheduler
    audit: AuditService | None = None


@dataclass(slots=True)
class CreateResult:
    ticket: TicketRecord
    channel: ProvisionedChannel


@dataclass(slots=True, frozen=True)
class CloseRequest:
    token: str
    channel_id: int
    ticket_id: str
    requested_by_id: int | None
    requested_at: str


@dataclass(slots=True)
class CloseResult:
    ticket: TicketRecord
    transcript: TranscriptRef
    transcript_url: str
    mode: str
    delete_after: float
    notified: bool


class TicketService:
    """Ticket lifecycle: create, claim, close and the side effects around them.

    Creation is serialized per guild and every other transition per channel.
    State checks are repeated inside the write transaction, and the writes
    themselves are conditional, so a stale read can never commit.
    """

    def __init__(self, config: AppConfig, deps: TicketServiceDeps) -> None:
        self.config = config
        self.deps = deps
        # Entries live only while some coroutine holds or waits on the lock.
        self._guild_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()
        self._channel_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _guild_lock(self, guild_id: int) -> asyncio.Lock:
        lock = self._guild_locks.get(guild_id)
        if lock is None:
            lock = asyncio.Lock()
            self._guild_locks[guild_id] = lock
        return lock

    def _channel_lock(self, channel_id: int) -> asyncio.Lock:
        lock = self._channel_locks.get(channel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._channel_locks[channel_id] = lock
        return lock

    async def get_ticket(self, channel_id: int) -> TicketRecord:
        ticket = await self.deps.ticket_repo.find_open_by_channel(channel_id)
        if ticket is None:
            raise NotATicketChannelError(channel_id=channel_id)
        return ticket

    async def list_tickets(
        self, guild_id: int, statuses: Iterable[str] | None = None, limit: int = 100
    ) -> list[TicketRecord]:
        wanted = list(statuses or [])
        unknown = [status for status in wanted if status not in TICKET_STATUSES]
        if unknown:
            raise ValidationError(f"Unknown ticket status: {', '.join(unknown)}")
        return await self.deps.ticket_repo.list_by_guild(guild_id, wanted, limit=limit)

    async def request_create(
        self,
        guild_id: int,
        user_id: int,
        requester_name: str,
        subject: str | None = None,
        priority: str = DEFAULT_PRIORITY,
    ) -> CreateResult:
        if priority not in PRIORITY_LEVELS:
            raise ValidationError(f"Priority must be one of: {', '.join(PRIORITY_LEVELS)}")

        async with self._guild_lock(guild_id):
            config = await self.deps.guild_repo.get_or_create(guild_id)
            existing = await self.deps.ticket_repo.find_open_by_user(guild_id, user_id)
            if existing:
                raise AlreadyOpenError(channel_id=existing.channel_id)

            number = await self.deps.guild_repo.reserve_ticket_number(guild_id)
            category_id = await self.deps.gateway.ensure_category(
                guild_id, config.ticket_category_id, self.config.tickets.category_name
            )
            if category_id != config.ticket_category_id:
                await self.deps.guild_repo.upsert(guild_id, {"ticket_category_id": category_id})

            now = utc_now()
            ticket_id = format_ticket_id(number)
            channel = await self.deps.gateway.create(
                guild_id,
                build_channel_name(self.config.tickets.channel_prefix, requester_name, now),
                category_id,
                PermissionSpec(
                    requester_id=user_id,
                    staff_role_ids=list(config.staff_role_ids),
                    staff_user_ids=list(config.staff_user_ids),
                ),
                topic=f"Ticket #{ticket_id} | user:{user_id}",
            )
            record = TicketRecord(
                id=str(uuid4()),
                ticket_number=number,
                ticket_id=ticket_id,
                guild_id=guild_id,
                channel_id=channel.channel_id,
                channel_name=channel.name,
                user_id=user_id,
                status=TICKET_STATUS_OPEN,
                priority=priority,
                subject=subject,
                created_at=to_iso(now),
            )
            try:
                await self._insert_ticket(record, now)
            except Exception:
                await self._discard_channel(channel.channel_id)
                raise

        await self.deps.stats.invalidate(guild_id)
        LOGGER.info(
            "Ticket %s created for user %s",
            record.display_id,
            user_id,
            extra={"guild_id": guild_id, "channel_id": channel.channel_id, "ticket_id": ticket_id},
        )
        await self._emit(
            "ticket_create",
            {"guild_id": guild_id, "ticket_id": ticket_id, "user_id": user_id, "channel_id": channel.channel_id},
        )
        return CreateResult(ticket=record, channel=channel)

    async def claim(self, channel_id: int, actor_id: int) -> TicketRecord:
        """Claim the ticket bound to ``channel_id``.

        Callers check staff privilege first. A ticket can be claimed once;
        repeating the claim, even by the same member, raises
        ``AlreadyClaimedError``.
        """
        async with self._channel_lock(channel_id):
            ticket = await self.get_ticket(channel_id)
            if ticket.claimed_by_id is not None:
                raise AlreadyClaimedError(claimed_by_id=ticket.claimed_by_id)

            now = utc_now()
            async with self.deps.db.transaction() as session:
                updated = await self.deps.ticket_repo.claim(channel_id, actor_id, to_iso(now), session)
                if updated == 0:
                    current = await self.deps.ticket_repo.find_open_by_channel(channel_id, session)
                    if current is None:
                        raise NotATicketChannelError(channel_id=channel_id)
                    raise AlreadyClaimedError(claimed_by_id=current.claimed_by_id)
                await self.deps.stats.increment(ticket.guild_id, StatsDelta(claimed=1), session, when=now)
                claimed = await self.deps.ticket_repo.get_by_id(ticket.id, session)
            assert claimed is not None

        await self.deps.stats.invalidate(ticket.guild_id)
        try:
            await self.deps.gateway.grant(channel_id, actor_id, is_role=False, level=ACCESS_STAFF)
        except ProvisioningFailedError:
            LOGGER.warning("Could not grant claimant %s access to channel %s", actor_id, channel_id)
        LOGGER.info(
            "Ticket %s claimed by %s",
            claimed.display_id,
            actor_id,
            extra={"guild_id": claimed.guild_id, "channel_id": channel_id, "actor_id": actor_id},
        )
        await self._emit(
            "ticket_claim",
            {"guild_id": claimed.guild_id, "ticket_id": claimed.ticket_id, "claimed_by_id": actor_id},
        )
        return claimed

    async def request_close(self, channel_id: int, actor_id: int | None = None) -> CloseRequest:
        ticket = await self.get_ticket(channel_id)
        return CloseRequest(
            token=uuid4().hex,
            channel_id=channel_id,
            ticket_id=ticket.ticket_id,
            requested_by_id=actor_id,
            requested_at=to_iso(utc_now()),
        )

    async def cancel_close(self, channel_id: int) -> TicketRecord:
        return await self.get_ticket(channel_id)

    async def confirm_close(self, channel_id: int, actor_id: int) -> CloseResult:
        return await self._close(channel_id, actor_id, CLOSE_MODE_CONFIRMED)

    async def force_close(self, channel_id: int, actor_id: int) -> CloseResult:
        return await self._close(channel_id, actor_id, CLOSE_MODE_FORCED)

    async def export_transcript(self, channel_id: int) -> TranscriptRef:
        async with self._channel_lock(channel_id):
            ticket = await self.get_ticket(channel_id)
            return await self.deps.transcripts.export(ticket, self.deps.gateway, utc_now())

    async def record_message(self, channel_id: int, message: TranscriptMessage) -> bool:
        # Never lands between a close-time archive and its commit.
        async with self._channel_lock(channel_id):
            ticket = await self.deps.ticket_repo.find_open_by_channel(channel_id)
            if ticket is None:
                return False
            return await self.deps.message_repo.append(ticket.id, message)

    async def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = to_iso(days_ago(self.config.tickets.retention_days, now))
        removed = await self.deps.ticket_repo.purge_closed_before(cutoff)
        if removed:
            LOGGER.info("Purged %s closed tickets older than %s", removed, cutoff)
        return removed

    async def _insert_ticket(self, record: TicketRecord, now: datetime) -> None:
        try:
            async with self.deps.db.transaction() as session:
                existing = await self.deps.ticket_repo.find_open_by_user(record.guild_id, record.user_id, session)
                if existing:
                    raise AlreadyOpenError(channel_id=existing.channel_id)
                await self.deps.ticket_repo.create(record, session)
                await self.deps.stats.increment(record.guild_id, StatsDelta(created=1), session, when=now)
        except IntegrityViolationError as exc:
            # Another process won the race for this requester.
            raise AlreadyOpenError() from exc

    async def _close(self, channel_id: int, actor_id: int, mode: str) -> CloseResult:
        async with self._channel_lock(channel_id):
            ticket = await self.get_ticket(channel_id)
            closed_at = utc_now()
            transcript = await self.deps.transcripts.archive(ticket, self.deps.gateway, closed_at)
            try:
                async with self.deps.db.transaction() as session:
                    updated = await self.deps.ticket_repo.close(
                        channel_id, actor_id, transcript.transcript_id, to_iso(closed_at), session
                    )
                    if updated == 0:
                        raise TicketNotFoundError()
                    await self.deps.stats.increment(ticket.guild_id, StatsDelta(closed=1), session, when=closed_at)
                    closed = await self.deps.ticket_repo.get_by_id(ticket.id, session)
            except Exception:
                await self.deps.transcripts.discard(transcript.transcript_id)
                raise
            assert closed is not None

        await self.deps.stats.invalidate(ticket.guild_id)
        delay = self.config.tickets.close_delete_delay_seconds
        self.deps.scheduler.schedule(channel_id, delay)
        transcript_url = self.deps.transcripts.url_for(transcript.transcript_id)
        notified = await self._deliver_transcript(closed, transcript_url)
        LOGGER.info(
            "Ticket %s closed by %s (%s)",
            closed.display_id,
            actor_id,
            mode,
            extra={"guild_id": closed.guild_id, "channel_id": channel_id, "actor_id": actor_id},
        )
        await self._emit(
            "ticket_close",
            {
                "guild_id": closed.guild_id,
                "ticket_id": closed.ticket_id,
                "closed_by_id": actor_id,
                "mode": mode,
                "transcript_id": transcript.transcript_id,
            },
        )
        return CloseResult(
            ticket=closed,
            transcript=transcript,
            transcript_url=transcript_url,
            mode=mode,
            delete_after=delay,
            notified=notified,
        )

    async def _deliver_transcript(self, ticket: TicketRecord, transcript_url: str) -> bool:
        try:
            await self.deps.gateway.send_transcript_notice(ticket.user_id, ticket, transcript_url)
        except Exception:
            # Requesters may block DMs; the close itself already succeeded.
            LOGGER.warning("Transcript notice to user %s failed", ticket.user_id, exc_info=True)
            return False
        return True

    async def _discard_channel(self, channel_id: int) -> None:
        try:
            await self.deps.gateway.delete(channel_id)
        except ProvisioningFailedError:
            LOGGER.exception("Could not remove orphaned ticket channel %s", channel_id)

    async def _emit(self, event: str, payload: dict[str, object]) -> None:
        if self.deps.audit is not None:
            await self.deps.audit.emit(event, payload)
