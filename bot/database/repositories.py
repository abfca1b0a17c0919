from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import Any
from uuid import uuid4

from database.base import Database, DatabaseSession
from database.models import (
    DailyStats,
    GuildConfig,
    TicketRecord,
    TranscriptAttachment,
    TranscriptMessage,
)
from utils.constants import ACTIVE_STATUSES, TICKET_STATUS_CLAIMED, TICKET_STATUS_CLOSED, TICKET_STATUS_OPEN
from utils.time import to_iso, utc_now

Executor = Database | DatabaseSession

GUILD_PATCH_FIELDS = {
    "prefix": "prefix",
    "staff_role_ids": "staff_role_ids_json",
    "staff_user_ids": "staff_user_ids_json",
    "ticket_category_id": "ticket_category_id",
    "log_channel_id": "log_channel_id",
    "setup_channel_id": "setup_channel_id",
}

TICKET_PATCH_FIELDS = {
    "status",
    "priority",
    "subject",
    "claimed_by_id",
    "claimed_at",
    "closed_by_id",
    "closed_at",
    "transcript_id",
}

# Fields that must always be written together.
PAIRED_TICKET_FIELDS = (("claimed_by_id", "claimed_at"), ("closed_by_id", "closed_at"))


def _json_load(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _now_iso() -> str:
    return to_iso(utc_now())


def _opt_int(value: Any) -> int | None:
    return int(value) if value is not None else None


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class GuildRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def _ensure(self, guild_id: int, executor: Executor) -> None:
        now = _now_iso()
        await executor.execute(
            """
            INSERT INTO guild_settings(guild_id, created_at, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(guild_id) DO NOTHING;
            """,
            [guild_id, now, now],
        )

    async def get(self, guild_id: int, session: DatabaseSession | None = None) -> GuildConfig | None:
        row = await (session or self.db).fetchone(
            "SELECT * FROM guild_settings WHERE guild_id = ?;",
            [guild_id],
        )
        if not row:
            return None
        return self._row_to_config(row)

    async def get_or_create(self, guild_id: int, session: DatabaseSession | None = None) -> GuildConfig:
        executor = session or self.db
        await self._ensure(guild_id, executor)
        config = await self.get(guild_id, session)
        assert config is not None
        return config

    async def upsert(
        self, guild_id: int, patch: Mapping[str, Any], session: DatabaseSession | None = None
    ) -> GuildConfig:
        unknown = set(patch) - set(GUILD_PATCH_FIELDS)
        if unknown:
            raise ValueError(f"Unknown guild config fields: {sorted(unknown)}")
        executor = session or self.db
        await self._ensure(guild_id, executor)
        if patch:
            assignments: list[str] = []
            params: list[Any] = []
            for key, value in patch.items():
                assignments.append(f"{GUILD_PATCH_FIELDS[key]} = ?")
                if key in {"staff_role_ids", "staff_user_ids"}:
                    # Keep first-seen order while dropping duplicates.
                    value = _json_dump(list(dict.fromkeys(int(x) for x in value)))
                params.append(value)
            params.extend([_now_iso(), guild_id])
            await executor.execute(
                f"UPDATE guild_settings SET {', '.join(assignments)}, updated_at = ? WHERE guild_id = ?;",
                params,
            )
        return await self.get_or_create(guild_id, session)

    async def reserve_ticket_number(self, guild_id: int) -> int:
        """Atomically bump the guild counter and return the new value."""
        async with self.db.transaction() as session:
            await self._ensure(guild_id, session)
            await session.execute(
                """
                UPDATE guild_settings
                SET ticket_counter = ticket_counter + 1, updated_at = ?
                WHERE guild_id = ?;
                """,
                [_now_iso(), guild_id],
            )
            row = await session.fetchone(
                "SELECT ticket_counter FROM guild_settings WHERE guild_id = ?;",
                [guild_id],
            )
        assert row is not None
        return int(row["ticket_counter"])

    def _row_to_config(self, row: dict[str, Any]) -> GuildConfig:
        return GuildConfig(
            guild_id=int(row["guild_id"]),
            prefix=row["prefix"],
            staff_role_ids=[int(x) for x in _json_load(row["staff_role_ids_json"], [])],
            staff_user_ids=[int(x) for x in _json_load(row["staff_user_ids_json"], [])],
            ticket_category_id=_opt_int(row["ticket_category_id"]),
            log_channel_id=_opt_int(row["log_channel_id"]),
            setup_channel_id=_opt_int(row["setup_channel_id"]),
            ticket_counter=int(row["ticket_counter"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class TicketRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, ticket: TicketRecord, session: DatabaseSession | None = None) -> TicketRecord:
        now = _now_iso()
        ticket.created_at = ticket.created_at or now
        ticket.updated_at = now
        await (session or self.db).execute(
            """
            INSERT INTO tickets(
                id, ticket_number, ticket_id, guild_id, channel_id, channel_name, user_id,
                status, priority, subject, claimed_by_id, claimed_at, closed_by_id, closed_at,
                transcript_id, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                ticket.id,
                ticket.ticket_number,
                ticket.ticket_id,
                ticket.guild_id,
                ticket.channel_id,
                ticket.channel_name,
                ticket.user_id,
                ticket.status,
                ticket.priority,
                ticket.subject,
                ticket.claimed_by_id,
                ticket.claimed_at,
                ticket.closed_by_id,
                ticket.closed_at,
                ticket.transcript_id,
                ticket.created_at,
                ticket.updated_at,
            ],
        )
        return ticket

    async def get_by_id(self, row_id: str, session: DatabaseSession | None = None) -> TicketRecord | None:
        row = await (session or self.db).fetchone("SELECT * FROM tickets WHERE id = ?;", [row_id])
        if not row:
            return None
        return self._row_to_ticket(row)

    async def find_open_by_channel(
        self, channel_id: int, session: DatabaseSession | None = None
    ) -> TicketRecord | None:
        row = await (session or self.db).fetchone(
            f"""
            SELECT * FROM tickets
            WHERE channel_id = ? AND status IN ({_placeholders(len(ACTIVE_STATUSES))});
            """,
            [channel_id, *ACTIVE_STATUSES],
        )
        if not row:
            return None
        return self._row_to_ticket(row)

    async def find_open_by_user(
        self, guild_id: int, user_id: int, session: DatabaseSession | None = None
    ) -> TicketRecord | None:
        row = await (session or self.db).fetchone(
            f"""
            SELECT * FROM tickets
            WHERE guild_id = ? AND user_id = ? AND status IN ({_placeholders(len(ACTIVE_STATUSES))});
            """,
            [guild_id, user_id, *ACTIVE_STATUSES],
        )
        if not row:
            return None
        return self._row_to_ticket(row)

    async def list_by_guild(
        self, guild_id: int, statuses: Iterable[str] | None = None, limit: int = 100
    ) -> list[TicketRecord]:
        params: list[Any] = [guild_id]
        status_clause = ""
        wanted = list(statuses or [])
        if wanted:
            status_clause = f"AND status IN ({_placeholders(len(wanted))})"
            params.extend(wanted)
        params.append(limit)
        rows = await self.db.fetchall(
            f"""
            SELECT * FROM tickets
            WHERE guild_id = ? {status_clause}
            ORDER BY ticket_number DESC
            LIMIT ?;
            """,
            params,
        )
        return [self._row_to_ticket(row) for row in rows]

    async def count_by_status(self, guild_id: int) -> dict[str, int]:
        rows = await self.db.fetchall(
            """
            SELECT status, COUNT(*) AS total FROM tickets
            WHERE guild_id = ?
            GROUP BY status;
            """,
            [guild_id],
        )
        counts = {TICKET_STATUS_OPEN: 0, TICKET_STATUS_CLAIMED: 0, TICKET_STATUS_CLOSED: 0}
        for row in rows:
            counts[row["status"]] = int(row["total"])
        return counts

    async def update(
        self, channel_id: int, patch: Mapping[str, Any], session: DatabaseSession | None = None
    ) -> int:
        """Apply ``patch`` to the active ticket bound to ``channel_id``.

        Returns the number of rows written (0 or 1).
        """
        unknown = set(patch) - TICKET_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Unknown ticket fields: {sorted(unknown)}")
        for first, second in PAIRED_TICKET_FIELDS:
            if (first in patch) != (second in patch):
                raise ValueError(f"{first} and {second} must be updated together")
            if first in patch and (patch[first] is None) != (patch[second] is None):
                raise ValueError(f"{first} and {second} must both be set or both be cleared")
        if not patch:
            return 0
        assignments = [f"{key} = ?" for key in patch]
        params: list[Any] = [*patch.values(), _now_iso(), channel_id, *ACTIVE_STATUSES]
        return await (session or self.db).execute(
            f"""
            UPDATE tickets
            SET {', '.join(assignments)}, updated_at = ?
            WHERE channel_id = ? AND status IN ({_placeholders(len(ACTIVE_STATUSES))});
            """,
            params,
        )

    async def claim(
        self, channel_id: int, claimer_id: int, claimed_at: str, session: DatabaseSession | None = None
    ) -> int:
        return await (session or self.db).execute(
            """
            UPDATE tickets
            SET status = ?, claimed_by_id = ?, claimed_at = ?, updated_at = ?
            WHERE channel_id = ? AND status = ? AND claimed_by_id IS NULL;
            """,
            [TICKET_STATUS_CLAIMED, claimer_id, claimed_at, claimed_at, channel_id, TICKET_STATUS_OPEN],
        )

    async def close(
        self,
        channel_id: int,
        closer_id: int,
        transcript_id: str | None,
        closed_at: str,
        session: DatabaseSession | None = None,
    ) -> int:
        return await (session or self.db).execute(
            f"""
            UPDATE tickets
            SET status = ?, closed_by_id = ?, closed_at = ?, transcript_id = ?, updated_at = ?
            WHERE channel_id = ? AND status IN ({_placeholders(len(ACTIVE_STATUSES))});
            """,
            [TICKET_STATUS_CLOSED, closer_id, closed_at, transcript_id, closed_at, channel_id, *ACTIVE_STATUSES],
        )

    async def purge_closed_before(self, cutoff_iso: str) -> int:
        async with self.db.transaction() as session:
            # Explicit child delete keeps sqlite connections without FK enforcement consistent.
            await session.execute(
                """
                DELETE FROM ticket_messages
                WHERE ticket_row_id IN (
                    SELECT id FROM tickets WHERE status = ? AND closed_at < ?
                );
                """,
                [TICKET_STATUS_CLOSED, cutoff_iso],
            )
            return await session.execute(
                "DELETE FROM tickets WHERE status = ? AND closed_at < ?;",
                [TICKET_STATUS_CLOSED, cutoff_iso],
            )

    def _row_to_ticket(self, row: dict[str, Any]) -> TicketRecord:
        return TicketRecord(
            id=row["id"],
            ticket_number=int(row["ticket_number"]),
            ticket_id=row["ticket_id"],
            guild_id=int(row["guild_id"]),
            channel_id=int(row["channel_id"]),
            channel_name=row["channel_name"],
            user_id=int(row["user_id"]),
            status=row["status"],
            priority=row["priority"],
            subject=row["subject"],
            claimed_by_id=_opt_int(row["claimed_by_id"]),
            claimed_at=row["claimed_at"],
            closed_by_id=_opt_int(row["closed_by_id"]),
            closed_at=row["closed_at"],
            transcript_id=row["transcript_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class MessageRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def append(
        self, ticket_row_id: str, message: TranscriptMessage, session: DatabaseSession | None = None
    ) -> bool:
        """Store ``message`` unless it is already recorded; never overwrites."""
        written = await (session or self.db).execute(
            """
            INSERT INTO ticket_messages(
                id, ticket_row_id, message_id, author_id, author_username, author_discriminator,
                author_avatar, content, attachments_json, embeds_json, timestamp
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(ticket_row_id, message_id) DO NOTHING;
            """,
            [
                str(uuid4()),
                ticket_row_id,
                message.message_id,
                message.author_id,
                message.author_username,
                message.author_discriminator,
                message.author_avatar,
                message.content,
                _json_dump([attachment.to_dict() for attachment in message.attachments]),
                _json_dump(message.embeds),
                message.timestamp,
            ],
        )
        return written > 0

    async def list_for_ticket(self, ticket_row_id: str, session: DatabaseSession | None = None) -> list[TranscriptMessage]:
        rows = await (session or self.db).fetchall(
            """
            SELECT * FROM ticket_messages
            WHERE ticket_row_id = ?
            ORDER BY timestamp ASC, message_id ASC;
            """,
            [ticket_row_id],
        )
        return [self._row_to_message(row) for row in rows]

    async def count(self, ticket_row_id: str) -> int:
        row = await self.db.fetchone(
            "SELECT COUNT(*) AS total FROM ticket_messages WHERE ticket_row_id = ?;",
            [ticket_row_id],
        )
        return int(row["total"]) if row else 0

    def _row_to_message(self, row: dict[str, Any]) -> TranscriptMessage:
        return TranscriptMessage(
            message_id=int(row["message_id"]),
            author_id=int(row["author_id"]),
            author_username=row["author_username"],
            author_discriminator=row["author_discriminator"],
            author_avatar=row["author_avatar"],
            content=row["content"],
            timestamp=row["timestamp"],
            attachments=[
                TranscriptAttachment(name=item["name"], url=item["url"], size=int(item.get("size", 0)))
                for item in _json_load(row["attachments_json"], [])
            ],
            embeds=list(_json_load(row["embeds_json"], [])),
        )


class StatsRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def increment(
        self,
        guild_id: int,
        day: str,
        created: int = 0,
        claimed: int = 0,
        closed: int = 0,
        session: DatabaseSession | None = None,
    ) -> None:
        await (session or self.db).execute(
            """
            INSERT INTO ticket_stats(guild_id, day, tickets_created, tickets_claimed, tickets_closed)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(guild_id, day) DO UPDATE SET
                tickets_created = ticket_stats.tickets_created + excluded.tickets_created,
                tickets_claimed = ticket_stats.tickets_claimed + excluded.tickets_claimed,
                tickets_closed = ticket_stats.tickets_closed + excluded.tickets_closed;
            """,
            [guild_id, day, created, claimed, closed],
        )

    async def lifetime_totals(self, guild_id: int) -> dict[str, int]:
        row = await self.db.fetchone(
            """
            SELECT COALESCE(SUM(tickets_created), 0) AS created,
                   COALESCE(SUM(tickets_claimed), 0) AS claimed,
                   COALESCE(SUM(tickets_closed), 0) AS closed
            FROM ticket_stats
            WHERE guild_id = ?;
            """,
            [guild_id],
        )
        if row is None:
            return {"created": 0, "claimed": 0, "closed": 0}
        return {key: int(row[key]) for key in ("created", "claimed", "closed")}

    async def history(self, guild_id: int, since_day: str) -> list[DailyStats]:
        rows = await self.db.fetchall(
            """
            SELECT day, tickets_created, tickets_claimed, tickets_closed
            FROM ticket_stats
            WHERE guild_id = ? AND day >= ?
            ORDER BY day ASC;
            """,
            [guild_id, since_day],
        )
        return [
            DailyStats(
                day=row["day"],
                created=int(row["tickets_created"]),
                claimed=int(row["tickets_claimed"]),
                closed=int(row["tickets_closed"]),
            )
            for row in rows
        ]
