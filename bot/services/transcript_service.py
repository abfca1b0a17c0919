from __future__ import annotations

import asyncio
import html
import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from core.config import TranscriptConfig
from core.errors import ArchiveFailedError, PersistenceFailedError, ProvisioningFailedError
from database.models import TicketRecord, TranscriptMessage, TranscriptRef
from database.repositories import MessageRepository
from services.channels import ChannelGateway
from utils.time import epoch_millis, to_iso

LOGGER = logging.getLogger(__name__)

TRANSCRIPT_ID_PATTERN = re.compile(r"^[0-9]+-[0-9]+$")

# Failures that abort archiving without touching the ticket.
ARCHIVE_ERRORS = (ProvisioningFailedError, PersistenceFailedError, OSError, TypeError, ValueError)


def transcript_key(ticket_id: str, at: datetime) -> str:
    return f"{ticket_id}-{epoch_millis(at)}"


class TranscriptService:
    def __init__(self, config: TranscriptConfig, message_repo: MessageRepository) -> None:
        self.config = config
        self.message_repo = message_repo
        self.base_dir = Path(config.storage_directory)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, transcript_id: str) -> Path:
        if not TRANSCRIPT_ID_PATTERN.match(transcript_id):
            raise ValueError(f"Invalid transcript id: {transcript_id!r}")
        return self.base_dir / f"{transcript_id}.json"

    def url_for(self, transcript_id: str) -> str:
        return f"{self.config.public_base_url}/transcript/{transcript_id}"

    async def archive(self, ticket: TicketRecord, gateway: ChannelGateway, closed_at: datetime) -> TranscriptRef:
        """Write the close-time transcript for ``ticket``.

        A ticket that is already closed keeps the artifact recorded at close
        time; it is returned instead of being regenerated.
        """
        if ticket.is_closed:
            if not ticket.transcript_id:
                raise ArchiveFailedError()
            return await self._existing_ref(ticket)
        return await self._snapshot(ticket, gateway, closed_at, closed=True)

    async def export(self, ticket: TicketRecord, gateway: ChannelGateway, at: datetime) -> TranscriptRef:
        """Write a transcript of the history so far without closing the ticket."""
        return await self._snapshot(ticket, gateway, at, closed=False)

    async def collect_messages(self, ticket: TicketRecord, gateway: ChannelGateway) -> list[TranscriptMessage]:
        messages = await self.message_repo.list_for_ticket(ticket.id)
        if messages:
            return messages
        fetched = await gateway.fetch_history(ticket.channel_id, self.config.history_limit)
        for message in fetched:
            await self.message_repo.append(ticket.id, message)
        LOGGER.info(
            "Backfilled %s messages for ticket %s",
            len(fetched),
            ticket.ticket_id,
            extra={"ticket_id": ticket.ticket_id, "channel_id": ticket.channel_id},
        )
        return fetched

    def build_payload(
        self, ticket: TicketRecord, messages: list[TranscriptMessage], closed_at: str | None
    ) -> dict[str, Any]:
        return {
            "ticketId": ticket.ticket_id,
            "channelName": ticket.channel_name,
            "channelId": str(ticket.channel_id),
            "guildId": str(ticket.guild_id),
            "userId": str(ticket.user_id),
            "createdAt": ticket.created_at,
            "closedAt": closed_at,
            "messages": [message.to_artifact() for message in messages],
        }

    async def load(self, transcript_id: str) -> dict[str, Any] | None:
        try:
            path = self.path_for(transcript_id)
        except ValueError:
            return None
        if not path.is_file():
            return None
        raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return json.loads(raw)

    async def discard(self, transcript_id: str) -> None:
        """Remove an artifact whose ticket transition was rolled back."""
        path = self.path_for(transcript_id)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError:
            LOGGER.exception("Could not discard transcript %s", transcript_id)
            return
        LOGGER.info("Discarded transcript %s", transcript_id)

    async def _snapshot(
        self, ticket: TicketRecord, gateway: ChannelGateway, at: datetime, closed: bool
    ) -> TranscriptRef:
        transcript_id = transcript_key(ticket.ticket_id, at)
        try:
            messages = await self.collect_messages(ticket, gateway)
            payload = self.build_payload(ticket, messages, to_iso(at) if closed else None)
            path = await asyncio.to_thread(self._write_artifact, transcript_id, payload)
        except ARCHIVE_ERRORS as exc:
            LOGGER.warning(
                "Transcript archive failed for ticket %s: %s",
                ticket.ticket_id,
                exc,
                extra={"ticket_id": ticket.ticket_id, "guild_id": ticket.guild_id},
            )
            raise ArchiveFailedError() from exc
        LOGGER.info(
            "Stored transcript %s (%s messages)",
            transcript_id,
            len(messages),
            extra={"ticket_id": ticket.ticket_id, "guild_id": ticket.guild_id},
        )
        return TranscriptRef(
            transcript_id=transcript_id,
            ticket_id=ticket.ticket_id,
            path=str(path),
            closed_at=to_iso(at),
            message_count=len(messages),
        )

    async def _existing_ref(self, ticket: TicketRecord) -> TranscriptRef:
        assert ticket.transcript_id is not None
        try:
            payload = await self.load(ticket.transcript_id)
        except ARCHIVE_ERRORS as exc:
            raise ArchiveFailedError() from exc
        if payload is None:
            raise ArchiveFailedError()
        return TranscriptRef(
            transcript_id=ticket.transcript_id,
            ticket_id=ticket.ticket_id,
            path=str(self.path_for(ticket.transcript_id)),
            closed_at=ticket.closed_at or "",
            message_count=len(payload.get("messages", [])),
        )

    def _write_artifact(self, transcript_id: str, payload: dict[str, Any]) -> Path:
        path = self.path_for(transcript_id)
        data = json.dumps(payload, ensure_ascii=False, indent=2)
        # Exclusive create: an existing artifact is never overwritten.
        with path.open("x", encoding="utf-8") as handle:
            try:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            except BaseException:
                handle.close()
                path.unlink(missing_ok=True)
                raise
        return path

    @staticmethod
    def render_html(payload: dict[str, Any]) -> str:
        rows: list[str] = []
        for msg in payload.get("messages", []):
            author = msg.get("author", {})
            escaped_content = html.escape(msg.get("content") or "")
            attachment_html = ""
            if msg.get("attachments"):
                links = "".join(
                    f'<li><a href="{html.escape(a["url"])}">{html.escape(a["name"])}</a></li>'
                    for a in msg["attachments"]
                )
                attachment_html = f"<ul>{links}</ul>"
            rows.append(
                "<div class='msg'>"
                f"<div class='meta'>{html.escape(str(author.get('username', '')))} | "
                f"{html.escape(str(msg.get('timestamp', '')))}</div>"
                f"<div class='content'>{escaped_content}</div>"
                f"{attachment_html}"
                "</div>"
            )

        return (
            "<!doctype html><html><head><meta charset='utf-8'>"
            "<style>"
            "body{font-family:Arial,sans-serif;background:#f5f7fb;color:#1f2937;padding:16px;}"
            ".msg{background:white;border:1px solid #e5e7eb;border-radius:8px;padding:10px;margin-bottom:8px;}"
            ".meta{font-size:12px;color:#6b7280;margin-bottom:6px;}"
            ".content{white-space:pre-wrap;}"
            "ul{margin-top:8px;}"
            "</style></head><body>"
            f"<h1>Transcript - #{html.escape(str(payload.get('channelName', '')))}</h1>"
            f"<p>Ticket #{html.escape(str(payload.get('ticketId', '')))}</p>"
            + "".join(rows)
            + "</body></html>"
        )
