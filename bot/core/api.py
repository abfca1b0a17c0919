from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import HTMLResponse, JSONResponse

from core.errors import ValidationError
from database.models import TicketRecord

if TYPE_CHECKING:
    from core.bot import TicketBot


def _auth(x_api_key: str | None, expected: str) -> None:
    if not expected:
        return
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _ticket_to_dict(ticket: TicketRecord) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "ticket_id": ticket.ticket_id,
        "channel_id": str(ticket.channel_id),
        "user_id": str(ticket.user_id),
        "status": ticket.status,
        "priority": ticket.priority,
        "subject": ticket.subject,
        "claimed_by_id": str(ticket.claimed_by_id) if ticket.claimed_by_id else None,
        "claimed_at": ticket.claimed_at,
        "closed_by_id": str(ticket.closed_by_id) if ticket.closed_by_id else None,
        "closed_at": ticket.closed_at,
        "transcript_id": ticket.transcript_id,
        "created_at": ticket.created_at,
    }


def create_api_app(bot: TicketBot) -> FastAPI:
    app = FastAPI(title="Ticket Bot API", version="1.0.0")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/transcript/{transcript_id}")
    async def transcript(transcript_id: str, format: str = Query(default="html")) -> Any:
        payload = await bot.transcript_service.load(transcript_id)
        if payload is None:
            raise HTTPException(status_code=404, detail="Transcript not found")
        if format == "json":
            return JSONResponse(payload)
        return HTMLResponse(bot.transcript_service.render_html(payload))

    @app.get("/guilds/{guild_id}/stats")
    async def guild_stats(
        guild_id: int, days: int = Query(default=7, ge=1, le=90), x_api_key: str | None = Header(default=None)
    ) -> dict[str, object]:
        _auth(x_api_key, bot.config.fastapi.api_key)
        stats = await bot.stats_service.snapshot(guild_id)
        history = await bot.stats_service.history(guild_id, days)
        return {
            **stats.as_dict(),
            "history": [
                {"day": day.day, "created": day.created, "claimed": day.claimed, "closed": day.closed}
                for day in history
            ],
        }

    @app.get("/guilds/{guild_id}/tickets")
    async def guild_tickets(
        guild_id: int,
        status: str | None = Query(default=None),
        limit: int = Query(default=200, ge=1, le=500),
        x_api_key: str | None = Header(default=None),
    ) -> dict[str, object]:
        _auth(x_api_key, bot.config.fastapi.api_key)
        statuses = [item.strip() for item in status.split(",") if item.strip()] if status else None
        try:
            rows = await bot.ticket_service.list_tickets(guild_id, statuses, limit=limit)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.user_message) from exc
        return {"items": [_ticket_to_dict(row) for row in rows]}

    return app
