from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from utils.constants import (
    ACTIVE_STATUSES,
    DEFAULT_PREFIX,
    DEFAULT_PRIORITY,
    TICKET_ID_WIDTH,
    TICKET_STATUS_CLOSED,
)


def format_ticket_id(number: int) -> str:
    return str(number).zfill(TICKET_ID_WIDTH)


@dataclass(slots=True)
class GuildConfig:
    guild_id: int
    prefix: str = DEFAULT_PREFIX
    staff_role_ids: list[int] = field(default_factory=list)
    staff_user_ids: list[int] = field(default_factory=list)
    ticket_category_id: int | None = None
    log_channel_id: int | None = None
    setup_channel_id: int | None = None
    ticket_counter: int = 0
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(slots=True)
class TicketRecord:
    id: str
    ticket_number: int
    ticket_id: str
    guild_id: int
    channel_id: int
    channel_name: str
    user_id: int
    status: str
    priority: str = DEFAULT_PRIORITY
    subject: str | None = None
    claimed_by_id: int | None = None
    claimed_at: str | None = None
    closed_by_id: int | None = None
    closed_at: str | None = None
    transcript_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def display_id(self) -> str:
        return f"#{self.ticket_id}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_closed(self) -> bool:
        return self.status == TICKET_STATUS_CLOSED


@dataclass(slots=True)
class TranscriptAttachment:
    name: str
    url: str
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "url": self.url, "size": self.size}


@dataclass(slots=True)
class TranscriptMessage:
    message_id: int
    author_id: int
    author_username: str
    content: str
    timestamp: str
    author_discriminator: str = "0"
    author_avatar: str | None = None
    attachments: list[TranscriptAttachment] = field(default_factory=list)
    embeds: list[dict[str, Any]] = field(default_factory=list)

    def to_artifact(self) -> dict[str, Any]:
        return {
            "author": {
                "id": str(self.author_id),
                "username": self.author_username,
                "discriminator": self.author_discriminator,
                "avatar": self.author_avatar,
            },
            "content": self.content,
            "timestamp": self.timestamp,
            "attachments": [attachment.to_dict() for attachment in self.attachments],
            "embeds": list(self.embeds),
        }


@dataclass(slots=True)
class TranscriptRef:
    transcript_id: str
    ticket_id: str
    path: str
    closed_at: str
    message_count: int


@dataclass(slots=True)
class GuildStats:
    guild_id: int
    total: int = 0
    open: int = 0
    claimed: int = 0
    closed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"total": self.total, "open": self.open, "claimed": self.claimed, "closed": self.closed}


@dataclass(slots=True)
class DailyStats:
    day: str
    created: int = 0
    claimed: int = 0
    closed: int = 0
