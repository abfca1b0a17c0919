from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from core.config import WebhookLogConfig
from utils.constants import LIFECYCLE_EVENTS
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)


class AuditService:
    """Posts lifecycle events to an optional Discord-compatible webhook."""

    def __init__(self, config: WebhookLogConfig) -> None:
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.config.url)

    def build_payload(self, event: str, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "content": None,
            "embeds": [
                {
                    "title": event.replace("_", " ").title(),
                    "description": f"```json\n{json.dumps(payload, indent=2, default=str)[:3500]}\n```",
                    "timestamp": to_iso(utc_now()),
                }
            ],
        }

    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        if event not in LIFECYCLE_EVENTS:
            raise ValueError(f"Unknown lifecycle event: {event}")
        if not self.enabled:
            return
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.config.url,
                    json=self.build_payload(event, payload),
                    timeout=aiohttp.ClientTimeout(total=10),
                ) as response:
                    if response.status >= 400:
                        LOGGER.warning("Webhook rejected %s event with HTTP %s", event, response.status)
        except (aiohttp.ClientError, TimeoutError):
            LOGGER.exception("Failed to send webhook log for %s", event)
