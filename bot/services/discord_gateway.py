from __future__ import annotations

import logging

import discord

from core.errors import ProvisioningFailedError
from database.models import TicketRecord, TranscriptAttachment, TranscriptMessage
from services.channels import ChannelGateway, PermissionSpec, ProvisionedChannel
from utils.constants import ACCESS_STAFF
from utils.embeds import transcript_notice_embed
from utils.time import to_iso

LOGGER = logging.getLogger(__name__)

REQUESTER_OVERWRITE = discord.PermissionOverwrite(
    view_channel=True,
    send_messages=True,
    read_message_history=True,
    attach_files=True,
    embed_links=True,
    add_reactions=True,
)
STAFF_OVERWRITE = discord.PermissionOverwrite(
    view_channel=True,
    send_messages=True,
    read_message_history=True,
    manage_messages=True,
    attach_files=True,
    embed_links=True,
)
BOT_OVERWRITE = discord.PermissionOverwrite(
    view_channel=True,
    send_messages=True,
    read_message_history=True,
    manage_channels=True,
    manage_messages=True,
)


def message_to_transcript(message: discord.Message) -> TranscriptMessage:
    author = message.author
    return TranscriptMessage(
        message_id=message.id,
        author_id=author.id,
        author_username=author.name,
        author_discriminator=author.discriminator,
        author_avatar=author.display_avatar.url,
        content=message.content,
        timestamp=to_iso(message.created_at),
        attachments=[
            TranscriptAttachment(name=attachment.filename, url=attachment.url, size=attachment.size)
            for attachment in message.attachments
        ],
        embeds=[embed.to_dict() for embed in message.embeds],
    )


class DiscordChannelGateway(ChannelGateway):
    def __init__(self, client: discord.Client) -> None:
        self.client = client

    def _guild(self, guild_id: int) -> discord.Guild:
        guild = self.client.get_guild(guild_id)
        if guild is None:
            raise ProvisioningFailedError()
        return guild

    def _text_channel(self, channel_id: int) -> discord.TextChannel:
        channel = self.client.get_channel(channel_id)
        if not isinstance(channel, discord.TextChannel):
            raise ProvisioningFailedError()
        return channel

    async def ensure_category(self, guild_id: int, category_id: int | None, name: str) -> int | None:
        guild = self._guild(guild_id)
        if category_id:
            existing = guild.get_channel(category_id)
            if isinstance(existing, discord.CategoryChannel):
                return existing.id
        found = discord.utils.get(guild.categories, name=name)
        if found:
            return found.id
        try:
            created = await guild.create_category(name=name, reason="Ticket category")
        except discord.HTTPException as exc:
            raise ProvisioningFailedError() from exc
        LOGGER.info("Created ticket category %s in guild %s", created.id, guild_id)
        return created.id

    async def create(
        self,
        guild_id: int,
        name: str,
        parent_category_id: int | None,
        permissions: PermissionSpec,
        topic: str | None = None,
    ) -> ProvisionedChannel:
        guild = self._guild(guild_id)
        overwrites: dict[discord.abc.Snowflake, discord.PermissionOverwrite] = {
            guild.default_role: discord.PermissionOverwrite(view_channel=False),
            guild.get_member(permissions.requester_id) or discord.Object(id=permissions.requester_id): REQUESTER_OVERWRITE,
            guild.me: BOT_OVERWRITE,
        }
        for role_id in permissions.staff_role_ids:
            role = guild.get_role(role_id)
            if role:
                overwrites[role] = STAFF_OVERWRITE
        for user_id in permissions.staff_user_ids:
            overwrites[guild.get_member(user_id) or discord.Object(id=user_id)] = STAFF_OVERWRITE

        category = guild.get_channel(parent_category_id) if parent_category_id else None
        if not isinstance(category, discord.CategoryChannel):
            category = None
        try:
            channel = await guild.create_text_channel(
                name=name,
                category=category,
                overwrites=overwrites,
                topic=topic,
                reason=f"Ticket created for {permissions.requester_id}",
            )
        except discord.HTTPException as exc:
            raise ProvisioningFailedError() from exc
        return ProvisionedChannel(channel_id=channel.id, name=channel.name, category_id=channel.category_id)

    async def delete(self, channel_id: int) -> None:
        channel = self.client.get_channel(channel_id)
        if channel is None:
            LOGGER.debug("Channel %s already gone", channel_id)
            return
        try:
            await channel.delete(reason="Ticket closed")
        except discord.NotFound:
            return
        except discord.HTTPException as exc:
            raise ProvisioningFailedError() from exc

    async def fetch_history(self, channel_id: int, limit: int) -> list[TranscriptMessage]:
        channel = self._text_channel(channel_id)
        try:
            # Newest first from the API; reversed so callers get chronological order.
            messages = [message async for message in channel.history(limit=limit)]
        except discord.HTTPException as exc:
            raise ProvisioningFailedError() from exc
        messages.reverse()
        return [message_to_transcript(message) for message in messages]

    async def grant(self, channel_id: int, principal_id: int, is_role: bool, level: str) -> None:
        channel = self._text_channel(channel_id)
        target: discord.abc.Snowflake | None
        if is_role:
            target = channel.guild.get_role(principal_id)
        else:
            target = channel.guild.get_member(principal_id) or discord.Object(id=principal_id)
        if target is None:
            raise ProvisioningFailedError()
        overwrite = STAFF_OVERWRITE if level == ACCESS_STAFF else REQUESTER_OVERWRITE
        try:
            await channel.set_permissions(target, overwrite=overwrite, reason="Ticket access granted")
        except discord.HTTPException as exc:
            raise ProvisioningFailedError() from exc

    async def send_transcript_notice(self, user_id: int, ticket: TicketRecord, transcript_url: str) -> None:
        user = self.client.get_user(user_id) or await self.client.fetch_user(user_id)
        await user.send(embed=transcript_notice_embed(ticket, transcript_url))
