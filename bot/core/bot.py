from __future__ import annotations

import logging
from pathlib import Path

import discord
from discord.ext import commands

from core.config import AppConfig
from core.errors import handle_app_command_error, handle_prefix_command_error
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import GuildRepository, MessageRepository, StatsRepository, TicketRepository
from services.audit_service import AuditService
from services.cache import CacheBackend, build_cache
from services.discord_gateway import DiscordChannelGateway
from services.scheduler import DeletionScheduler
from services.staff_service import StaffService
from services.stats_service import StatsService
from services.ticket_service import TicketService, TicketServiceDeps
from services.transcript_service import TranscriptService

LOGGER = logging.getLogger(__name__)

ACTIVITY_TYPES = {
    "playing": discord.ActivityType.playing,
    "listening": discord.ActivityType.listening,
    "watching": discord.ActivityType.watching,
    "competing": discord.ActivityType.competing,
}


async def _resolve_prefix(bot: TicketBot, message: discord.Message) -> list[str]:
    prefix = bot.config.discord.prefix
    if message.guild is not None and hasattr(bot, "guild_repo"):
        settings = await bot.guild_repo.get(message.guild.id)
        if settings and settings.prefix:
            prefix = settings.prefix
    return commands.when_mentioned_or(prefix)(bot, message)


class TicketBot(commands.Bot):
    def __init__(self, config: AppConfig) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.message_content = True

        super().__init__(
            command_prefix=_resolve_prefix,
            intents=intents,
            application_id=config.discord.application_id,
            allowed_mentions=discord.AllowedMentions(
                everyone=config.discord.allowed_mentions_everyone,
                roles=True,
                users=True,
                replied_user=False,
            ),
            help_command=None,
        )
        self.config = config
        self.root_dir = Path(__file__).resolve().parent.parent
        self.database = Database(
            url=config.database.url,
            timeout_seconds=config.database.timeout_seconds,
            pool_min_size=config.database.pool_min_size,
            pool_max_size=config.database.pool_max_size,
        )
        self.cache: CacheBackend | None = None
        self.gateway = DiscordChannelGateway(self)
        self.scheduler = DeletionScheduler(self.gateway.delete, config.tickets.close_delete_delay_seconds)

        # Repositories and services are initialized during setup_hook.
        self.guild_repo: GuildRepository
        self.ticket_repo: TicketRepository
        self.message_repo: MessageRepository
        self.stats_repo: StatsRepository

        self.staff_service: StaffService
        self.stats_service: StatsService
        self.transcript_service: TranscriptService
        self.audit_service: AuditService
        self.ticket_service: TicketService

    async def setup_hook(self) -> None:
        await self.database.connect()
        await run_migrations(self.database, self.root_dir / "database" / "migrations")
        self.cache = await build_cache(self.config.redis)

        self.guild_repo = GuildRepository(self.database)
        self.ticket_repo = TicketRepository(self.database)
        self.message_repo = MessageRepository(self.database)
        self.stats_repo = StatsRepository(self.database)

        self.staff_service = StaffService(self.database, self.guild_repo)
        self.stats_service = StatsService(
            self.ticket_repo, self.stats_repo, self.cache, cache_ttl=self.config.tickets.stats_cache_ttl
        )
        self.transcript_service = TranscriptService(self.config.transcripts, self.message_repo)
        self.audit_service = AuditService(self.config.webhook_log)
        self.ticket_service = TicketService(
            self.config,
            TicketServiceDeps(
                db=self.database,
                guild_repo=self.guild_repo,
                ticket_repo=self.ticket_repo,
                message_repo=self.message_repo,
                stats=self.stats_service,
                transcripts=self.transcript_service,
                gateway=self.gateway,
                scheduler=self.scheduler,
                audit=self.audit_service,
            ),
        )

        await self._load_extensions(self.config.enabled_extensions)

        if self.config.discord.sync_commands_on_start:
            synced = await self.tree.sync()
            LOGGER.info("Synced %s application commands", len(synced))

        self.tree.on_error = handle_app_command_error  # type: ignore[assignment]

    async def _load_extensions(self, extension_names: list[str]) -> None:
        for ext in extension_names:
            try:
                await self.load_extension(ext)
                LOGGER.info("Loaded extension: %s", ext)
            except commands.ExtensionAlreadyLoaded:
                LOGGER.warning("Extension already loaded: %s", ext)
            except commands.ExtensionError:
                LOGGER.exception("Failed to load extension: %s", ext)

    async def post_ticket_log(self, guild_id: int, embed: discord.Embed) -> None:
        settings = await self.guild_repo.get(guild_id)
        if settings is None or settings.log_channel_id is None:
            return
        channel = self.get_channel(settings.log_channel_id)
        if not isinstance(channel, discord.TextChannel):
            LOGGER.warning("Log channel %s for guild %s is unavailable", settings.log_channel_id, guild_id)
            return
        try:
            await channel.send(embed=embed)
        except discord.HTTPException:
            LOGGER.warning("Could not post ticket log in guild %s", guild_id, exc_info=True)

    async def on_ready(self) -> None:
        LOGGER.info("Bot ready as %s (%s)", self.user, self.user.id if self.user else "n/a")
        activity_type = ACTIVITY_TYPES.get(self.config.discord.activity_type.lower(), discord.ActivityType.watching)
        activity = discord.Activity(type=activity_type, name=self.config.discord.status_text)
        await self.change_presence(status=discord.Status.online, activity=activity)

    async def on_command_error(self, ctx: commands.Context[commands.Bot], error: commands.CommandError) -> None:
        if ctx.command and ctx.command.has_error_handler():
            return
        await handle_prefix_command_error(ctx, error)

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await super().close()
        await self.database.close()
        if self.cache:
            await self.cache.close()
