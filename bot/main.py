"""Main bot entry point."""
import logging

import discord
from discord import app_commands
from discord.ext import commands, tasks

import config
from bot.cogs import linking, whitelist
from bot.http_server import start_http_server, start_whitelist_server
from bot.listeners import role_change, ticket_links
from bot.models import init_db
from bot.models.base import async_session_factory
from bot.services.container import build_services
from bot.services.role_sync import GRANTED, REVOKED, SyncOutcome

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("roster")

intents = discord.Intents.default()
intents.members = True  # Role changes and bulk sync need the Server Members Intent
intents.message_content = True  # Ticket Steam ID detection reads message text


class RosterBot(commands.Bot):
    """Squad whitelist and account linking bot."""

    def __init__(self, settings: config.Settings):
        super().__init__(
            command_prefix="!",
            intents=intents,
            chunk_guilds_at_startup=True,  # Populate member cache so role checks and bulk sync see everyone
        )
        self.settings = settings
        self.services = None
        self._runners = []

    def resolve_username(self, discord_user_id: int) -> str | None:
        user = self.get_user(discord_user_id)
        return user.name if user else None

    async def notify_role_sync(self, outcome: SyncOutcome) -> None:
        """DM the member when their role-based whitelist is granted or revoked."""
        if outcome.action not in (GRANTED, REVOKED):
            return
        user = self.get_user(outcome.discord_user_id)
        if user is None:
            return
        if outcome.action == GRANTED:
            text = f"Your whitelist on our Squad servers is active ({outcome.group})."
        else:
            text = "Your role-based whitelist on our Squad servers was removed."
        try:
            await user.send(text)
        except discord.HTTPException:
            logger.info("Could not DM %s about role sync", outcome.discord_user_id)

    async def on_ready(self) -> None:
        logger.info("Bot ready: %s (ID: %s)", self.user, self.user.id if self.user else "?")
        # Guild-specific sync: commands appear instantly instead of waiting for global propagation
        guilds = list(self.guilds)
        logger.info("Syncing commands to %d guild(s)", len(guilds))
        for guild in guilds:
            try:
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
                logger.info("Commands synced to guild: %s (%s)", guild.name, guild.id)
            except discord.HTTPException as e:
                logger.warning("Failed to sync to guild %s: %s", guild.name, e)

    async def setup_hook(self) -> None:
        """Setup on bot ready."""
        await init_db()
        self.services = build_services(
            self.settings, async_session_factory, client=self, username_resolver=self.resolve_username
        )
        self.services.role_sync.notifier = self.notify_role_sync

        # Add commands
        self.tree.add_command(linking.linkid)
        self.tree.add_command(linking.unlink)
        self.tree.add_command(linking.mylinks)
        self.tree.add_command(linking.link_group)
        self.tree.add_command(whitelist.whitelist_info)
        self.tree.add_command(whitelist.whitelist_group)

        # Sync commands
        await self.tree.sync()
        logger.info("Commands synced")

        # Global error handler: always respond so Discord doesn't show "application did not respond"
        async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError) -> None:
            msg = "Something went wrong. Check bot logs."
            if isinstance(error, app_commands.errors.CheckFailure):
                msg = "You don't have permission to use this command. (Need a staff or admin role)"
            else:
                logger.exception("Command error: %s", error)
            try:
                if interaction.response.is_done():
                    await interaction.followup.send(msg, ephemeral=True)
                else:
                    await interaction.response.send_message(msg, ephemeral=True)
            except discord.HTTPException:
                pass

        self.tree.on_error = on_app_command_error

        role_change.setup(self)
        ticket_links.setup(self)

        self._runners.append(
            await start_whitelist_server(
                self.services, self.settings.whitelist_http_host, self.settings.whitelist_http_port
            )
        )
        internal = await start_http_server(self, port=self.settings.internal_http_port)
        if internal is not None:
            self._runners.append(internal)

        self.sweep_codes.change_interval(seconds=self.settings.verification.sweep_interval_seconds)
        self.sweep_codes.start()
        if self.settings.guild_id and self.settings.sync_interval_minutes > 0:
            self.periodic_role_sync.change_interval(minutes=self.settings.sync_interval_minutes)
            self.periodic_role_sync.start()

    @tasks.loop(seconds=300)
    async def sweep_codes(self) -> None:
        removed = await self.services.verification.sweep_expired()
        if removed:
            logger.info("Removed %d expired verification codes", removed)

    @tasks.loop(minutes=60)
    async def periodic_role_sync(self) -> None:
        try:
            await self.services.role_sync.bulk_sync_guild(self.settings.guild_id)
        except Exception:
            logger.exception("Scheduled role sync failed")

    @periodic_role_sync.before_loop
    async def _before_role_sync(self) -> None:
        await self.wait_until_ready()

    async def close(self) -> None:
        """Cleanup on shutdown."""
        self.sweep_codes.cancel()
        self.periodic_role_sync.cancel()
        for runner in self._runners:
            await runner.cleanup()
        if self.services:
            await self.services.close()
        await super().close()


def main() -> None:
    """Run the bot."""
    if not config.DISCORD_TOKEN:
        raise ValueError("DISCORD_TOKEN is required")
    settings = config.load_settings()
    if not (settings.groups.head_admin | settings.groups.squad_admin | settings.groups.moderator | settings.groups.member):
        logger.warning("No Squad group role IDs set - role-based whitelisting is disabled")
    if not settings.battlemetrics.token:
        logger.warning("BATTLEMETRICS_TOKEN not set - whitelist import and member flags are disabled")

    bot = RosterBot(settings)
    bot.run(config.DISCORD_TOKEN)


if __name__ == "__main__":
    main()
