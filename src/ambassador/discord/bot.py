"""Discord bot for Ambassador.

Runs alongside FastAPI using the same event loop. Provides the roleplay,
server settings, permission, and social slash commands, and logs
roleplay messages as they are posted or edited.

The bot is optional: if DISCORD_BOT_TOKEN is not set, nothing starts.
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import discord
from discord import Intents, app_commands
from discord.ext import commands
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ambassador.core.errors import UserError
from ambassador.core.exporters import export_roleplay
from ambassador.core.permissions import PERMISSIONS, PermissionService, get_permission
from ambassador.core.roleplay_discord import RoleplayDiscordService, guild_name_resolver
from ambassador.core.sass import SassService
from ambassador.core.server_settings import RoleplayServerSettingsService
from ambassador.db.repository import Repository
from ambassador.discord.embeds import (
    build_bot_info_embed,
    build_confirmation_embed,
    build_error_embed,
    build_image_embed,
    build_permission_list_embed,
    build_roleplay_embed,
    build_roleplay_list_embed,
    build_server_settings_embed,
    build_warning_embed,
)
from ambassador.discord.helpers import (
    db_session,
    parse_mentions,
    parse_roleplay_reference,
    role_ids_for,
)

if TYPE_CHECKING:
    from ambassador.config import Settings
    from ambassador.db.models import RoleplayRow
    from ambassador.models.roleplay import ExportFormat, PermissionTarget

logger = logging.getLogger(__name__)

REMOTE_CONTENT_URL = (
    "https://raw.githubusercontent.com/Nihlus/digos-ambassador/master/digos-ambassador/Content/"
)
MOW_URL = REMOTE_CONTENT_URL + "Portraits/mow.png"
BWEH_URL = REMOTE_CONTENT_URL + "Portraits/bweh.png"

GENERIC_FAILURE = "Something went wrong on my end. Please try again in a moment."

# How far back /rp move-to looks for each participant's last message.
MOVE_HISTORY_LIMIT = 100

PERMISSION_CHOICES = [
    app_commands.Choice(name=p.friendly_name, value=p.key) for p in PERMISSIONS.values()
]
TARGET_CHOICES = [
    app_commands.Choice(name="Self", value="self"),
    app_commands.Choice(name="Other", value="other"),
    app_commands.Choice(name="All", value="all"),
]
FORMAT_CHOICES = [
    app_commands.Choice(name="PDF", value="pdf"),
    app_commands.Choice(name="Plain text", value="plaintext"),
]

ROLEPLAY_ARG = "'current', a roleplay name, or @user:name"


class AmbassadorBot(commands.Bot):
    """The Ambassador Discord bot.

    Runs in-process with FastAPI. Every command opens its own database
    session; ``UserError`` becomes an ephemeral reply, and Discord or
    database failures are logged and reported generically.
    """

    def __init__(self, settings: Settings, engine: AsyncEngine) -> None:
        intents = Intents.default()
        intents.message_content = True  # Required for the roleplay message log
        intents.members = True  # Required to resolve participants for channel overwrites

        super().__init__(
            command_prefix=settings.discord_command_prefix,
            intents=intents,
            description="Ambassador -- roleplay manager, permission keeper, and sass dispenser.",
        )
        self.settings = settings
        self.engine = engine
        self.sass = SassService(settings.content_dir)
        self._setup_done: bool = False
        self.runner_task: asyncio.Task[None] | None = None
        self._setup_commands()

    def _setup_commands(self) -> None:
        """Register slash commands on the bot's command tree."""
        rp = app_commands.Group(name="rp", description="Manage roleplays", guild_only=True)

        @rp.command(name="show", description="Show information about a roleplay")
        @app_commands.describe(roleplay=ROLEPLAY_ARG)
        async def rp_show(interaction: discord.Interaction, roleplay: str | None = None) -> None:
            await self._handle_rp_show(interaction, roleplay)

        @rp.command(name="list", description="List the public roleplays in this server")
        async def rp_list(interaction: discord.Interaction) -> None:
            await self._handle_rp_list(interaction)

        @rp.command(name="list-owned", description="List the roleplays a user owns")
        @app_commands.describe(user="Whose roleplays to list (defaults to you)")
        async def rp_list_owned(
            interaction: discord.Interaction, user: discord.User | None = None
        ) -> None:
            await self._handle_rp_list_owned(interaction, user)

        @rp.command(name="create", description="Create a new roleplay")
        @app_commands.describe(
            name="A name for the roleplay, unique among yours",
            summary="A short summary",
            is_nsfw="Whether the roleplay is NSFW",
            is_public="Whether anyone may join and view it",
        )
        async def rp_create(
            interaction: discord.Interaction,
            name: str,
            summary: str = "No summary set.",
            is_nsfw: bool = False,
            is_public: bool = True,
        ) -> None:
            await self._handle_rp_create(interaction, name, summary, is_nsfw, is_public)

        @rp.command(name="delete", description="Delete a roleplay")
        @app_commands.describe(roleplay=ROLEPLAY_ARG)
        async def rp_delete(interaction: discord.Interaction, roleplay: str) -> None:
            await self._handle_rp_delete(interaction, roleplay)

        @rp.command(name="join", description="Join a roleplay")
        @app_commands.describe(roleplay=ROLEPLAY_ARG)
        async def rp_join(interaction: discord.Interaction, roleplay: str) -> None:
            await self._handle_rp_join(interaction, roleplay)

        @rp.command(name="invite", description="Invite a user to a roleplay")
        @app_commands.describe(user="The user to invite", roleplay=ROLEPLAY_ARG)
        async def rp_invite(
            interaction: discord.Interaction, user: discord.User, roleplay: str | None = None
        ) -> None:
            await self._handle_rp_invite(interaction, user, roleplay)

        @rp.command(name="leave", description="Leave a roleplay")
        @app_commands.describe(roleplay=ROLEPLAY_ARG)
        async def rp_leave(interaction: discord.Interaction, roleplay: str | None = None) -> None:
            await self._handle_rp_leave(interaction, roleplay)

        @rp.command(name="kick", description="Kick a user from a roleplay")
        @app_commands.describe(user="The user to kick", roleplay=ROLEPLAY_ARG)
        async def rp_kick(
            interaction: discord.Interaction, user: discord.User, roleplay: str | None = None
        ) -> None:
            await self._handle_rp_kick(interaction, user, roleplay)

        @rp.command(name="channel", description="Show or create a roleplay's dedicated channel")
        @app_commands.describe(roleplay=ROLEPLAY_ARG)
        async def rp_channel(interaction: discord.Interaction, roleplay: str | None = None) -> None:
            await self._handle_rp_channel(interaction, roleplay)

        @rp.command(name="start", description="Start a roleplay")
        @app_commands.describe(roleplay=ROLEPLAY_ARG)
        async def rp_start(interaction: discord.Interaction, roleplay: str) -> None:
            await self._handle_rp_start(interaction, roleplay)

        @rp.command(name="stop", description="Stop a roleplay")
        @app_commands.describe(roleplay=ROLEPLAY_ARG)
        async def rp_stop(interaction: discord.Interaction, roleplay: str | None = None) -> None:
            await self._handle_rp_stop(interaction, roleplay)

        @rp.command(name="transfer-ownership", description="Give a roleplay to someone else")
        @app_commands.describe(new_owner="The new owner", roleplay=ROLEPLAY_ARG)
        async def rp_transfer(
            interaction: discord.Interaction, new_owner: discord.User, roleplay: str | None = None
        ) -> None:
            await self._handle_rp_transfer(interaction, new_owner, roleplay)

        @rp.command(name="export", description="Export a roleplay as a PDF or text file")
        @app_commands.describe(roleplay=ROLEPLAY_ARG, format="The file format (PDF by default)")
        @app_commands.choices(format=FORMAT_CHOICES)
        async def rp_export(
            interaction: discord.Interaction,
            roleplay: str | None = None,
            format: app_commands.Choice[str] | None = None,
        ) -> None:
            await self._handle_rp_export(interaction, roleplay, format.value if format else "pdf")

        @rp.command(name="view", description="Make a roleplay's channel visible to you")
        @app_commands.describe(roleplay=ROLEPLAY_ARG)
        async def rp_view(interaction: discord.Interaction, roleplay: str) -> None:
            await self._handle_rp_view(interaction, roleplay)

        @rp.command(name="hide", description="Hide a roleplay's channel from you")
        @app_commands.describe(roleplay=ROLEPLAY_ARG)
        async def rp_hide(interaction: discord.Interaction, roleplay: str | None = None) -> None:
            await self._handle_rp_hide(interaction, roleplay)

        @rp.command(name="hide-all", description="Hide every roleplay channel from you")
        async def rp_hide_all(interaction: discord.Interaction) -> None:
            await self._handle_rp_hide_all(interaction)

        @rp.command(name="refresh", description="Reset a roleplay's inactivity timer")
        @app_commands.describe(roleplay=ROLEPLAY_ARG)
        async def rp_refresh(interaction: discord.Interaction, roleplay: str | None = None) -> None:
            await self._handle_rp_refresh(interaction, roleplay)

        @rp.command(
            name="reset-permissions",
            description="Reset the permissions of every dedicated channel in this server",
        )
        async def rp_reset_permissions(interaction: discord.Interaction) -> None:
            await self._handle_rp_reset_permissions(interaction)

        @rp.command(name="move-to", description="Move an ongoing roleplay into a new one")
        @app_commands.describe(
            name="The name of the new roleplay",
            participants="Mentions of everyone taking part",
        )
        async def rp_move_to(
            interaction: discord.Interaction, name: str, participants: str = ""
        ) -> None:
            await self._handle_rp_move_to(interaction, name, participants)

        @rp.command(name="set-name", description="Rename a roleplay")
        @app_commands.describe(name="The new name", roleplay=ROLEPLAY_ARG)
        async def rp_set_name(
            interaction: discord.Interaction, name: str, roleplay: str | None = None
        ) -> None:
            await self._handle_rp_set(interaction, roleplay, "name", name)

        @rp.command(name="set-summary", description="Change a roleplay's summary")
        @app_commands.describe(summary="The new summary", roleplay=ROLEPLAY_ARG)
        async def rp_set_summary(
            interaction: discord.Interaction, summary: str, roleplay: str | None = None
        ) -> None:
            await self._handle_rp_set(interaction, roleplay, "summary", summary)

        @rp.command(name="set-nsfw", description="Mark a roleplay as NSFW or SFW")
        @app_commands.describe(is_nsfw="Whether the roleplay is NSFW", roleplay=ROLEPLAY_ARG)
        async def rp_set_nsfw(
            interaction: discord.Interaction, is_nsfw: bool, roleplay: str | None = None
        ) -> None:
            await self._handle_rp_set(interaction, roleplay, "nsfw", is_nsfw)

        @rp.command(name="set-public", description="Make a roleplay public or private")
        @app_commands.describe(is_public="Whether the roleplay is public", roleplay=ROLEPLAY_ARG)
        async def rp_set_public(
            interaction: discord.Interaction, is_public: bool, roleplay: str | None = None
        ) -> None:
            await self._handle_rp_set(interaction, roleplay, "public", is_public)

        self.tree.add_command(rp)

        rp_server = app_commands.Group(
            name="rp-server", description="Server-wide roleplay settings", guild_only=True
        )

        @rp_server.command(name="show", description="Show this server's roleplay settings")
        async def rp_server_show(interaction: discord.Interaction) -> None:
            await self._handle_rp_server_show(interaction)

        @rp_server.command(
            name="set-roleplay-category", description="Set the category for dedicated channels"
        )
        async def rp_server_set_category(
            interaction: discord.Interaction, category: discord.CategoryChannel
        ) -> None:
            await self._handle_rp_server_set(
                interaction, "category", category.id, "Dedicated channel category set."
            )

        @rp_server.command(
            name="clear-roleplay-category", description="Clear the dedicated channel category"
        )
        async def rp_server_clear_category(interaction: discord.Interaction) -> None:
            await self._handle_rp_server_set(
                interaction, "category", None, "Dedicated channel category cleared."
            )

        @rp_server.command(
            name="set-archive-channel", description="Set where archived roleplays are posted"
        )
        async def rp_server_set_archive(
            interaction: discord.Interaction, channel: discord.TextChannel
        ) -> None:
            await self._handle_rp_server_set(
                interaction, "archive", channel.id, "Archive channel set."
            )

        @rp_server.command(name="clear-archive-channel", description="Clear the archive channel")
        async def rp_server_clear_archive(interaction: discord.Interaction) -> None:
            await self._handle_rp_server_set(
                interaction, "archive", None, "Archive channel cleared."
            )

        @rp_server.command(
            name="set-default-user-role",
            description="Set the role that stands in for @everyone on roleplay channels",
        )
        async def rp_server_set_role(interaction: discord.Interaction, role: discord.Role) -> None:
            await self._handle_rp_server_set(interaction, "role", role.id, "Default user role set.")

        @rp_server.command(
            name="clear-default-user-role", description="Clear the default user role"
        )
        async def rp_server_clear_role(interaction: discord.Interaction) -> None:
            await self._handle_rp_server_set(
                interaction, "role", None, "Default user role cleared."
            )

        self.tree.add_command(rp_server)

        permission = app_commands.Group(
            name="permission", description="Ambassador permissions", guild_only=True
        )

        @permission.command(name="grant", description="Grant a permission to a user")
        @app_commands.choices(permission=PERMISSION_CHOICES, target=TARGET_CHOICES)
        async def permission_grant(
            interaction: discord.Interaction,
            user: discord.Member,
            permission: app_commands.Choice[str],
            target: app_commands.Choice[str],
        ) -> None:
            await self._handle_permission_change(
                interaction, user, permission.value, target.value, grant=True
            )

        @permission.command(name="revoke", description="Revoke a permission from a user")
        @app_commands.choices(permission=PERMISSION_CHOICES, target=TARGET_CHOICES)
        async def permission_revoke(
            interaction: discord.Interaction,
            user: discord.Member,
            permission: app_commands.Choice[str],
            target: app_commands.Choice[str],
        ) -> None:
            await self._handle_permission_change(
                interaction, user, permission.value, target.value, grant=False
            )

        @permission.command(name="grant-role", description="Grant a permission to a role")
        @app_commands.choices(permission=PERMISSION_CHOICES, target=TARGET_CHOICES)
        async def permission_grant_role(
            interaction: discord.Interaction,
            role: discord.Role,
            permission: app_commands.Choice[str],
            target: app_commands.Choice[str],
        ) -> None:
            await self._handle_permission_change(
                interaction, role, permission.value, target.value, grant=True
            )

        @permission.command(name="revoke-role", description="Revoke a permission from a role")
        @app_commands.choices(permission=PERMISSION_CHOICES, target=TARGET_CHOICES)
        async def permission_revoke_role(
            interaction: discord.Interaction,
            role: discord.Role,
            permission: app_commands.Choice[str],
            target: app_commands.Choice[str],
        ) -> None:
            await self._handle_permission_change(
                interaction, role, permission.value, target.value, grant=False
            )

        @permission.command(name="list", description="List a member's effective permissions")
        async def permission_list(
            interaction: discord.Interaction, user: discord.Member | None = None
        ) -> None:
            await self._handle_permission_list(interaction, user)

        self.tree.add_command(permission)

        @self.tree.command(name="sass", description="Sasses you in a DIGOS fashion")
        async def sass_command(interaction: discord.Interaction) -> None:
            await self._handle_sass(interaction)

        @self.tree.command(name="boop", description="Boops you, or someone else")
        async def boop_command(
            interaction: discord.Interaction, user: discord.User | None = None
        ) -> None:
            await self._handle_boop(interaction, user, bap=False)

        @self.tree.command(name="bap", description="Baps you, or someone else")
        async def bap_command(
            interaction: discord.Interaction, user: discord.User | None = None
        ) -> None:
            await self._handle_boop(interaction, user, bap=True)

        @self.tree.command(name="mow", description="Mow!")
        async def mow_command(interaction: discord.Interaction) -> None:
            await interaction.response.send_message(embed=build_image_embed(MOW_URL))

        @self.tree.command(name="bweh", description="Bweh!")
        async def bweh_command(interaction: discord.Interaction) -> None:
            await interaction.response.send_message(embed=build_image_embed(BWEH_URL))

        @self.tree.command(name="contact", description="Have me contact a user over DM")
        @app_commands.guild_only()
        @app_commands.default_permissions(mention_everyone=True)
        async def contact_command(interaction: discord.Interaction, user: discord.User) -> None:
            await self._handle_contact(interaction, user)

        @self.tree.command(name="bot-info", description="Shows some information about me")
        async def bot_info_command(interaction: discord.Interaction) -> None:
            await interaction.response.send_message(embed=build_bot_info_embed())

    async def setup_hook(self) -> None:
        """Called when the bot is ready to start. Syncs slash commands."""
        if self.settings.discord_guild_id:
            guild = discord.Object(id=int(self.settings.discord_guild_id))
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            logger.info("discord_commands_synced guild_id=%s", self.settings.discord_guild_id)
        else:
            await self.tree.sync()
            logger.info("discord_commands_synced globally")

    async def on_ready(self) -> None:
        """Called when the bot has connected to Discord.

        on_ready fires on every reconnect, not just the first connection.
        The message log back-fill only runs once.
        """
        user = self.user
        name = user.name if user else "unknown"
        logger.info("discord_bot_ready user=%s", name)
        if not self._setup_done:
            self._setup_done = True
            await self._backfill_dedicated_channels()

    async def _backfill_dedicated_channels(self) -> int:
        """Log messages posted in dedicated channels while the bot was offline."""
        try:
            async with db_session(self.engine) as repo:
                roleplay_ids = [rp.id for rp in await repo.get_roleplays_with_dedicated_channel()]
        except SQLAlchemyError:
            logger.exception("discord_backfill_query_failed")
            return 0

        total = 0
        for roleplay_id in roleplay_ids:
            try:
                async with db_session(self.engine) as repo:
                    roleplay = await repo.get_roleplay(roleplay_id)
                    if roleplay is None:
                        continue
                    service = self._roleplay_service(repo)
                    total += await service.ensure_all_messages_are_logged(roleplay)
            except UserError as exc:
                logger.warning("discord_backfill_skipped id=%s err=%s", roleplay_id, exc.message)
            except (discord.HTTPException, SQLAlchemyError):
                logger.exception("discord_backfill_failed id=%s", roleplay_id)
        logger.info("discord_backfill_done roleplays=%d messages=%d", len(roleplay_ids), total)
        return total

    # --- Message log ---

    def _should_log(self, message: discord.Message) -> bool:
        if message.guild is None or message.author.bot or message.webhook_id is not None:
            return False
        return not message.content.startswith(self.settings.discord_command_prefix)

    async def on_message(self, message: discord.Message) -> None:
        if not self._should_log(message):
            return
        await self._consume(message)

    async def on_message_edit(self, before: discord.Message, after: discord.Message) -> None:
        if not self._should_log(after):
            return
        await self._consume(after)

    async def _consume(self, message: discord.Message) -> None:
        try:
            async with db_session(self.engine) as repo:
                await self._roleplay_service(repo).consume_message(message)
        except SQLAlchemyError:
            logger.exception("discord_message_log_failed message=%d", message.id)

    # --- Shared plumbing ---

    def _roleplay_service(self, repo: Repository) -> RoleplayDiscordService:
        return RoleplayDiscordService(self, repo, self.settings.roleplay_stale_channel_hours)

    @asynccontextmanager
    async def _command_scope(
        self, interaction: discord.Interaction, *, ephemeral: bool = False
    ) -> AsyncGenerator[Repository, None]:
        """Defer, open a session, and turn failures into replies.

        The session commits when the block finishes and rolls back when it
        raises. Exceptions are handled here and not re-raised, so nothing
        should follow the ``async with`` block in a handler.
        """
        await interaction.response.defer(ephemeral=ephemeral)
        command = interaction.command.qualified_name if interaction.command else "unknown"
        try:
            async with db_session(self.engine) as repo:
                yield repo
        except UserError as exc:
            await interaction.followup.send(embed=build_error_embed(exc.message), ephemeral=True)
        except (discord.HTTPException, SQLAlchemyError):
            logger.exception("discord_command_failed command=%s", command)
            await interaction.followup.send(
                embed=build_error_embed(GENERIC_FAILURE), ephemeral=True
            )

    async def _resolve_roleplay(
        self,
        service: RoleplayDiscordService,
        interaction: discord.Interaction,
        reference: str | None,
    ) -> RoleplayRow:
        owner_id, name = parse_roleplay_reference(reference, interaction.user.id)
        return await service.get_best_matching_roleplay(
            interaction.channel_id,  # type: ignore[arg-type]
            interaction.guild_id,  # type: ignore[arg-type]
            owner_id,
            name,
        )

    async def _require(
        self,
        repo: Repository,
        interaction: discord.Interaction,
        key: str,
        roleplay: RoleplayRow | None = None,
        target: PermissionTarget | None = None,
    ) -> None:
        """Check an Ambassador permission for the invoker.

        Acting on your own roleplay needs the *self* grant; acting on someone
        else's needs *other*.
        """
        if target is None:
            owns = roleplay is None or roleplay.is_owner(interaction.user.id)
            target = "self" if owns else "other"
        guild = interaction.guild
        await PermissionService(repo).require_permission(
            guild.id,  # type: ignore[union-attr]
            guild.owner_id,  # type: ignore[union-attr]
            interaction.user.id,
            role_ids_for(interaction.user),
            get_permission(key),
            target,
        )

    async def _send_dm(self, user: discord.abc.User, embed: discord.Embed) -> bool:
        try:
            await user.send(embed=embed)
        except discord.HTTPException:
            logger.warning("discord_dm_failed user=%d", user.id)
            return False
        return True

    # --- /rp ---

    async def _handle_rp_show(
        self, interaction: discord.Interaction, reference: str | None
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await interaction.followup.send(embed=build_roleplay_embed(roleplay))

    async def _handle_rp_list(self, interaction: discord.Interaction) -> None:
        async with self._command_scope(interaction) as repo:
            roleplays = await repo.get_public_roleplays(interaction.guild_id)
            await interaction.followup.send(
                embed=build_roleplay_list_embed(roleplays, "Roleplays in this server")
            )

    async def _handle_rp_list_owned(
        self, interaction: discord.Interaction, user: discord.abc.User | None
    ) -> None:
        user = user or interaction.user
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            owner = await repo.get_or_register_user(user.id)
            server = await repo.get_or_register_server(
                interaction.guild_id  # type: ignore[arg-type]
            )
            roleplays = await service.roleplays.get_user_roleplays(owner, server)
            await interaction.followup.send(
                embed=build_roleplay_list_embed(roleplays, f"Roleplays owned by {user.name}")
            )

    async def _handle_rp_create(
        self,
        interaction: discord.Interaction,
        name: str,
        summary: str,
        is_nsfw: bool,
        is_public: bool,
    ) -> None:
        async with self._command_scope(interaction) as repo:
            await self._require(repo, interaction, "create-roleplay", target="self")
            service = self._roleplay_service(repo)
            roleplay = await service.create_roleplay(
                interaction.guild_id,  # type: ignore[arg-type]
                interaction.user.id,
                name,
                summary,
                is_nsfw,
                is_public,
            )
            logger.info("rp_created id=%s user=%d", roleplay.id, interaction.user.id)
            await interaction.followup.send(
                embed=build_confirmation_embed(f'Roleplay "{roleplay.name}" created.')
            )

    async def _handle_rp_delete(
        self, interaction: discord.Interaction, reference: str
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await self._require(repo, interaction, "delete-roleplay", roleplay)
            name = roleplay.name
            await service.delete_roleplay(roleplay)
            await interaction.followup.send(
                embed=build_confirmation_embed(f'Roleplay "{name}" deleted.')
            )

    async def _handle_rp_join(
        self, interaction: discord.Interaction, reference: str
    ) -> None:
        async with self._command_scope(interaction) as repo:
            await self._require(repo, interaction, "join-roleplay", target="self")
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await service.add_user(roleplay, interaction.user.id)
            await interaction.followup.send(
                embed=build_confirmation_embed(
                    f"Joined <@{roleplay.owner.discord_id}>'s roleplay \"{roleplay.name}\""
                )
            )

    async def _handle_rp_invite(
        self, interaction: discord.Interaction, user: discord.abc.User, reference: str | None
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await self._require(repo, interaction, "edit-roleplay", roleplay)
            await service.invite_user(roleplay, user.id)
            await self._send_dm(
                user,
                build_confirmation_embed(
                    f"You've been invited to join {roleplay.name}. "
                    f'Use `/rp join roleplay:"{roleplay.name}"` to join.'
                ),
            )
            await interaction.followup.send(
                embed=build_confirmation_embed(f"Invited <@{user.id}> to {roleplay.name}.")
            )

    async def _handle_rp_leave(
        self, interaction: discord.Interaction, reference: str | None
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await service.remove_user(roleplay, interaction.user.id)
            await interaction.followup.send(
                embed=build_confirmation_embed(
                    f"Left <@{roleplay.owner.discord_id}>'s roleplay \"{roleplay.name}\""
                )
            )

    async def _handle_rp_kick(
        self, interaction: discord.Interaction, user: discord.abc.User, reference: str | None
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await self._require(repo, interaction, "kick-roleplay-member", roleplay)
            await service.kick_user(roleplay, user.id)
            await self._send_dm(
                user,
                build_warning_embed(
                    f'You\'ve been removed from the roleplay "{roleplay.name}" by '
                    f"<@{interaction.user.id}>."
                ),
            )
            await interaction.followup.send(
                embed=build_confirmation_embed(
                    f"<@{user.id}> has been kicked from {roleplay.name}."
                )
            )

    async def _handle_rp_channel(
        self, interaction: discord.Interaction, reference: str | None
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            if roleplay.dedicated_channel_id is not None:
                await interaction.followup.send(
                    embed=build_confirmation_embed(
                        f'"{roleplay.name}" has a dedicated channel at '
                        f"<#{roleplay.dedicated_channel_id}>"
                    )
                )
                return

            await self._require(repo, interaction, "edit-roleplay", roleplay)
            channel = await service.channels.create_dedicated_channel(roleplay)
            await interaction.followup.send(
                embed=build_confirmation_embed(
                    f"All done! Your roleplay now has a dedicated channel at <#{channel.id}>."
                )
            )

    async def _handle_rp_start(
        self, interaction: discord.Interaction, reference: str
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await self._require(repo, interaction, "start-stop-roleplay", roleplay)
            channel_id = await service.start_roleplay(
                interaction.channel_id, roleplay  # type: ignore[arg-type]
            )
            await interaction.followup.send(
                embed=build_confirmation_embed(
                    f'The roleplay "{roleplay.name}" is now active in <#{channel_id}>.'
                )
            )

    async def _handle_rp_stop(
        self, interaction: discord.Interaction, reference: str | None
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await self._require(repo, interaction, "start-stop-roleplay", roleplay)
            await service.stop_roleplay(roleplay)
            await interaction.followup.send(
                embed=build_confirmation_embed(f'The roleplay "{roleplay.name}" has been stopped.')
            )

    async def _handle_rp_transfer(
        self, interaction: discord.Interaction, new_owner: discord.abc.User, reference: str | None
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await self._require(repo, interaction, "transfer-roleplay", roleplay)
            await service.transfer_ownership(new_owner.id, roleplay)
            await interaction.followup.send(
                embed=build_confirmation_embed("Roleplay ownership transferred.")
            )

    async def _handle_rp_export(
        self,
        interaction: discord.Interaction,
        reference: str | None,
        export_format: ExportFormat = "pdf",
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await self._require(repo, interaction, "export-roleplay", roleplay)

            resolver = guild_name_resolver(interaction.guild) if interaction.guild else None
            messages = await repo.get_messages(roleplay)
            exported = export_roleplay(roleplay, messages, export_format, resolver)
            logger.info(
                "rp_exported id=%s format=%s bytes=%d",
                roleplay.id,
                export_format,
                len(exported.data),
            )
            await interaction.followup.send(
                file=discord.File(io.BytesIO(exported.data), filename=exported.filename)
            )

    async def _handle_rp_view(
        self, interaction: discord.Interaction, reference: str
    ) -> None:
        async with self._command_scope(interaction, ephemeral=True) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            if roleplay.dedicated_channel_id is None:
                raise UserError(
                    "The given roleplay doesn't have a dedicated channel. "
                    'Try using "/rp export" instead.'
                )
            if not roleplay.is_public and not roleplay.has_joined(interaction.user.id):
                raise UserError("You don't have permission to view that roleplay.")

            channel = await service.channels.resolve_channel(roleplay)
            await service.channels.set_channel_visibility_for_user(
                channel, interaction.user, True
            )
            await interaction.followup.send(
                embed=build_confirmation_embed(
                    f'The roleplay "{roleplay.name}" is now visible in <#{channel.id}>.'
                ),
                ephemeral=True,
            )

    async def _handle_rp_hide(
        self, interaction: discord.Interaction, reference: str | None
    ) -> None:
        async with self._command_scope(interaction, ephemeral=True) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            channel = await service.channels.resolve_channel(roleplay)
            await service.channels.set_channel_visibility_for_user(
                channel, interaction.user, False
            )
            await interaction.followup.send(
                embed=build_confirmation_embed("Roleplay hidden."), ephemeral=True
            )

    async def _handle_rp_hide_all(self, interaction: discord.Interaction) -> None:
        async with self._command_scope(interaction, ephemeral=True) as repo:
            service = self._roleplay_service(repo)
            server = await repo.get_or_register_server(
                interaction.guild_id  # type: ignore[arg-type]
            )
            for roleplay in await service.roleplays.get_roleplays(server):
                if roleplay.dedicated_channel_id is None:
                    continue
                try:
                    channel = await service.channels.resolve_channel(roleplay)
                except UserError:
                    continue
                await service.channels.set_channel_visibility_for_user(
                    channel, interaction.user, False
                )
            await interaction.followup.send(
                embed=build_confirmation_embed("Roleplays hidden."), ephemeral=True
            )

    async def _handle_rp_refresh(
        self, interaction: discord.Interaction, reference: str | None
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            user_id = interaction.user.id
            if not (roleplay.is_owner(user_id) or roleplay.has_joined(user_id)):
                raise UserError("You don't own that roleplay, nor are you a participant.")
            await service.refresh_roleplay(roleplay)
            await interaction.followup.send(embed=build_confirmation_embed("Timeout refreshed."))

    async def _handle_rp_reset_permissions(self, interaction: discord.Interaction) -> None:
        async with self._command_scope(interaction) as repo:
            await self._require(repo, interaction, "edit-roleplay-server-settings", target="all")
            service = self._roleplay_service(repo)
            server = await repo.get_or_register_server(
                interaction.guild_id  # type: ignore[arg-type]
            )
            reset = failed = 0
            for roleplay in await service.roleplays.get_roleplays(server):
                if roleplay.dedicated_channel_id is None:
                    continue
                try:
                    await service.channels.reset_channel_permissions(roleplay)
                except UserError as exc:
                    failed += 1
                    logger.warning(
                        "rp_reset_permissions_failed id=%s error=%s", roleplay.id, exc.message
                    )
                    await interaction.followup.send(
                        embed=build_error_embed(f"{roleplay.name}: {exc.message}"), ephemeral=True
                    )
                else:
                    reset += 1
            if failed:
                await interaction.followup.send(
                    embed=build_warning_embed(
                        f"Reset permissions in {reset} channel(s); {failed} could not be reset."
                    )
                )
            else:
                await interaction.followup.send(
                    embed=build_confirmation_embed("Permissions reset.")
                )

    async def _handle_rp_move_to(
        self, interaction: discord.Interaction, name: str, participants: str
    ) -> None:
        """Turn a conversation happening outside the bot into a managed roleplay."""
        async with self._command_scope(interaction) as repo:
            await self._require(repo, interaction, "create-roleplay", target="self")
            service = self._roleplay_service(repo)
            roleplay = await service.create_roleplay(
                interaction.guild_id,  # type: ignore[arg-type]
                interaction.user.id,
                name,
                "No summary set.",
                False,
                True,
            )

            participant_ids = [
                pid for pid in parse_mentions(participants) if pid != interaction.user.id
            ]
            for participant_id in participant_ids:
                try:
                    await service.add_user(roleplay, participant_id)
                except UserError as exc:
                    await interaction.followup.send(
                        embed=build_warning_embed(
                            f"I couldn't add <@{participant_id}> to the roleplay "
                            f"({exc.message}). Please try to invite them manually."
                        )
                    )

            # Newest first; keep each participant's most recent message.
            wanted = {interaction.user.id, *participant_ids}
            last_messages: dict[int, discord.Message] = {}
            async for message in interaction.channel.history(  # type: ignore[union-attr]
                limit=MOVE_HISTORY_LIMIT
            ):
                if message.author.id in wanted and message.author.id not in last_messages:
                    last_messages[message.author.id] = message

            dedicated = await service.channels.resolve_channel(roleplay)
            for message in sorted(last_messages.values(), key=lambda m: m.created_at):
                await dedicated.send(message.jump_url)

            channel_id = await service.start_roleplay(
                interaction.channel_id, roleplay  # type: ignore[arg-type]
            )
            await interaction.followup.send(
                embed=build_confirmation_embed(
                    f'The roleplay "{roleplay.name}" is now active in <#{channel_id}>.'
                )
            )

    async def _handle_rp_set(
        self,
        interaction: discord.Interaction,
        reference: str | None,
        field: str,
        value: str | bool,
    ) -> None:
        async with self._command_scope(interaction) as repo:
            service = self._roleplay_service(repo)
            roleplay = await self._resolve_roleplay(service, interaction, reference)
            await self._require(repo, interaction, "edit-roleplay", roleplay)

            if field == "name":
                await service.set_name(roleplay, str(value))
                message = "Roleplay name set."
            elif field == "summary":
                await service.set_summary(roleplay, str(value))
                message = "Roleplay summary set."
            elif field == "nsfw":
                await service.set_nsfw(roleplay, bool(value))
                message = f"Roleplay set to {'NSFW' if value else 'SFW'}"
            else:
                await service.set_public(roleplay, bool(value))
                message = f"Roleplay set to {'public' if value else 'private'}"
            await interaction.followup.send(embed=build_confirmation_embed(message))

    # --- /rp-server ---

    async def _handle_rp_server_show(self, interaction: discord.Interaction) -> None:
        async with self._command_scope(interaction) as repo:
            settings = await RoleplayServerSettingsService(repo).get_or_create_settings(
                interaction.guild_id  # type: ignore[arg-type]
            )
            await interaction.followup.send(embed=build_server_settings_embed(settings))

    async def _handle_rp_server_set(
        self,
        interaction: discord.Interaction,
        setting: str,
        value: int | None,
        confirmation: str,
    ) -> None:
        async with self._command_scope(interaction) as repo:
            await self._require(repo, interaction, "edit-roleplay-server-settings", target="self")
            service = RoleplayServerSettingsService(repo)
            guild_id: int = interaction.guild_id  # type: ignore[assignment]
            if setting == "category":
                await service.set_dedicated_channel_category(guild_id, value)
            elif setting == "archive":
                await service.set_archive_channel(guild_id, value)
            else:
                await service.set_default_user_role(guild_id, value)
            await interaction.followup.send(embed=build_confirmation_embed(confirmation))

    # --- /permission ---

    async def _handle_permission_change(
        self,
        interaction: discord.Interaction,
        subject: discord.Member | discord.Role,
        permission_key: str,
        target: PermissionTarget,
        *,
        grant: bool,
    ) -> None:
        async with self._command_scope(interaction) as repo:
            await self._require(repo, interaction, "manage-permissions", target="self")
            service = PermissionService(repo)
            permission = get_permission(permission_key)

            if isinstance(subject, discord.Role):
                mention = f"<@&{subject.id}>"
                if grant:
                    await service.grant_role(subject.id, permission, target)
                else:
                    await service.revoke_role(subject.id, permission, target)
            else:
                mention = f"<@{subject.id}>"
                guild_id: int = interaction.guild_id  # type: ignore[assignment]
                if grant:
                    await service.grant_user(guild_id, subject.id, permission, target)
                else:
                    await service.revoke_user(guild_id, subject.id, permission, target)

            verb = "granted to" if grant else "revoked from"
            await interaction.followup.send(
                embed=build_confirmation_embed(f"{permission.friendly_name} {verb} {mention}.")
            )

    async def _handle_permission_list(
        self, interaction: discord.Interaction, member: discord.Member | None
    ) -> None:
        subject = member or interaction.user
        async with self._command_scope(interaction, ephemeral=True) as repo:
            guild = interaction.guild
            effective = await PermissionService(repo).effective_permissions(
                guild.id,  # type: ignore[union-attr]
                guild.owner_id,  # type: ignore[union-attr]
                subject.id,
                role_ids_for(subject),
            )
            await interaction.followup.send(
                embed=build_permission_list_embed(subject.display_name, effective),
                ephemeral=True,
            )

    # --- Social ---

    async def _handle_sass(self, interaction: discord.Interaction) -> None:
        channel = interaction.channel
        include_nsfw = isinstance(channel, discord.TextChannel) and channel.is_nsfw()
        await interaction.response.send_message(self.sass.get_sass(include_nsfw))

    async def _handle_boop(
        self, interaction: discord.Interaction, user: discord.abc.User | None, *, bap: bool
    ) -> None:
        if user is None:
            await interaction.response.send_message("**baps**" if bap else "*boop*")
            return

        target_id = user.id
        if self.user is not None and user.id == self.user.id:
            await interaction.response.send_message("...seriously?")
            target_id = interaction.user.id
            reply = f"**baps <@{target_id}>**" if bap else f"*boops <@{target_id}>*"
            await interaction.followup.send(reply)
            return

        reply = f"**baps <@{target_id}>**" if bap else f"*boops <@{target_id}>*"
        await interaction.response.send_message(reply)

    async def _handle_contact(
        self, interaction: discord.Interaction, user: discord.abc.User
    ) -> None:
        if self.user is not None and user.id == self.user.id:
            await interaction.response.send_message(
                embed=build_error_embed(
                    "That's a splendid idea - at least then, I'd get an intelligent reply."
                ),
                ephemeral=True,
            )
            return
        if user.bot:
            await interaction.response.send_message(
                embed=build_error_embed("I could do that, but I doubt I'd get a reply."),
                ephemeral=True,
            )
            return

        await interaction.response.defer(ephemeral=True)
        sent = await self._send_dm(
            user,
            build_confirmation_embed(
                f"Hello there, <@{user.id}>. I've been instructed to initiate... "
                "negotiations... with you. \nA good place to start would be the "
                '"/bot-info" command.'
            ),
        )
        message = "User contacted." if sent else "I couldn't send that user a message."
        embed = build_confirmation_embed(message) if sent else build_error_embed(message)
        await interaction.followup.send(embed=embed, ephemeral=True)


def is_discord_enabled(settings: Settings) -> bool:
    """Check whether Discord integration should be started.

    Returns True only when discord_enabled is True, a token is set, AND the
    environment is not development. A local dev server must not connect to
    the production guild and re-sync its commands.
    """
    if settings.ambassador_env == "development":
        logger.info("discord_bot_skipped_in_development")
        return False
    return bool(settings.discord_enabled and settings.discord_bot_token)


async def start_discord_bot(settings: Settings, engine: AsyncEngine) -> AmbassadorBot:
    """Create and start the Discord bot in the current event loop.

    Returns the bot instance so the caller can stop it during shutdown.
    The bot runs as a background task; this function returns immediately
    after starting it.
    """
    bot = AmbassadorBot(settings=settings, engine=engine)

    async def _run_bot() -> None:
        try:
            await bot.start(settings.discord_bot_token)
        except asyncio.CancelledError:
            logger.info("discord_bot_cancelled")
        except Exception:  # Last-resort handler: bot.start can raise connection and auth errors
            logger.exception("discord_bot_error")
        finally:
            if not bot.is_closed():
                await bot.close()

    bot.runner_task = asyncio.create_task(_run_bot(), name="discord-bot")
    logger.info("discord_bot_started")
    return bot
