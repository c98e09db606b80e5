"""Roleplay operations that span the database and Discord.

``RoleplayDiscordService`` is what command handlers and background sweeps
call. Each operation applies the database change through
``RoleplayService`` and then brings the dedicated channel (if any) in line
through ``DedicatedChannelService``. Errors meant for users surface as
``UserError``; Discord failures surface as ``discord.HTTPException``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta

import discord

from ambassador.core.dedicated_channels import DedicatedChannelService
from ambassador.core.errors import UserError
from ambassador.core.roleplays import RoleplayService
from ambassador.db.models import RoleplayRow, to_naive_utc, utcnow
from ambassador.db.repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_STALE_CHANNEL_HOURS = 4


def humanize_list(items: list[str]) -> str:
    """Join items as "a", "a and b", or "a, b and c"."""
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    return f"{', '.join(items[:-1])} and {items[-1]}"


def display_name_for(author: discord.abc.User) -> str:
    """Server nickname when the author has one, otherwise the account name."""
    nick = getattr(author, "nick", None)
    return nick or author.name


def guild_name_resolver(guild: discord.Guild) -> Callable[[int], str | None]:
    """Look up current display names of guild members, for exports."""

    def resolve(discord_id: int) -> str | None:
        member = guild.get_member(discord_id)
        return member.display_name if member is not None else None

    return resolve


class RoleplayDiscordService:
    """Roleplay orchestration across the database and Discord."""

    def __init__(
        self,
        client: discord.Client,
        repo: Repository,
        stale_channel_hours: int = DEFAULT_STALE_CHANNEL_HOURS,
    ) -> None:
        self.client = client
        self.repo = repo
        self.roleplays = RoleplayService(repo)
        self.channels = DedicatedChannelService(client, repo)
        self.stale_channel_window = timedelta(hours=stale_channel_hours)

    # --- Lifecycle ---

    async def create_roleplay(
        self,
        guild_id: int,
        user_id: int,
        name: str,
        summary: str,
        is_nsfw: bool,
        is_public: bool,
    ) -> RoleplayRow:
        """Create a roleplay and its dedicated channel."""
        owner = await self.repo.get_or_register_user(user_id)
        server = await self.repo.get_or_register_server(guild_id)

        roleplay = await self.roleplays.create_roleplay(
            owner, server, name, summary, is_nsfw, is_public
        )
        await self.channels.create_dedicated_channel(roleplay)
        return roleplay

    async def delete_roleplay(self, roleplay: RoleplayRow) -> None:
        if roleplay.dedicated_channel_id is not None:
            await self.channels.delete_channel(roleplay)
        await self.roleplays.delete_roleplay(roleplay)

    async def start_roleplay(self, current_channel_id: int, roleplay: RoleplayRow) -> int:
        """Start the roleplay, preferring its dedicated channel. Returns the channel used."""
        channel_id = roleplay.dedicated_channel_id or current_channel_id
        channel = await self._get_channel(channel_id)

        if roleplay.is_nsfw and not channel.is_nsfw():
            raise UserError(
                "This channel is not marked as NSFW, while your roleplay is... naughty!"
            )

        current = await self.repo.get_active_roleplay_in_channel(channel_id)
        if current is not None and current.id != roleplay.id:
            if not await self._is_stale(current):
                raise UserError("There's already a roleplay active in this channel.")
            current.is_active = False
            current.active_channel_id = None
            logger.info("roleplay_displaced id=%s channel=%d", current.id, channel_id)

        await self.roleplays.start_roleplay(roleplay, channel_id)
        logger.info("roleplay_started id=%s channel=%d", roleplay.id, channel_id)

        if roleplay.dedicated_channel_id is None:
            return channel_id

        await self.channels.update_participant_permissions(roleplay)

        mentions = [f"<@{user.discord_id}>" for user in roleplay.joined_users]
        try:
            await channel.send(f"Calling {humanize_list(mentions)}!")
        except discord.HTTPException:
            logger.exception("roleplay_call_failed id=%s channel=%d", roleplay.id, channel_id)
        return channel_id

    async def stop_roleplay(self, roleplay: RoleplayRow) -> None:
        await self.roleplays.stop_roleplay(roleplay)
        logger.info("roleplay_stopped id=%s", roleplay.id)
        if roleplay.dedicated_channel_id is None:
            return
        await self.channels.update_participant_permissions(roleplay)

    async def refresh_roleplay(self, roleplay: RoleplayRow) -> None:
        await self.roleplays.refresh_roleplay(roleplay)

    async def transfer_ownership(self, user_id: int, roleplay: RoleplayRow) -> None:
        new_owner = await self.repo.get_or_register_user(user_id)
        await self.roleplays.transfer_ownership(new_owner, roleplay)
        if roleplay.dedicated_channel_id is not None:
            await self.channels.update_participant_permissions(roleplay)

    # --- Participants ---

    async def invite_user(self, roleplay: RoleplayRow, user_id: int) -> None:
        user = await self.repo.get_or_register_user(user_id)
        await self.roleplays.invite_user(roleplay, user)

    async def add_user(self, roleplay: RoleplayRow, user_id: int) -> None:
        user = await self.repo.get_or_register_user(user_id)
        await self.roleplays.add_user(roleplay, user)
        if roleplay.dedicated_channel_id is not None:
            await self.channels.update_participant_permissions(roleplay)

    async def remove_user(self, roleplay: RoleplayRow, user_id: int) -> None:
        user = await self.repo.get_or_register_user(user_id)
        await self.roleplays.remove_user(roleplay, user)
        if roleplay.dedicated_channel_id is not None:
            await self.channels.revoke_user_access(roleplay, user_id)

    async def kick_user(self, roleplay: RoleplayRow, user_id: int) -> None:
        user = await self.repo.get_or_register_user(user_id)
        await self.roleplays.kick_user(roleplay, user)
        if roleplay.dedicated_channel_id is not None:
            await self.channels.revoke_user_access(roleplay, user_id)

    # --- Properties ---

    async def set_name(self, roleplay: RoleplayRow, name: str) -> None:
        await self.roleplays.set_name(roleplay, name)
        if roleplay.dedicated_channel_id is not None:
            await self.channels.update_channel_name(roleplay)

    async def set_summary(self, roleplay: RoleplayRow, summary: str) -> None:
        await self.roleplays.set_summary(roleplay, summary)
        if roleplay.dedicated_channel_id is not None:
            await self.channels.update_channel_summary(roleplay)

    async def set_nsfw(self, roleplay: RoleplayRow, is_nsfw: bool) -> None:
        await self.roleplays.set_nsfw(roleplay, is_nsfw)
        if roleplay.dedicated_channel_id is not None:
            await self.channels.update_channel_nsfw(roleplay)

    async def set_public(self, roleplay: RoleplayRow, is_public: bool) -> None:
        await self.roleplays.set_public(roleplay, is_public)
        if roleplay.dedicated_channel_id is not None:
            await self.channels.update_participant_permissions(roleplay)

    # --- Lookup ---

    async def get_active_roleplay(self, channel_id: int) -> RoleplayRow:
        roleplay = await self.repo.get_active_roleplay_in_channel(channel_id)
        if roleplay is None:
            raise UserError("There is no roleplay that is currently active in this channel.")
        return roleplay

    async def has_active_roleplay(self, channel_id: int) -> bool:
        return await self.repo.get_active_roleplay_in_channel(channel_id) is not None

    async def get_best_matching_roleplay(
        self,
        channel_id: int,
        guild_id: int,
        owner_id: int | None,
        name: str | None,
    ) -> RoleplayRow:
        """Resolve a roleplay reference the way users type them.

        No owner and no name: the roleplay active in this channel. A name
        without an owner: a server-wide search. An owner without a name: the
        active roleplay again. Both: the owner's roleplay, falling back to a
        server-wide search by name.
        """
        server = await self.repo.get_or_register_server(guild_id)
        if owner_id is None:
            if name is None:
                return await self.get_active_roleplay(channel_id)
            return await self.roleplays.get_named_roleplay(name, server)

        if name is None or not name.strip():
            return await self.get_active_roleplay(channel_id)

        owner = await self.repo.get_or_register_user(owner_id)
        try:
            return await self.roleplays.get_user_roleplay_by_name(server, owner, name)
        except UserError:
            return await self.roleplays.get_named_roleplay(name, server)

    # --- Message log ---

    async def consume_message(self, message: discord.Message) -> bool:
        """Log a message if it belongs to the roleplay active in its channel.

        Returns True when the log changed.
        """
        roleplay = await self.repo.get_active_roleplay_in_channel(message.channel.id)
        if roleplay is None:
            return False
        return await self._log_message(roleplay, message)

    async def ensure_all_messages_are_logged(self, roleplay: RoleplayRow) -> int:
        """Back-fill the log from the channel history. Returns the number of updated messages."""
        channel_id = roleplay.dedicated_channel_id or roleplay.active_channel_id
        if channel_id is None:
            raise UserError(
                "The roleplay doesn't have a dedicated channel, nor is it active in one."
            )

        channel = await self._get_channel(channel_id)
        last = await self.repo.get_last_message(roleplay)
        after = discord.Object(id=last.discord_message_id) if last is not None else None

        updated = 0
        async for message in channel.history(limit=None, after=after, oldest_first=True):
            if await self._log_message(roleplay, message):
                updated += 1

        if updated:
            logger.info("roleplay_backfilled id=%s messages=%d", roleplay.id, updated)
        return updated

    # --- Internals ---

    async def _log_message(self, roleplay: RoleplayRow, message: discord.Message) -> bool:
        if not roleplay.has_joined(message.author.id):
            return False

        author = await self.repo.get_or_register_user(message.author.id)
        try:
            await self.roleplays.add_or_update_message(
                roleplay,
                author,
                message.id,
                message.created_at,
                display_name_for(message.author),
                message.content,
            )
        except UserError:
            # Already logged with identical contents.
            return False
        return True

    async def _is_stale(self, roleplay: RoleplayRow) -> bool:
        last = await self.repo.get_last_message(roleplay)
        last_seen = last.timestamp if last is not None else roleplay.last_updated
        if last_seen is None:
            return True
        return to_naive_utc(last_seen) < utcnow() - self.stale_channel_window

    async def _get_channel(self, channel_id: int) -> discord.abc.Messageable:
        channel = self.client.get_channel(channel_id)
        if channel is not None:
            return channel  # type: ignore[return-value]
        try:
            return await self.client.fetch_channel(channel_id)  # type: ignore[return-value]
        except discord.NotFound as exc:
            raise UserError("I couldn't find that channel.") from exc
