"""Dedicated roleplay channels on Discord.

Creates, deletes, renames, and re-permissions the per-roleplay text
channels. Overwrite state is computed by ``core.overwrites``; this module
reads the channel's actual overwrites, applies the planned changes with
``TextChannel.set_permissions``, and nothing more. Targets that can no
longer be resolved (members who left, deleted roles) are logged and skipped.
"""

from __future__ import annotations

import logging

import discord

from ambassador.core.errors import UserError
from ambassador.core.overwrites import (
    ChannelState,
    Overwrite,
    OverwriteChange,
    Target,
    desired_channel_overwrites,
    plan_overwrite_changes,
    plan_participant_changes,
    visibility_overwrite,
    writability_overwrite,
)
from ambassador.db.models import RoleplayRow
from ambassador.db.repository import Repository

logger = logging.getLogger(__name__)


def channel_name_for(roleplay: RoleplayRow) -> str:
    return f"{roleplay.name}-rp"


def channel_topic_for(roleplay: RoleplayRow) -> str:
    return f"Dedicated roleplay channel for {roleplay.name}. {roleplay.summary}"


def read_overwrites(channel: discord.abc.GuildChannel) -> dict[Target, Overwrite]:
    """Snapshot a channel's overwrites as plain targets and bit pairs."""
    actual: dict[Target, Overwrite] = {}
    for key, overwrite in channel.overwrites.items():
        is_role = isinstance(key, discord.Role) or getattr(key, "type", None) is discord.Role
        target = Target.role(key.id) if is_role else Target.member(key.id)
        actual[target] = Overwrite.from_discord(overwrite)
    return actual


class DedicatedChannelService:
    """Discord-side management of roleplay channels."""

    def __init__(self, client: discord.Client, repo: Repository) -> None:
        self.client = client
        self.repo = repo

    # --- Lookup ---

    def get_dedicated_channel(self, roleplay: RoleplayRow) -> int:
        """Return the dedicated channel id, or raise if the roleplay has none."""
        if roleplay.dedicated_channel_id is None:
            raise UserError("The roleplay doesn't have a dedicated channel.")
        return roleplay.dedicated_channel_id

    async def get_guild(self, guild_id: int) -> discord.Guild:
        guild = self.client.get_guild(guild_id)
        if guild is not None:
            return guild
        try:
            return await self.client.fetch_guild(guild_id)
        except discord.HTTPException as exc:
            raise UserError("I couldn't find that server.") from exc

    async def resolve_channel(self, roleplay: RoleplayRow) -> discord.TextChannel:
        """Fetch the roleplay's dedicated channel object from Discord."""
        channel_id = self.get_dedicated_channel(roleplay)
        guild = await self.get_guild(roleplay.server.discord_id)
        channel = guild.get_channel(channel_id)
        if channel is not None:
            return channel  # type: ignore[return-value]
        try:
            return await guild.fetch_channel(channel_id)  # type: ignore[return-value]
        except discord.NotFound as exc:
            raise UserError("The roleplay's dedicated channel no longer exists.") from exc

    # --- Create / delete ---

    async def create_dedicated_channel(self, roleplay: RoleplayRow) -> discord.TextChannel:
        """Create the roleplay's channel under the configured category and lock it down."""
        settings = await self.repo.get_or_create_roleplay_settings(roleplay.server)

        if roleplay.dedicated_channel_id is not None:
            raise UserError("The roleplay already has a dedicated channel.")
        if settings.dedicated_channel_category_id is None:
            raise UserError("No dedicated channel category has been configured.")

        guild = await self.get_guild(roleplay.server.discord_id)
        category = guild.get_channel(settings.dedicated_channel_category_id)
        if not isinstance(category, discord.CategoryChannel):
            raise UserError("The configured roleplay category no longer exists.")

        try:
            channel = await guild.create_text_channel(
                channel_name_for(roleplay),
                category=category,
                topic=channel_topic_for(roleplay),
                nsfw=roleplay.is_nsfw,
            )
        except discord.Forbidden as exc:
            raise UserError(
                "I don't have permission to manage channels, so I can't create dedicated RP "
                "channels."
            ) from exc

        roleplay.dedicated_channel_id = channel.id
        await self.repo.session.flush()
        logger.info("rp_channel_created roleplay=%s channel=%d", roleplay.id, channel.id)

        try:
            await self.reset_channel_permissions(roleplay, channel=channel)
        except (UserError, discord.HTTPException) as exc:
            logger.warning("rp_channel_reset_failed roleplay=%s err=%s", roleplay.id, exc)
            try:
                await channel.delete(reason="Failed to configure dedicated roleplay channel")
            except discord.HTTPException:
                logger.exception("rp_channel_cleanup_failed channel=%d", channel.id)
            roleplay.dedicated_channel_id = None
            await self.repo.session.flush()
            raise UserError(
                "Failed to set up the channel's permissions. Does the bot have the "
                '"Manage Permissions" permission?'
            ) from exc

        return channel

    async def delete_channel(self, roleplay: RoleplayRow) -> None:
        """Delete the dedicated channel. Discord-side failures don't block clearing the id."""
        channel_id = self.get_dedicated_channel(roleplay)
        try:
            channel = await self.resolve_channel(roleplay)
            await channel.delete(reason=f"Dedicated channel for {roleplay.name} removed")
        except UserError:
            logger.info("rp_channel_already_gone channel=%d", channel_id)
        except discord.HTTPException as exc:
            logger.warning("rp_channel_delete_failed channel=%d err=%s", channel_id, exc)

        roleplay.dedicated_channel_id = None
        await self.repo.session.flush()
        logger.info("rp_channel_deleted roleplay=%s channel=%d", roleplay.id, channel_id)

    # --- Permission reconciliation ---

    async def channel_state(self, roleplay: RoleplayRow) -> ChannelState:
        settings = await self.repo.get_or_create_roleplay_settings(roleplay.server)
        return ChannelState(
            guild_id=roleplay.server.discord_id,
            bot_id=self.client.user.id,  # type: ignore[union-attr]
            is_active=roleplay.is_active,
            is_public=roleplay.is_public,
            participants={p.user.discord_id: p.status for p in roleplay.participants},
            default_role_id=settings.default_user_role_id,
        )

    async def reset_channel_permissions(
        self,
        roleplay: RoleplayRow,
        channel: discord.TextChannel | None = None,
    ) -> int:
        """Converge every overwrite on the channel. Unknown overwrites are removed.

        Returns the number of API calls issued.
        """
        channel = channel or await self.resolve_channel(roleplay)
        state = await self.channel_state(roleplay)
        desired = desired_channel_overwrites(state)
        changes = plan_overwrite_changes(desired, read_overwrites(channel))
        return await self._apply(channel, changes)

    async def update_participant_permissions(self, roleplay: RoleplayRow) -> int:
        """Converge participant overwrites only. Returns the number of API calls issued."""
        channel = await self.resolve_channel(roleplay)
        state = await self.channel_state(roleplay)
        changes = plan_participant_changes(state, read_overwrites(channel))
        return await self._apply(channel, changes)

    async def revoke_user_access(self, roleplay: RoleplayRow, user_id: int) -> None:
        channel = await self.resolve_channel(roleplay)
        target = Target.member(user_id)
        if target not in read_overwrites(channel):
            return
        await self._apply(channel, [OverwriteChange(target, None)])

    async def set_channel_visibility_for_user(
        self, channel: discord.TextChannel, member: discord.abc.Snowflake, visible: bool
    ) -> None:
        current = read_overwrites(channel).get(Target.member(member.id))
        await self._set(channel, member, visibility_overwrite(current, visible))

    async def set_channel_writability_for_user(
        self, channel: discord.TextChannel, member: discord.abc.Snowflake, writable: bool
    ) -> None:
        current = read_overwrites(channel).get(Target.member(member.id))
        await self._set(channel, member, writability_overwrite(current, writable))

    # --- Channel properties ---

    async def update_channel_name(self, roleplay: RoleplayRow) -> None:
        channel = await self.resolve_channel(roleplay)
        await channel.edit(name=channel_name_for(roleplay))

    async def update_channel_summary(self, roleplay: RoleplayRow) -> None:
        channel = await self.resolve_channel(roleplay)
        await channel.edit(topic=channel_topic_for(roleplay))

    async def update_channel_nsfw(self, roleplay: RoleplayRow) -> None:
        channel = await self.resolve_channel(roleplay)
        await channel.edit(nsfw=roleplay.is_nsfw)

    # --- Internals ---

    async def _resolve_target(
        self, guild: discord.Guild, target: Target
    ) -> discord.Role | discord.Member | None:
        if target.kind == "role":
            return guild.get_role(target.id)
        member = guild.get_member(target.id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(target.id)
        except discord.NotFound:
            return None

    async def _apply(self, channel: discord.TextChannel, changes: list[OverwriteChange]) -> int:
        applied = 0
        for change in changes:
            obj = await self._resolve_target(channel.guild, change.target)
            if obj is None:
                logger.warning(
                    "rp_overwrite_target_missing channel=%d kind=%s id=%d",
                    channel.id,
                    change.target.kind,
                    change.target.id,
                )
                continue
            overwrite = None if change.overwrite is None else change.overwrite.to_discord()
            await self._set_raw(channel, obj, overwrite)
            applied += 1
        if applied:
            logger.info("rp_overwrites_applied channel=%d calls=%d", channel.id, applied)
        return applied

    async def _set(
        self, channel: discord.TextChannel, obj: discord.abc.Snowflake, overwrite: Overwrite
    ) -> None:
        await self._set_raw(channel, obj, None if overwrite.is_empty else overwrite.to_discord())

    async def _set_raw(
        self,
        channel: discord.TextChannel,
        obj: discord.abc.Snowflake,
        overwrite: discord.PermissionOverwrite | None,
    ) -> None:
        try:
            await channel.set_permissions(obj, overwrite=overwrite)  # type: ignore[arg-type]
        except discord.Forbidden as exc:
            raise UserError(
                "I don't have permission to edit the permissions of that channel."
            ) from exc
