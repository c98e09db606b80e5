"""Discord embed builders for Ambassador.

Builds discord.Embed objects for roleplay details and listings, server
settings, permission listings, and the notifications sent by the
background sweeps. Each builder takes domain data and returns a styled
embed ready to send.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import discord

if TYPE_CHECKING:
    from ambassador.core.permissions import Permission
    from ambassador.db.models import RoleplayRow, ServerRoleplaySettingsRow

# Colors
COLOR_PRIMARY = 0x9370DB  # Medium purple
COLOR_SECONDARY = 0x4B0082  # Indigo
COLOR_SUCCESS = 0x2ECC71
COLOR_WARNING = 0xF39C12
COLOR_ERROR = 0xE74C3C

MAX_LIST_ENTRIES = 25  # Discord's field limit per embed


def _yes_no(value: bool) -> str:
    return "Yes" if value else "No"


def _channel_mention(channel_id: int | None) -> str:
    return f"<#{channel_id}>" if channel_id else "None"


def build_roleplay_embed(roleplay: RoleplayRow) -> discord.Embed:
    """Detail card for a single roleplay."""
    embed = discord.Embed(
        title=roleplay.name,
        description=roleplay.summary or "No summary set.",
        color=COLOR_PRIMARY,
    )

    if roleplay.is_active and roleplay.active_channel_id:
        currently = f"Live in {_channel_mention(roleplay.active_channel_id)}"
    else:
        currently = "Inactive"
    embed.add_field(name="Currently", value=currently, inline=True)
    embed.add_field(
        name="Dedicated Channel",
        value=_channel_mention(roleplay.dedicated_channel_id),
        inline=True,
    )
    embed.add_field(name="NSFW", value=_yes_no(roleplay.is_nsfw), inline=True)
    embed.add_field(name="Public", value=_yes_no(roleplay.is_public), inline=True)

    joined = [f"<@{user.discord_id}>" for user in roleplay.joined_users]
    embed.add_field(
        name="Participants",
        value="\n".join(joined) if joined else "No participants.",
        inline=False,
    )
    embed.set_footer(text=f"Owned by user {roleplay.owner.discord_id}")
    return embed


def build_roleplay_list_embed(roleplays: list[RoleplayRow], title: str) -> discord.Embed:
    """Listing of roleplays, one field per roleplay."""
    embed = discord.Embed(title=title, color=COLOR_PRIMARY)
    if not roleplays:
        embed.description = "There are no roleplays to show."
        return embed

    for roleplay in roleplays[:MAX_LIST_ENTRIES]:
        status = "Active" if roleplay.is_active else "Inactive"
        summary = roleplay.summary or "No summary set."
        embed.add_field(
            name=roleplay.name,
            value=f"{summary}\n*{status}, owned by <@{roleplay.owner.discord_id}>*",
            inline=False,
        )
    if len(roleplays) > MAX_LIST_ENTRIES:
        embed.set_footer(text=f"Showing {MAX_LIST_ENTRIES} of {len(roleplays)} roleplays.")
    return embed


def build_server_settings_embed(settings: ServerRoleplaySettingsRow) -> discord.Embed:
    embed = discord.Embed(title="Roleplay Server Settings", color=COLOR_SECONDARY)
    embed.add_field(
        name="Archive Channel",
        value=_channel_mention(settings.archive_channel_id),
        inline=False,
    )
    role = settings.default_user_role_id
    embed.add_field(
        name="Default User Role",
        value=f"<@&{role}>" if role else "@everyone",
        inline=False,
    )
    embed.add_field(
        name="Dedicated Channel Category",
        value=_channel_mention(settings.dedicated_channel_category_id),
        inline=False,
    )
    return embed


def build_permission_list_embed(
    member_name: str,
    effective: list[tuple[Permission, bool, bool]],
) -> discord.Embed:
    """Effective self/other permission table for one member."""
    embed = discord.Embed(title=f"Permissions for {member_name}", color=COLOR_SECONDARY)
    for permission, on_self, on_other in effective:
        embed.add_field(
            name=permission.friendly_name,
            value=(
                f"{permission.description}\n"
                f"Self: {'granted' if on_self else 'denied'} | "
                f"Other: {'granted' if on_other else 'denied'}"
            ),
            inline=False,
        )
    return embed


def build_archive_embed(
    name: str, summary: str, archived_at: datetime | None = None
) -> discord.Embed:
    """Posted to the archive channel alongside the exported transcript."""
    archived_at = archived_at or datetime.now(UTC)
    embed = discord.Embed(
        title=f"{name} - Archived",
        description=summary or "No summary set.",
        color=COLOR_SECONDARY,
    )
    embed.set_footer(text=f"Archived on {archived_at:%Y-%m-%d}.")
    return embed


def build_archived_notification_embed(name: str, archive_days: int = 28) -> discord.Embed:
    """DM to a roleplay owner after their roleplay's channel was archived."""
    embed = discord.Embed(
        description=(
            f'Your roleplay "{name}" has been inactive for more than {archive_days} days, '
            "and has been archived.\n\n"
            "This means that the dedicated channel that the roleplay had has been deleted. "
            "All messages in the roleplay have been saved, and can be exported or replayed "
            "as normal."
        ),
        color=COLOR_SECONDARY,
    )
    embed.set_footer(text=f'You can export it by running /rp export "{name}".')
    return embed


def build_timeout_notification_embed(name: str) -> discord.Embed:
    """DM to a roleplay owner after their roleplay was stopped for inactivity."""
    return discord.Embed(
        description=f'Due to inactivity, your roleplay "{name}" has been stopped.',
        color=COLOR_SECONDARY,
    )


def build_confirmation_embed(message: str) -> discord.Embed:
    return discord.Embed(description=message, color=COLOR_SUCCESS)


def build_warning_embed(message: str) -> discord.Embed:
    return discord.Embed(description=message, color=COLOR_WARNING)


def build_error_embed(message: str) -> discord.Embed:
    return discord.Embed(description=message, color=COLOR_ERROR)


def build_bot_info_embed() -> discord.Embed:
    embed = discord.Embed(
        title='The Ambassador ("Amby")',
        description=(
            "Amby is a Discord bot written in Python using discord.py and SQLAlchemy. As an "
            "ambassador for her community, she provides a number of useful services for "
            "communities with similar interests: roleplay management with dedicated channels, "
            "fine-grained permissions, and a healthy dose of sass.\n\n"
            "Any bugs you encounter should be reported on the project's issue tracker. "
            "Contributions in the form of code, artwork, bug triaging, or quality control "
            "testing are always greatly appreciated!\n\n"
            "Stay sharky~\n- Amby"
        ),
        color=COLOR_PRIMARY,
    )
    embed.set_author(name="Ambassador")
    return embed


def build_image_embed(url: str) -> discord.Embed:
    embed = discord.Embed(color=COLOR_PRIMARY)
    embed.set_image(url=url)
    return embed
