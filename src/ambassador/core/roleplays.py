"""Roleplay rules over the database.

Nothing in here talks to Discord. ``RoleplayService`` validates and applies
changes to roleplays, their participants, and their message logs; every
refusal is a ``UserError`` with a message fit to show the invoking user.
The Discord-facing orchestration lives in ``core.roleplay_discord``.
"""

from __future__ import annotations

import logging
from datetime import datetime

from ambassador.core.errors import UserError
from ambassador.db.models import (
    RoleplayMessageRow,
    RoleplayRow,
    ServerRow,
    UserRow,
    to_naive_utc,
    utcnow,
)
from ambassador.db.repository import Repository

logger = logging.getLogger(__name__)


class RoleplayService:
    """Database-only roleplay operations."""

    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    # --- Lifecycle ---

    async def create_roleplay(
        self,
        owner: UserRow,
        server: ServerRow,
        name: str,
        summary: str,
        is_nsfw: bool,
        is_public: bool,
    ) -> RoleplayRow:
        """Create a roleplay owned by *owner*, who joins it immediately."""
        await self._validate_name(owner, server, name)
        self._validate_summary(summary)

        roleplay = await self.repo.create_roleplay(
            server, owner, name.strip(), summary.strip(), is_nsfw, is_public
        )
        logger.info(
            "roleplay_created id=%s name=%s owner=%d", roleplay.id, roleplay.name, owner.discord_id
        )
        return roleplay

    async def delete_roleplay(self, roleplay: RoleplayRow) -> None:
        logger.info("roleplay_deleted id=%s name=%s", roleplay.id, roleplay.name)
        await self.repo.delete_roleplay(roleplay)

    async def start_roleplay(self, roleplay: RoleplayRow, channel_id: int) -> None:
        """Mark the roleplay as running in *channel_id*."""
        if roleplay.is_active and roleplay.active_channel_id == channel_id:
            raise UserError("The roleplay is already running.")

        roleplay.is_active = True
        roleplay.active_channel_id = channel_id
        roleplay.last_updated = utcnow()
        await self.repo.session.flush()

    async def stop_roleplay(self, roleplay: RoleplayRow) -> None:
        if not roleplay.is_active:
            raise UserError("The roleplay is not active.")

        roleplay.is_active = False
        roleplay.active_channel_id = None
        await self.repo.session.flush()

    async def refresh_roleplay(self, roleplay: RoleplayRow) -> None:
        """Reset the inactivity clock without logging a message."""
        roleplay.last_updated = utcnow()
        await self.repo.session.flush()

    # --- Message log ---

    async def add_or_update_message(
        self,
        roleplay: RoleplayRow,
        author: UserRow,
        message_id: int,
        timestamp: datetime,
        author_nickname: str,
        contents: str,
    ) -> RoleplayMessageRow:
        """Log a new message, or update an already-logged one after an edit.

        Raises ``UserError`` when the logged contents are already identical.
        """
        existing = await self.repo.get_message(roleplay, message_id)
        if existing is not None:
            if existing.contents == contents:
                raise UserError("Nothing to do; message content match.")
            existing.contents = contents
            roleplay.last_updated = utcnow()
            await self.repo.session.flush()
            return existing

        row = await self.repo.add_message(
            roleplay,
            author,
            message_id,
            to_naive_utc(timestamp),
            author_nickname,
            contents,
        )
        roleplay.last_updated = utcnow()
        await self.repo.session.flush()
        return row

    # --- Lookup ---

    async def get_named_roleplay(self, name: str, server: ServerRow) -> RoleplayRow:
        """Find a roleplay by name across all owners on the server."""
        matches = await self.repo.find_roleplays_by_name(server, name.strip())
        if len(matches) > 1:
            raise UserError(
                "There's more than one roleplay with that name. "
                "Please specify which user it belongs to."
            )
        if not matches:
            raise UserError("No roleplay with that name found.")
        return matches[0]

    async def get_user_roleplay_by_name(
        self, server: ServerRow, owner: UserRow, name: str
    ) -> RoleplayRow:
        roleplay = await self.repo.get_user_roleplay_by_name(server, owner, name.strip())
        if roleplay is None:
            raise UserError("You don't own a roleplay with that name.")
        return roleplay

    async def get_roleplays(self, server: ServerRow) -> list[RoleplayRow]:
        return await self.repo.get_server_roleplays(server)

    async def get_user_roleplays(self, owner: UserRow, server: ServerRow) -> list[RoleplayRow]:
        return await self.repo.get_user_roleplays(server, owner)

    async def is_name_unique_for_user(self, owner: UserRow, name: str, server: ServerRow) -> bool:
        existing = await self.repo.get_user_roleplay_by_name(server, owner, name.strip())
        return existing is None

    # --- Participants ---

    async def kick_user(self, roleplay: RoleplayRow, user: UserRow) -> None:
        """Kick a participant. A user who was only invited just loses the invitation."""
        if not roleplay.has_joined(user.discord_id) and not roleplay.is_invited(user.discord_id):
            raise UserError("That user is neither invited to or a participant of the roleplay.")

        if roleplay.is_invited(user.discord_id):
            await self.repo.remove_participant(roleplay, user)
            return

        await self.repo.set_participant_status(roleplay, user, "kicked")

    async def remove_user(self, roleplay: RoleplayRow, user: UserRow) -> None:
        if not roleplay.has_joined(user.discord_id):
            raise UserError("No matching user found in the roleplay.")
        if roleplay.is_owner(user.discord_id):
            raise UserError("The owner of a roleplay can't be removed from it.")

        await self.repo.remove_participant(roleplay, user)

    async def add_user(self, roleplay: RoleplayRow, user: UserRow) -> None:
        if roleplay.has_joined(user.discord_id):
            raise UserError("The user is already in that roleplay.")
        if roleplay.is_kicked(user.discord_id):
            raise UserError(
                "The user has been kicked from that roleplay, and can't rejoin unless invited."
            )
        if not roleplay.is_public and not roleplay.is_invited(user.discord_id):
            raise UserError("The user hasn't been invited to that roleplay.")

        await self.repo.set_participant_status(roleplay, user, "joined")

    async def invite_user(self, roleplay: RoleplayRow, user: UserRow) -> None:
        """Invite a user. Inviting a kicked user lifts the kick."""
        if roleplay.is_invited(user.discord_id):
            raise UserError("The user has already been invited to that roleplay.")

        await self.repo.set_participant_status(roleplay, user, "invited")

    async def transfer_ownership(self, new_owner: UserRow, roleplay: RoleplayRow) -> None:
        if roleplay.is_owner(new_owner.discord_id):
            raise UserError("That person already owns the roleplay.")

        owned = await self.repo.get_user_roleplays(roleplay.server, new_owner)
        if any(r.name.lower() == roleplay.name.lower() for r in owned):
            raise UserError(
                f"That user already owns a roleplay named {roleplay.name}. Please rename it first."
            )

        roleplay.owner = new_owner
        await self.repo.set_participant_status(roleplay, new_owner, "joined")
        logger.info(
            "roleplay_transferred id=%s new_owner=%d", roleplay.id, new_owner.discord_id
        )

    # --- Properties ---

    async def set_name(self, roleplay: RoleplayRow, name: str) -> None:
        await self._validate_name(roleplay.owner, roleplay.server, name)
        roleplay.name = name.strip()
        await self.repo.session.flush()

    async def set_summary(self, roleplay: RoleplayRow, summary: str) -> None:
        self._validate_summary(summary)
        roleplay.summary = summary.strip()
        await self.repo.session.flush()

    async def set_nsfw(self, roleplay: RoleplayRow, is_nsfw: bool) -> None:
        if roleplay.is_nsfw == is_nsfw:
            raise UserError(f"The roleplay is already {'NSFW' if is_nsfw else 'SFW'}.")
        if roleplay.is_nsfw and not is_nsfw and await self.repo.count_messages(roleplay) > 0:
            raise UserError("You can't mark a NSFW roleplay with messages in it as non-NSFW.")

        roleplay.is_nsfw = is_nsfw
        await self.repo.session.flush()

    async def set_public(self, roleplay: RoleplayRow, is_public: bool) -> None:
        if roleplay.is_public == is_public:
            raise UserError(f"The roleplay is already {'public' if is_public else 'private'}.")

        roleplay.is_public = is_public
        await self.repo.session.flush()

    # --- Validation ---

    async def _validate_name(self, owner: UserRow, server: ServerRow, name: str) -> None:
        if not name or not name.strip():
            raise UserError("You need to provide a name.")
        if '"' in name:
            raise UserError("The name may not contain double quotes.")
        if not await self.is_name_unique_for_user(owner, name, server):
            raise UserError("You already have a roleplay with that name.")

    @staticmethod
    def _validate_summary(summary: str) -> None:
        if not summary or not summary.strip():
            raise UserError("You need to provide a new summary.")
