"""Repository pattern for database access.

Wraps SQLAlchemy async sessions. All roleplay, participant, message-log,
settings, and permission persistence goes through here; services hold the
rules, the repository holds the queries.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ambassador.db.models import (
    BotStateRow,
    RolePermissionRow,
    RoleplayMessageRow,
    RoleplayParticipantRow,
    RoleplayRow,
    ServerRoleplaySettingsRow,
    ServerRow,
    UserPermissionRow,
    UserRow,
    utcnow,
)


class Repository:
    """Async repository for all database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Users / Servers ---

    async def get_user_by_discord_id(self, discord_id: int) -> UserRow | None:
        stmt = select(UserRow).where(UserRow.discord_id == discord_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_register_user(self, discord_id: int) -> UserRow:
        """Return the user for a Discord id, creating it on first sight."""
        user = await self.get_user_by_discord_id(discord_id)
        if user is not None:
            return user
        user = UserRow(discord_id=discord_id)
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_server_by_discord_id(self, discord_id: int) -> ServerRow | None:
        stmt = select(ServerRow).where(ServerRow.discord_id == discord_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_register_server(self, discord_id: int) -> ServerRow:
        """Return the server for a Discord guild id, creating it on first sight."""
        server = await self.get_server_by_discord_id(discord_id)
        if server is not None:
            return server
        server = ServerRow(discord_id=discord_id)
        self.session.add(server)
        await self.session.flush()
        return server

    # --- Roleplays ---

    async def create_roleplay(
        self,
        server: ServerRow,
        owner: UserRow,
        name: str,
        summary: str,
        is_nsfw: bool,
        is_public: bool,
    ) -> RoleplayRow:
        """Create a roleplay with its owner as the first joined participant."""
        roleplay = RoleplayRow(
            server=server,
            owner=owner,
            name=name,
            summary=summary,
            is_nsfw=is_nsfw,
            is_public=is_public,
            is_active=False,
            participants=[RoleplayParticipantRow(user=owner, status="joined", position=0)],
        )
        self.session.add(roleplay)
        await self.session.flush()
        return roleplay

    async def get_roleplay(self, roleplay_id: str) -> RoleplayRow | None:
        stmt = select(RoleplayRow).where(RoleplayRow.id == roleplay_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_server_roleplays(self, server: ServerRow) -> list[RoleplayRow]:
        stmt = (
            select(RoleplayRow)
            .where(RoleplayRow.server_id == server.id)
            .order_by(RoleplayRow.name)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_public_roleplays(self, server_discord_id: int | None = None) -> list[RoleplayRow]:
        """Public roleplays, optionally restricted to one guild."""
        stmt = select(RoleplayRow).where(RoleplayRow.is_public.is_(True))
        if server_discord_id is not None:
            stmt = stmt.join(ServerRow, RoleplayRow.server_id == ServerRow.id).where(
                ServerRow.discord_id == server_discord_id
            )
        stmt = stmt.order_by(RoleplayRow.name)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_user_roleplays(self, server: ServerRow, owner: UserRow) -> list[RoleplayRow]:
        stmt = (
            select(RoleplayRow)
            .where(RoleplayRow.server_id == server.id, RoleplayRow.owner_id == owner.id)
            .order_by(RoleplayRow.name)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_roleplays_by_name(self, server: ServerRow, name: str) -> list[RoleplayRow]:
        """Case-insensitive name lookup across every owner on the server."""
        stmt = select(RoleplayRow).where(
            RoleplayRow.server_id == server.id,
            func.lower(RoleplayRow.name) == name.lower(),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_user_roleplay_by_name(
        self, server: ServerRow, owner: UserRow, name: str
    ) -> RoleplayRow | None:
        stmt = select(RoleplayRow).where(
            RoleplayRow.server_id == server.id,
            RoleplayRow.owner_id == owner.id,
            func.lower(RoleplayRow.name) == name.lower(),
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_active_roleplay_in_channel(self, channel_id: int) -> RoleplayRow | None:
        stmt = select(RoleplayRow).where(
            RoleplayRow.is_active.is_(True),
            RoleplayRow.active_channel_id == channel_id,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_roleplays_with_dedicated_channel(self) -> list[RoleplayRow]:
        stmt = select(RoleplayRow).where(RoleplayRow.dedicated_channel_id.isnot(None))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_timed_out_roleplays(self, cutoff: datetime) -> list[RoleplayRow]:
        """Active roleplays whose last activity is older than *cutoff*."""
        stmt = select(RoleplayRow).where(
            RoleplayRow.is_active.is_(True),
            RoleplayRow.last_updated.isnot(None),
            RoleplayRow.last_updated < cutoff,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_archivable_roleplays(self, cutoff: datetime) -> list[RoleplayRow]:
        """Roleplays holding a dedicated channel with no activity since *cutoff*."""
        stmt = select(RoleplayRow).where(
            RoleplayRow.dedicated_channel_id.isnot(None),
            RoleplayRow.last_updated.isnot(None),
            RoleplayRow.last_updated < cutoff,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_roleplay(self, roleplay: RoleplayRow) -> None:
        """Delete a roleplay along with its participants and message log."""
        await self.session.execute(
            delete(RoleplayMessageRow).where(RoleplayMessageRow.roleplay_id == roleplay.id)
        )
        await self.session.delete(roleplay)
        await self.session.flush()

    # --- Participants ---

    async def set_participant_status(
        self, roleplay: RoleplayRow, user: UserRow, status: str
    ) -> RoleplayParticipantRow:
        """Upsert the user's participant row with the given status."""
        participant = roleplay.participant_for(user.discord_id)
        if participant is None:
            position = max((p.position for p in roleplay.participants), default=-1) + 1
            participant = RoleplayParticipantRow(user=user, status=status, position=position)
            roleplay.participants.append(participant)
        else:
            participant.status = status
        await self.session.flush()
        return participant

    async def remove_participant(self, roleplay: RoleplayRow, user: UserRow) -> None:
        participant = roleplay.participant_for(user.discord_id)
        if participant is None:
            return
        roleplay.participants.remove(participant)
        await self.session.flush()

    # --- Message log ---

    async def get_message(
        self, roleplay: RoleplayRow, discord_message_id: int
    ) -> RoleplayMessageRow | None:
        stmt = select(RoleplayMessageRow).where(
            RoleplayMessageRow.roleplay_id == roleplay.id,
            RoleplayMessageRow.discord_message_id == discord_message_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_message(
        self,
        roleplay: RoleplayRow,
        author: UserRow,
        discord_message_id: int,
        timestamp: datetime,
        author_nickname: str,
        contents: str,
    ) -> RoleplayMessageRow:
        row = RoleplayMessageRow(
            roleplay_id=roleplay.id,
            author=author,
            discord_message_id=discord_message_id,
            timestamp=timestamp,
            author_nickname=author_nickname,
            contents=contents,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_messages(self, roleplay: RoleplayRow) -> list[RoleplayMessageRow]:
        """The roleplay's message log in chronological order."""
        stmt = (
            select(RoleplayMessageRow)
            .where(RoleplayMessageRow.roleplay_id == roleplay.id)
            .order_by(RoleplayMessageRow.timestamp, RoleplayMessageRow.discord_message_id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_last_message(self, roleplay: RoleplayRow) -> RoleplayMessageRow | None:
        stmt = (
            select(RoleplayMessageRow)
            .where(RoleplayMessageRow.roleplay_id == roleplay.id)
            .order_by(
                RoleplayMessageRow.timestamp.desc(),
                RoleplayMessageRow.discord_message_id.desc(),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_messages(self, roleplay: RoleplayRow) -> int:
        stmt = select(func.count()).where(RoleplayMessageRow.roleplay_id == roleplay.id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    # --- Server roleplay settings ---

    async def get_or_create_roleplay_settings(self, server: ServerRow) -> ServerRoleplaySettingsRow:
        stmt = select(ServerRoleplaySettingsRow).where(
            ServerRoleplaySettingsRow.server_id == server.id
        )
        result = await self.session.execute(stmt)
        settings = result.scalar_one_or_none()
        if settings is not None:
            return settings
        settings = ServerRoleplaySettingsRow(server=server)
        self.session.add(settings)
        await self.session.flush()
        return settings

    # --- Permissions ---

    async def get_user_permission(
        self, server_discord_id: int, user_discord_id: int, permission: str, target: str
    ) -> UserPermissionRow | None:
        stmt = select(UserPermissionRow).where(
            UserPermissionRow.server_discord_id == server_discord_id,
            UserPermissionRow.user_discord_id == user_discord_id,
            UserPermissionRow.permission == permission,
            UserPermissionRow.target == target,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_user_permission(
        self,
        server_discord_id: int,
        user_discord_id: int,
        permission: str,
        target: str,
        default: bool,
    ) -> UserPermissionRow:
        row = await self.get_user_permission(server_discord_id, user_discord_id, permission, target)
        if row is not None:
            return row
        row = UserPermissionRow(
            server_discord_id=server_discord_id,
            user_discord_id=user_discord_id,
            permission=permission,
            target=target,
            is_granted=default,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_role_permission(
        self, role_discord_id: int, permission: str, target: str
    ) -> RolePermissionRow | None:
        stmt = select(RolePermissionRow).where(
            RolePermissionRow.role_discord_id == role_discord_id,
            RolePermissionRow.permission == permission,
            RolePermissionRow.target == target,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_role_permission(
        self, role_discord_id: int, permission: str, target: str, default: bool
    ) -> RolePermissionRow:
        row = await self.get_role_permission(role_discord_id, permission, target)
        if row is not None:
            return row
        row = RolePermissionRow(
            role_discord_id=role_discord_id,
            permission=permission,
            target=target,
            is_granted=default,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    # --- Bot State ---

    async def get_bot_state(self, key: str) -> str | None:
        """Retrieve a bot state value by key, or None if not set."""
        row = await self.session.get(BotStateRow, key)
        return row.value if row else None

    async def set_bot_state(self, key: str, value: str) -> None:
        """Upsert a bot state key-value pair."""
        row = await self.session.get(BotStateRow, key)
        if row is not None:
            row.value = value
            row.updated_at = utcnow()
        else:
            row = BotStateRow(key=key, value=value)
            self.session.add(row)
        await self.session.flush()

    async def delete_bot_state(self, key: str) -> None:
        row = await self.session.get(BotStateRow, key)
        if row is not None:
            await self.session.delete(row)
            await self.session.flush()
