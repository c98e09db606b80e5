"""SQLAlchemy ORM models for the Ambassador database.

Tables: users, servers, roleplays, roleplay_participants, roleplay_messages,
server_roleplay_settings, user_permissions, role_permissions, bot_state.

Discord snowflakes are stored as BIGINT. Timestamps are naive UTC; SQLite
drops tzinfo on the way out, so everything is normalized on the way in.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time as naive UTC, the form every timestamp column holds."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime (e.g. a Discord message timestamp) to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    discord_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    timezone: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ServerRow(Base):
    __tablename__ = "servers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    discord_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    is_nsfw: Mapped[bool] = mapped_column(Boolean, default=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    join_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ServerRoleplaySettingsRow(Base):
    """Per-server roleplay configuration. One row per server, created on demand."""

    __tablename__ = "server_roleplay_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    server_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("servers.id"), nullable=False, unique=True
    )
    archive_channel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    default_user_role_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    dedicated_channel_category_id: Mapped[int | None] = mapped_column(
        BigInteger, nullable=True
    )

    server: Mapped[ServerRow] = relationship(lazy="selectin")


class RoleplayRow(Base):
    """A roleplay owned by one user on one server.

    ``participants`` includes the owner. The message log is kept in its own
    table and is only loaded on demand (export, archival).
    """

    __tablename__ = "roleplays"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    server_id: Mapped[str] = mapped_column(String(36), ForeignKey("servers.id"), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    summary: Mapped[str] = mapped_column(Text, default="")
    is_nsfw: Mapped[bool] = mapped_column(Boolean, default=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    active_channel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    dedicated_channel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    owner: Mapped[UserRow] = relationship(lazy="selectin")
    server: Mapped[ServerRow] = relationship(lazy="selectin")
    participants: Mapped[list[RoleplayParticipantRow]] = relationship(
        back_populates="roleplay",
        lazy="selectin",
        order_by="RoleplayParticipantRow.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_roleplays_server", "server_id"),
        Index("ix_roleplays_owner", "owner_id"),
        Index("ix_roleplays_active_channel", "active_channel_id"),
    )

    # --- Derived participant views ---

    def _participants_with(self, status: str) -> list[RoleplayParticipantRow]:
        return [p for p in self.participants if p.status == status]

    @property
    def joined_users(self) -> list[UserRow]:
        return [p.user for p in self._participants_with("joined")]

    @property
    def invited_users(self) -> list[UserRow]:
        return [p.user for p in self._participants_with("invited")]

    @property
    def kicked_users(self) -> list[UserRow]:
        return [p.user for p in self._participants_with("kicked")]

    def participant_for(self, discord_id: int) -> RoleplayParticipantRow | None:
        for participant in self.participants:
            if participant.user.discord_id == discord_id:
                return participant
        return None

    def has_joined(self, discord_id: int) -> bool:
        participant = self.participant_for(discord_id)
        return participant is not None and participant.status == "joined"

    def is_invited(self, discord_id: int) -> bool:
        participant = self.participant_for(discord_id)
        return participant is not None and participant.status == "invited"

    def is_kicked(self, discord_id: int) -> bool:
        participant = self.participant_for(discord_id)
        return participant is not None and participant.status == "kicked"

    def is_owner(self, discord_id: int) -> bool:
        return self.owner.discord_id == discord_id


class RoleplayParticipantRow(Base):
    __tablename__ = "roleplay_participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    roleplay_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("roleplays.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="joined")
    # Order of joining within the roleplay; the owner is 0.
    position: Mapped[int] = mapped_column(Integer, default=0)

    roleplay: Mapped[RoleplayRow] = relationship(back_populates="participants")
    user: Mapped[UserRow] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("roleplay_id", "user_id", name="uq_participant_roleplay_user"),
    )


class RoleplayMessageRow(Base):
    """One logged in-character message. Edits update the row in place."""

    __tablename__ = "roleplay_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    roleplay_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("roleplays.id"), nullable=False
    )
    author_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    discord_message_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    author_nickname: Mapped[str] = mapped_column(String(100), default="")
    contents: Mapped[str] = mapped_column(Text, default="")

    author: Mapped[UserRow] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("roleplay_id", "discord_message_id", name="uq_message_roleplay_msg"),
        Index("ix_roleplay_messages_roleplay_ts", "roleplay_id", "timestamp"),
    )


class UserPermissionRow(Base):
    """An explicit grant or revocation of a permission for one member of a server."""

    __tablename__ = "user_permissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    server_discord_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_discord_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    permission: Mapped[str] = mapped_column(String(64), nullable=False)
    target: Mapped[str] = mapped_column(String(10), nullable=False)
    is_granted: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        UniqueConstraint(
            "server_discord_id",
            "user_discord_id",
            "permission",
            "target",
            name="uq_user_permission",
        ),
    )


class RolePermissionRow(Base):
    """An explicit grant or revocation of a permission for a Discord role."""

    __tablename__ = "role_permissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    role_discord_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    permission: Mapped[str] = mapped_column(String(64), nullable=False)
    target: Mapped[str] = mapped_column(String(10), nullable=False)
    is_granted: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        UniqueConstraint("role_discord_id", "permission", "target", name="uq_role_permission"),
    )


class BotStateRow(Base):
    """Key-value store for bot state (sweep locks and similar).

    Persisted across restarts so concurrent processes can coordinate.
    """

    __tablename__ = "bot_state"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    value: Mapped[str] = mapped_column(String(500), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
    )
