"""Shared test fixtures.

Discord objects are plain mocks. ``DiscordFakes`` wires a guild, its
roles, members and channels together so that overwrite changes made
through ``set_permissions`` show up in ``channel.overwrites``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from ambassador.config import Settings
from ambassador.db.engine import create_engine, create_tables, get_session
from ambassador.db.repository import Repository

GUILD_ID = 1000
BOT_ID = 9000
OWNER_ID = 1
CATEGORY_ID = 500


@pytest.fixture
def settings() -> Settings:
    """Test settings with defaults."""
    return Settings(ambassador_env="development", database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture
async def engine() -> AsyncEngine:
    """Create an in-memory SQLite engine with all tables."""
    eng = create_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
async def repo(engine: AsyncEngine) -> Repository:
    """Yield a repository with a session bound to the in-memory database."""
    async with get_session(engine) as session:
        yield Repository(session)


def http_error(cls: type[discord.HTTPException], status: int) -> discord.HTTPException:
    """Build a discord.py HTTP exception without a real response."""
    return cls(MagicMock(status=status, reason="error"), "error")


class DiscordFakes:
    """A guild with roles, members, a roleplay category and text channels."""

    def __init__(self) -> None:
        self.roles: dict[int, MagicMock] = {}
        self.members: dict[int, MagicMock] = {}
        self.channels: dict[int, MagicMock] = {}
        self._next_channel_id = 700

        self.guild = MagicMock(spec=discord.Guild)
        self.guild.id = GUILD_ID
        self.guild.owner_id = OWNER_ID
        self.guild.get_role.side_effect = self.roles.get
        self.guild.get_member.side_effect = self.members.get
        self.guild.get_channel.side_effect = self.channels.get
        self.guild.fetch_member = AsyncMock(side_effect=self._fetch_member)
        self.guild.fetch_channel = AsyncMock(side_effect=self._fetch_channel)
        self.guild.create_text_channel = AsyncMock(side_effect=self._create_text_channel)

        self.add_role(GUILD_ID)  # @everyone
        self.bot_member = self.add_member(BOT_ID, bot=True)

        self.category = MagicMock(spec=discord.CategoryChannel)
        self.category.id = CATEGORY_ID
        self.channels[CATEGORY_ID] = self.category

        self.client = MagicMock(spec=discord.Client)
        self.client.user = MagicMock()
        self.client.user.id = BOT_ID
        self.client.get_guild.side_effect = lambda gid: self.guild if gid == GUILD_ID else None
        self.client.fetch_guild = AsyncMock(side_effect=lambda gid: self.guild)
        self.client.get_channel.side_effect = self.channels.get
        self.client.fetch_channel = AsyncMock(side_effect=self._fetch_channel)
        self.client.get_user.side_effect = self.members.get
        self.client.fetch_user = AsyncMock(side_effect=self._fetch_member)

    def add_role(self, role_id: int) -> MagicMock:
        role = MagicMock(spec=discord.Role)
        role.id = role_id
        self.roles[role_id] = role
        return role

    def add_member(self, member_id: int, name: str | None = None, bot: bool = False) -> MagicMock:
        member = MagicMock(spec=discord.Member)
        member.id = member_id
        member.name = name or f"user{member_id}"
        member.nick = None
        member.display_name = member.name
        member.bot = bot
        member.roles = [self.roles[GUILD_ID]]
        member.send = AsyncMock()
        self.members[member_id] = member
        return member

    def add_text_channel(self, channel_id: int | None = None, nsfw: bool = False) -> MagicMock:
        if channel_id is None:
            channel_id = self._next_channel_id
            self._next_channel_id += 1
        channel = MagicMock(spec=discord.TextChannel)
        channel.id = channel_id
        channel.guild = self.guild
        channel.overwrites = {}
        channel.is_nsfw.return_value = nsfw
        channel.send = AsyncMock()
        channel.edit = AsyncMock()
        channel.delete = AsyncMock(side_effect=lambda **_: self.channels.pop(channel_id, None))
        channel.set_permissions = AsyncMock(side_effect=self._set_permissions(channel))
        channel.history = MagicMock(side_effect=lambda **_: _aiter([]))
        self.channels[channel_id] = channel
        return channel

    def overwrite_for(self, channel: MagicMock, obj_id: int) -> discord.PermissionOverwrite | None:
        for key, overwrite in channel.overwrites.items():
            if key.id == obj_id:
                return overwrite
        return None

    def _set_permissions(self, channel: MagicMock):
        async def set_permissions(obj, *, overwrite=None, **_kwargs):
            if overwrite is None:
                channel.overwrites.pop(obj, None)
            else:
                channel.overwrites[obj] = overwrite

        return set_permissions

    async def _fetch_member(self, member_id: int) -> MagicMock:
        if member_id not in self.members:
            raise http_error(discord.NotFound, 404)
        return self.members[member_id]

    async def _fetch_channel(self, channel_id: int) -> MagicMock:
        if channel_id not in self.channels:
            raise http_error(discord.NotFound, 404)
        return self.channels[channel_id]

    async def _create_text_channel(self, name: str, **kwargs) -> MagicMock:
        channel = self.add_text_channel(nsfw=kwargs.get("nsfw", False))
        channel.name = name
        channel.topic = kwargs.get("topic")
        return channel


async def _aiter(items):
    for item in items:
        yield item


def history_of(*messages: MagicMock):
    """A ``channel.history`` side effect that yields the given messages."""
    return lambda **_: _aiter(list(messages))


def make_message(
    message_id: int,
    author: MagicMock,
    channel: MagicMock,
    content: str,
    created_at=None,
) -> MagicMock:
    message = MagicMock(spec=discord.Message)
    message.id = message_id
    message.author = author
    message.channel = channel
    message.guild = channel.guild
    message.content = content
    message.webhook_id = None
    message.created_at = created_at or datetime.now(UTC)
    message.jump_url = f"https://discord.com/channels/{GUILD_ID}/{channel.id}/{message_id}"
    return message


@pytest.fixture
def fakes() -> DiscordFakes:
    return DiscordFakes()
