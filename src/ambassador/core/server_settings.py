"""Per-server roleplay settings: archive channel, default user role, channel category."""

from __future__ import annotations

import logging

from ambassador.core.errors import UserError
from ambassador.db.models import ServerRoleplaySettingsRow
from ambassador.db.repository import Repository

logger = logging.getLogger(__name__)


class RoleplayServerSettingsService:
    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    async def get_or_create_settings(self, guild_id: int) -> ServerRoleplaySettingsRow:
        server = await self.repo.get_or_register_server(guild_id)
        return await self.repo.get_or_create_roleplay_settings(server)

    async def set_archive_channel(self, guild_id: int, channel_id: int | None) -> None:
        settings = await self.get_or_create_settings(guild_id)
        settings.archive_channel_id = channel_id
        await self.repo.session.flush()
        logger.info("rp_settings_archive_channel guild=%d channel=%s", guild_id, channel_id)

    async def set_default_user_role(self, guild_id: int, role_id: int | None) -> None:
        settings = await self.get_or_create_settings(guild_id)
        if settings.default_user_role_id == role_id:
            raise UserError("That's already the default user role.")
        settings.default_user_role_id = role_id
        await self.repo.session.flush()
        logger.info("rp_settings_default_role guild=%d role=%s", guild_id, role_id)

    async def set_dedicated_channel_category(self, guild_id: int, category_id: int | None) -> None:
        settings = await self.get_or_create_settings(guild_id)
        settings.dedicated_channel_category_id = category_id
        await self.repo.session.flush()
        logger.info("rp_settings_category guild=%d category=%s", guild_id, category_id)
