"""Tests for per-server roleplay settings."""

import pytest

from ambassador.core.errors import UserError
from ambassador.core.server_settings import RoleplayServerSettingsService
from ambassador.db.repository import Repository


@pytest.fixture
def service(repo: Repository) -> RoleplayServerSettingsService:
    return RoleplayServerSettingsService(repo)


class TestServerSettings:
    async def test_created_empty(self, service: RoleplayServerSettingsService):
        settings = await service.get_or_create_settings(1000)
        assert settings.archive_channel_id is None
        assert settings.default_user_role_id is None
        assert settings.dedicated_channel_category_id is None

    async def test_set_and_clear(self, service: RoleplayServerSettingsService):
        await service.set_archive_channel(1000, 42)
        await service.set_dedicated_channel_category(1000, 500)
        await service.set_default_user_role(1000, 77)

        settings = await service.get_or_create_settings(1000)
        assert settings.archive_channel_id == 42
        assert settings.dedicated_channel_category_id == 500
        assert settings.default_user_role_id == 77

        await service.set_archive_channel(1000, None)
        await service.set_default_user_role(1000, None)
        assert settings.archive_channel_id is None
        assert settings.default_user_role_id is None

    async def test_same_default_role_rejected(self, service: RoleplayServerSettingsService):
        await service.set_default_user_role(1000, 77)
        with pytest.raises(UserError, match="already the default user role"):
            await service.set_default_user_role(1000, 77)

    async def test_settings_are_per_server(self, service: RoleplayServerSettingsService):
        await service.set_archive_channel(1000, 42)
        other = await service.get_or_create_settings(2000)
        assert other.archive_channel_id is None
