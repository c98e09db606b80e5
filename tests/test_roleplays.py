"""Tests for the database-only roleplay rules."""

from datetime import UTC, datetime, timedelta

import pytest

from ambassador.core.errors import UserError
from ambassador.core.roleplays import RoleplayService
from ambassador.db.models import utcnow
from ambassador.db.repository import Repository


@pytest.fixture
def service(repo: Repository) -> RoleplayService:
    return RoleplayService(repo)


async def _create(
    service: RoleplayService, name: str = "Tea Party", owner_id: int = 1, **kwargs
):
    repo = service.repo
    owner = await repo.get_or_register_user(owner_id)
    server = await repo.get_or_register_server(1000)
    return await service.create_roleplay(
        owner,
        server,
        name,
        kwargs.get("summary", "A quiet afternoon."),
        kwargs.get("is_nsfw", False),
        kwargs.get("is_public", True),
    )


class TestCreate:
    async def test_strips_name_and_summary(self, service: RoleplayService):
        roleplay = await _create(service, "  Tea Party ", summary="  Hats.  ")
        assert roleplay.name == "Tea Party"
        assert roleplay.summary == "Hats."
        assert roleplay.has_joined(1)

    @pytest.mark.parametrize(
        ("name", "message"),
        [
            ("   ", "You need to provide a name."),
            ('The "Best" One', "The name may not contain double quotes."),
        ],
    )
    async def test_invalid_names(self, service: RoleplayService, name: str, message: str):
        with pytest.raises(UserError, match=message):
            await _create(service, name)

    async def test_blank_summary(self, service: RoleplayService):
        with pytest.raises(UserError, match="You need to provide a new summary."):
            await _create(service, summary="  ")

    async def test_names_unique_per_owner_only(self, service: RoleplayService):
        await _create(service, "Tea Party")
        with pytest.raises(UserError, match="You already have a roleplay with that name."):
            await _create(service, "tea party")

        other = await _create(service, "Tea Party", owner_id=2)
        assert other.owner.discord_id == 2


class TestLifecycle:
    async def test_start_and_stop(self, service: RoleplayService):
        roleplay = await _create(service)
        await service.start_roleplay(roleplay, 77)
        assert roleplay.is_active
        assert roleplay.active_channel_id == 77
        assert roleplay.last_updated is not None

        with pytest.raises(UserError, match="The roleplay is already running."):
            await service.start_roleplay(roleplay, 77)

        await service.stop_roleplay(roleplay)
        assert not roleplay.is_active
        assert roleplay.active_channel_id is None

        with pytest.raises(UserError, match="The roleplay is not active."):
            await service.stop_roleplay(roleplay)

    async def test_start_moves_to_another_channel(self, service: RoleplayService):
        roleplay = await _create(service)
        await service.start_roleplay(roleplay, 77)
        await service.start_roleplay(roleplay, 78)
        assert roleplay.active_channel_id == 78

    async def test_refresh_resets_clock(self, service: RoleplayService):
        roleplay = await _create(service)
        roleplay.last_updated = utcnow() - timedelta(days=3)
        await service.refresh_roleplay(roleplay)
        assert roleplay.last_updated > utcnow() - timedelta(minutes=1)

    async def test_delete(self, service: RoleplayService):
        roleplay = await _create(service)
        roleplay_id = roleplay.id
        await service.delete_roleplay(roleplay)
        assert await service.repo.get_roleplay(roleplay_id) is None


class TestMessages:
    async def test_add_then_edit(self, service: RoleplayService):
        roleplay = await _create(service)
        author = await service.repo.get_or_register_user(1)
        sent_at = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

        row = await service.add_or_update_message(roleplay, author, 10, sent_at, "Amby", "Hi")
        assert row.timestamp == datetime(2024, 5, 1, 12, 0)
        assert roleplay.last_updated is not None

        edited = await service.add_or_update_message(
            roleplay, author, 10, sent_at, "Amby", "Hello"
        )
        assert edited.id == row.id
        assert edited.contents == "Hello"
        assert await service.repo.count_messages(roleplay) == 1

    async def test_identical_edit_is_rejected(self, service: RoleplayService):
        roleplay = await _create(service)
        author = await service.repo.get_or_register_user(1)
        await service.add_or_update_message(roleplay, author, 10, utcnow(), "Amby", "Hi")
        with pytest.raises(UserError, match="Nothing to do"):
            await service.add_or_update_message(roleplay, author, 10, utcnow(), "Amby", "Hi")


class TestLookup:
    async def test_named_roleplay(self, service: RoleplayService):
        roleplay = await _create(service)
        server = await service.repo.get_or_register_server(1000)
        assert (await service.get_named_roleplay(" tea party ", server)).id == roleplay.id

        with pytest.raises(UserError, match="No roleplay with that name found."):
            await service.get_named_roleplay("Picnic", server)

    async def test_ambiguous_name(self, service: RoleplayService):
        await _create(service, owner_id=1)
        await _create(service, owner_id=2)
        server = await service.repo.get_or_register_server(1000)
        with pytest.raises(UserError, match="more than one roleplay"):
            await service.get_named_roleplay("Tea Party", server)

    async def test_user_roleplay_by_name(self, service: RoleplayService):
        await _create(service, owner_id=1)
        server = await service.repo.get_or_register_server(1000)
        stranger = await service.repo.get_or_register_user(2)
        with pytest.raises(UserError, match="You don't own a roleplay with that name."):
            await service.get_user_roleplay_by_name(server, stranger, "Tea Party")

    async def test_name_uniqueness_check(self, service: RoleplayService):
        await _create(service)
        server = await service.repo.get_or_register_server(1000)
        owner = await service.repo.get_or_register_user(1)
        assert not await service.is_name_unique_for_user(owner, "TEA PARTY", server)
        assert await service.is_name_unique_for_user(owner, "Picnic", server)
        assert [r.name for r in await service.get_user_roleplays(owner, server)] == ["Tea Party"]


class TestParticipants:
    async def test_public_roleplay_open_to_all(self, service: RoleplayService):
        roleplay = await _create(service)
        guest = await service.repo.get_or_register_user(2)
        await service.add_user(roleplay, guest)
        assert roleplay.has_joined(2)

        with pytest.raises(UserError, match="The user is already in that roleplay."):
            await service.add_user(roleplay, guest)

    async def test_private_roleplay_needs_invite(self, service: RoleplayService):
        roleplay = await _create(service, is_public=False)
        guest = await service.repo.get_or_register_user(2)
        with pytest.raises(UserError, match="hasn't been invited"):
            await service.add_user(roleplay, guest)

        await service.invite_user(roleplay, guest)
        with pytest.raises(UserError, match="already been invited"):
            await service.invite_user(roleplay, guest)

        await service.add_user(roleplay, guest)
        assert roleplay.has_joined(2)

    async def test_kick_joined_user_blocks_rejoin(self, service: RoleplayService):
        roleplay = await _create(service)
        guest = await service.repo.get_or_register_user(2)
        await service.add_user(roleplay, guest)

        await service.kick_user(roleplay, guest)
        assert roleplay.is_kicked(2)
        with pytest.raises(UserError, match="can't rejoin unless invited"):
            await service.add_user(roleplay, guest)

        # Inviting lifts the kick.
        await service.invite_user(roleplay, guest)
        await service.add_user(roleplay, guest)
        assert roleplay.has_joined(2)

    async def test_kick_invited_user_drops_invitation(self, service: RoleplayService):
        roleplay = await _create(service, is_public=False)
        guest = await service.repo.get_or_register_user(2)
        await service.invite_user(roleplay, guest)

        await service.kick_user(roleplay, guest)
        assert roleplay.participant_for(2) is None

    async def test_kick_stranger(self, service: RoleplayService):
        roleplay = await _create(service)
        stranger = await service.repo.get_or_register_user(3)
        with pytest.raises(UserError, match="neither invited to or a participant"):
            await service.kick_user(roleplay, stranger)

    async def test_remove_user(self, service: RoleplayService):
        roleplay = await _create(service)
        owner = await service.repo.get_or_register_user(1)
        guest = await service.repo.get_or_register_user(2)

        with pytest.raises(UserError, match="No matching user found"):
            await service.remove_user(roleplay, guest)
        with pytest.raises(UserError, match="owner of a roleplay can't be removed"):
            await service.remove_user(roleplay, owner)

        await service.add_user(roleplay, guest)
        await service.remove_user(roleplay, guest)
        assert roleplay.participant_for(2) is None


class TestOwnership:
    async def test_transfer(self, service: RoleplayService):
        roleplay = await _create(service)
        new_owner = await service.repo.get_or_register_user(2)
        await service.transfer_ownership(new_owner, roleplay)
        assert roleplay.is_owner(2)
        assert roleplay.has_joined(2)

        with pytest.raises(UserError, match="already owns the roleplay"):
            await service.transfer_ownership(new_owner, roleplay)

    async def test_transfer_name_clash(self, service: RoleplayService):
        roleplay = await _create(service, owner_id=1)
        await _create(service, owner_id=2)
        new_owner = await service.repo.get_or_register_user(2)
        with pytest.raises(UserError, match="Please rename it first."):
            await service.transfer_ownership(new_owner, roleplay)


class TestProperties:
    async def test_rename(self, service: RoleplayService):
        roleplay = await _create(service)
        await service.set_name(roleplay, " Picnic ")
        assert roleplay.name == "Picnic"

        await _create(service, "Tea Party")
        with pytest.raises(UserError, match="already have a roleplay with that name"):
            await service.set_name(roleplay, "Tea Party")

    async def test_summary(self, service: RoleplayService):
        roleplay = await _create(service)
        await service.set_summary(roleplay, "Scones.")
        assert roleplay.summary == "Scones."

    async def test_nsfw_toggle(self, service: RoleplayService):
        roleplay = await _create(service)
        await service.set_nsfw(roleplay, True)
        assert roleplay.is_nsfw
        with pytest.raises(UserError, match="already NSFW"):
            await service.set_nsfw(roleplay, True)

        await service.set_nsfw(roleplay, False)
        assert not roleplay.is_nsfw

    async def test_nsfw_with_messages_is_sticky(self, service: RoleplayService):
        roleplay = await _create(service, is_nsfw=True)
        author = await service.repo.get_or_register_user(1)
        await service.add_or_update_message(roleplay, author, 10, utcnow(), "Amby", "Hi")
        with pytest.raises(UserError, match="as non-NSFW"):
            await service.set_nsfw(roleplay, False)

    async def test_public_toggle(self, service: RoleplayService):
        roleplay = await _create(service)
        with pytest.raises(UserError, match="already public"):
            await service.set_public(roleplay, True)
        await service.set_public(roleplay, False)
        assert not roleplay.is_public
