"""Tests for roleplay orchestration across the database and Discord."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from conftest import CATEGORY_ID, GUILD_ID, OWNER_ID, DiscordFakes, history_of, make_message

from ambassador.core.errors import UserError
from ambassador.core.roleplay_discord import (
    RoleplayDiscordService,
    display_name_for,
    guild_name_resolver,
    humanize_list,
)
from ambassador.db.models import utcnow
from ambassador.db.repository import Repository

GUEST_ID = 2
PLAIN_CHANNEL = 42


@pytest.fixture
def service(repo: Repository, fakes: DiscordFakes) -> RoleplayDiscordService:
    fakes.add_member(OWNER_ID, name="owner")
    fakes.add_member(GUEST_ID, name="guest")
    fakes.add_text_channel(PLAIN_CHANNEL)
    return RoleplayDiscordService(fakes.client, repo)


async def _with_category(repo: Repository) -> None:
    server = await repo.get_or_register_server(GUILD_ID)
    settings = await repo.get_or_create_roleplay_settings(server)
    settings.dedicated_channel_category_id = CATEGORY_ID


async def _plain_roleplay(repo: Repository, name: str = "Tea Party", **kwargs):
    """A roleplay without a dedicated channel."""
    server = await repo.get_or_register_server(GUILD_ID)
    owner = await repo.get_or_register_user(kwargs.get("owner_id", OWNER_ID))
    return await repo.create_roleplay(
        server, owner, name, "A quiet afternoon.", kwargs.get("is_nsfw", False), True
    )


class TestHelpers:
    def test_humanize_list(self):
        assert humanize_list([]) == ""
        assert humanize_list(["a"]) == "a"
        assert humanize_list(["a", "b"]) == "a and b"
        assert humanize_list(["a", "b", "c"]) == "a, b and c"

    def test_display_name_prefers_nick(self, fakes: DiscordFakes):
        member = fakes.add_member(3, name="account")
        assert display_name_for(member) == "account"
        member.nick = "Nickname"
        assert display_name_for(member) == "Nickname"

    def test_guild_name_resolver(self, fakes: DiscordFakes):
        fakes.add_member(3, name="someone")
        resolve = guild_name_resolver(fakes.guild)
        assert resolve(3) == "someone"
        assert resolve(404) is None


class TestCreateAndDelete:
    async def test_create_makes_channel(
        self, repo: Repository, fakes: DiscordFakes, service: RoleplayDiscordService
    ):
        await _with_category(repo)
        roleplay = await service.create_roleplay(
            GUILD_ID, OWNER_ID, "Tea Party", "Hats.", False, True
        )
        assert roleplay.dedicated_channel_id in fakes.channels

    async def test_delete_removes_channel(
        self, repo: Repository, fakes: DiscordFakes, service: RoleplayDiscordService
    ):
        await _with_category(repo)
        roleplay = await service.create_roleplay(
            GUILD_ID, OWNER_ID, "Tea Party", "Hats.", False, True
        )
        channel_id = roleplay.dedicated_channel_id
        roleplay_id = roleplay.id

        await service.delete_roleplay(roleplay)

        assert channel_id not in fakes.channels
        assert await repo.get_roleplay(roleplay_id) is None


class TestStartStop:
    async def test_start_in_dedicated_channel(
        self, repo: Repository, fakes: DiscordFakes, service: RoleplayDiscordService
    ):
        await _with_category(repo)
        roleplay = await service.create_roleplay(
            GUILD_ID, OWNER_ID, "Tea Party", "Hats.", False, True
        )
        channel = fakes.channels[roleplay.dedicated_channel_id]

        used = await service.start_roleplay(PLAIN_CHANNEL, roleplay)

        assert used == channel.id
        channel.send.assert_awaited_once_with(f"Calling <@{OWNER_ID}>!")
        assert fakes.overwrite_for(channel, OWNER_ID).send_messages is True

        await service.stop_roleplay(roleplay)
        assert fakes.overwrite_for(channel, OWNER_ID).send_messages is False

    async def test_start_in_current_channel(
        self, repo: Repository, fakes: DiscordFakes, service: RoleplayDiscordService
    ):
        roleplay = await _plain_roleplay(repo)
        assert await service.start_roleplay(PLAIN_CHANNEL, roleplay) == PLAIN_CHANNEL
        fakes.channels[PLAIN_CHANNEL].send.assert_not_awaited()
        assert await service.has_active_roleplay(PLAIN_CHANNEL)

    async def test_nsfw_needs_nsfw_channel(
        self, repo: Repository, service: RoleplayDiscordService
    ):
        roleplay = await _plain_roleplay(repo, is_nsfw=True)
        with pytest.raises(UserError, match="not marked as NSFW"):
            await service.start_roleplay(PLAIN_CHANNEL, roleplay)

    async def test_channel_is_taken(self, repo: Repository, service: RoleplayDiscordService):
        first = await _plain_roleplay(repo, "First")
        second = await _plain_roleplay(repo, "Second")
        await service.start_roleplay(PLAIN_CHANNEL, first)

        with pytest.raises(UserError, match="already a roleplay active in this channel"):
            await service.start_roleplay(PLAIN_CHANNEL, second)

    async def test_stale_roleplay_is_displaced(
        self, repo: Repository, service: RoleplayDiscordService
    ):
        first = await _plain_roleplay(repo, "First")
        second = await _plain_roleplay(repo, "Second")
        await service.start_roleplay(PLAIN_CHANNEL, first)
        first.last_updated = utcnow() - timedelta(hours=5)

        await service.start_roleplay(PLAIN_CHANNEL, second)

        assert not first.is_active
        assert (await service.get_active_roleplay(PLAIN_CHANNEL)).id == second.id

    async def test_unknown_channel(self, repo: Repository, service: RoleplayDiscordService):
        roleplay = await _plain_roleplay(repo)
        with pytest.raises(UserError, match="couldn't find that channel"):
            await service.start_roleplay(31337, roleplay)


class TestParticipants:
    async def test_join_and_kick_update_channel(
        self, repo: Repository, fakes: DiscordFakes, service: RoleplayDiscordService
    ):
        await _with_category(repo)
        roleplay = await service.create_roleplay(
            GUILD_ID, OWNER_ID, "Tea Party", "Hats.", False, True
        )
        channel = fakes.channels[roleplay.dedicated_channel_id]

        await service.add_user(roleplay, GUEST_ID)
        assert fakes.overwrite_for(channel, GUEST_ID) is not None

        await service.kick_user(roleplay, GUEST_ID)
        assert roleplay.is_kicked(GUEST_ID)
        assert fakes.overwrite_for(channel, GUEST_ID) is None

    async def test_invite_then_leave(self, repo: Repository, service: RoleplayDiscordService):
        roleplay = await _plain_roleplay(repo)
        await service.invite_user(roleplay, GUEST_ID)
        await service.add_user(roleplay, GUEST_ID)
        await service.remove_user(roleplay, GUEST_ID)
        assert roleplay.participant_for(GUEST_ID) is None

    async def test_transfer(self, repo: Repository, service: RoleplayDiscordService):
        roleplay = await _plain_roleplay(repo)
        await service.transfer_ownership(GUEST_ID, roleplay)
        assert roleplay.is_owner(GUEST_ID)


class TestProperties:
    async def test_setters_touch_channel(
        self, repo: Repository, fakes: DiscordFakes, service: RoleplayDiscordService
    ):
        await _with_category(repo)
        roleplay = await service.create_roleplay(
            GUILD_ID, OWNER_ID, "Tea Party", "Hats.", False, True
        )
        channel = fakes.channels[roleplay.dedicated_channel_id]

        await service.set_name(roleplay, "Picnic")
        channel.edit.assert_awaited_with(name="Picnic-rp")
        await service.set_summary(roleplay, "Sandwiches.")
        assert "Sandwiches." in channel.edit.await_args.kwargs["topic"]
        await service.set_nsfw(roleplay, True)
        channel.edit.assert_awaited_with(nsfw=True)
        await service.set_public(roleplay, False)
        assert not roleplay.is_public


class TestLookup:
    async def test_active_roleplay_by_default(
        self, repo: Repository, service: RoleplayDiscordService
    ):
        roleplay = await _plain_roleplay(repo)
        with pytest.raises(UserError, match="no roleplay that is currently active"):
            await service.get_best_matching_roleplay(PLAIN_CHANNEL, GUILD_ID, None, None)

        await service.start_roleplay(PLAIN_CHANNEL, roleplay)
        found = await service.get_best_matching_roleplay(PLAIN_CHANNEL, GUILD_ID, None, None)
        assert found.id == roleplay.id
        found = await service.get_best_matching_roleplay(PLAIN_CHANNEL, GUILD_ID, OWNER_ID, " ")
        assert found.id == roleplay.id

    async def test_by_owner_and_name(self, repo: Repository, service: RoleplayDiscordService):
        mine = await _plain_roleplay(repo, owner_id=OWNER_ID)
        theirs = await _plain_roleplay(repo, owner_id=GUEST_ID)

        found = await service.get_best_matching_roleplay(
            PLAIN_CHANNEL, GUILD_ID, GUEST_ID, "tea party"
        )
        assert found.id == theirs.id
        with pytest.raises(UserError, match="more than one roleplay"):
            await service.get_best_matching_roleplay(PLAIN_CHANNEL, GUILD_ID, None, "Tea Party")
        assert mine.id != theirs.id

    async def test_falls_back_to_server_search(
        self, repo: Repository, service: RoleplayDiscordService
    ):
        roleplay = await _plain_roleplay(repo, owner_id=GUEST_ID)
        found = await service.get_best_matching_roleplay(
            PLAIN_CHANNEL, GUILD_ID, OWNER_ID, "Tea Party"
        )
        assert found.id == roleplay.id


class TestMessageLog:
    async def test_consume_only_joined_authors(
        self, repo: Repository, fakes: DiscordFakes, service: RoleplayDiscordService
    ):
        roleplay = await _plain_roleplay(repo)
        await service.start_roleplay(PLAIN_CHANNEL, roleplay)
        channel = fakes.channels[PLAIN_CHANNEL]

        assert await service.consume_message(
            make_message(1, fakes.members[OWNER_ID], channel, "Hello")
        )
        assert not await service.consume_message(
            make_message(2, fakes.members[GUEST_ID], channel, "Drive-by")
        )
        assert await repo.count_messages(roleplay) == 1

    async def test_consume_edit_and_idle_channel(
        self, repo: Repository, fakes: DiscordFakes, service: RoleplayDiscordService
    ):
        channel = fakes.channels[PLAIN_CHANNEL]
        owner = fakes.members[OWNER_ID]
        assert not await service.consume_message(make_message(1, owner, channel, "Hi"))

        roleplay = await _plain_roleplay(repo)
        await service.start_roleplay(PLAIN_CHANNEL, roleplay)
        assert await service.consume_message(make_message(1, owner, channel, "Hi"))
        assert not await service.consume_message(make_message(1, owner, channel, "Hi"))
        assert await service.consume_message(make_message(1, owner, channel, "Hi there"))

        messages = await repo.get_messages(roleplay)
        assert [m.contents for m in messages] == ["Hi there"]
        assert messages[0].author_nickname == "owner"

    async def test_backfill_from_history(
        self, repo: Repository, fakes: DiscordFakes, service: RoleplayDiscordService
    ):
        roleplay = await _plain_roleplay(repo)
        await service.start_roleplay(PLAIN_CHANNEL, roleplay)
        channel = fakes.channels[PLAIN_CHANNEL]
        owner = fakes.members[OWNER_ID]
        guest = fakes.members[GUEST_ID]
        channel.history = MagicMock(
            side_effect=history_of(
                make_message(1, owner, channel, "One"),
                make_message(2, guest, channel, "Not in the roleplay"),
                make_message(3, owner, channel, "Three"),
            )
        )

        assert await service.ensure_all_messages_are_logged(roleplay) == 2
        assert channel.history.call_args.kwargs["after"] is None

        await service.ensure_all_messages_are_logged(roleplay)
        assert channel.history.call_args.kwargs["after"].id == 3

    async def test_backfill_needs_a_channel(
        self, repo: Repository, service: RoleplayDiscordService
    ):
        roleplay = await _plain_roleplay(repo)
        with pytest.raises(UserError, match="nor is it active in one"):
            await service.ensure_all_messages_are_logged(roleplay)
