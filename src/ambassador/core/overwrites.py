"""Desired-state computation for dedicated channel permission overwrites.

Pure functions: given what a roleplay looks like, compute which overwrite
each role and member should hold on the roleplay's dedicated channel, then
diff that against what the channel actually holds. Applying the resulting
changes is ``core.dedicated_channels``' job. A converged channel produces an
empty plan, so reconciling twice costs nothing the second time.

Overwrites are ``(allow, deny)`` pairs of raw Discord permission bits.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Literal

import discord

# Participant write access to a dedicated channel.
WRITE_PERMISSIONS = discord.Permissions(send_messages=True, add_reactions=True)

# Participant read access to a dedicated channel.
VIEW_PERMISSIONS = discord.Permissions(view_channel=True, read_message_history=True)

# Denied to the default user role (and @everyone) on every dedicated channel.
DEFAULT_ROLE_DENY = discord.Permissions(view_channel=True, send_messages=True, add_reactions=True)

# What the bot keeps for itself so it can manage the channel later.
BOT_ALLOW = discord.Permissions(
    view_channel=True,
    read_message_history=True,
    add_reactions=True,
    manage_roles=True,
    send_messages=True,
)

PARTICIPANT_PERMISSIONS = discord.Permissions(WRITE_PERMISSIONS.value | VIEW_PERMISSIONS.value)


@dataclass(frozen=True)
class Target:
    """A role or member that can hold an overwrite on a channel."""

    kind: Literal["role", "member"]
    id: int

    @classmethod
    def role(cls, role_id: int) -> Target:
        return cls("role", role_id)

    @classmethod
    def member(cls, member_id: int) -> Target:
        return cls("member", member_id)


@dataclass(frozen=True)
class Overwrite:
    """An explicit allow/deny pair. Bits in neither set are inherited."""

    allow: int = 0
    deny: int = 0

    @classmethod
    def from_discord(cls, overwrite: discord.PermissionOverwrite) -> Overwrite:
        allow, deny = overwrite.pair()
        return cls(allow.value, deny.value)

    def to_discord(self) -> discord.PermissionOverwrite:
        return discord.PermissionOverwrite.from_pair(
            discord.Permissions(self.allow), discord.Permissions(self.deny)
        )

    @property
    def is_empty(self) -> bool:
        return self.allow == 0 and self.deny == 0


@dataclass(frozen=True)
class OverwriteChange:
    """One API call: set an overwrite on a target, or delete it (``overwrite`` is None)."""

    target: Target
    overwrite: Overwrite | None

    @property
    def is_delete(self) -> bool:
        return self.overwrite is None


@dataclass(frozen=True)
class ChannelState:
    """Everything the desired overwrite set depends on.

    ``participants`` maps member id to participant status. ``guild_id`` doubles
    as the id of the @everyone role.
    """

    guild_id: int
    bot_id: int
    is_active: bool
    is_public: bool
    participants: Mapping[int, str] = field(default_factory=dict)
    default_role_id: int | None = None


def desired_participant_overwrite(status: str, is_active: bool) -> Overwrite | None:
    """Overwrite a participant should hold given their status and the roleplay's activity.

    Joined participants can read and write while the roleplay runs, and are
    shut out of it while it is stopped. Invited and kicked users hold nothing.
    """
    if status != "joined":
        return None
    if is_active:
        return Overwrite(allow=PARTICIPANT_PERMISSIONS.value)
    return Overwrite(deny=PARTICIPANT_PERMISSIONS.value)


def desired_default_role_overwrites(state: ChannelState) -> dict[Target, Overwrite]:
    """Deny the default user role; also deny @everyone when a separate default role is set."""
    deny = Overwrite(deny=DEFAULT_ROLE_DENY.value)
    default_role = state.default_role_id or state.guild_id
    desired = {Target.role(default_role): deny}
    if default_role != state.guild_id:
        desired[Target.role(state.guild_id)] = deny
    return desired


def desired_participant_overwrites(state: ChannelState) -> dict[Target, Overwrite]:
    desired: dict[Target, Overwrite] = {}
    for member_id, status in state.participants.items():
        overwrite = desired_participant_overwrite(status, state.is_active)
        if overwrite is not None:
            desired[Target.member(member_id)] = overwrite
    return desired


def desired_channel_overwrites(state: ChannelState) -> dict[Target, Overwrite]:
    """The complete overwrite set a freshly reset dedicated channel should hold."""
    desired = {Target.member(state.bot_id): Overwrite(allow=BOT_ALLOW.value)}
    desired.update(desired_default_role_overwrites(state))
    desired.update(desired_participant_overwrites(state))
    return desired


def plan_overwrite_changes(
    desired: Mapping[Target, Overwrite],
    actual: Mapping[Target, Overwrite],
    managed: Iterable[Target] | None = None,
) -> list[OverwriteChange]:
    """Diff desired against actual overwrites.

    Only targets in ``managed`` (plus every desired target) are touched;
    ``managed=None`` means every target on the channel is ours to fix. Targets
    whose actual overwrite already matches produce no change.
    """
    scope = set(desired)
    scope.update(actual if managed is None else managed)

    changes: list[OverwriteChange] = []
    for target in sorted(scope, key=lambda t: (t.kind, t.id)):
        want = desired.get(target)
        have = actual.get(target)
        if want is None:
            if have is not None:
                changes.append(OverwriteChange(target, None))
            continue
        if have != want:
            changes.append(OverwriteChange(target, want))
    return changes


def plan_participant_changes(
    state: ChannelState,
    actual: Mapping[Target, Overwrite],
) -> list[OverwriteChange]:
    """Converge only participant overwrites (plus stray viewers on private roleplays).

    Members who merely asked to view the channel keep their overwrite while
    the roleplay is public. Once it is private, anyone holding an overwrite
    who is not a joined participant loses it.
    """
    desired = desired_participant_overwrites(state)
    managed = {Target.member(member_id) for member_id in state.participants}
    if not state.is_public:
        managed.update(
            target
            for target in actual
            if target.kind == "member" and target.id != state.bot_id
        )
    return plan_overwrite_changes(desired, actual, managed)


def visibility_overwrite(current: Overwrite | None, visible: bool) -> Overwrite:
    """Merge view access into an existing overwrite, leaving other bits alone."""
    return _merge(current, VIEW_PERMISSIONS.value, visible)


def writability_overwrite(current: Overwrite | None, writable: bool) -> Overwrite:
    """Merge write access into an existing overwrite, leaving other bits alone."""
    return _merge(current, WRITE_PERMISSIONS.value, writable)


def _merge(current: Overwrite | None, bits: int, allowed: bool) -> Overwrite:
    base = current or Overwrite()
    if allowed:
        return Overwrite(allow=base.allow | bits, deny=base.deny & ~bits)
    return Overwrite(allow=base.allow & ~bits, deny=base.deny | bits)
