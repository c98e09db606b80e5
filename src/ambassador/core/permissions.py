"""Ambassador's own permission layer, independent of Discord's.

Each permission has a default per target: *self* covers acting on things
you own, *other* covers acting on things owned by someone else. Explicit
grants and revocations are stored per member and per role. Resolution
order for a member:

1. The guild owner can do everything.
2. The first stored role entry, walking the member's roles highest first.
3. A stored member entry, which overrides any role entry.
4. The permission's default for the target.

Target ``all`` means both ``self`` and ``other`` must pass.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from ambassador.core.errors import PermissionDenied, UserError
from ambassador.db.repository import Repository
from ambassador.models.roleplay import PermissionTarget

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Permission:
    """A registered permission and its defaults."""

    key: str
    friendly_name: str
    description: str
    default_self: bool = True
    default_other: bool = False

    def default_for(self, target: str) -> bool:
        return self.default_self if target == "self" else self.default_other


_REGISTERED: tuple[Permission, ...] = (
    Permission("create-roleplay", "Create Roleplay", "Allows you to create roleplays."),
    Permission("delete-roleplay", "Delete Roleplay", "Allows you to delete roleplays."),
    Permission("join-roleplay", "Join Roleplay", "Allows you to join roleplays."),
    Permission("edit-roleplay", "Edit Roleplay", "Allows you to edit roleplays."),
    Permission(
        "kick-roleplay-member",
        "Kick Roleplay Member",
        "Allows you to kick users from roleplays.",
    ),
    Permission(
        "start-stop-roleplay",
        "Start/Stop Roleplay",
        "Allows you to start and stop roleplays.",
    ),
    Permission(
        "transfer-roleplay",
        "Transfer Roleplay",
        "Allows you to transfer ownership of roleplays.",
    ),
    Permission("export-roleplay", "Export Roleplay", "Allows you to export roleplays."),
    Permission(
        "edit-roleplay-server-settings",
        "Edit Roleplay Server Settings",
        "Allows you to edit the server's roleplay settings.",
        default_self=False,
    ),
    Permission(
        "manage-permissions",
        "Manage Permissions",
        "Allows you to grant and revoke Ambassador permissions.",
        default_self=False,
    ),
)

PERMISSIONS: dict[str, Permission] = {p.key: p for p in _REGISTERED}


def get_permission(key: str) -> Permission:
    try:
        return PERMISSIONS[key.strip().lower()]
    except KeyError:
        raise UserError("No permission with that name found.") from None


def _expand(target: PermissionTarget) -> list[str]:
    return ["self", "other"] if target == "all" else [target]


class PermissionService:
    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    async def has_permission(
        self,
        guild_id: int,
        guild_owner_id: int | None,
        member_id: int,
        role_ids: Sequence[int],
        permission: Permission,
        target: PermissionTarget,
    ) -> bool:
        """Resolve whether a member holds a permission. ``role_ids`` is highest role first."""
        if guild_owner_id is not None and member_id == guild_owner_id:
            return True

        for single in _expand(target):
            if not await self._has_single(guild_id, member_id, role_ids, permission, single):
                return False
        return True

    async def require_permission(
        self,
        guild_id: int,
        guild_owner_id: int | None,
        member_id: int,
        role_ids: Sequence[int],
        permission: Permission,
        target: PermissionTarget,
    ) -> None:
        """Raise ``PermissionDenied`` unless the member holds the permission."""
        if not await self.has_permission(
            guild_id, guild_owner_id, member_id, role_ids, permission, target
        ):
            logger.info(
                "permission_denied guild=%d member=%d permission=%s target=%s",
                guild_id,
                member_id,
                permission.key,
                target,
            )
            raise PermissionDenied()

    async def _has_single(
        self,
        guild_id: int,
        member_id: int,
        role_ids: Sequence[int],
        permission: Permission,
        target: str,
    ) -> bool:
        role_result: bool | None = None
        for role_id in role_ids:
            role_row = await self.repo.get_role_permission(role_id, permission.key, target)
            if role_row is not None:
                role_result = role_row.is_granted
                break

        user_row = await self.repo.get_user_permission(guild_id, member_id, permission.key, target)
        if user_row is not None:
            return user_row.is_granted
        if role_result is not None:
            return role_result
        return permission.default_for(target)

    # --- Member grants ---

    async def grant_user(
        self, guild_id: int, user_id: int, permission: Permission, target: PermissionTarget
    ) -> None:
        changed = False
        for single in _expand(target):
            row = await self.repo.get_or_create_user_permission(
                guild_id, user_id, permission.key, single, permission.default_for(single)
            )
            if not row.is_granted:
                row.is_granted = True
                changed = True
        if not changed:
            raise UserError("The user already has permission to do that.")
        await self.repo.session.flush()
        logger.info(
            "permission_granted guild=%d user=%d permission=%s target=%s",
            guild_id,
            user_id,
            permission.key,
            target,
        )

    async def revoke_user(
        self, guild_id: int, user_id: int, permission: Permission, target: PermissionTarget
    ) -> None:
        changed = False
        for single in _expand(target):
            row = await self.repo.get_or_create_user_permission(
                guild_id, user_id, permission.key, single, permission.default_for(single)
            )
            if row.is_granted:
                row.is_granted = False
                changed = True
        if not changed:
            raise UserError("The user is already prohibited from doing that.")
        await self.repo.session.flush()
        logger.info(
            "permission_revoked guild=%d user=%d permission=%s target=%s",
            guild_id,
            user_id,
            permission.key,
            target,
        )

    # --- Role grants ---

    async def grant_role(
        self, role_id: int, permission: Permission, target: PermissionTarget
    ) -> None:
        changed = False
        for single in _expand(target):
            row = await self.repo.get_or_create_role_permission(
                role_id, permission.key, single, permission.default_for(single)
            )
            if not row.is_granted:
                row.is_granted = True
                changed = True
        if not changed:
            raise UserError("The role already has permission to do that.")
        await self.repo.session.flush()
        logger.info(
            "role_permission_granted role=%d permission=%s target=%s",
            role_id,
            permission.key,
            target,
        )

    async def revoke_role(
        self, role_id: int, permission: Permission, target: PermissionTarget
    ) -> None:
        changed = False
        for single in _expand(target):
            row = await self.repo.get_or_create_role_permission(
                role_id, permission.key, single, permission.default_for(single)
            )
            if row.is_granted:
                row.is_granted = False
                changed = True
        if not changed:
            raise UserError("The role is already prohibited from doing that.")
        await self.repo.session.flush()
        logger.info(
            "role_permission_revoked role=%d permission=%s target=%s",
            role_id,
            permission.key,
            target,
        )

    async def effective_permissions(
        self,
        guild_id: int,
        guild_owner_id: int | None,
        member_id: int,
        role_ids: Sequence[int],
    ) -> list[tuple[Permission, bool, bool]]:
        """Every registered permission with the member's self/other result."""
        effective = []
        for permission in _REGISTERED:
            on_self = await self.has_permission(
                guild_id, guild_owner_id, member_id, role_ids, permission, "self"
            )
            on_other = await self.has_permission(
                guild_id, guild_owner_id, member_id, role_ids, permission, "other"
            )
            effective.append((permission, on_self, on_other))
        return effective
