"""Discord bot helpers: DB session context, roleplay references, member roles."""

from __future__ import annotations

import re
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import discord
from sqlalchemy.ext.asyncio import AsyncEngine

from ambassador.db.engine import get_session
from ambassador.db.repository import Repository

CURRENT_ROLEPLAY = "current"

_OWNED_REFERENCE = re.compile(r"^\s*<?@!?(\d+)>?\s*:\s*(.*?)\s*$")
_MENTION = re.compile(r"<@!?(\d+)>")


@asynccontextmanager
async def db_session(
    engine: AsyncEngine,
) -> AsyncGenerator[Repository, None]:
    """Yield a Repository bound to a fresh async session."""
    async with get_session(engine) as session:
        yield Repository(session)


def parse_roleplay_reference(
    reference: str | None, invoker_id: int
) -> tuple[int | None, str | None]:
    """Split a roleplay reference into (owner id, name).

    ``current`` or nothing means the roleplay active in the channel,
    ``@user:name`` (or ``<@id>:name``) names another user's roleplay, and a
    bare name is looked up among the invoker's roleplays first.
    """
    if reference is None or not reference.strip():
        return None, None
    if reference.strip().lower() == CURRENT_ROLEPLAY:
        return None, None

    match = _OWNED_REFERENCE.match(reference)
    if match:
        name = match.group(2)
        return int(match.group(1)), name or None
    return invoker_id, reference.strip()


def parse_mentions(text: str) -> list[int]:
    """User ids mentioned in *text*, in order, without duplicates."""
    seen: list[int] = []
    for raw in _MENTION.findall(text):
        user_id = int(raw)
        if user_id not in seen:
            seen.append(user_id)
    return seen


def role_ids_for(member: discord.abc.User) -> list[int]:
    """The member's role ids, highest role first. Non-members have none."""
    roles = getattr(member, "roles", None) or []
    return [role.id for role in reversed(roles)]
