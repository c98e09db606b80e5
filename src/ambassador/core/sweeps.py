"""Scheduled roleplay maintenance.

Provides ``sweep_timed_out_roleplays`` and ``sweep_archivable_roleplays``,
both invoked by APScheduler on the interval defined by
``settings.roleplay_sweep_interval_minutes``. Each roleplay is handled in its
own serializable transaction; owners are notified by DM after the
transaction commits.

Errors are logged but never propagated so the scheduler keeps running.
"""

from __future__ import annotations

import io
import json
import logging
import os
import socket
import time
from datetime import datetime, timedelta

import discord
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ambassador.core.errors import UserError
from ambassador.core.exporters import export_pdf
from ambassador.core.roleplay_discord import (
    DEFAULT_STALE_CHANNEL_HOURS,
    RoleplayDiscordService,
    guild_name_resolver,
)
from ambassador.db.engine import get_serializable_session, get_session
from ambassador.db.models import RoleplayRow, utcnow
from ambassador.db.repository import Repository
from ambassador.discord.embeds import (
    build_archive_embed,
    build_archived_notification_embed,
    build_timeout_notification_embed,
)

logger = logging.getLogger(__name__)


TIMEOUT_LOCK_KEY = "roleplay_timeout_lock"
ARCHIVE_LOCK_KEY = "roleplay_archive_lock"
SWEEP_LOCK_TIMEOUT_SECONDS = 1800  # 30 minutes, stale lock recovery

DEFAULT_TIMEOUT_HOURS = 72
DEFAULT_ARCHIVE_DAYS = 28

# Identifies this process as the owner of a sweep lock.
_MACHINE_ID: str = f"{socket.gethostname()}-{os.getpid()}"

_SWEEP_ERRORS = (UserError, discord.HTTPException, SQLAlchemyError)


async def _try_acquire_lock(engine: AsyncEngine, key: str, machine_id: str) -> bool:
    """Atomically try to claim a sweep lock. Returns True if acquired."""
    async with get_session(engine) as session:
        repo = Repository(session)
        existing = await repo.get_bot_state(key)
        if existing:
            data = json.loads(existing)
            age = time.time() - data.get("acquired_at", 0)
            if age < SWEEP_LOCK_TIMEOUT_SECONDS:
                return False
            logger.warning(
                "sweep_lock_stale key=%s age=%.0fs old_machine=%s",
                key,
                age,
                data.get("machine_id", "unknown"),
            )
        await repo.set_bot_state(
            key,
            json.dumps({"machine_id": machine_id, "acquired_at": time.time()}),
        )
        return True


async def _release_lock(engine: AsyncEngine, key: str, machine_id: str) -> None:
    """Release the lock only if we still own it."""
    async with get_session(engine) as session:
        repo = Repository(session)
        existing = await repo.get_bot_state(key)
        if existing and json.loads(existing).get("machine_id") == machine_id:
            await repo.delete_bot_state(key)


async def _notify_owner(
    client: discord.Client, owner_discord_id: int, embed: discord.Embed
) -> None:
    """DM a roleplay owner. Failures are logged, never raised."""
    try:
        user = client.get_user(owner_discord_id) or await client.fetch_user(owner_discord_id)
        await user.send(embed=embed)
    except discord.HTTPException:
        logger.exception("sweep_notify_failed owner=%d", owner_discord_id)


async def _collect_ids(engine: AsyncEngine, archive: bool, cutoff: datetime) -> list[str]:
    async with get_session(engine) as session:
        repo = Repository(session)
        if archive:
            rows = await repo.get_archivable_roleplays(cutoff)
        else:
            rows = await repo.get_timed_out_roleplays(cutoff)
        return [row.id for row in rows]


# --- Timeout ---


async def _stop_timed_out(
    engine: AsyncEngine, client: discord.Client, roleplay_id: str, timeout: timedelta
) -> tuple[str, int] | None:
    """Stop one roleplay. Returns (name, owner id) when it was stopped."""
    async with get_serializable_session(engine) as session:
        repo = Repository(session)
        roleplay = await repo.get_roleplay(roleplay_id)
        # Re-check inside the transaction; a message may have arrived since collection.
        if roleplay is None or not roleplay.is_active or roleplay.last_updated is None:
            return None
        if roleplay.last_updated >= utcnow() - timeout:
            return None

        # A failed permission update propagates so the stop rolls back and is retried.
        service = RoleplayDiscordService(client, repo)
        await service.stop_roleplay(roleplay)

        logger.info("sweep_roleplay_timed_out id=%s", roleplay.id)
        return roleplay.name, roleplay.owner.discord_id


async def sweep_timed_out_roleplays(
    engine: AsyncEngine,
    client: discord.Client,
    timeout_hours: int = DEFAULT_TIMEOUT_HOURS,
) -> int:
    """Stop every active roleplay idle for longer than *timeout_hours*.

    Returns the number of roleplays stopped.
    """
    machine_id = _MACHINE_ID
    try:
        if not await _try_acquire_lock(engine, TIMEOUT_LOCK_KEY, machine_id):
            logger.info("sweep_timeout_skip_locked")
            return 0
    except SQLAlchemyError:
        logger.exception("sweep_timeout_lock_error")
        return 0

    stopped = 0
    try:
        timeout = timedelta(hours=timeout_hours)
        for roleplay_id in await _collect_ids(engine, False, utcnow() - timeout):
            try:
                result = await _stop_timed_out(engine, client, roleplay_id, timeout)
            except _SWEEP_ERRORS:
                logger.exception("sweep_timeout_failed id=%s", roleplay_id)
                continue
            if result is None:
                continue
            stopped += 1
            name, owner_id = result
            await _notify_owner(client, owner_id, build_timeout_notification_embed(name))
    except SQLAlchemyError:
        logger.exception("sweep_timeout_error")
    finally:
        await _release_lock(engine, TIMEOUT_LOCK_KEY, machine_id)

    if stopped:
        logger.info("sweep_timeout_done stopped=%d", stopped)
    return stopped


# --- Archival ---


def _channel_is_gone(exc: Exception) -> bool:
    """True when a backfill failed only because the channel was already deleted."""
    return isinstance(exc, discord.NotFound) or isinstance(exc.__cause__, discord.NotFound)


async def _post_archive(
    client: discord.Client, repo: Repository, roleplay: RoleplayRow, archive_channel_id: int
) -> None:
    channel = client.get_channel(archive_channel_id)
    if channel is None:
        channel = await client.fetch_channel(archive_channel_id)

    guild = client.get_guild(roleplay.server.discord_id)
    resolver = guild_name_resolver(guild) if guild is not None else None
    exported = export_pdf(roleplay, await repo.get_messages(roleplay), resolver)

    await channel.send(  # type: ignore[union-attr]
        embed=build_archive_embed(roleplay.name, roleplay.summary),
        file=discord.File(io.BytesIO(exported.data), filename=exported.filename),
    )


async def _archive_one(
    engine: AsyncEngine,
    client: discord.Client,
    roleplay_id: str,
    window: timedelta,
    stale_channel_hours: int,
) -> tuple[str, int] | None:
    """Archive one roleplay. Returns (name, owner id) when it was archived."""
    async with get_serializable_session(engine) as session:
        repo = Repository(session)
        roleplay = await repo.get_roleplay(roleplay_id)
        if roleplay is None or roleplay.dedicated_channel_id is None:
            return None
        if roleplay.last_updated is None or roleplay.last_updated >= utcnow() - window:
            return None

        service = RoleplayDiscordService(client, repo, stale_channel_hours)
        try:
            await service.ensure_all_messages_are_logged(roleplay)
        except (UserError, discord.HTTPException) as exc:
            if not _channel_is_gone(exc):
                # Keep the channel until every message in it has been logged.
                logger.warning("sweep_archive_backfill_failed id=%s err=%s", roleplay.id, exc)
                return None
            logger.info("sweep_archive_channel_gone id=%s", roleplay.id)

        settings = await repo.get_or_create_roleplay_settings(roleplay.server)
        if roleplay.is_public and settings.archive_channel_id is not None:
            await _post_archive(client, repo, roleplay, settings.archive_channel_id)

        await service.channels.delete_channel(roleplay)
        logger.info("sweep_roleplay_archived id=%s", roleplay.id)
        return roleplay.name, roleplay.owner.discord_id


async def sweep_archivable_roleplays(
    engine: AsyncEngine,
    client: discord.Client,
    archive_days: int = DEFAULT_ARCHIVE_DAYS,
    stale_channel_hours: int = DEFAULT_STALE_CHANNEL_HOURS,
) -> int:
    """Archive every dedicated channel idle for longer than *archive_days*.

    Returns the number of roleplays archived.
    """
    machine_id = _MACHINE_ID
    try:
        if not await _try_acquire_lock(engine, ARCHIVE_LOCK_KEY, machine_id):
            logger.info("sweep_archive_skip_locked")
            return 0
    except SQLAlchemyError:
        logger.exception("sweep_archive_lock_error")
        return 0

    archived = 0
    try:
        window = timedelta(days=archive_days)
        for roleplay_id in await _collect_ids(engine, True, utcnow() - window):
            try:
                result = await _archive_one(
                    engine, client, roleplay_id, window, stale_channel_hours
                )
            except _SWEEP_ERRORS:
                logger.exception("sweep_archive_failed id=%s", roleplay_id)
                continue
            if result is None:
                continue
            archived += 1
            name, owner_id = result
            await _notify_owner(
                client, owner_id, build_archived_notification_embed(name, archive_days)
            )
    except SQLAlchemyError:
        logger.exception("sweep_archive_error")
    finally:
        await _release_lock(engine, ARCHIVE_LOCK_KEY, machine_id)

    if archived:
        logger.info("sweep_archive_done archived=%d", archived)
    return archived
