"""Read-only roleplay API endpoints.

Only public roleplays are served; private ones answer 404 as if they
didn't exist.
"""

from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Query, Response

from ambassador.api.deps import RepoDep
from ambassador.core.exporters import export_roleplay as render_export
from ambassador.db.models import RoleplayRow
from ambassador.db.repository import Repository
from ambassador.models.roleplay import (
    ExportFormat,
    Participant,
    RoleplayDetail,
    RoleplaySummary,
)

router = APIRouter(prefix="/api/roleplays", tags=["roleplays"])


def _summary(roleplay: RoleplayRow) -> RoleplaySummary:
    return RoleplaySummary(
        id=roleplay.id,
        name=roleplay.name,
        summary=roleplay.summary,
        owner_discord_id=roleplay.owner.discord_id,
        is_nsfw=roleplay.is_nsfw,
        is_public=roleplay.is_public,
        is_active=roleplay.is_active,
    )


async def _get_public_roleplay(repo: Repository, roleplay_id: str) -> RoleplayRow:
    roleplay = await repo.get_roleplay(roleplay_id)
    if roleplay is None or not roleplay.is_public:
        raise HTTPException(404, "Roleplay not found")
    return roleplay


@router.get("")
async def list_roleplays(repo: RepoDep, guild_id: int | None = None) -> dict:
    """List public roleplays, optionally limited to one guild."""
    roleplays = await repo.get_public_roleplays(guild_id)
    return {"data": [_summary(rp).model_dump(mode="json") for rp in roleplays]}


@router.get("/{roleplay_id}")
async def get_roleplay(roleplay_id: str, repo: RepoDep) -> dict:
    """Get a single public roleplay with its participants."""
    roleplay = await _get_public_roleplay(repo, roleplay_id)
    detail = RoleplayDetail(
        **_summary(roleplay).model_dump(),
        server_discord_id=roleplay.server.discord_id,
        active_channel_id=roleplay.active_channel_id,
        dedicated_channel_id=roleplay.dedicated_channel_id,
        last_updated=roleplay.last_updated,
        message_count=await repo.count_messages(roleplay),
        participants=[
            Participant(discord_id=p.user.discord_id, status=p.status)
            for p in roleplay.participants
        ],
    )
    return {"data": detail.model_dump(mode="json")}


MEDIA_TYPES: dict[str, str] = {
    "plaintext": "text/plain; charset=utf-8",
    "pdf": "application/pdf",
}


@router.get("/{roleplay_id}/export")
async def export_roleplay(
    roleplay_id: str,
    repo: RepoDep,
    export_format: ExportFormat = Query("plaintext", alias="format"),
) -> Response:
    """Download the transcript of a public roleplay as plain text or PDF."""
    roleplay = await _get_public_roleplay(repo, roleplay_id)
    exported = render_export(roleplay, await repo.get_messages(roleplay), export_format)
    return Response(
        exported.data,
        media_type=MEDIA_TYPES[export_format],
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(exported.filename)}"
        },
    )
