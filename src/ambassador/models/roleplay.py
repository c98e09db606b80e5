"""Roleplay domain models.

Status values and the read-only shapes served by the HTTP API. ORM rows
live in ``ambassador.db.models``; these are plain pydantic views of them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ParticipantStatus = Literal["none", "invited", "joined", "kicked"]

PermissionTarget = Literal["self", "other", "all"]

ExportFormat = Literal["plaintext", "pdf"]


class Participant(BaseModel):
    """A user's membership in a roleplay."""

    discord_id: int
    status: ParticipantStatus = "joined"


class RoleplaySummary(BaseModel):
    """Listing entry for a roleplay."""

    id: str
    name: str
    summary: str
    owner_discord_id: int
    is_nsfw: bool = False
    is_public: bool = True
    is_active: bool = False


class RoleplayDetail(RoleplaySummary):
    """Full view of a roleplay, including participants and channel state."""

    server_discord_id: int
    active_channel_id: int | None = None
    dedicated_channel_id: int | None = None
    last_updated: datetime | None = None
    message_count: int = 0
    participants: list[Participant] = Field(default_factory=list)
