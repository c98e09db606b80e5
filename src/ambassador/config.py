"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

import pathlib

from pydantic import model_validator
from pydantic_settings import BaseSettings

PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent

# Default location of the sass word lists shipped with the package.
DEFAULT_CONTENT_DIR = PACKAGE_ROOT / "content"


class Settings(BaseSettings):
    """Ambassador application configuration.

    All values can be overridden via environment variables or .env file.
    """

    # Discord
    discord_bot_token: str = ""
    discord_guild_id: str = ""
    discord_enabled: bool = False
    discord_command_prefix: str = "!"

    # Database
    database_url: str = "sqlite+aiosqlite:///ambassador.db"

    # Environment
    ambassador_env: str = "development"

    # Roleplay lifecycle
    roleplay_timeout_hours: int = 72  # Active roleplays are stopped after this much silence
    roleplay_archive_days: int = 28  # Dedicated channels are archived after this much silence
    roleplay_stale_channel_hours: int = 4  # Another roleplay may take over a channel after this
    roleplay_sweep_interval_minutes: int = 60
    roleplay_sweeps_enabled: bool = True

    # Content
    content_dir: str = str(DEFAULT_CONTENT_DIR)

    # Logging
    ambassador_log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _validate_windows(self) -> Settings:
        """Reject non-positive lifecycle windows."""
        for name in (
            "roleplay_timeout_hours",
            "roleplay_archive_days",
            "roleplay_stale_channel_hours",
            "roleplay_sweep_interval_minutes",
        ):
            if getattr(self, name) <= 0:
                msg = f"{name.upper()} must be a positive integer."
                raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def _require_token_in_production(self) -> Settings:
        """In production an enabled bot must come with a token."""
        if (
            self.ambassador_env == "production"
            and self.discord_enabled
            and not self.discord_bot_token
        ):
            msg = "DISCORD_BOT_TOKEN must be set when DISCORD_ENABLED is true in production."
            raise ValueError(msg)
        return self
