"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ambassador.api.roleplays import router as roleplays_router
from ambassador.config import Settings
from ambassador.db.engine import create_engine, create_tables

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: create engine/tables, optionally start Discord bot and sweeps."""
    settings: Settings = app.state.settings
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    app.state.engine = engine

    # Start Discord bot if configured
    discord_bot = None
    from ambassador.discord.bot import is_discord_enabled

    if is_discord_enabled(settings):
        from ambassador.discord.bot import start_discord_bot

        discord_bot = await start_discord_bot(settings, engine)
        app.state.discord_bot = discord_bot
        logger.info("discord_bot_integration_started")
    else:
        app.state.discord_bot = None
        logger.info("discord_bot_integration_disabled")

    # The sweeps talk to Discord, so they only run alongside the bot.
    scheduler = None
    if discord_bot is not None and settings.roleplay_sweeps_enabled:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        from apscheduler.triggers.interval import IntervalTrigger

        from ambassador.core.sweeps import sweep_archivable_roleplays, sweep_timed_out_roleplays

        scheduler = AsyncIOScheduler()
        trigger = IntervalTrigger(minutes=settings.roleplay_sweep_interval_minutes)
        scheduler.add_job(
            sweep_timed_out_roleplays,
            trigger=trigger,
            kwargs={
                "engine": engine,
                "client": discord_bot,
                "timeout_hours": settings.roleplay_timeout_hours,
            },
            id="sweep_timed_out_roleplays",
            name="Stop inactive roleplays",
            replace_existing=True,
        )
        scheduler.add_job(
            sweep_archivable_roleplays,
            trigger=trigger,
            kwargs={
                "engine": engine,
                "client": discord_bot,
                "archive_days": settings.roleplay_archive_days,
                "stale_channel_hours": settings.roleplay_stale_channel_hours,
            },
            id="sweep_archivable_roleplays",
            name="Archive inactive dedicated channels",
            replace_existing=True,
        )
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info(
            "scheduler_started interval_minutes=%d",
            settings.roleplay_sweep_interval_minutes,
        )
    else:
        app.state.scheduler = None
        logger.info("scheduler_disabled")

    yield

    # Shutdown scheduler
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    # Shutdown Discord bot if running
    if discord_bot is not None:
        await discord_bot.close()
        logger.info("discord_bot_integration_stopped")

    await engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the Ambassador FastAPI application."""
    settings = settings or Settings()

    logging.basicConfig(
        level=getattr(logging, settings.ambassador_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Ambassador",
        version="0.1.0",
        description="Discord community bot: roleplays, dedicated channels, and permissions",
        docs_url="/docs" if settings.ambassador_env != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # API routers
    app.include_router(roleplays_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.ambassador_env}

    return app


app = create_app()
