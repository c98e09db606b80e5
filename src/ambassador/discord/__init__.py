"""Discord bot integration for Ambassador.

The bot runs in-process with FastAPI, sharing the same event loop. It
owns the slash command tree, logs roleplay messages as they arrive, and
hands its client to the background sweeps.

Optional: if DISCORD_BOT_TOKEN is not set, the app runs without Discord.
"""
