"""Domain exceptions.

``UserError`` carries a message meant for the person who ran the command;
the bot relays it verbatim as an ephemeral reply. Anything else that
escapes a service is a bug or an infrastructure failure and gets logged.
"""

from __future__ import annotations


class AmbassadorError(Exception):
    """Base class for all Ambassador domain errors."""


class UserError(AmbassadorError):
    """An operation was refused because of something the user did or asked for."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class PermissionDenied(UserError):
    """The invoking member lacks the required Ambassador permission."""

    def __init__(self, message: str = "Permission denied.") -> None:
        super().__init__(message)
