"""Synchronous bot manager errors — surfaced to the caller verbatim."""


class BotManagerError(Exception):
    """Base class for errors returned directly from a bot manager operation."""


class CreationError(BotManagerError):
    """Malformed token, or the gateway client could not be constructed."""


class NotFoundError(BotManagerError):
    """Unknown bot id, or the bot belongs to another owner."""

    def __init__(self, message: str = "Bot not found") -> None:
        super().__init__(message)


class NotRunningError(BotManagerError):
    """Toggle requested for a stored bot that has no live session in this process."""

    def __init__(
        self, message: str = "Bot is not running in this process; re-add its token to reconnect"
    ) -> None:
        super().__init__(message)
