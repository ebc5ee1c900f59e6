from app.models.bot import Bot
from app.models.connection_history import ConnectionHistory
from app.models.user import User

__all__ = ["Bot", "ConnectionHistory", "User"]
