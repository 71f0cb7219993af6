"""ORM models package — import all models so Base.metadata sees them."""

from artiflow.models.chat import Chat
from artiflow.models.message import Message

__all__ = ["Chat", "Message"]
