"""SQL chat store — the persistence collaborator behind ChatPersistence."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Set

from sqlalchemy import func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from artiflow.core.errors import PersistenceError
from artiflow.core.protocols import MessageRecord
from artiflow.models.chat import Chat
from artiflow.models.message import Message

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "anonymous"
DEFAULT_TITLE = "New Chat"


class SqlChatStore:
    """ChatStore over a caller-provided SQLAlchemy session.

    Message writes use SQLite ``INSERT ... ON CONFLICT DO NOTHING`` so a
    replayed or overlapping save never duplicates a row and never locks.
    """

    def __init__(self, session: Session, default_title: str = DEFAULT_TITLE):
        self._session = session
        self._default_title = default_title

    @property
    def session(self) -> Session:
        return self._session

    @property
    def default_title(self) -> str:
        return self._default_title

    def ensure_chat(self, chat_id: str, user_id: str = DEFAULT_USER_ID,
                    title: Optional[str] = None) -> Chat:
        """Return the chat, creating it on first use."""
        chat = self.session.get(Chat, chat_id)
        if chat is not None:
            return chat
        chat = Chat(id=chat_id, user_id=user_id, title=title or self._default_title)
        self.session.add(chat)
        self._commit("create chat %s" % chat_id)
        self.session.refresh(chat)
        logger.info("Created chat %s for user %s", chat_id, user_id)
        return chat

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        return self.session.get(Chat, chat_id)

    def list_chats(self, user_id: str) -> List[Chat]:
        return list(
            self.session.scalars(
                select(Chat).where(Chat.user_id == user_id).order_by(Chat.updated_at.desc())
            )
        )

    def stored_message_ids(self, chat_id: str) -> Set[str]:
        return set(self.session.scalars(select(Message.id).where(Message.chat_id == chat_id)))

    def save_messages(self, messages: Sequence[MessageRecord], chat_id: str) -> int:
        """Insert messages, ignoring ids that already exist. Returns rows written."""
        if not messages:
            return 0
        rows = [
            {
                "id": m.id,
                "chat_id": chat_id,
                "role": m.role.value,
                "content": m.content,
                "artifacts": list(m.artifacts),
                "created_at": m.created_at,
            }
            for m in messages
        ]
        stmt = sqlite_insert(Message).values(rows).on_conflict_do_nothing(index_elements=["id"])
        try:
            result = self.session.execute(stmt)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Failed to save messages for chat {chat_id}: {e}") from e
        self._commit("save messages for chat %s" % chat_id)
        written = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(rows)
        logger.info("Saved %d message(s) to chat %s", written, chat_id)
        return written

    def count_messages(self, chat_id: str) -> int:
        return self.session.scalar(
            select(func.count()).select_from(Message).where(Message.chat_id == chat_id)
        ) or 0

    def list_messages(self, chat_id: str) -> List[Message]:
        return list(
            self.session.scalars(
                select(Message).where(Message.chat_id == chat_id).order_by(Message.created_at)
            )
        )

    def update_chat_metadata(self, chat_id: str) -> Chat:
        """Recompute message_count and last_message_at from stored rows."""
        chat = self.session.get(Chat, chat_id)
        if chat is None:
            raise PersistenceError(f"Chat {chat_id} not found")
        count, last_at = self.session.execute(
            select(func.count(Message.id), func.max(Message.created_at))
            .where(Message.chat_id == chat_id)
        ).one()
        chat.message_count = count or 0
        chat.last_message_at = last_at
        chat.updated_at = datetime.now(timezone.utc)
        self._commit("update metadata for chat %s" % chat_id)
        self.session.refresh(chat)
        return chat

    def update_title(self, chat_id: str, title: str) -> None:
        chat = self.session.get(Chat, chat_id)
        if chat is None:
            raise PersistenceError(f"Chat {chat_id} not found")
        chat.title = title
        chat.updated_at = datetime.now(timezone.utc)
        self._commit("update title for chat %s" % chat_id)
        logger.info("Titled chat %s: %s", chat_id, title)

    def delete_chat(self, chat_id: str) -> bool:
        chat = self.session.get(Chat, chat_id)
        if chat is None:
            return False
        self.session.delete(chat)
        self._commit("delete chat %s" % chat_id)
        logger.info("Deleted chat %s", chat_id)
        return True

    def _commit(self, what: str) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Failed to {what}: {e}") from e
