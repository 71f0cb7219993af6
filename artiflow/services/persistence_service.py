"""Persistence deduplicator — idempotent commits of chat messages."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from artiflow.config import EngineConfig
from artiflow.core.enums import MessageRole
from artiflow.core.plugin_protocols import ChatStore
from artiflow.core.protocols import ChatIntegrity, CommitResult, MessageRecord

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
DEFAULT_USER_ID = "anonymous"

_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_RE = re.compile(r"^.*?[.?!](?=\s|$)")

# Auto-titling only happens while the conversation is this short
_TITLE_WINDOW = 2


def generate_title(content: str, max_len: int = 50, default: str = DEFAULT_TITLE) -> str:
    """Derive a chat title from the first user message.

    The first sentence wins when it fits in ``max_len``; otherwise a long
    text is cut to ``max_len - 3`` characters and right-trimmed before the
    ``...`` suffix, so a cut landing on a space yields a shorter title.
    """
    text = _WHITESPACE_RE.sub(" ", content or "").strip()
    if not text:
        return default

    m = _SENTENCE_RE.match(text)
    if m and len(m.group(0)) <= max_len:
        title = m.group(0)
    elif len(text) > max_len:
        title = text[:max_len - 3].rstrip() + "..."
    else:
        title = text
    return title[0].upper() + title[1:]


class ChatPersistence:
    """Commits message batches through a ChatStore without ever duplicating.

    Every write is insert-or-ignore keyed by message id, so replaying a
    batch (a retried request, a re-rendered client) writes nothing.
    """

    def __init__(self, store: ChatStore, settings: EngineConfig | None = None):
        self._store = store
        self._settings = settings or EngineConfig()

    @property
    def store(self) -> ChatStore:
        return self._store

    def commit(
        self,
        messages: Sequence[MessageRecord],
        chat_id: str,
        user_id: Optional[str] = None,
    ) -> CommitResult:
        """Persist the new messages of ``messages`` into ``chat_id``.

        Failures are logged and reported in the result, never raised.
        """
        try:
            return self._commit(messages, chat_id, user_id or DEFAULT_USER_ID)
        except Exception as e:
            logger.exception("Commit failed for chat %s", chat_id)
            return CommitResult(chat_id=chat_id, ok=False, error=str(e))

    def _commit(self, messages: Sequence[MessageRecord], chat_id: str, user_id: str) -> CommitResult:
        self._store.ensure_chat(chat_id, user_id)

        stored = self._store.stored_message_ids(chat_id)
        fresh: List[MessageRecord] = []
        skipped: List[str] = []
        seen = set(stored)
        for message in messages:
            if message.id in seen:
                skipped.append(message.id)
                continue
            seen.add(message.id)
            fresh.append(message)

        if fresh:
            self._store.save_messages(fresh, chat_id)
        else:
            logger.debug("Nothing new to save for chat %s (%d skipped)", chat_id, len(skipped))

        chat = self._store.update_chat_metadata(chat_id)
        count = chat.message_count
        title = self._maybe_title(chat, messages, count)

        return CommitResult(
            chat_id=chat_id,
            ok=True,
            saved_ids=[m.id for m in fresh],
            skipped_ids=skipped,
            message_count=count,
            title=title,
        )

    def _maybe_title(self, chat, messages: Sequence[MessageRecord], count: int) -> str:
        """Auto-title a young chat that still carries the default title."""
        current = chat.title
        if count > _TITLE_WINDOW or current != self._settings.default_chat_title:
            return current
        user_message = next(
            (m for m in messages if m.role == MessageRole.USER and m.content.strip()), None,
        )
        if user_message is None:
            return current
        try:
            title = generate_title(
                user_message.content,
                self._settings.title_max_length,
                self._settings.default_chat_title,
            )
            self._store.update_title(chat.id, title)
            return title
        except Exception:
            logger.warning("Auto-title failed for chat %s", chat.id, exc_info=True)
            return current

    def validate_chat(self, chat_id: str) -> ChatIntegrity:
        """Compare the stored message_count with the real number of rows."""
        chat = self._store.get_chat(chat_id)
        if chat is None:
            return ChatIntegrity(chat_id=chat_id, is_valid=False, issues=["Chat not found"])

        actual = self._store.count_messages(chat_id)
        stored = chat.message_count or 0
        issues = []
        if actual != stored:
            issues.append(f"Message count mismatch: stored={stored}, actual={actual}")
        return ChatIntegrity(
            chat_id=chat_id,
            is_valid=not issues,
            issues=issues,
            message_count=stored,
            actual_message_count=actual,
        )

    def cleanup_old_chats(self, user_id: str, days_old: int = 30) -> int:
        """Delete a user's chats not updated in ``days_old`` days."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
        deleted = 0
        for chat in self._store.list_chats(user_id):
            updated = chat.updated_at
            if updated.tzinfo is None:
                updated = updated.replace(tzinfo=timezone.utc)
            if updated < cutoff and self._store.delete_chat(chat.id):
                deleted += 1
        if deleted:
            logger.info("Cleaned up %d chat(s) for user %s", deleted, user_id)
        return deleted
