"""Tests for the persistence deduplicator and the SQL chat store."""

from datetime import datetime, timedelta, timezone

import pytest

from artiflow.config import EngineConfig
from artiflow.core.enums import MessageRole
from artiflow.core.errors import PersistenceError
from artiflow.core.plugin_protocols import ChatStore
from artiflow.core.protocols import MessageRecord
from artiflow.models.chat import Chat
from artiflow.models.message import Message
from artiflow.services.chat_store import SqlChatStore
from artiflow.services.persistence_service import ChatPersistence, generate_title


def _msg(mid: str, role: MessageRole = MessageRole.USER, content: str = "hello",
         minutes: int = 0) -> MessageRecord:
    return MessageRecord(
        id=mid, role=role, content=content,
        created_at=datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes),
    )


def _turn(prefix: str = "m", question: str = "How do I reconcile accounts?"):
    return [
        _msg(f"{prefix}-1", MessageRole.USER, question, 0),
        _msg(f"{prefix}-2", MessageRole.ASSISTANT, "Start with the bank statement.", 1),
    ]


# ── Title generation ──


def test_title_short_question_unchanged():
    assert generate_title("How do I reconcile accounts?") == "How do I reconcile accounts?"


def test_title_long_text_truncated():
    text = "x" * 120
    assert len(text) == 120
    title = generate_title(text)
    assert title == "X" + "x" * 46 + "..."
    assert len(title) == 50


def test_title_long_sentence_truncated_to_47_plus_ellipsis():
    text = ("please summarise every transaction recorded in the ledger for march "
            "including the refunds and the chargebacks we disputed")
    assert len(text) > 100
    # Cut at 47 characters, trailing space trimmed before the ellipsis
    assert generate_title(text) == "Please summarise every transaction recorded in..."


def test_title_cut_on_a_space_is_trimmed_shorter():
    assert generate_title("abcdef ghijklmnopqrstuvwxyz", max_len=10) == "Abcdef..."


def test_title_first_sentence_wins():
    assert generate_title("fix my budget. It keeps going over every month and I do not know why") == "Fix my budget."


def test_title_collapses_whitespace():
    assert generate_title("  what\n is\tthis?  ") == "What is this?"


def test_title_empty():
    assert generate_title("   ") == "New Chat"
    assert generate_title("") == "New Chat"


def test_title_respects_max_len():
    assert generate_title("abcdefghijkl", max_len=10) == "Abcdefg..."


# ── Store ──


def test_sql_store_satisfies_protocol(store):
    assert isinstance(store, ChatStore)


def test_save_messages_insert_or_ignore(store, db_session):
    store.ensure_chat("c1", "u1")
    assert store.save_messages(_turn(), "c1") == 2
    assert store.save_messages(_turn(), "c1") == 0
    assert db_session.query(Message).filter_by(chat_id="c1").count() == 2


def test_update_chat_metadata_recomputes_from_rows(store, db_session):
    store.ensure_chat("c1", "u1")
    store.save_messages(_turn(), "c1")
    chat = store.get_chat("c1")
    chat.message_count = 99
    db_session.commit()

    chat = store.update_chat_metadata("c1")
    assert chat.message_count == 2
    assert chat.last_message_at == datetime(2026, 1, 1, 12, 1)


def test_update_metadata_missing_chat_raises(store):
    with pytest.raises(PersistenceError):
        store.update_chat_metadata("nope")


def test_list_messages_ordered(store):
    store.ensure_chat("c1", "u1")
    store.save_messages(list(reversed(_turn())), "c1")
    assert [m.id for m in store.list_messages("c1")] == ["m-1", "m-2"]


# ── Deduplicator ──


def test_commit_twice_stores_one_copy(store, db_session):
    persistence = ChatPersistence(store)
    first = persistence.commit(_turn(), "c1", "u1")
    second = persistence.commit(_turn(), "c1", "u1")

    assert first.ok and second.ok
    assert first.saved_ids == ["m-1", "m-2"]
    assert second.saved_ids == []
    assert second.skipped_ids == ["m-1", "m-2"]
    assert second.message_count == 2
    assert db_session.query(Message).count() == 2
    assert store.get_chat("c1").message_count == 2


def test_commit_drops_duplicates_within_batch(store):
    result = ChatPersistence(store).commit([_msg("a"), _msg("a"), _msg("b")], "c1")
    assert result.saved_ids == ["a", "b"]
    assert result.skipped_ids == ["a"]
    assert result.message_count == 2


def test_commit_creates_chat_and_titles_it(store):
    result = ChatPersistence(store).commit(_turn(), "c1", "u1")
    chat = store.get_chat("c1")
    assert chat.user_id == "u1"
    assert chat.title == "How do I reconcile accounts?"
    assert result.title == chat.title


def test_title_not_regenerated_after_window(store):
    persistence = ChatPersistence(store)
    persistence.commit(_turn("a", "first question?"), "c1")
    store.update_title("c1", "New Chat")
    result = persistence.commit(_turn("b", "second question?"), "c1")
    assert result.message_count == 4
    assert result.title == "New Chat"


def test_custom_title_is_kept(store):
    store.ensure_chat("c1", "u1", title="Budget review")
    result = ChatPersistence(store).commit(_turn(), "c1", "u1")
    assert result.title == "Budget review"


def test_empty_commit_is_silent(store):
    result = ChatPersistence(store).commit([], "c1")
    assert result.ok
    assert result.saved_ids == []
    assert result.message_count == 0


def test_configured_default_title(store):
    settings = EngineConfig(default_chat_title="Untitled", title_max_length=20)
    persistence = ChatPersistence(SqlChatStore(store.session, "Untitled"), settings)
    result = persistence.commit(_turn(question="a rather long question that goes on and on"), "c1")
    assert result.title == "A rather long que..."


class _FailingStore(SqlChatStore):
    def save_messages(self, messages, chat_id):
        raise PersistenceError("disk full")


class _TitleFailingStore(SqlChatStore):
    def update_title(self, chat_id, title):
        raise PersistenceError("title column locked")


def test_persistence_failure_is_reported_not_raised(db_session):
    result = ChatPersistence(_FailingStore(db_session)).commit(_turn(), "c1")
    assert result.ok is False
    assert result.degraded is True
    assert "disk full" in result.error


class _DiskErrorStore(SqlChatStore):
    def save_messages(self, messages, chat_id):
        raise OSError("disk I/O error")


class _DiskErrorTitleStore(SqlChatStore):
    def update_title(self, chat_id, title):
        raise OSError("disk I/O error")


def test_any_store_error_is_reported_not_raised(db_session):
    result = ChatPersistence(_DiskErrorStore(db_session)).commit(_turn(), "c1")
    assert result.ok is False
    assert result.error == "disk I/O error"

    titled = ChatPersistence(_DiskErrorTitleStore(db_session)).commit(_turn(), "c2")
    assert titled.ok is True
    assert titled.title == "New Chat"


def test_title_failure_never_fails_commit(db_session):
    result = ChatPersistence(_TitleFailingStore(db_session)).commit(_turn(), "c1")
    assert result.ok is True
    assert result.saved_ids == ["m-1", "m-2"]
    assert result.title == "New Chat"


# ── Integrity ──


def test_validate_chat(store, db_session):
    persistence = ChatPersistence(store)
    persistence.commit(_turn(), "c1")
    assert persistence.validate_chat("c1").is_valid is True

    db_session.get(Chat, "c1").message_count = 5
    db_session.commit()
    integrity = persistence.validate_chat("c1")
    assert integrity.is_valid is False
    assert integrity.message_count == 5
    assert integrity.actual_message_count == 2
    assert integrity.issues == ["Message count mismatch: stored=5, actual=2"]


def test_validate_missing_chat(store):
    integrity = ChatPersistence(store).validate_chat("ghost")
    assert integrity.is_valid is False
    assert integrity.issues == ["Chat not found"]


def test_cleanup_old_chats(store, db_session):
    persistence = ChatPersistence(store)
    persistence.commit(_turn("old"), "old-chat", "u1")
    persistence.commit(_turn("new"), "new-chat", "u1")
    db_session.get(Chat, "old-chat").updated_at = datetime.now(timezone.utc) - timedelta(days=40)
    db_session.commit()

    assert persistence.cleanup_old_chats("u1", days_old=30) == 1
    assert store.get_chat("old-chat") is None
    assert store.get_chat("new-chat") is not None
    assert db_session.query(Message).filter_by(chat_id="old-chat").count() == 0
