"""Collaborator Protocol definitions — interfaces the engine depends on.

The engine never constructs these itself: a store and a producer are
injected by the caller, who also owns their lifecycle.

These use Python's Protocol (structural subtyping) so implementations
satisfy the interface without explicit inheritance.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Set, runtime_checkable

from artiflow.core.protocols import MessageRecord, StreamDelta


@runtime_checkable
class ChatStore(Protocol):
    """Durable chat storage. Writes are insert-or-ignore by message id."""

    def ensure_chat(self, chat_id: str, user_id: str, title: Optional[str] = None) -> Any: ...

    def get_chat(self, chat_id: str) -> Optional[Any]: ...

    def stored_message_ids(self, chat_id: str) -> Set[str]: ...

    def save_messages(self, messages: Sequence[MessageRecord], chat_id: str) -> int: ...

    def update_chat_metadata(self, chat_id: str) -> Any: ...

    def update_title(self, chat_id: str, title: str) -> None: ...

    def count_messages(self, chat_id: str) -> int: ...

    def list_messages(self, chat_id: str) -> List[Any]: ...

    def list_chats(self, user_id: str) -> List[Any]: ...

    def delete_chat(self, chat_id: str) -> bool: ...


@runtime_checkable
class DeltaSource(Protocol):
    """A generation producer: an ordered async stream of deltas."""

    def stream(self, messages: List[Dict[str, Any]]) -> AsyncIterator[StreamDelta]: ...

    async def close(self) -> None: ...
