"""Engine protocol — records exchanged between the kernel, sessions and storage."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from artiflow.core.enums import (
    ArtifactKind,
    ArtifactStatus,
    MessageRole,
    PayloadKind,
    SessionStatus,
    StreamPartType,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def artifact_id(kind: ArtifactKind, ordinal: int) -> str:
    """Stable identity for the artifact first detected at ``ordinal``."""
    return f"{kind.value}-{ordinal}"


class Artifact(BaseModel):
    """A typed, normalized artifact extracted from a generation."""
    id: str
    kind: ArtifactKind
    subtype: Optional[str] = None
    title: str
    raw_content: str = ""
    data: Optional[Union[List[Any], Dict[str, Any]]] = None
    status: ArtifactStatus = ArtifactStatus.IDLE
    ordinal: int
    language: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    fallback: bool = False

    @property
    def key(self) -> tuple:
        return (self.kind, self.ordinal)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ArtifactStatus.COMPLETED, ArtifactStatus.ERROR)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready dict, as stored alongside a message."""
        return self.model_dump(mode="json")


# Part types whose payload belongs to a streamed artifact rather than the message
_TYPED_PART_TYPES = frozenset({
    StreamPartType.CODE_DELTA,
    StreamPartType.CHART_DELTA,
    StreamPartType.SHEET_DELTA,
    StreamPartType.DOCUMENT_DELTA,
    StreamPartType.IMAGE_DELTA,
})

_CHART_FIELDS = ("data", "chartType", "title", "xKey", "yKey")


class StreamDelta(BaseModel):
    """One ordered fragment from a generation session."""
    sequence: int
    payload_kind: PayloadKind = PayloadKind.TEXT
    content: Union[str, Dict[str, Any], None] = ""
    part_type: Optional[StreamPartType] = None

    @classmethod
    def text(cls, sequence: int, content: str) -> "StreamDelta":
        return cls(
            sequence=sequence,
            payload_kind=PayloadKind.TEXT,
            content=content,
            part_type=StreamPartType.TEXT_DELTA,
        )

    @classmethod
    def from_part(cls, sequence: int, part: Dict[str, Any]) -> "StreamDelta":
        """Map a raw producer stream part (``{"type": "chart-delta", ...}``) onto a delta.

        Unknown part types are carried as metadata so that the sequence still
        advances; the tracker ignores them.
        """
        raw_type = part.get("type", StreamPartType.TEXT_DELTA.value)
        try:
            part_type = StreamPartType(raw_type)
        except ValueError:
            return cls(
                sequence=sequence,
                payload_kind=PayloadKind.METADATA,
                content={"unknown_part": raw_type},
            )

        if part_type == StreamPartType.TEXT_DELTA:
            text = part.get("content")
            if text is None:
                text = part.get("textDelta", "")
            return cls(sequence=sequence, payload_kind=PayloadKind.TEXT,
                       content=str(text), part_type=part_type)

        if part_type in _TYPED_PART_TYPES:
            # chart-delta may carry the structured chart instead of raw text
            if part_type == StreamPartType.CHART_DELTA and "data" in part:
                content: Union[str, Dict[str, Any]] = {
                    k: part[k] for k in _CHART_FIELDS if k in part
                }
            else:
                content = str(part.get("content") or "")
            return cls(sequence=sequence, payload_kind=PayloadKind.TYPED_DELTA,
                       content=content, part_type=part_type)

        if part_type == StreamPartType.METADATA_UPDATE:
            return cls(sequence=sequence, payload_kind=PayloadKind.METADATA,
                       content=dict(part.get("metadata") or {}), part_type=part_type)

        if part_type == StreamPartType.STATUS_UPDATE:
            return cls(sequence=sequence, payload_kind=PayloadKind.STATUS,
                       content=str(part.get("status") or ""), part_type=part_type)

        return cls(sequence=sequence, payload_kind=PayloadKind.ERROR,
                   content=str(part.get("error") or part.get("content") or "producer error"),
                   part_type=part_type)


class MessageRecord(BaseModel):
    """A chat message as handed to the persistence layer."""
    id: str
    role: MessageRole
    content: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    # Weak references: messages do not own artifact identity
    artifacts: List[Dict[str, Any]] = Field(default_factory=list)


class CommitResult(BaseModel):
    """Outcome of a persistence commit. Never raised, always returned."""
    chat_id: str
    ok: bool = True
    saved_ids: List[str] = Field(default_factory=list)
    skipped_ids: List[str] = Field(default_factory=list)
    message_count: int = 0
    title: Optional[str] = None
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        """True when the caller should note that history may not have saved."""
        return not self.ok


class ChatIntegrity(BaseModel):
    """Result of comparing a chat's stored message_count with its real count."""
    chat_id: str
    is_valid: bool
    issues: List[str] = Field(default_factory=list)
    message_count: int = 0
    actual_message_count: int = 0


class SessionOutcome(BaseModel):
    """What a generation session produced, and whether it was saved."""
    session_id: str
    chat_id: str
    status: SessionStatus
    text: str = ""
    artifacts: List[Artifact] = Field(default_factory=list)
    commit: Optional[CommitResult] = None
    error: Optional[str] = None
