"""Artifact update state machine.

Lifecycle per artifact::

    idle ──▶ streaming ──▶ completed
                 │
                 └──────▶ error      (producer abort only)

``transition`` is the pure step function: given the current artifact for a
``(kind, ordinal)`` identity and the latest scan of its block, it returns
the next artifact. ``ArtifactTracker`` folds it over successive buffer
snapshots for one session and also handles typed stream parts.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from artiflow.config import EngineConfig
from artiflow.core.enums import ArtifactKind, ArtifactStatus, PayloadKind, StreamPartType
from artiflow.core.protocols import Artifact, StreamDelta
from artiflow.kernel.accumulator import DeltaAccumulator
from artiflow.kernel.diagnostics import ExtractionDiagnostics
from artiflow.kernel.normalizer import KIND_REGISTRY, Payload, build_artifact, classify
from artiflow.kernel.scanner import RawBlock, scan_blocks, should_surface

logger = logging.getLogger(__name__)

ABORT_REASON = "generation aborted"

_PART_KINDS: Dict[StreamPartType, ArtifactKind] = {
    StreamPartType.CODE_DELTA: ArtifactKind.CODE,
    StreamPartType.CHART_DELTA: ArtifactKind.CHART,
    StreamPartType.SHEET_DELTA: ArtifactKind.SHEET,
    StreamPartType.DOCUMENT_DELTA: ArtifactKind.DOCUMENT,
    StreamPartType.IMAGE_DELTA: ArtifactKind.IMAGE,
}

# Fields that only change when a payload actually parses
_PARSED_FIELDS = ("data", "title", "subtype", "metadata")


def _merge_open(current: Artifact, fresh: Artifact) -> Artifact:
    """Apply a fresh scan of a still-open block onto the current artifact."""
    spec = KIND_REGISTRY[fresh.kind]
    if spec.json_payload and fresh.data is None and current.data is not None:
        # Re-parse failed mid-stream: keep the last good state
        return current.model_copy(update={"raw_content": fresh.raw_content})
    return current.model_copy(update={
        "raw_content": fresh.raw_content,
        "status": ArtifactStatus.STREAMING,
        **{name: getattr(fresh, name) for name in _PARSED_FIELDS},
        "language": fresh.language,
        "fallback": fresh.fallback,
    })


def transition(
    current: Optional[Artifact],
    block: RawBlock,
    settings: EngineConfig | None = None,
    diagnostics: ExtractionDiagnostics | None = None,
) -> Optional[Artifact]:
    """Advance one artifact given the latest scan of its block.

    - terminal artifacts are returned untouched (never re-parsed);
    - an open block creates or updates a ``streaming`` artifact, keeping
      the previous good data when the growing payload does not parse;
    - a closed block yields ``completed``, with fallback data when the final
      payload is unusable. The closed result depends only on the final body.
    """
    if current is not None and current.is_terminal:
        return current

    fresh = classify(block, settings, diagnostics)
    if fresh is None:
        return current
    if current is None:
        return fresh
    if block.closed:
        return fresh.model_copy(update={"id": current.id, "ordinal": current.ordinal})
    return _merge_open(current, fresh)


def abort_artifact(artifact: Artifact, reason: str = ABORT_REASON) -> Artifact:
    """Move an in-flight artifact to ``error``; terminal artifacts are kept."""
    if artifact.is_terminal:
        return artifact
    return artifact.model_copy(update={"status": ArtifactStatus.ERROR, "error": reason})


@dataclass
class _StreamedState:
    """Accumulated content for one artifact fed by typed stream parts."""
    kind: ArtifactKind
    ordinal: int
    parts: List[str] = field(default_factory=list)
    structured: Optional[Dict[str, Any]] = None
    title: Optional[str] = None
    language: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def body(self) -> str:
        return "".join(self.parts)

    def payload(self, closed: bool) -> Payload:
        return Payload(
            kind=self.kind,
            body=self.body,
            closed=closed,
            language=self.language,
            structured=self.structured,
            title=self.title,
        )


class ArtifactTracker:
    """Per-session artifact state. Never shared between sessions."""

    def __init__(
        self,
        settings: EngineConfig | None = None,
        diagnostics: ExtractionDiagnostics | None = None,
    ) -> None:
        self._settings = settings or EngineConfig()
        self._diagnostics = diagnostics or ExtractionDiagnostics()
        self._scanned: Dict[Tuple[ArtifactKind, int], Artifact] = {}
        self._streamed: Dict[ArtifactKind, Artifact] = {}
        self._streamed_state: Dict[ArtifactKind, _StreamedState] = {}
        self._last_streamed: Optional[ArtifactKind] = None
        # Everything before this offset is closed blocks or plain text
        self._settled_offset = 0
        self._last_scanned_len = -1

    # ── Buffer scans ──

    def update(self, buffer: str, *, final: bool = False) -> List[Artifact]:
        """Re-scan ``buffer`` and fold every surfaced block into state.

        ``final=True`` means the producer has finished: an unterminated
        closing fence counts, and blocks still open are completed as-is.
        Text before the end of the last closed block is never scanned again.
        """
        if not final and len(buffer) == self._last_scanned_len:
            return self.artifacts
        self._last_scanned_len = len(buffer)

        offset = self._settled_offset
        settled = offset
        for block in scan_blocks(buffer[offset:], partial=not final):
            if offset:
                block = dataclasses.replace(
                    block,
                    ordinal=block.ordinal + offset,
                    end=block.end + offset if block.end is not None else None,
                )
            if block.closed and block.end is not None:
                settled = block.end
            if block.kind is None:
                logger.debug("Ignoring typed block with unknown kind %r at %d",
                             block.tag_kind, block.ordinal)
                continue
            key = (block.kind, block.ordinal)
            if not should_surface(block, self._settings):
                # A block can shrink below the threshold once its fence closes
                if self._scanned.pop(key, None) is not None:
                    logger.debug("Dropping %s-%d: no longer substantial", block.kind.value, block.ordinal)
                continue
            if final and not block.closed:
                block = dataclasses.replace(block, closed=True)
            updated = transition(self._scanned.get(key), block, self._settings, self._diagnostics)
            if updated is not None:
                self._scanned[key] = updated
        if not final:
            self._settled_offset = settled
        return self.artifacts

    # ── Typed stream parts ──

    def apply_part(self, delta: StreamDelta) -> Optional[Artifact]:
        """Fold one non-text delta into the streamed artifacts.

        Returns the artifact it touched, if any.
        """
        if delta.payload_kind == PayloadKind.TYPED_DELTA:
            return self._apply_typed(delta)
        if delta.payload_kind == PayloadKind.METADATA:
            return self._apply_metadata(delta)
        if delta.payload_kind == PayloadKind.STATUS:
            status = str(delta.content or "").lower()
            if status == ArtifactStatus.COMPLETED.value:
                self._complete_streamed()
            elif status == ArtifactStatus.ERROR.value:
                self.abort("producer reported error status")
            return None
        if delta.payload_kind == PayloadKind.ERROR:
            self.abort(str(delta.content or "producer error"))
        return None

    def _state_for(self, kind: ArtifactKind) -> _StreamedState:
        state = self._streamed_state.get(kind)
        if state is None:
            # Below every buffer offset, so never collides with a fence ordinal
            state = _StreamedState(kind=kind, ordinal=-(len(self._streamed_state) + 1))
            self._streamed_state[kind] = state
        return state

    def _apply_typed(self, delta: StreamDelta) -> Optional[Artifact]:
        kind = _PART_KINDS.get(delta.part_type) if delta.part_type else None
        if kind is None:
            logger.debug("Ignoring typed delta with part type %s", delta.part_type)
            return None

        current = self._streamed.get(kind)
        if current is not None and current.is_terminal:
            return current

        state = self._state_for(kind)
        if isinstance(delta.content, dict):
            state.structured = dict(delta.content)
            title = delta.content.get("title")
            if isinstance(title, str) and title.strip():
                state.title = title.strip()
        elif kind == ArtifactKind.IMAGE:
            # Producers emit whole images, not fragments
            state.parts = [delta.content or ""]
        else:
            state.parts.append(delta.content or "")

        return self._rebuild(state, closed=False)

    def _apply_metadata(self, delta: StreamDelta) -> Optional[Artifact]:
        if self._last_streamed is None or not isinstance(delta.content, dict):
            return None
        state = self._streamed_state[self._last_streamed]
        meta = dict(delta.content)
        title = meta.pop("title", None)
        if isinstance(title, str) and title.strip():
            state.title = title.strip()
        language = meta.pop("language", None)
        if isinstance(language, str) and language.strip():
            state.language = language.strip()
        state.metadata.update(meta)

        current = self._streamed.get(state.kind)
        if current is not None and current.is_terminal:
            updated = current.model_copy(update={
                "metadata": {**current.metadata, **state.metadata},
                "title": state.title or current.title,
            })
            self._streamed[state.kind] = updated
            return updated
        return self._rebuild(state, closed=False)

    def _rebuild(self, state: _StreamedState, *, closed: bool) -> Artifact:
        fresh = build_artifact(
            state.payload(closed), state.ordinal, self._settings, self._diagnostics,
        )
        if state.metadata:
            fresh = fresh.model_copy(update={"metadata": {**fresh.metadata, **state.metadata}})
        current = self._streamed.get(state.kind)
        if current is not None and not closed:
            fresh = _merge_open(current, fresh)
        self._streamed[state.kind] = fresh
        self._last_streamed = state.kind
        return fresh

    def _complete_streamed(self) -> None:
        for kind, state in self._streamed_state.items():
            current = self._streamed.get(kind)
            if current is None or not current.is_terminal:
                self._rebuild(state, closed=True)

    # ── Terminal signals ──

    def finalize(self, buffer: str) -> List[Artifact]:
        """The producer finished normally: settle every in-flight artifact."""
        self.update(buffer, final=True)
        self._complete_streamed()
        return self.artifacts

    def abort(self, reason: str = ABORT_REASON) -> List[Artifact]:
        """Move every streaming artifact to ``error``; completed ones stay."""
        for key, artifact in list(self._scanned.items()):
            if not artifact.is_terminal:
                self._scanned[key] = abort_artifact(artifact, reason)
                self._diagnostics.record(
                    "aborted", kind=artifact.kind.value, ordinal=artifact.ordinal, reason=reason,
                )
        for kind, artifact in list(self._streamed.items()):
            if not artifact.is_terminal:
                self._streamed[kind] = abort_artifact(artifact, reason)
                self._diagnostics.record(
                    "aborted", kind=kind.value, ordinal=artifact.ordinal, reason=reason,
                )
        return self.artifacts

    # ── Views ──

    @property
    def artifacts(self) -> List[Artifact]:
        """Buffer artifacts by ordinal, then streamed artifacts by first sight."""
        scanned = sorted(self._scanned.values(), key=lambda a: a.ordinal)
        streamed = sorted(self._streamed.values(), key=lambda a: -a.ordinal)
        return scanned + streamed

    @property
    def completed(self) -> List[Artifact]:
        return [a for a in self.artifacts if a.status == ArtifactStatus.COMPLETED]

    @property
    def diagnostics(self) -> ExtractionDiagnostics:
        return self._diagnostics


def extract_from_deltas(
    deltas: Iterable[StreamDelta],
    settings: EngineConfig | None = None,
) -> List[Artifact]:
    """Fold a finite delta sequence synchronously and return final artifacts."""
    accumulator = DeltaAccumulator()
    tracker = ArtifactTracker(settings)
    for delta in deltas:
        buffer = accumulator.append(delta)
        if delta.payload_kind == PayloadKind.TEXT:
            tracker.update(buffer)
        else:
            tracker.apply_part(delta)
    return tracker.finalize(accumulator.buffer)


def extract_artifacts(text: str, settings: EngineConfig | None = None) -> List[Artifact]:
    """Extract the final artifacts from a complete response text."""
    tracker = ArtifactTracker(settings)
    return tracker.finalize(text)
