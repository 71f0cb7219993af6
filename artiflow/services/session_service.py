"""Generation session — drives one producer stream through the engine.

One ``GenerationSession`` per in-flight generation. It owns its
accumulator, tracker and diagnostics; the persistence layer is injected
and is the only thing shared with other sessions.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from typing import AsyncIterable, Callable, List, Optional

from artiflow.config import EngineConfig
from artiflow.core.enums import MessageRole, PayloadKind, SessionStatus
from artiflow.core.errors import OutOfOrderDeltaError, SessionFailedError
from artiflow.core.protocols import (
    Artifact,
    CommitResult,
    MessageRecord,
    SessionOutcome,
    StreamDelta,
)
from artiflow.kernel.accumulator import DeltaAccumulator
from artiflow.kernel.diagnostics import ExtractionDiagnostics
from artiflow.kernel.state_machine import ABORT_REASON, ArtifactTracker
from artiflow.logging_config import log_session_summary
from artiflow.services.persistence_service import ChatPersistence

logger = logging.getLogger(__name__)

ArtifactCallback = Callable[[List[Artifact]], None]


class GenerationSession:
    def __init__(
        self,
        chat_id: str,
        persistence: ChatPersistence | None = None,
        settings: EngineConfig | None = None,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        message_id: str | None = None,
        abort_event: asyncio.Event | None = None,
        on_update: Optional[ArtifactCallback] = None,
    ):
        self.chat_id = chat_id
        self.user_id = user_id
        self.session_id = session_id or uuid.uuid4().hex
        # Stable across retries so a replayed commit is a no-op
        self.message_id = message_id or f"{self.session_id}-assistant"
        self._persistence = persistence
        self._settings = settings or EngineConfig()
        self._abort_event = abort_event or asyncio.Event()
        self._on_update = on_update

        self._accumulator = DeltaAccumulator()
        self._diagnostics = ExtractionDiagnostics(session_id=self.session_id, chat_id=chat_id)
        self._tracker = ArtifactTracker(self._settings, self._diagnostics)
        self._status = SessionStatus.RUNNING
        self._error: Optional[str] = None

    # ── State ──

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def text(self) -> str:
        return self._accumulator.buffer

    @property
    def artifacts(self) -> List[Artifact]:
        return self._tracker.artifacts

    @property
    def diagnostics(self) -> ExtractionDiagnostics:
        return self._diagnostics

    @property
    def abort_event(self) -> asyncio.Event:
        return self._abort_event

    def abort(self) -> None:
        """Ask a running session to stop at the next delta."""
        self._abort_event.set()

    # ── Delta handling ──

    def feed(self, delta: StreamDelta) -> List[Artifact]:
        """Apply one delta synchronously and return the current artifacts.

        Protocol violations fail the session rather than raising, so the
        caller can still commit whatever completed before the failure.
        """
        if self._status != SessionStatus.RUNNING:
            raise SessionFailedError(f"Session {self.session_id} is {self._status.value}")

        try:
            buffer = self._accumulator.append(delta)
        except OutOfOrderDeltaError as e:
            self._diagnostics.record("rejected_delta", reason=str(e))
            self._fail(str(e))
            return self.artifacts

        if delta.payload_kind == PayloadKind.TEXT:
            artifacts = self._tracker.update(buffer)
        elif delta.payload_kind == PayloadKind.ERROR:
            reason = str(delta.content or "producer error")
            self._tracker.apply_part(delta)
            self._fail(reason)
            artifacts = self.artifacts
        else:
            self._tracker.apply_part(delta)
            artifacts = self.artifacts

        self._notify(artifacts)
        return artifacts

    def _fail(self, reason: str) -> None:
        logger.error("Session %s failed: %s", self.session_id, reason)
        self._tracker.abort(reason)
        self._status = SessionStatus.FAILED
        self._error = reason

    def _stop(self) -> None:
        logger.info("Session %s aborted", self.session_id)
        self._tracker.abort(ABORT_REASON)
        self._status = SessionStatus.ABORTED
        self._error = ABORT_REASON
        self._notify(self.artifacts)

    def _notify(self, artifacts: List[Artifact]) -> None:
        if self._on_update is not None:
            self._on_update(artifacts)

    # ── Driving ──

    async def run(
        self,
        deltas: AsyncIterable[StreamDelta],
        user_message: MessageRecord | str | None = None,
    ) -> SessionOutcome:
        """Consume ``deltas`` to the end, an abort, or a failure, then commit.

        A task cancellation is treated as an abort: in-flight artifacts move
        to ``error``, the partial message is committed, and the
        ``CancelledError`` is re-raised afterwards.
        """
        cancelled = False
        try:
            async for delta in deltas:
                if self._abort_event.is_set():
                    break
                self.feed(delta)
                if self._status != SessionStatus.RUNNING:
                    break
        except asyncio.CancelledError:
            cancelled = True

        if self._status == SessionStatus.RUNNING:
            if cancelled or self._abort_event.is_set():
                self._stop()
            else:
                self._tracker.finalize(self._accumulator.buffer)
                self._status = SessionStatus.COMPLETED
                self._notify(self.artifacts)

        outcome = self._outcome(self.commit(user_message))
        logger.info(
            "Session %s %s: %d artifact(s), %d chars",
            self.session_id, outcome.status.value, len(outcome.artifacts), len(outcome.text),
        )
        self._log_summary(outcome)
        if cancelled:
            raise asyncio.CancelledError()
        return outcome

    def commit(self, user_message: MessageRecord | str | None = None) -> Optional[CommitResult]:
        """Persist the user turn and the assistant response so far."""
        if self._persistence is None:
            return None
        messages = self.messages(user_message)
        if not messages:
            return None
        result = self._persistence.commit(messages, self.chat_id, self.user_id)
        if result.degraded:
            logger.warning("Session %s: history may not have saved: %s",
                           self.session_id, result.error)
        return result

    def messages(self, user_message: MessageRecord | str | None = None) -> List[MessageRecord]:
        """The message records this session would commit."""
        records: List[MessageRecord] = []
        if isinstance(user_message, str):
            user_message = MessageRecord(
                id=f"{self.session_id}-user", role=MessageRole.USER, content=user_message,
            )
        if user_message is not None:
            records.append(user_message)

        text = self._accumulator.buffer
        artifacts = self.artifacts
        if text or artifacts:
            records.append(MessageRecord(
                id=self.message_id,
                role=MessageRole.ASSISTANT,
                content=text,
                artifacts=[a.snapshot() for a in artifacts],
            ))
        return records

    def _log_summary(self, outcome: SessionOutcome) -> None:
        commit = outcome.commit
        log_session_summary(
            session_id=self.session_id,
            chat_id=self.chat_id,
            status=outcome.status.value,
            artifact_statuses=dict(Counter(a.status.value for a in outcome.artifacts)),
            text_chars=len(outcome.text),
            event_counts=dict(self._diagnostics.get_stats().counts),
            saved=len(commit.saved_ids) if commit else 0,
            skipped=len(commit.skipped_ids) if commit else 0,
            commit_ok=commit.ok if commit else None,
            error=outcome.error,
        )

    def _outcome(self, commit: Optional[CommitResult]) -> SessionOutcome:
        return SessionOutcome(
            session_id=self.session_id,
            chat_id=self.chat_id,
            status=self._status,
            text=self._accumulator.buffer,
            artifacts=self.artifacts,
            commit=commit,
            error=self._error,
        )
