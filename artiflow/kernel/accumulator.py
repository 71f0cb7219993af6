"""DeltaAccumulator — the only component that sees raw fragment order."""

from __future__ import annotations

import logging

from artiflow.core.enums import PayloadKind
from artiflow.core.errors import OutOfOrderDeltaError, SessionFailedError
from artiflow.core.protocols import StreamDelta

logger = logging.getLogger(__name__)


class DeltaAccumulator:
    """Appends text deltas to a per-session buffer in strict sequence order.

    Performs no parsing. Non-text deltas advance the sequence without
    touching the buffer.
    """

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._buffer = ""
        self._dirty = False
        self._last_sequence: int | None = None
        self._failed = False

    @property
    def buffer(self) -> str:
        """Read-only snapshot of everything appended so far."""
        if self._dirty:
            self._buffer = "".join(self._parts)
            self._parts = [self._buffer]
            self._dirty = False
        return self._buffer

    @property
    def last_sequence(self) -> int | None:
        return self._last_sequence

    @property
    def failed(self) -> bool:
        return self._failed

    def append(self, delta: StreamDelta) -> str:
        """Apply one delta and return the buffer snapshot.

        Raises OutOfOrderDeltaError (and marks the accumulator failed) when
        ``delta.sequence`` does not advance past the last applied sequence.
        """
        if self._failed:
            raise SessionFailedError("Accumulator already failed; delta rejected")

        if self._last_sequence is not None and delta.sequence <= self._last_sequence:
            self._failed = True
            logger.error(
                "Rejected out-of-order delta: sequence=%d last=%d",
                delta.sequence, self._last_sequence,
            )
            raise OutOfOrderDeltaError(delta.sequence, self._last_sequence)

        self._last_sequence = delta.sequence
        if delta.payload_kind == PayloadKind.TEXT and isinstance(delta.content, str):
            if delta.content:
                self._parts.append(delta.content)
                self._dirty = True
        return self.buffer
