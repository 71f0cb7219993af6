"""ExtractionDiagnostics — pure recorder for recovered extraction failures.

Collects and counts events. Makes NO decisions: malformed payloads are
handled by the normalizer's fallbacks, aborts by the state machine.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from artiflow.logging_config import log_extraction_event

logger = logging.getLogger(__name__)

_EXCERPT_CHARS = 120


@dataclass
class ExtractionEvent:
    event: str            # parse_fallback | aborted | rejected_delta
    kind: Optional[str] = None
    ordinal: Optional[int] = None
    reason: str = ""
    excerpt: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "kind": self.kind,
            "ordinal": self.ordinal,
            "reason": self.reason,
            "excerpt": self.excerpt,
        }


@dataclass
class ExtractionStats:
    """Read-only statistics snapshot."""
    counts: Counter = field(default_factory=Counter)
    events: List[ExtractionEvent] = field(default_factory=list)

    def count(self, event: str) -> int:
        return self.counts[event]


class ExtractionDiagnostics:
    """Per-session recorder. Each session owns its own instance."""

    def __init__(
        self,
        session_id: str | None = None,
        max_events: int = 200,
        chat_id: str | None = None,
    ) -> None:
        self._session_id = session_id
        self._chat_id = chat_id
        self._max_events = max_events
        self._stats = ExtractionStats()
        # (event, kind, ordinal) already reported; re-scans would repeat them
        self._seen: set[tuple] = set()

    def record(
        self,
        event: str,
        *,
        kind: str | None = None,
        ordinal: int | None = None,
        reason: str = "",
        excerpt: str = "",
    ) -> None:
        """Record one event, once per (event, kind, ordinal)."""
        dedup_key = (event, kind, ordinal)
        if ordinal is not None and dedup_key in self._seen:
            return
        self._seen.add(dedup_key)

        entry = ExtractionEvent(
            event=event,
            kind=kind,
            ordinal=ordinal,
            reason=reason,
            excerpt=excerpt[:_EXCERPT_CHARS],
        )
        self._stats.counts[event] += 1
        self._stats.events.append(entry)
        if len(self._stats.events) > self._max_events:
            self._stats.events = self._stats.events[-self._max_events:]

        logger.debug("Extraction %s: kind=%s ordinal=%s %s", event, kind, ordinal, reason)
        log_extraction_event(entry.as_dict(), session_id=self._session_id, chat_id=self._chat_id)

    def get_stats(self) -> ExtractionStats:
        return self._stats

    def reset(self) -> None:
        self._stats = ExtractionStats()
        self._seen.clear()
