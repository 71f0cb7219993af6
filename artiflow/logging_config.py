"""Centralized logging configuration for artiflow."""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

LOG_DIR = Path("./logs")

_APP_LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
_APP_LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
EXTRACTION_LOGGER_NAME = "artiflow.extraction"


def setup_logging(log_dir: Path | str | None = None) -> None:
    """Configure logging for the entire application.

    Call once at startup, before any session runs.
    """
    base_dir = Path(log_dir).expanduser() if log_dir else LOG_DIR
    base_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Daily rotating file handler for all application logs
    app_handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(base_dir / "artiflow.log"),
        when="midnight",
        interval=1,
        backupCount=14,
        encoding="utf-8",
    )
    app_handler.setLevel(logging.DEBUG)
    app_handler.setFormatter(
        logging.Formatter(_APP_LOG_FORMAT, datefmt=_APP_LOG_DATE_FORMAT)
    )
    root.addHandler(app_handler)

    # Dedicated extraction logger: JSON Lines, size-rotated
    extraction_logger = logging.getLogger(EXTRACTION_LOGGER_NAME)
    extraction_logger.propagate = False
    extraction_handler = logging.handlers.RotatingFileHandler(
        filename=str(base_dir / "extraction_events.jsonl"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    extraction_handler.setLevel(logging.DEBUG)
    extraction_handler.setFormatter(logging.Formatter("%(message)s"))
    extraction_logger.addHandler(extraction_handler)


def _write_jsonl(entry: Dict[str, Any]) -> None:
    extraction_logger = logging.getLogger(EXTRACTION_LOGGER_NAME)
    try:
        extraction_logger.info(json.dumps(entry, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        extraction_logger.info(
            json.dumps({"event": entry.get("event"), "error": "serialization_failed"})
        )


def log_extraction_event(
    event: Dict[str, Any],
    session_id: str | None = None,
    chat_id: str | None = None,
) -> None:
    """Log a recovered extraction failure, abort or rejected delta as JSON Lines.

    Entries carry the session and chat they belong to, plus the artifact id
    (``<kind>-<ordinal>``) when the event concerns a single artifact.
    """
    kind = event.get("kind")
    ordinal = event.get("ordinal")
    _write_jsonl({
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "session_id": session_id,
        "chat_id": chat_id,
        "event": event.get("event", "unknown"),
        "artifact_id": f"{kind}-{ordinal}" if kind and ordinal is not None else None,
        "kind": kind,
        "ordinal": ordinal,
        "reason": event.get("reason") or None,
        "excerpt": event.get("excerpt") or None,
    })


def log_session_summary(
    session_id: str,
    chat_id: str,
    status: str,
    artifact_statuses: Dict[str, int],
    text_chars: int,
    event_counts: Dict[str, int] | None = None,
    saved: int = 0,
    skipped: int = 0,
    commit_ok: bool | None = None,
    error: str | None = None,
) -> None:
    """One ``session_end`` line per generation, next to its extraction events."""
    _write_jsonl({
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "session_id": session_id,
        "chat_id": chat_id,
        "event": "session_end",
        "status": status,
        "artifacts": artifact_statuses,
        "text_chars": text_chars,
        "events": event_counts or {},
        "saved": saved,
        "skipped": skipped,
        "commit_ok": commit_ok,
        "error": error,
    })
