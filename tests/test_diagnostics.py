"""Tests for ExtractionDiagnostics — pure recording, no decisions."""

import json

import pytest

from artiflow.core.protocols import StreamDelta
from artiflow.kernel.diagnostics import ExtractionDiagnostics
from artiflow.kernel.state_machine import ArtifactTracker
from artiflow.logging_config import setup_logging
from artiflow.services.session_service import GenerationSession


def test_record_counts_and_dedups_by_identity():
    diag = ExtractionDiagnostics()
    diag.record("parse_fallback", kind="chart", ordinal=0, reason="bad")
    diag.record("parse_fallback", kind="chart", ordinal=0, reason="bad again")
    diag.record("parse_fallback", kind="chart", ordinal=40, reason="bad")
    stats = diag.get_stats()
    assert stats.count("parse_fallback") == 2
    assert [e.ordinal for e in stats.events] == [0, 40]


def test_events_without_ordinal_are_not_deduped():
    diag = ExtractionDiagnostics()
    diag.record("rejected_delta", reason="seq 3 <= 4")
    diag.record("rejected_delta", reason="seq 3 <= 4")
    assert diag.get_stats().count("rejected_delta") == 2


def test_excerpt_truncated_and_events_bounded():
    diag = ExtractionDiagnostics(max_events=3)
    for i in range(5):
        diag.record("parse_fallback", kind="table", ordinal=i, excerpt="x" * 500)
    stats = diag.get_stats()
    assert stats.count("parse_fallback") == 5
    assert len(stats.events) == 3
    assert len(stats.events[0].excerpt) == 120


def test_rescans_report_a_fallback_once():
    tracker = ArtifactTracker()
    text = '```json:chart\n{"title": "Share"}\n```\n'
    tracker.update(text)
    tracker.update(text + "more text\n")
    tracker.finalize(text + "more text\n")
    assert tracker.diagnostics.get_stats().count("parse_fallback") == 1


def test_reset():
    diag = ExtractionDiagnostics()
    diag.record("aborted", kind="code", ordinal=0)
    diag.reset()
    assert diag.get_stats().count("aborted") == 0
    diag.record("aborted", kind="code", ordinal=0)
    assert diag.get_stats().count("aborted") == 1


def test_events_written_as_json_lines(tmp_path):
    log_dir = tmp_path / "logs"
    setup_logging(log_dir)
    diag = ExtractionDiagnostics(session_id="sess-1", chat_id="chat-9")
    diag.record("parse_fallback", kind="chart", ordinal=7, reason="chart data missing or empty")

    lines = (log_dir / "extraction_events.jsonl").read_text(encoding="utf-8").splitlines()
    entry = json.loads(lines[-1])
    assert entry["session_id"] == "sess-1"
    assert entry["event"] == "parse_fallback"
    assert entry["kind"] == "chart"
    assert entry["ordinal"] == 7
    assert entry["chat_id"] == "chat-9"
    assert entry["artifact_id"] == "chart-7"


@pytest.mark.asyncio
async def test_session_logs_rejected_delta_and_summary(tmp_path):
    log_dir = tmp_path / "logs"
    setup_logging(log_dir)

    async def deltas():
        yield StreamDelta.text(1, "```json:table\n[{\"a\": 1}]\n```\n")
        yield StreamDelta.text(1, "replayed")

    session = GenerationSession("chat-9", session_id="sess-2")
    outcome = await session.run(deltas())
    assert session.diagnostics.get_stats().count("rejected_delta") == 1

    lines = (log_dir / "extraction_events.jsonl").read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line) for line in lines]
    rejected = [e for e in entries if e["event"] == "rejected_delta"]
    assert len(rejected) == 1
    assert rejected[0]["artifact_id"] is None
    assert rejected[0]["chat_id"] == "chat-9"

    summary = entries[-1]
    assert summary["event"] == "session_end"
    assert summary["session_id"] == "sess-2"
    assert summary["status"] == "failed"
    assert summary["artifacts"] == {"completed": 1}
    assert summary["events"] == {"rejected_delta": 1}
    assert summary["commit_ok"] is None
    assert summary["error"] == outcome.error
