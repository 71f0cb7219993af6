"""Tests for ORM models, protocol records and config loading."""

from datetime import datetime

from artiflow.config import AppConfig, EngineConfig, get_config, load_config, reset_config
from artiflow.core.enums import ArtifactKind, ArtifactStatus, PayloadKind, StreamPartType
from artiflow.core.protocols import Artifact, CommitResult, StreamDelta, artifact_id
from artiflow.models.chat import Chat
from artiflow.models.message import Message


def test_chat_defaults(db_session):
    chat = Chat(id="c1", user_id="u1")
    db_session.add(chat)
    db_session.commit()
    db_session.refresh(chat)
    assert chat.title == "New Chat"
    assert chat.message_count == 0
    assert chat.last_message_at is None
    assert isinstance(chat.created_at, datetime)


def test_message_json_artifacts_roundtrip(db_session):
    db_session.add(Chat(id="c1", user_id="u1"))
    snapshot = {"id": "chart-0", "kind": "chart", "data": [{"k": "a", "v": 1}]}
    db_session.add(Message(id="m1", chat_id="c1", role="assistant", content="x", artifacts=[snapshot]))
    db_session.commit()
    db_session.expire_all()

    msg = db_session.get(Message, "m1")
    assert msg.artifacts == [snapshot]
    assert msg.chat.id == "c1"
    assert [m.id for m in db_session.get(Chat, "c1").messages] == ["m1"]


def test_artifact_identity_and_snapshot():
    art = Artifact(id=artifact_id(ArtifactKind.TABLE, 42), kind=ArtifactKind.TABLE,
                   title="Data Table", ordinal=42, status=ArtifactStatus.STREAMING)
    assert art.id == "table-42"
    assert art.key == (ArtifactKind.TABLE, 42)
    assert art.is_terminal is False
    snap = art.snapshot()
    assert snap["kind"] == "table"
    assert snap["status"] == "streaming"


def test_stream_delta_from_text_part_variants():
    a = StreamDelta.from_part(1, {"type": "text-delta", "textDelta": "hi"})
    b = StreamDelta.from_part(2, {"type": "text-delta", "content": "yo"})
    assert (a.payload_kind, a.content) == (PayloadKind.TEXT, "hi")
    assert b.content == "yo"


def test_stream_delta_chart_forms():
    text = StreamDelta.from_part(1, {"type": "chart-delta", "content": '{"title":'})
    structured = StreamDelta.from_part(2, {"type": "chart-delta", "data": [], "title": "T", "extra": 1})
    assert text.content == '{"title":'
    assert structured.content == {"data": [], "title": "T"}
    assert structured.part_type == StreamPartType.CHART_DELTA
    assert structured.payload_kind == PayloadKind.TYPED_DELTA


def test_stream_delta_status_and_metadata():
    status = StreamDelta.from_part(1, {"type": "status-update", "status": "completed"})
    meta = StreamDelta.from_part(2, {"type": "metadata-update", "metadata": {"title": "T"}})
    assert (status.payload_kind, status.content) == (PayloadKind.STATUS, "completed")
    assert (meta.payload_kind, meta.content) == (PayloadKind.METADATA, {"title": "T"})


def test_commit_result_degraded():
    assert CommitResult(chat_id="c").degraded is False
    assert CommitResult(chat_id="c", ok=False, error="boom").degraded is True


# ── Config ──


def test_config_loaded_from_yaml(isolated_db):
    cfg = get_config()
    assert cfg.llm.api_key == "test-key"
    assert cfg.database.path == str(isolated_db / "test.db")
    assert cfg.engine.min_code_lines == 5


def test_config_engine_overrides(tmp_path):
    reset_config()
    path = tmp_path / "custom.yaml"
    path.write_text(
        "engine:\n  min_code_lines: 2\n  fallback_chart:\n    x_key: name\n"
        "    data:\n      - {name: Only, value: 1}\n"
    )
    cfg = load_config(path)
    assert cfg.engine.min_code_lines == 2
    assert cfg.engine.min_code_chars == 200
    assert cfg.engine.fallback_chart.x_key == "name"
    assert cfg.engine.fallback_chart.y_key == "value"
    assert cfg.engine.fallback_chart.data == [{"name": "Only", "value": 1}]


def test_config_defaults_when_missing(tmp_path, monkeypatch):
    reset_config()
    monkeypatch.setattr("artiflow.config._default_data_dir", lambda: tmp_path / "nowhere")
    empty = tmp_path / "empty"
    empty.mkdir()
    monkeypatch.chdir(empty)
    cfg = load_config(tmp_path / "absent.yaml")
    assert isinstance(cfg, AppConfig)
    assert cfg.engine == EngineConfig()
    assert cfg.llm.api_key == "sk-placeholder"
