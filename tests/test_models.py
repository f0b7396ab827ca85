from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from ctxkeep.core.errors import ConfigInvalid, ValidationFailed
from ctxkeep.core.models import (
    CONTENT_VERSION,
    ContextRecord,
    GlobalConfig,
    KeeperConfig,
    StoppingPoint,
    StopType,
    discover_project_root,
    entry_text,
    migrate_record,
    parse_transcript_entry,
)


# ── Records ──────────────────────────────────────────────────────────────

def test_oldest_shape_migrates_without_inventing_fields() -> None:
    oldest = {
        "created_at": 1_000,
        "updated_at": 2_000,
        "session_id": "s-legacy",
        "summary": "Worked on login",
        "transcript_excerpt": "User: hi",
        "key_files": ["auth.py"],
        "active_tasks": ["write tests"],
    }

    record = ContextRecord.from_wire(oldest)

    assert record.content_version == CONTENT_VERSION
    assert record.summary == "Worked on login"
    assert record.conversation is None
    assert record.files is None
    assert record.tool_history is None
    assert record.conversation_replay is None


def test_migration_is_idempotent() -> None:
    data = {"content_version": "2.0.0", "created_at": 1, "updated_at": 1, "session_id": "s"}

    once = migrate_record(data)
    twice = migrate_record(once)

    assert once == twice
    assert once["content_version"] == CONTENT_VERSION


def test_unknown_content_version_is_rejected() -> None:
    with pytest.raises(ValidationFailed, match="Unsupported content version"):
        ContextRecord.from_wire({"content_version": "0.9.0", "created_at": 1, "updated_at": 1, "session_id": "s"})


def test_from_wire_rejects_non_objects_and_bad_shapes() -> None:
    with pytest.raises(ValidationFailed):
        ContextRecord.from_wire(["not", "a", "record"])
    with pytest.raises(ValidationFailed):
        ContextRecord.from_wire({"created_at": "yesterday", "updated_at": 1, "session_id": "s"})


def test_updated_preserves_created_at_and_never_moves_backwards(make_record) -> None:
    record = make_record(at=5_000)

    later = record.updated(at=9_000, summary="new", created_at=1)
    earlier = later.updated(at=3_000)

    assert later.created_at == 5_000
    assert later.updated_at == 9_000
    assert later.summary == "new"
    assert earlier.updated_at == 9_000


def test_to_wire_omits_absent_fields(make_record) -> None:
    wire = make_record().to_wire()

    assert "conversation" not in wire
    assert "replay_metadata" not in wire
    assert wire["session_id"] == "session-1"


def test_token_budget_is_never_a_stopping_point() -> None:
    with pytest.raises(ValidationError):
        StoppingPoint(index=3, type=StopType.TOKEN_BUDGET)


# ── Transcript entries ───────────────────────────────────────────────────

def test_parse_transcript_entry_dispatches_on_type() -> None:
    entry = parse_transcript_entry({
        "type": "assistant",
        "message": {"role": "assistant", "content": [
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "Patched it"},
            {"type": "tool_use", "id": "t1", "name": "Edit", "input": {"file_path": "a.py"}},
        ]},
    })

    assert entry.type == "assistant"
    assert entry_text(entry) == "Patched it"


def test_parse_transcript_entry_rejects_unknown_tags() -> None:
    with pytest.raises(ValidationError):
        parse_transcript_entry({"type": "telemetry", "payload": {}})


def test_entry_text_for_non_dialogue_entries() -> None:
    assert entry_text(parse_transcript_entry({"type": "summary", "summary": "Earlier work"})) == "Earlier work"
    assert entry_text(parse_transcript_entry({"type": "progress", "data": {"pct": 50}})) == ""


# ── Configuration ────────────────────────────────────────────────────────

def test_config_defaults(tmp_path: Path) -> None:
    config = KeeperConfig.for_project(tmp_path)

    assert config.project_root == tmp_path.resolve()
    assert config.store_dir == tmp_path.resolve() / ".ctxkeep"
    assert config.remote_enabled is False
    assert config.auto_load_on_start is False
    assert config.same_session_window_ms == 60_000
    assert config.max_replay_tokens == 50_000


def test_config_clamps_budget_fields(tmp_path: Path) -> None:
    config = KeeperConfig.for_project(tmp_path, max_replay_percent=150, context_window_size=10)

    assert config.max_replay_percent == 90
    assert config.context_window_size == 10_000
    assert config.max_replay_tokens == 9_000


def test_config_precedence(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    GlobalConfig(remote_url="https://global.example", api_key="global-key").save()
    store = tmp_path / ".ctxkeep"
    store.mkdir()
    (store / "config.json").write_text(json.dumps({"remote_url": "https://project.example"}))
    monkeypatch.setenv("CTXKEEP_API_KEY", "env-key")

    config = KeeperConfig.for_project(tmp_path)
    assert config.remote_url == "https://project.example"
    assert config.api_key == "env-key"

    overridden = KeeperConfig.for_project(tmp_path, remote_url="https://override.example")
    assert overridden.remote_url == "https://override.example"


def test_config_ignores_unreadable_project_file(tmp_path: Path) -> None:
    store = tmp_path / ".ctxkeep"
    store.mkdir()
    (store / "config.json").write_text("{not json")

    assert KeeperConfig.for_project(tmp_path).remote_url == ""


def test_save_project_config_merges_and_validates(tmp_path: Path) -> None:
    config = KeeperConfig.for_project(tmp_path)

    config.save_project_config(remote_url="https://ctx.example")
    path = config.save_project_config(max_replay_percent=30)

    assert json.loads(path.read_text()) == {"remote_url": "https://ctx.example", "max_replay_percent": 30}
    with pytest.raises(ConfigInvalid):
        config.save_project_config(colour="blue")
    with pytest.raises(ConfigInvalid):
        config.save_project_config(retry_attempts="many")


def test_workspace_env_selects_project_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    project = tmp_path / "ws"
    project.mkdir()
    monkeypatch.setenv("CTXKEEP_WORKSPACE", str(project))

    assert KeeperConfig.for_project().project_root == project.resolve()


def test_discover_project_root_walks_up(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    nested = tmp_path / "src" / "pkg"
    nested.mkdir(parents=True)

    assert discover_project_root(nested) == tmp_path.resolve()


def test_config_rejects_badly_typed_project_values(tmp_path: Path) -> None:
    store = tmp_path / ".ctxkeep"
    store.mkdir()
    (store / "config.json").write_text(json.dumps({"retry_attempts": "three"}))

    with pytest.raises(ConfigInvalid, match="Invalid config value"):
        KeeperConfig.for_project(tmp_path)


def test_config_rejects_non_numeric_timeout_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CTXKEEP_REMOTE_TIMEOUT", "30s")

    with pytest.raises(ConfigInvalid, match="CTXKEEP_REMOTE_TIMEOUT"):
        KeeperConfig.for_project(tmp_path)


def test_locate_reads_no_config_source(tmp_path: Path) -> None:
    store = tmp_path / ".ctxkeep"
    store.mkdir()
    (store / "config.json").write_text(json.dumps({"retry_attempts": "three"}))

    located = KeeperConfig.locate(tmp_path)

    assert located.store_dir == tmp_path.resolve() / ".ctxkeep"
    assert located.retry_attempts == 3
