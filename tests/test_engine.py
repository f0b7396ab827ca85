from __future__ import annotations

from pathlib import Path

import pytest

from ctxkeep.core.models import KeeperConfig, StopType
from ctxkeep.operations.engine import ContextEngine, format_context

NOW = 1_800_000_000_000


@pytest.fixture
def engine(tmp_path: Path, fake_remote, identify) -> ContextEngine:
    return ContextEngine(KeeperConfig.for_project(tmp_path), remote=fake_remote, identify=identify, clock=lambda: NOW)


@pytest.fixture
def local_only(tmp_path: Path, identify) -> ContextEngine:
    return ContextEngine(KeeperConfig.for_project(tmp_path), identify=identify, clock=lambda: NOW)


@pytest.fixture
def paged_transcript(entries, write_transcript) -> Path:
    return write_transcript([
        entries.user("Start the parser"),
        entries.commit("scaffold"),
        entries.user("Now the reader"),
        entries.assistant("Wrote the reader in `src/reader.py`", ("Edit", {"file_path": "src/reader.py"})),
        entries.task_completed(),
        entries.user("Tests please"),
        entries.assistant("Adding tests"),
    ])


def test_status_without_context(local_only: ContextEngine) -> None:
    resp = local_only.status()

    assert resp.success
    assert resp.detail["has_context"] is False
    assert resp.detail["remote_configured"] is False


def test_save_enriches_from_transcript(local_only: ContextEngine, paged_transcript: Path) -> None:
    resp = local_only.save("s1", "Parser work", key_files=["src/parser.py"], transcript_path=paged_transcript)

    assert resp.success, resp.message
    assert resp.detail["saved"] == ["local"]
    record = local_only.local.load()
    assert record.conversation.message_count == 7
    assert record.key_files == ["src/parser.py"]
    assert [f.path for f in record.files] == ["src/reader.py"]
    assert [t.tool_name for t in record.tool_history] == ["Bash", "Edit", "TaskUpdate"]
    assert record.replay_metadata.stopping_point_type == StopType.TASK_COMPLETION
    assert record.replay_metadata.start_message_index == 5
    assert record.conversation_replay.endswith("Assistant: Adding tests")

    status = local_only.status()
    assert status.detail["has_context"] is True
    assert status.detail["stopping_points"] == 2
    assert status.detail["current_stop_index"] == 0


def test_save_keeps_created_at(tmp_path: Path, identify) -> None:
    clock = iter([NOW, NOW + 10_000])
    engine = ContextEngine(KeeperConfig.for_project(tmp_path), identify=identify, clock=lambda: next(clock))

    engine.save("s1", "first")
    engine.save("s2", "second")

    record = engine.local.load()
    assert record.created_at == NOW
    assert record.updated_at == NOW + 10_000
    assert record.summary == "second"


def test_save_without_transcript_leaves_conversation_unset(local_only: ContextEngine) -> None:
    local_only.save("s1", "Just a note")

    record = local_only.local.load()
    assert record.conversation is None
    assert record.conversation_replay is None


def test_save_uses_transcript_from_session_metadata(local_only: ContextEngine, paged_transcript: Path) -> None:
    local_only.record_session("s1", str(paged_transcript))

    local_only.save("s1", "From metadata")

    assert local_only.local.load().conversation.message_count == 7


def test_partial_remote_failure_is_reported(engine: ContextEngine, fake_remote) -> None:
    fake_remote.fail_saves = True

    resp = engine.save("s1", "summary", save_remote=True)

    assert not resp.success
    assert resp.detail["saved"] == ["local"]
    assert "remote" in resp.detail["failures"]
    assert engine.local.exists()


def test_load_scopes(engine: ContextEngine, fake_remote, make_record) -> None:
    assert engine.load().message == "No saved context found"

    engine.save("laptop", "Local summary")
    fake_remote.records["0123456789abcdef"] = make_record(session_id="desktop", summary="Remote summary")

    auto = engine.load()
    assert auto.success
    assert auto.detail["needs_choice"] is True
    assert auto.detail["locations"]["remote"]["session_id"] == "desktop"

    remote = engine.load(scope="remote")
    assert remote.detail["selected"] == "remote"
    assert "Remote summary" in remote.message

    assert not engine.load(scope="everywhere").success


def test_clear(engine: ContextEngine, fake_remote, local_only: ContextEngine) -> None:
    engine.save("s1", "summary", save_remote=True)

    resp = engine.clear(include_remote=True)

    assert resp.detail["cleared"] == ["local", "remote"]
    assert fake_remote.records == {}
    assert engine.clear().message == "No context to clear"
    assert not local_only.clear(include_remote=True).success


def test_load_more_pages_back_and_persists(local_only: ContextEngine, paged_transcript: Path) -> None:
    local_only.save("s1", "Parser work", transcript_path=paged_transcript)

    more = local_only.load_more()

    assert more.success
    assert more.detail["current_stop_index"] == 1
    assert more.detail["stopping_point_type"] == StopType.GIT_COMMIT
    assert more.detail["start_message_index"] == 2
    assert more.detail["has_more"] is False
    assert "Now the reader" in more.message
    stored = local_only.local.load()
    assert stored.replay_metadata.current_stop_index == 1
    assert "Now the reader" in stored.conversation_replay

    done = local_only.load_more()
    assert done.success
    assert done.message == "No earlier stopping points"
    assert done.detail["has_more"] is False


def test_load_more_with_explicit_index_and_budget(local_only: ContextEngine, paged_transcript: Path) -> None:
    local_only.save("s1", "Parser work", transcript_path=paged_transcript)

    resp = local_only.load_more(stop_point_index=0, max_tokens=10)

    assert resp.success
    assert resp.detail["token_count"] <= 10


def test_load_more_needs_a_conversation(local_only: ContextEngine) -> None:
    assert not local_only.load_more().success

    local_only.save("s1", "no transcript")
    resp = local_only.load_more()

    assert not resp.success
    assert "No conversation" in resp.message


def test_replay_skips_an_empty_newest_window(local_only: ContextEngine, entries, write_transcript) -> None:
    path = write_transcript([
        entries.user("a"),
        entries.commit("first"),
        entries.user("b"),
        entries.commit("second"),
    ])

    local_only.save("s1", "x", transcript_path=path)

    meta = local_only.local.load().replay_metadata
    assert meta.current_stop_index == 1
    assert meta.start_message_index == 2


def test_remote_operations(engine: ContextEngine, local_only: ContextEngine, entries, write_transcript) -> None:
    assert not local_only.remote_summary().success
    assert not local_only.remote_segments().success

    path = write_transcript([entries.user("hello"), entries.assistant("hi")])
    engine.save("s1", "Shared work", transcript_path=path, save_remote=True)

    summary = engine.remote_summary()
    assert summary.success
    assert summary.message == "Shared work"

    segments = engine.remote_segments(limit=1)
    assert segments.detail["count"] == 1
    assert segments.detail["segments"][0]["content"] == "hello"


def test_list_locations(engine: ContextEngine) -> None:
    assert engine.list_locations().message == "No saved context in any location"

    engine.save("s1", "Local only")

    resp = engine.list_locations()
    assert resp.detail["local"]["session_id"] == "s1"
    assert resp.detail["remote"] is None


def test_format_context_mentions_earlier_history(local_only: ContextEngine, paged_transcript: Path) -> None:
    local_only.save("s1", "Parser work", key_files=["a.py"], active_tasks=["tests"], transcript_path=paged_transcript)

    text = format_context(local_only.local.load())

    assert "## Summary\nParser work" in text
    assert "- a.py" in text
    assert "## Recent Conversation" in text
    assert "load_more" in text


def test_close_releases_a_remote_client_it_built(tmp_path: Path, identify) -> None:
    config = KeeperConfig.for_project(tmp_path, remote_url="https://ctx.example")

    with ContextEngine(config, identify=identify) as engine:
        client = engine.remote
        assert not client._client.is_closed

    assert client._client.is_closed


def test_close_leaves_an_injected_remote_alone(engine: ContextEngine, fake_remote) -> None:
    engine.close()

    assert engine.remote is fake_remote
    assert fake_remote.healthy
