from __future__ import annotations

import os
from pathlib import Path

import pytest

from ctxkeep.core.errors import NotFound, ValidationFailed
from ctxkeep.core.transcript import (
    discover_transcript_path,
    extract_file_references,
    extract_tool_history,
    host_project_dirname,
    latest_summary,
    read_transcript,
    transcript_segments,
)


def test_read_transcript_skips_malformed_and_unknown_lines(entries, write_transcript) -> None:
    path = write_transcript(
        [entries.user("hello"), entries.assistant("hi there")],
        extra_lines=["", "{not json", '{"type": "telemetry", "x": 1}', '{"type": "summary", "summary": "Recap"}'],
    )

    conversation = read_transcript(path)

    assert conversation.message_count == 3
    assert [e.type for e in conversation.messages] == ["user", "assistant", "summary"]
    assert conversation.token_estimate > 0


def test_read_transcript_missing_file(tmp_path: Path) -> None:
    with pytest.raises(NotFound):
        read_transcript(tmp_path / "nope.jsonl")


def test_file_references_from_text_and_tools(entries, write_transcript) -> None:
    path = write_transcript([
        entries.user("Please look at `src/ctx/app.py` and `README.md`"),
        entries.assistant("", ("Edit", {"file_path": "src/ctx/app.py"}), ("Write", {"file_path": "docs/usage.md"})),
        entries.assistant("Also `not a path` here"),
    ])

    files = extract_file_references(read_transcript(path))

    assert files == ["src/ctx/app.py", "README.md", "docs/usage.md"]


def test_tool_history_marks_failed_results(entries, write_transcript) -> None:
    ok = entries.assistant("", ("Read", {"file_path": "a.py"}))
    bad = entries.assistant("", ("Bash", {"command": "make"}))
    failed_id = bad.message.content[0].id
    path = write_transcript([ok, bad, entries.tool_result(failed_id, is_error=True)])

    history = extract_tool_history(read_transcript(path), now=123)

    assert [(t.tool_name, t.success) for t in history] == [("Read", True), ("Bash", False)]
    assert all(t.timestamp == 123 for t in history)


def test_latest_summary_takes_the_newest(entries, write_transcript) -> None:
    path = write_transcript([entries.summary("first"), entries.user("x"), entries.summary("second")])

    assert latest_summary(read_transcript(path)) == "second"


def test_segments_paging_and_filtering(entries, write_transcript) -> None:
    path = write_transcript([
        entries.user("q1"),
        entries.assistant("a1"),
        entries.summary("meta"),
        entries.user("q2"),
        entries.assistant("a2"),
    ])
    conversation = read_transcript(path)

    page = transcript_segments(conversation, start_index=1, limit=2)
    users = transcript_segments(conversation, message_type="user")

    assert [(s.index, s.type, s.content) for s in page] == [(1, "assistant", "a1"), (2, "summary", "meta")]
    assert [s.index for s in users] == [0, 3]
    with pytest.raises(ValidationFailed):
        transcript_segments(conversation, message_type="system")


def test_discover_transcript_path_picks_newest(tmp_path: Path) -> None:
    project = tmp_path / "work" / "my_repo"
    home = tmp_path / "home"
    folder = home / ".claude" / "projects" / host_project_dirname(project)
    folder.mkdir(parents=True)
    old = folder / "old.jsonl"
    new = folder / "new.jsonl"
    old.write_text("{}\n")
    new.write_text("{}\n")
    os.utime(old, (1_000, 1_000))
    os.utime(new, (2_000, 2_000))

    assert discover_transcript_path(project, home=home) == new
    assert discover_transcript_path(tmp_path / "elsewhere", home=home) is None


def test_host_project_dirname() -> None:
    assert host_project_dirname(Path("/home/me/my_repo.v2")) == "-home-me-my-repo-v2"
