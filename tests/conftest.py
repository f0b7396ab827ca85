from __future__ import annotations

import itertools
import json
from pathlib import Path
from typing import Any, Callable

import pytest

from ctxkeep.core.errors import NetworkUnreachable, RemoteNotFound
from ctxkeep.core.models import (
    AssistantEntry,
    AssistantMessage,
    ContextRecord,
    ProjectIdentity,
    RemoteSummary,
    SummaryEntry,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    TranscriptSegment,
    UserEntry,
    UserMessage,
)
from ctxkeep.core.transcript import transcript_segments

T0 = 1_700_000_000_000
PROJECT_HASH = "0123456789abcdef"


@pytest.fixture(autouse=True)
def _isolate_user_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for var in (
        "CTXKEEP_REMOTE_URL",
        "CTXKEEP_API_KEY",
        "CTXKEEP_REMOTE_TIMEOUT",
        "CTXKEEP_AUTO_LOAD",
        "CTXKEEP_WORKSPACE",
        "CTXKEEP_SERVER_STORAGE",
        "CTXKEEP_SERVER_API_KEYS",
    ):
        monkeypatch.delenv(var, raising=False)


class Entries:
    """Small builders for transcript entries."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)

    def user(self, text: str) -> UserEntry:
        return UserEntry(message=UserMessage(content=text))

    def assistant(self, text: str = "", *tools: tuple[str, dict[str, Any]]) -> AssistantEntry:
        content: list[Any] = [TextBlock(text=text)] if text else []
        for name, args in tools:
            content.append(ToolUseBlock(id=f"toolu_{next(self._ids)}", name=name, input=args))
        return AssistantEntry(message=AssistantMessage(content=content))

    def tool_result(self, tool_use_id: str, is_error: bool = False) -> UserEntry:
        return UserEntry(message=UserMessage(content=[
            ToolResultBlock(tool_use_id=tool_use_id, content="output", is_error=is_error),
        ]))

    def commit(self, message: str = "wip") -> AssistantEntry:
        return self.assistant("", ("Bash", {"command": f'git commit -m "{message}"'}))

    def task_completed(self) -> AssistantEntry:
        return self.assistant("", ("TaskUpdate", {"taskId": "1", "status": "completed"}))

    def summary(self, text: str) -> SummaryEntry:
        return SummaryEntry(summary=text)


@pytest.fixture
def entries() -> Entries:
    return Entries()


@pytest.fixture
def write_transcript(tmp_path: Path) -> Callable[..., Path]:
    def _write(items: list[Any], name: str = "session.jsonl", extra_lines: list[str] | None = None) -> Path:
        path = tmp_path / name
        lines = [json.dumps(e.model_dump(mode="json", exclude_none=True)) for e in items]
        lines.extend(extra_lines or [])
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path
    return _write


@pytest.fixture
def make_record() -> Callable[..., ContextRecord]:
    def _make(session_id: str = "session-1", summary: str = "Refactoring the parser", at: int = T0, **fields: Any):
        return ContextRecord.new(session_id, summary, at=at, **fields)
    return _make


def fixed_identity(project_dir: Path) -> ProjectIdentity:
    return ProjectIdentity(project_hash=PROJECT_HASH, project_name="demo", local_path=str(project_dir))


@pytest.fixture
def identify() -> Callable[[Path], ProjectIdentity]:
    return fixed_identity


class FakeRemote:
    """In-memory stand-in for RemoteContextClient."""

    def __init__(self) -> None:
        self.records: dict[str, ContextRecord] = {}
        self.healthy = True
        self.fail_saves = False
        self.saved: list[str] = []

    def health_check(self) -> bool:
        return self.healthy

    def exists(self, project_hash: str) -> bool:
        return project_hash in self.records

    def load(self, project_hash: str) -> ContextRecord:
        return self.records[project_hash]

    def save(self, project_hash: str, record: ContextRecord) -> None:
        if self.fail_saves:
            raise NetworkUnreachable("Cannot reach remote server")
        self.records[project_hash] = record
        self.saved.append(project_hash)

    def delete(self, project_hash: str) -> None:
        self.records.pop(project_hash, None)

    def summary(self, project_hash: str) -> RemoteSummary:
        if project_hash not in self.records:
            raise RemoteNotFound("Context not found on remote server")
        record = self.records[project_hash]
        return RemoteSummary(
            project_hash=project_hash,
            session_id=record.session_id,
            summary=record.summary,
            updated_at=record.updated_at,
            created_at=record.created_at,
            has_conversation=record.conversation is not None,
        )

    def segments(
        self, project_hash: str, start_index: int = 0, limit: int = 20, message_type: str = "all",
    ) -> list[TranscriptSegment]:
        record = self.records[project_hash]
        if record.conversation is None:
            return []
        return transcript_segments(record.conversation, start_index, limit, message_type)


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()
