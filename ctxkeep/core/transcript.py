"""
ctxkeep.core.transcript — Reader for the host's JSONL session transcripts.

One JSON object per line.  Lines that fail to parse, or that carry an entry
type this package does not model, are skipped with a warning so that a single
bad line never hides the rest of the session.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from pydantic import ValidationError

from ctxkeep.core.errors import IoFailure, NotFound, ValidationFailed
from ctxkeep.core.models import (
    AssistantEntry,
    Conversation,
    FileEntry,
    SummaryEntry,
    ToolExecution,
    ToolResultBlock,
    ToolUseBlock,
    TranscriptSegment,
    UserEntry,
    entry_text,
    now_ms,
    parse_transcript_entry,
)
from ctxkeep.core.replay import format_entry

logger = logging.getLogger("ctxkeep.transcript")

_BACKTICK_PATH = re.compile(r"`([^`\s]+\.[A-Za-z0-9]+)`")
_PATH_TOOLS = ("Read", "Edit", "Write", "MultiEdit")


def read_transcript(path: Path) -> Conversation:
    """Parse a transcript file into a :class:`Conversation`."""
    path = Path(path)
    if not path.is_file():
        raise NotFound("Transcript file not found", path=str(path))
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise IoFailure(f"Failed to read transcript: {exc}", path=str(path)) from exc

    messages = []
    chars = 0
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            entry = parse_transcript_entry(json.loads(line))
        except (ValueError, ValidationError) as exc:
            logger.warning("Skipping malformed transcript line %d in %s: %s", lineno, path.name, str(exc)[:100])
            continue
        messages.append(entry)
        chars += len(line)

    logger.info("Parsed transcript %s (%d entries)", path, len(messages))
    return Conversation(
        messages=messages,
        message_count=len(messages),
        token_estimate=chars // 4,
    )


def extract_file_references(conversation: Conversation) -> list[str]:
    """
    File paths mentioned in the conversation, in first-seen order.

    Sources are back-ticked paths in message text and the ``file_path``
    argument of file-editing tools.
    """
    seen: dict[str, None] = {}
    for entry in conversation.messages:
        for match in _BACKTICK_PATH.finditer(entry_text(entry)):
            seen.setdefault(match.group(1), None)
        if isinstance(entry, AssistantEntry):
            for block in entry.message.content:
                if isinstance(block, ToolUseBlock) and block.name in _PATH_TOOLS and isinstance(block.input, dict):
                    file_path = block.input.get("file_path")
                    if isinstance(file_path, str) and file_path:
                        seen.setdefault(file_path, None)
    return list(seen)


def file_entries(paths: list[str], at: int | None = None) -> list[FileEntry]:
    ts = at if at is not None else now_ms()
    return [FileEntry(path=p, last_accessed=ts) for p in paths]


def extract_tool_history(conversation: Conversation, now: int | None = None) -> list[ToolExecution]:
    """One :class:`ToolExecution` per tool invocation, oldest first.

    A tool counts as failed when its matching result is flagged ``is_error``.
    """
    ts = now if now is not None else now_ms()
    failed: set[str] = set()
    for entry in conversation.messages:
        if isinstance(entry, UserEntry) and not isinstance(entry.message.content, str):
            for block in entry.message.content:
                if isinstance(block, ToolResultBlock) and block.is_error:
                    failed.add(block.tool_use_id)

    history: list[ToolExecution] = []
    for entry in conversation.messages:
        if not isinstance(entry, AssistantEntry):
            continue
        for block in entry.message.content:
            if isinstance(block, ToolUseBlock):
                history.append(ToolExecution(
                    tool_name=block.name,
                    timestamp=ts,
                    success=block.id not in failed,
                ))
    return history


def latest_summary(conversation: Conversation) -> str | None:
    summary = None
    for entry in conversation.messages:
        if isinstance(entry, SummaryEntry):
            summary = entry.summary
    return summary


# ---------------------------------------------------------------------------
# Transcript discovery
# ---------------------------------------------------------------------------

def host_project_dirname(project_dir: Path) -> str:
    """``/home/me/repo`` → ``-home-me-repo`` (the host's per-project folder)."""
    return re.sub(r"[^A-Za-z0-9-]", "-", str(project_dir))


def discover_transcript_path(project_dir: Path, home: Path | None = None) -> Path | None:
    """Newest ``*.jsonl`` in the host's transcript folder for *project_dir*."""
    base = (home or Path.home()) / ".claude" / "projects" / host_project_dirname(Path(project_dir))
    if not base.is_dir():
        logger.debug("No transcript directory at %s", base)
        return None
    candidates = [p for p in base.glob("*.jsonl") if p.is_file()]
    if not candidates:
        return None
    newest = max(candidates, key=lambda p: p.stat().st_mtime)
    logger.info("Discovered transcript %s", newest)
    return newest


# ---------------------------------------------------------------------------
# Segments (paged, flattened view for remote browsing)
# ---------------------------------------------------------------------------

SEGMENT_TYPES = ("all", "user", "assistant")


def transcript_segments(
    conversation: Conversation,
    start_index: int = 0,
    limit: int = 20,
    message_type: str = "all",
) -> list[TranscriptSegment]:
    """
    Up to *limit* segments at or after transcript position *start_index*.

    Entries with no readable text are skipped; ``index`` is always the
    entry's position in the full transcript.
    """
    if message_type not in SEGMENT_TYPES:
        raise ValidationFailed(f"Unknown message type: {message_type}", allowed=list(SEGMENT_TYPES))
    segments: list[TranscriptSegment] = []
    for index, entry in enumerate(conversation.messages):
        if index < start_index:
            continue
        if len(segments) >= limit:
            break
        if message_type != "all" and entry.type != message_type:
            continue
        content = entry_text(entry) or format_entry(entry)
        if not content:
            continue
        segments.append(TranscriptSegment(
            index=index,
            type=entry.type,
            content=content,
            timestamp=getattr(entry, "timestamp", None),
        ))
    return segments
