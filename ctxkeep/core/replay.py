"""
ctxkeep.core.replay — Stopping points and token-budgeted conversation replay.

A *stopping point* is a transcript position that reads like a natural pause:
a commit, a completed task, or a "done / moving on" remark.  The replay is a
condensed markdown rendering of everything after one of those pauses, capped
at a token budget.  Callers page backwards in time by asking for the next
older stopping point, reusing the list they were handed the first time.

  newest ─────────────────────────────────────────────────────── oldest
  stopping_points[0]   stopping_points[1]   stopping_points[2]   …
  window for index 0 ⊂ window for index 1 ⊂ window for index 2
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Sequence, assert_never

from ctxkeep.core.models import (
    AnyEntry,
    AssistantEntry,
    FileHistorySnapshotEntry,
    ProgressEntry,
    ReplayMetadata,
    StoppingPoint,
    StopType,
    SummaryEntry,
    SystemEntry,
    TextBlock,
    ToolUseBlock,
    UserEntry,
    entry_text,
)

logger = logging.getLogger("ctxkeep.replay")

DEFAULT_MAX_TOKENS = 50_000
MAX_MESSAGE_CHARS = 500
MAX_COMMAND_CHARS = 50

REPLAY_HEADER = "## Recent Conversation\n\n"
ENTRY_SEPARATOR = "\n\n"
TOOL_RESULTS_PLACEHOLDER = "[tool results]"

SHELL_TOOLS = frozenset({"Bash", "bash", "shell", "Shell"})
TASK_UPDATE_TOOL = "TaskUpdate"

# Value of a git global option: bare word, or quoted segments glued together
_OPT_VALUE = r"""(?:[^\s"']|"[^"]*"|'[^']*')+"""

_GIT_COMMIT = re.compile(
    r"""(?:^|[\s;&|()`"'])git"""
    r"(?:\s+(?:-C|-c|--git-dir|--work-tree|--namespace)(?:\s+|=)" + _OPT_VALUE
    + r"|\s+--?[\w-]+(?:=" + _OPT_VALUE + r")?)*"
    r"\s+commit(?![\w-])"
)

COMPLETION_PATTERNS = (
    re.compile(r"\b(?:done|complete|completed|finished)\b", re.IGNORECASE),
    re.compile(r"\b(?:moving on|let['’]s work on|next up|now let['’]s)\b", re.IGNORECASE),
)


def estimate_tokens(text: str) -> int:
    """~1 token per 4 characters; floor, so the empty string costs nothing."""
    return len(text) // 4


# ---------------------------------------------------------------------------
# Stopping-point classification
# ---------------------------------------------------------------------------

def _tool_uses(entry: AssistantEntry) -> list[ToolUseBlock]:
    return [b for b in entry.message.content if isinstance(b, ToolUseBlock)]


def _tool_input(block: ToolUseBlock) -> dict[str, Any]:
    return block.input if isinstance(block.input, dict) else {}


def is_git_commit(entry: AnyEntry) -> bool:
    if not isinstance(entry, AssistantEntry):
        return False
    for block in _tool_uses(entry):
        if block.name in SHELL_TOOLS:
            command = _tool_input(block).get("command")
            if isinstance(command, str) and _GIT_COMMIT.search(command):
                return True
    return False


def is_task_completion(entry: AnyEntry) -> bool:
    if not isinstance(entry, AssistantEntry):
        return False
    return any(
        block.name == TASK_UPDATE_TOOL and _tool_input(block).get("status") == "completed"
        for block in _tool_uses(entry)
    )


def is_semantic_marker(entry: AnyEntry) -> bool:
    if not isinstance(entry, AssistantEntry):
        return False
    text = entry_text(entry)
    return any(p.search(text) for p in COMPLETION_PATTERNS)


def classify(entry: AnyEntry) -> StopType | None:
    """First matching rule wins; an entry is never double-classified."""
    if is_git_commit(entry):
        return StopType.GIT_COMMIT
    if is_task_completion(entry):
        return StopType.TASK_COMPLETION
    if is_semantic_marker(entry):
        return StopType.SEMANTIC_MARKER
    return None


def find_stopping_points(transcript: Sequence[AnyEntry]) -> list[StoppingPoint]:
    """All stopping points, newest first."""
    points: list[StoppingPoint] = []
    for index in range(len(transcript) - 1, -1, -1):
        kind = classify(transcript[index])
        if kind is not None:
            points.append(StoppingPoint(index=index, type=kind))
    logger.debug("Found %d stopping points in %d entries", len(points), len(transcript))
    return points


def has_earlier_stop(stopping_points: Sequence[StoppingPoint], stop_point_index: int) -> bool:
    """True when *stop_point_index* names a stopping point that exists."""
    return 0 <= stop_point_index < len(stopping_points)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def format_tool_use(block: ToolUseBlock) -> str:
    args = _tool_input(block)
    name = block.name

    def arg(key: str) -> str:
        value = args.get(key)
        return "" if value is None else str(value)

    if name in SHELL_TOOLS:
        return f"[{name}: {truncate(arg('command'), MAX_COMMAND_CHARS)}]"
    if name in ("Read", "Edit", "Write", "MultiEdit"):
        return f"[{name}: {arg('file_path')}]"
    if name == "NotebookEdit":
        return f"[{name}: {arg('notebook_path') or arg('file_path')}]"
    if name in ("Glob", "Grep"):
        return f"[{name}: {arg('pattern')}]"
    if name == "Task":
        return f"[{name}: {arg('description')}]"
    if name == "WebFetch":
        return f"[{name}: {arg('url')}]"
    if name == "WebSearch":
        return f"[{name}: {arg('query')}]"
    return f"[{name}]"


def format_entry(entry: AnyEntry) -> str:
    """Render one entry; the empty string means "drop from the replay"."""
    if isinstance(entry, UserEntry):
        content = entry.message.content
        if isinstance(content, str):
            text = content
        else:
            text = "\n".join(b.text for b in content if isinstance(b, TextBlock)) or TOOL_RESULTS_PLACEHOLDER
        return f"User: {truncate(text, MAX_MESSAGE_CHARS)}"
    elif isinstance(entry, AssistantEntry):
        text = entry_text(entry)
        tools = [format_tool_use(b) for b in _tool_uses(entry)]
        if not text and not tools:
            return ""
        line = "Assistant:"
        if text:
            line += " " + truncate(text, MAX_MESSAGE_CHARS)
        for tool in tools:
            line += "\n- " + tool
        return line
    elif isinstance(entry, (SummaryEntry, SystemEntry, ProgressEntry, FileHistorySnapshotEntry)):
        return ""
    else:
        assert_never(entry)


def assemble(lines: Sequence[str]) -> str:
    if not lines:
        return ""
    return REPLAY_HEADER + ENTRY_SEPARATOR.join(lines)


def _assembled_length(chars: int, count: int) -> int:
    """Length of ``assemble`` over *count* lines totalling *chars* characters."""
    if count == 0:
        return 0
    return len(REPLAY_HEADER) + chars + len(ENTRY_SEPARATOR) * (count - 1)


# ---------------------------------------------------------------------------
# Replay generation
# ---------------------------------------------------------------------------

@dataclass
class ReplayResult:
    replay: str = ""
    token_count: int = 0
    message_count: int = 0
    stopping_point_type: StopType | None = None
    all_stopping_points: list[StoppingPoint] = field(default_factory=list)
    current_stop_index: int = -1
    start_message_index: int = -1

    @property
    def is_empty(self) -> bool:
        return not self.replay

    def to_metadata(self, generated_at: int) -> ReplayMetadata:
        return ReplayMetadata(
            token_count=self.token_count,
            message_count=self.message_count,
            stopping_point_type=self.stopping_point_type,
            generated_at=generated_at,
            all_stopping_points=list(self.all_stopping_points),
            current_stop_index=self.current_stop_index,
            start_message_index=self.start_message_index,
        )


def generate_replay(
    transcript: Sequence[AnyEntry],
    max_tokens: int = DEFAULT_MAX_TOKENS,
    stop_point_index: int = 0,
    stopping_points: Sequence[StoppingPoint] | None = None,
) -> ReplayResult:
    """
    Build the replay window anchored at ``stopping_points[stop_point_index]``.

    Anchored windows run forward from the entry after the anchor; an entry
    that would push the assembled replay over *max_tokens* ends the window
    and is excluded whole.  Without a valid anchor the window grows backward
    from the newest entry under the same rule and reports ``token_budget``.

    Pass the ``all_stopping_points`` of an earlier result back in to page
    without re-scanning.
    """
    if not transcript:
        return ReplayResult()

    points = list(stopping_points) if stopping_points is not None else find_stopping_points(transcript)
    anchored = has_earlier_stop(points, stop_point_index)

    included: list[int] = []
    lines: list[str] = []
    chars = 0

    def try_add(index: int, prepend: bool) -> bool:
        nonlocal chars
        line = format_entry(transcript[index])
        if line:
            cost = _assembled_length(chars + len(line), len(lines) + 1) // 4
            if cost > max_tokens:
                return False
            chars += len(line)
            if prepend:
                lines.insert(0, line)
            else:
                lines.append(line)
        if prepend:
            included.insert(0, index)
        else:
            included.append(index)
        return True

    if anchored:
        anchor = points[stop_point_index]
        stop_type: StopType | None = anchor.type
        current = stop_point_index
        for index in range(anchor.index + 1, len(transcript)):
            if not try_add(index, prepend=False):
                break
    else:
        stop_type = StopType.TOKEN_BUDGET
        current = -1
        for index in range(len(transcript) - 1, -1, -1):
            if not try_add(index, prepend=True):
                break

    replay = assemble(lines)
    result = ReplayResult(
        replay=replay,
        token_count=estimate_tokens(replay),
        message_count=len(included),
        stopping_point_type=stop_type,
        all_stopping_points=points,
        current_stop_index=current,
        start_message_index=included[0] if included else -1,
    )
    logger.debug(
        "Replay: %d entries, %d tokens, stop=%s (index %d)",
        result.message_count, result.token_count, result.stopping_point_type, result.current_stop_index,
    )
    return result
