"""
ctxkeep.core.models — Pydantic schemas for persisted assistant context.

The unit of persistence is the :class:`ContextRecord`.  Optional fields use
``None`` as the explicit "absent" marker and are written with
``exclude_none`` so an absent field stays absent after a save/load round
trip.

Transcript entries form a closed tagged union over ``type``; pydantic rejects
unknown tags at parse time.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any, Literal, Union, assert_never

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, computed_field, field_validator

from ctxkeep.core.errors import ConfigInvalid, ValidationFailed

logger = logging.getLogger("ctxkeep.models")

# Per-project storage directory (analogous to ``.git/``)
STORE_DIRNAME = ".ctxkeep"

# Schema-internal record layout version; distinct from CONTENT_VERSION.
RECORD_FORMAT_VERSION = 1

# Semantic version of the payload shape, oldest first.
CONTENT_VERSIONS: tuple[str, ...] = ("1.0.0", "2.0.0", "2.1.0")
CONTENT_VERSION = CONTENT_VERSIONS[-1]

SUMMARY_PREVIEW_CHARS = 200


def now_ms() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Cross-platform directory helpers
# ---------------------------------------------------------------------------

def get_global_config_dir() -> Path:
    """
    Return the user-level config directory for ctxkeep, created if needed.

    - Windows:  %LOCALAPPDATA%\\ctxkeep
    - macOS:    ~/Library/Application Support/ctxkeep
    - Linux:    $XDG_CONFIG_HOME/ctxkeep  (default ~/.config/ctxkeep)
    """
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    d = base / "ctxkeep"
    d.mkdir(parents=True, exist_ok=True)
    return d


def discover_project_root(start: Path | None = None) -> Path | None:
    """
    Walk up from *start* (default: CWD) looking for a ``.ctxkeep/`` or
    ``.git/`` directory.  Returns the project root, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        if (current / STORE_DIRNAME).is_dir() or (current / ".git").exists():
            return current
        parent = current.parent
        if parent == current:
            break
        current = parent
    return None


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class StopType(StrEnum):
    """Why a replay window starts where it does."""
    GIT_COMMIT = "git_commit"
    TASK_COMPLETION = "task_completion"
    SEMANTIC_MARKER = "semantic_marker"
    TOKEN_BUDGET = "token_budget"       # Reported only; never a stopping point


class Source(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"
    NONE = "none"


class CompactionTrigger(StrEnum):
    MANUAL = "manual"
    AUTO = "auto"
    THRESHOLD = "threshold"
    MEMORY_PRESSURE = "memory_pressure"


# ---------------------------------------------------------------------------
# Transcript entries (closed tagged union)
# ---------------------------------------------------------------------------

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Any = None


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Any = None
    is_error: bool | None = None


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]

UserContentBlock = Annotated[
    Union[ToolResultBlock, TextBlock],
    Field(discriminator="type"),
]


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    content: str | list[UserContentBlock]


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: list[ContentBlock] = Field(default_factory=list)


class UserEntry(BaseModel):
    type: Literal["user"] = "user"
    message: UserMessage
    uuid: str | None = None
    timestamp: str | None = None


class AssistantEntry(BaseModel):
    type: Literal["assistant"] = "assistant"
    message: AssistantMessage
    uuid: str | None = None
    timestamp: str | None = None


class SummaryEntry(BaseModel):
    type: Literal["summary"] = "summary"
    summary: str


class SystemEntry(BaseModel):
    type: Literal["system"] = "system"
    content: str | None = None
    subtype: str | None = None


class ProgressEntry(BaseModel):
    type: Literal["progress"] = "progress"
    data: Any = None


class FileHistorySnapshotEntry(BaseModel):
    type: Literal["file-history-snapshot"] = "file-history-snapshot"
    snapshot: Any = None


AnyEntry = Union[
    UserEntry,
    AssistantEntry,
    SummaryEntry,
    SystemEntry,
    ProgressEntry,
    FileHistorySnapshotEntry,
]

TranscriptEntry = Annotated[AnyEntry, Field(discriminator="type")]

_ENTRY_ADAPTER: TypeAdapter[Any] = TypeAdapter(TranscriptEntry)


def parse_transcript_entry(data: Any) -> AnyEntry:
    """Validate one raw transcript object.  Raises ``pydantic.ValidationError``
    for unknown ``type`` tags or malformed payloads."""
    return _ENTRY_ADAPTER.validate_python(data)


def entry_text(entry: AnyEntry) -> str:
    """Plain text carried by an entry (thinking and tool payloads excluded)."""
    if isinstance(entry, UserEntry):
        content = entry.message.content
        if isinstance(content, str):
            return content
        return "\n".join(b.text for b in content if isinstance(b, TextBlock))
    elif isinstance(entry, AssistantEntry):
        return "\n".join(b.text for b in entry.message.content if isinstance(b, TextBlock))
    elif isinstance(entry, SummaryEntry):
        return entry.summary
    elif isinstance(entry, (SystemEntry, ProgressEntry, FileHistorySnapshotEntry)):
        return ""
    else:
        assert_never(entry)


# ---------------------------------------------------------------------------
# Context record payload types
# ---------------------------------------------------------------------------

class Conversation(BaseModel):
    """Parsed transcript embedded in a record."""
    messages: list[TranscriptEntry] = Field(default_factory=list)
    message_count: int = 0
    token_estimate: int | None = None


class FileEntry(BaseModel):
    path: str
    last_accessed: int
    access_count: int = 1
    content_hash: str | None = None


class ToolExecution(BaseModel):
    tool_name: str
    timestamp: int
    success: bool = True
    duration_ms: int | None = None


class StoppingPoint(BaseModel):
    """A transcript position judged to be a natural pause."""
    index: int
    type: StopType

    @field_validator("type")
    @classmethod
    def _not_budget(cls, v: StopType) -> StopType:
        if v == StopType.TOKEN_BUDGET:
            raise ValueError("token_budget is not a stopping point")
        return v


class ReplayMetadata(BaseModel):
    token_count: int
    message_count: int
    stopping_point_type: StopType | None = None
    generated_at: int
    all_stopping_points: list[StoppingPoint] | None = None
    current_stop_index: int | None = None
    start_message_index: int | None = None


class ContextRecord(BaseModel):
    """
    The persisted unit: session summary, file/tool history and replay state.

    ``created_at`` is fixed at first write; :meth:`updated` moves
    ``updated_at`` forward and never backwards.
    """
    format_version: int = RECORD_FORMAT_VERSION
    content_version: str = CONTENT_VERSION
    created_at: int
    updated_at: int
    session_id: str
    summary: str = ""

    # v1.0.0 fields
    transcript_excerpt: str | None = None
    key_files: list[str] | None = None
    active_tasks: list[str] | None = None

    # v2.0.0 fields
    conversation: Conversation | None = None
    files: list[FileEntry] | None = None
    tool_history: list[ToolExecution] | None = None
    preferences: dict[str, Any] | None = None
    is_pre_compaction_snapshot: bool | None = None
    compaction_trigger: CompactionTrigger | None = None
    pre_compaction_token_count: int | None = None

    # v2.1.0 fields
    conversation_replay: str | None = None
    replay_metadata: ReplayMetadata | None = None

    @classmethod
    def new(cls, session_id: str, summary: str = "", *, at: int | None = None, **fields: Any) -> "ContextRecord":
        ts = at if at is not None else now_ms()
        return cls(created_at=ts, updated_at=ts, session_id=session_id, summary=summary, **fields)

    def updated(self, *, at: int | None = None, **changes: Any) -> "ContextRecord":
        """Copy with *changes* applied; ``created_at`` is preserved."""
        changes.pop("created_at", None)
        ts = at if at is not None else now_ms()
        data = self.to_wire()
        for key, value in changes.items():
            data[key] = value
        data["updated_at"] = max(ts, self.updated_at)
        return ContextRecord.model_validate(data)

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict with absent optionals omitted."""
        return self.model_dump(mode="json", exclude_none=True)

    def to_json_bytes(self) -> bytes:
        return json.dumps(self.to_wire(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_wire(cls, data: Any) -> "ContextRecord":
        """Migrate then validate a decoded JSON object.

        Raises :class:`ValidationFailed` for unknown versions or a payload
        that does not match the schema.
        """
        if not isinstance(data, dict):
            raise ValidationFailed("Context record must be a JSON object")
        migrated = migrate_record(data)
        try:
            return cls.model_validate(migrated)
        except ValueError as exc:
            raise ValidationFailed(f"Invalid context record: {exc}") from exc


def migrate_record(data: dict[str, Any]) -> dict[str, Any]:
    """
    Upgrade a raw record from any supported ``content_version`` to the
    current one.

    Every version so far only *added* optional fields, so migration stamps
    the current version and leaves the newer fields unset.  Records written
    before versioning carry no ``content_version`` and are treated as the
    oldest shape.  Idempotent.
    """
    version = data.get("content_version", CONTENT_VERSIONS[0])
    if version not in CONTENT_VERSIONS:
        raise ValidationFailed(
            f"Unsupported content version: {version}",
            content_version=version,
            supported=list(CONTENT_VERSIONS),
        )
    if version == CONTENT_VERSION:
        return data
    logger.debug("Migrating context record %s -> %s", version, CONTENT_VERSION)
    migrated = dict(data)
    migrated["content_version"] = CONTENT_VERSION
    migrated.setdefault("format_version", RECORD_FORMAT_VERSION)
    return migrated


class ContextMetadata(BaseModel):
    """Local sidecar recording what the last enrichment used."""
    directory: str
    directory_hash: str
    last_session_id: str
    session_count: int = 1
    last_saved_at: int
    transcript_path: str | None = None


class Location(BaseModel):
    """Preview of a stored record, cheap enough to show before loading."""
    source: Source
    updated_at: int
    session_id: str
    summary_preview: str

    @classmethod
    def of(cls, source: Source, record: ContextRecord) -> "Location":
        return cls(
            source=source,
            updated_at=record.updated_at,
            session_id=record.session_id,
            summary_preview=record.summary[:SUMMARY_PREVIEW_CHARS],
        )


class ProjectIdentity(BaseModel):
    """Stable project key; computed per request and never stored in a record."""
    project_hash: str
    project_name: str
    remote_url: str | None = None
    local_path: str | None = None


class RemoteSummary(BaseModel):
    """Remote-side preview of a stored record (``GET …/summary``)."""
    project_hash: str
    session_id: str
    summary: str
    updated_at: int
    created_at: int
    has_conversation: bool = False
    message_count: int | None = None
    key_files: list[str] | None = None
    active_tasks: list[str] | None = None


class TranscriptSegment(BaseModel):
    index: int
    type: str
    content: str
    timestamp: str | None = None


# ---------------------------------------------------------------------------
# Host hook input
# ---------------------------------------------------------------------------

class HookInput(BaseModel):
    """JSON the host passes to ``ctxkeep hook`` on stdin."""
    session_id: str
    transcript_path: str
    cwd: str
    hook_event_name: Literal["SessionStart", "SessionEnd", "PreCompact"]
    permission_mode: str | None = None
    model: str | None = None
    source: Literal["startup", "resume", "compact", "clear"] | None = None
    trigger: Literal["manual", "auto"] | None = None
    custom_instructions: str | None = None


# ---------------------------------------------------------------------------
# Operation responses
# ---------------------------------------------------------------------------

class OperationResponse(BaseModel):
    """Unified response envelope for all exposed operations."""
    success: bool
    operation: str
    message: str = ""
    detail: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class GlobalConfig(BaseModel):
    """
    User-level defaults stored in the global config directory as
    ``config.json`` so every project inherits the user's remote settings.
    """
    remote_url: str = ""
    api_key: str = ""
    auto_load_on_start: bool = False

    @classmethod
    def load(cls) -> "GlobalConfig":
        """Load from disk, returning defaults if the file doesn't exist."""
        path = get_global_config_dir() / "config.json"
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                return cls(**data)
            except (OSError, ValueError, TypeError) as exc:
                logger.warning("Ignoring unreadable global config %s: %s", path, exc)
                return cls()
        return cls()

    def save(self) -> Path:
        """Persist to disk. Returns the file path."""
        path = get_global_config_dir() / "config.json"
        path.write_text(
            json.dumps(self.model_dump(), indent=2),
            encoding="utf-8",
        )
        return path


# Keys a project's .ctxkeep/config.json may set
PROJECT_CONFIG_KEYS = (
    "remote_url",
    "api_key",
    "remote_timeout",
    "retry_attempts",
    "max_replay_percent",
    "context_window_size",
    "auto_load_on_start",
    "same_session_window_ms",
)


class KeeperConfig(BaseModel):
    """Runtime configuration for one project."""
    project_root: Path = Path(".")
    store_dir: Path = Path(STORE_DIRNAME)

    # Remote store
    remote_url: str = ""
    api_key: str = ""
    remote_timeout: float = 30.0
    retry_attempts: int = 3

    # Replay budget
    max_replay_percent: int = 50
    context_window_size: int = 100_000

    # Session-start policy: True loads silently, False surfaces a preview
    # and waits for an explicit load.
    auto_load_on_start: bool = False

    same_session_window_ms: int = 60_000

    @field_validator("max_replay_percent")
    @classmethod
    def _clamp_percent(cls, v: int) -> int:
        return min(max(v, 1), 90)

    @field_validator("context_window_size")
    @classmethod
    def _clamp_window(cls, v: int) -> int:
        return max(v, 10_000)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def max_replay_tokens(self) -> int:
        return self.context_window_size * self.max_replay_percent // 100

    @property
    def remote_enabled(self) -> bool:
        return bool(self.remote_url)

    @property
    def config_path(self) -> Path:
        return self.store_dir / "config.json"

    @staticmethod
    def _read_project_file(store_dir: Path) -> dict[str, Any]:
        path = store_dir / "config.json"
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable project config %s: %s", path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring project config %s: expected an object", path)
            return {}
        return {k: v for k, v in data.items() if k in PROJECT_CONFIG_KEYS}

    @classmethod
    def locate(cls, project_root: Path | None = None) -> "KeeperConfig":
        """Defaults anchored to the project root; no config source is read."""
        if project_root is None:
            env_ws = os.getenv("CTXKEEP_WORKSPACE")
            if env_ws:
                project_root = Path(env_ws)
        if project_root is None:
            project_root = discover_project_root()
        if project_root is None:
            project_root = Path.cwd()
        project_root = Path(project_root).resolve()
        return cls(project_root=project_root, store_dir=project_root / STORE_DIRNAME)

    @classmethod
    def for_project(cls, project_root: Path | None = None, **overrides: Any) -> "KeeperConfig":
        """
        Build a config anchored to a specific project directory.

        Resolution order (highest priority first):
          1. Explicit ``overrides`` keyword arguments
          2. Environment variables (CTXKEEP_REMOTE_URL, CTXKEEP_API_KEY, …)
          3. Project config (<root>/.ctxkeep/config.json)
          4. Global config (~/.config/ctxkeep/config.json)
          5. Built-in defaults

        If *project_root* is ``None``, ``CTXKEEP_WORKSPACE`` and then
        :func:`discover_project_root` are consulted before falling back to CWD.

        Raises :class:`ConfigInvalid` when a config source holds a badly typed
        value.
        """
        located = cls.locate(project_root)
        project_root, store_dir = located.project_root, located.store_dir

        gc = GlobalConfig.load()
        values: dict[str, Any] = {
            "remote_url": gc.remote_url,
            "api_key": gc.api_key,
            "auto_load_on_start": gc.auto_load_on_start,
        }
        values.update(cls._read_project_file(store_dir))

        env_map = {
            "CTXKEEP_REMOTE_URL": "remote_url",
            "CTXKEEP_API_KEY": "api_key",
            "CTXKEEP_REMOTE_TIMEOUT": "remote_timeout",
            "CTXKEEP_AUTO_LOAD": "auto_load_on_start",
        }
        for env_var, key in env_map.items():
            raw = os.getenv(env_var)
            if raw is None:
                continue
            if key == "auto_load_on_start":
                values[key] = raw.lower() in ("1", "true", "yes")
            elif key == "remote_timeout":
                try:
                    values[key] = float(raw)
                except ValueError as exc:
                    raise ConfigInvalid(f"Invalid {env_var}: {raw!r} is not a number") from exc
            else:
                values[key] = raw

        values.update(overrides)
        try:
            return cls(project_root=project_root, store_dir=store_dir, **values)
        except ValidationError as exc:
            raise ConfigInvalid(f"Invalid config value: {exc}") from exc

    def save_project_config(self, **changes: Any) -> Path:
        """Merge *changes* into ``.ctxkeep/config.json`` (validated) and write it."""
        unknown = set(changes) - set(PROJECT_CONFIG_KEYS)
        if unknown:
            raise ConfigInvalid(f"Unknown config key(s): {', '.join(sorted(unknown))}")
        merged = self._read_project_file(self.store_dir)
        merged.update(changes)
        try:
            validated = KeeperConfig(**merged)
        except ValidationError as exc:
            raise ConfigInvalid(f"Invalid config value: {exc}") from exc
        out = {k: getattr(validated, k) for k in merged}
        self.store_dir.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(json.dumps(out, indent=2), encoding="utf-8")
        return self.config_path
