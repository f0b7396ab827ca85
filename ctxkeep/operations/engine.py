"""
ctxkeep.operations.engine — The exposed context operations.

status, save, load, clear, load_more, list_locations, remote_summary and
remote_segments.  Every operation returns an ``OperationResponse``; store,
codec and network failures are reported in the envelope instead of raised.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ctxkeep.core.errors import ContextError, Corrupted, NotFound, PartialSaveError
from ctxkeep.core.models import (
    ContextMetadata,
    ContextRecord,
    KeeperConfig,
    OperationResponse,
    ProjectIdentity,
    Source,
    now_ms,
)
from ctxkeep.core.replay import find_stopping_points, generate_replay, has_earlier_stop
from ctxkeep.core.transcript import (
    discover_transcript_path,
    extract_file_references,
    extract_tool_history,
    file_entries,
    latest_summary,
    read_transcript,
)
from ctxkeep.operations.resolution import ContextResolver, Locations, RemoteStore
from ctxkeep.storage.local import LocalContextStore
from ctxkeep.storage.remote import RemoteContextClient
from ctxkeep.vcs.identity import compute_hash, identify_project

logger = logging.getLogger("ctxkeep.operations")

LOAD_SCOPES = ("auto", "local", "remote")


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="seconds")


def format_context(record: ContextRecord, title: str = "Project Context") -> str:
    """Markdown rendering of a record for the assistant to read."""
    lines = [
        f"# {title}",
        "",
        f"**Session ID:** {record.session_id}",
        f"**Created:** {_iso(record.created_at)}",
        f"**Updated:** {_iso(record.updated_at)}",
    ]
    if record.is_pre_compaction_snapshot:
        trigger = record.compaction_trigger or "auto"
        lines.append(f"**Snapshot:** taken before {trigger} compaction")
    lines += ["", "## Summary", record.summary or "_(no summary)_"]

    if record.key_files:
        lines += ["", "## Key Files"] + [f"- {f}" for f in record.key_files]
    if record.active_tasks:
        lines += ["", "## Active Tasks"] + [f"- {t}" for t in record.active_tasks]
    if record.conversation_replay:
        lines += ["", record.conversation_replay]
        meta = record.replay_metadata
        if meta is not None and meta.current_stop_index is not None and has_earlier_stop(
            meta.all_stopping_points or [], meta.current_stop_index + 1,
        ):
            lines += ["", "_Earlier conversation is available: call load_more._"]
    return "\n".join(lines)


def format_preview(locations: Locations) -> str:
    lines = ["# Saved Context Available", ""]
    for loc in (locations.local, locations.remote):
        if loc is None:
            continue
        lines += [
            f"## {loc.source.value.title()}",
            f"- **Session:** {loc.session_id}",
            f"- **Updated:** {_iso(loc.updated_at)}",
            f"- **Summary:** {loc.summary_preview}",
            "",
        ]
    return "\n".join(lines).rstrip()


class ContextEngine:
    """
    Owns the stores for one project and exposes the context operations.

    The remote client is built from *config* unless one is passed in.
    """

    def __init__(
        self,
        config: KeeperConfig,
        local: LocalContextStore | None = None,
        remote: RemoteStore | None = None,
        identify: Callable[[Path], ProjectIdentity] = identify_project,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config
        self.local = local or LocalContextStore(config.store_dir)
        self._owns_remote = remote is None
        self.remote = remote if remote is not None else RemoteContextClient.from_config(config)
        self.resolver = ContextResolver(
            self.local,
            self.remote,
            identify=identify,
            conflation_window_ms=config.same_session_window_ms,
        )
        self._identify = identify
        self._clock = clock

    @property
    def project_dir(self) -> Path:
        return self.config.project_root

    def close(self) -> None:
        """Close the remote client if this engine built it."""
        if self._owns_remote and isinstance(self.remote, RemoteContextClient):
            self.remote.close()

    def __enter__(self) -> "ContextEngine":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @staticmethod
    def _failure(operation: str, exc: ContextError) -> OperationResponse:
        logger.error("%s failed: %s", operation, exc.message)
        return OperationResponse(success=False, operation=operation, message=exc.message, detail=exc.to_dict())

    def existing_local(self) -> ContextRecord | None:
        try:
            return self.local.load()
        except NotFound:
            return None
        except Corrupted as exc:
            logger.error("Existing local context is unreadable: %s", exc.message)
            return None

    # ======================================================================
    # Metadata and enrichment
    # ======================================================================

    def record_session(self, session_id: str, transcript_path: str | None, count_session: bool = True) -> ContextMetadata:
        """Remember the session's transcript so a later save can enrich from it."""
        previous = self.local.load_metadata()
        count = previous.session_count if previous else 0
        if count_session or previous is None:
            count += 1
        directory = str(self.project_dir)
        metadata = ContextMetadata(
            directory=directory,
            directory_hash=compute_hash(directory),
            last_session_id=session_id,
            session_count=count,
            last_saved_at=self._clock(),
            transcript_path=transcript_path or (previous.transcript_path if previous else None),
        )
        self.local.save_metadata(metadata)
        return metadata

    def _transcript_path(self, explicit: str | Path | None) -> Path | None:
        if explicit:
            return Path(explicit)
        metadata = self.local.load_metadata()
        if metadata and metadata.transcript_path:
            return Path(metadata.transcript_path)
        return discover_transcript_path(self.project_dir)

    def enrich(self, record: ContextRecord, transcript_path: str | Path | None) -> ContextRecord:
        """
        Attach conversation, files, tool history and a fresh replay read
        from the transcript.  An unreadable transcript leaves *record* as is.
        """
        path = self._transcript_path(transcript_path)
        if path is None:
            return record
        try:
            conversation = read_transcript(path)
        except ContextError as exc:
            logger.warning("Failed to parse transcript %s for enrichment: %s", path, exc.message)
            return record

        now = self._clock()
        changes: dict[str, Any] = {"conversation": conversation}
        files = extract_file_references(conversation)
        if files:
            changes["files"] = file_entries(files, at=now)
        tools = extract_tool_history(conversation, now=now)
        if tools:
            changes["tool_history"] = tools
        if not record.summary:
            changes["summary"] = latest_summary(conversation) or ""

        replay = generate_replay(conversation.messages, max_tokens=self.config.max_replay_tokens)
        # A stop at the very end leaves an empty window; fall back to older ones
        while not replay.replay and has_earlier_stop(replay.all_stopping_points, replay.current_stop_index + 1):
            replay = generate_replay(
                conversation.messages,
                max_tokens=self.config.max_replay_tokens,
                stop_point_index=replay.current_stop_index + 1,
                stopping_points=replay.all_stopping_points,
            )
        if replay.replay:
            changes["conversation_replay"] = replay.replay
            changes["replay_metadata"] = replay.to_metadata(now)
        return record.updated(at=now, **changes)

    # ======================================================================
    # Operations
    # ======================================================================

    def status(self) -> OperationResponse:
        detail: dict[str, Any] = {
            "has_context": False,
            "context_path": str(self.local.context_path),
            "remote_configured": self.remote is not None,
        }
        try:
            record = self.local.load()
        except NotFound:
            return OperationResponse(success=True, operation="status", message="No saved context", detail=detail)
        except Corrupted as exc:
            logger.error("Local context is unreadable: %s", exc.message)
            detail["error"] = exc.to_dict()
            return OperationResponse(
                success=True, operation="status", message="Saved context is unreadable", detail=detail,
            )
        except ContextError as exc:
            return self._failure("status", exc)

        detail.update(
            has_context=True,
            session_id=record.session_id,
            summary_length=len(record.summary),
            content_version=record.content_version,
            created_at=record.created_at,
            updated_at=record.updated_at,
            has_conversation=record.conversation is not None,
            has_replay=bool(record.conversation_replay),
        )
        if record.replay_metadata is not None:
            meta = record.replay_metadata
            detail["stopping_points"] = len(meta.all_stopping_points or [])
            detail["current_stop_index"] = meta.current_stop_index
        metadata = self.local.load_metadata()
        if metadata is not None:
            detail["session_count"] = metadata.session_count
        return OperationResponse(
            success=True, operation="status",
            message=f"Context saved for session {record.session_id}",
            detail=detail,
        )

    def save(
        self,
        session_id: str,
        summary: str,
        key_files: list[str] | None = None,
        active_tasks: list[str] | None = None,
        transcript_path: str | Path | None = None,
        save_local: bool = True,
        save_remote: bool = False,
    ) -> OperationResponse:
        now = self._clock()
        fields: dict[str, Any] = {}
        if key_files is not None:
            fields["key_files"] = key_files
        if active_tasks is not None:
            fields["active_tasks"] = active_tasks

        try:
            existing = self.existing_local()
        except ContextError as exc:
            return self._failure("save", exc)
        if existing is not None:
            record = ContextRecord.new(session_id, summary, at=existing.created_at, **fields)
            record = record.updated(at=max(now, existing.updated_at))
        else:
            record = ContextRecord.new(session_id, summary, at=now, **fields)
        record = self.enrich(record, transcript_path)

        try:
            report = self.resolver.save(record, self.project_dir, save_local=save_local, save_remote=save_remote)
        except PartialSaveError as exc:
            logger.error("%s", exc.message)
            return OperationResponse(
                success=False, operation="save", message=exc.message,
                detail={"failures": exc.failures, "saved": exc.saved},
            )

        logger.info("SAVE session %s to %s", session_id, ", ".join(report.saved) or "nowhere")
        return OperationResponse(
            success=True,
            operation="save",
            message=f"Context saved ({', '.join(report.saved) or 'no destination requested'})",
            detail={
                "saved": report.saved,
                "path": str(self.local.context_path),
                "has_conversation": record.conversation is not None,
                "replay_tokens": record.replay_metadata.token_count if record.replay_metadata else 0,
            },
        )

    def load(self, scope: str = "auto", preferred_source: Source | None = None) -> OperationResponse:
        if scope not in LOAD_SCOPES:
            return OperationResponse(
                success=False, operation="load",
                message=f"Unknown scope '{scope}' (expected one of {', '.join(LOAD_SCOPES)})",
            )
        force = None if scope == "auto" else Source(scope)
        try:
            resolution = self.resolver.resolve(self.project_dir, preferred_source=preferred_source, force_source=force)
        except ContextError as exc:
            return self._failure("load", exc)

        if resolution.needs_choice:
            assert resolution.locations is not None
            return OperationResponse(
                success=True,
                operation="load",
                message=format_preview(resolution.locations)
                + "\n\nLocal and remote contexts differ. Load again with scope 'local' or 'remote'.",
                detail={
                    "selected": Source.NONE.value,
                    "needs_choice": True,
                    "locations": _locations_detail(resolution.locations),
                    "project_hash": resolution.project_hash,
                },
            )
        if resolution.context is None:
            return OperationResponse(
                success=True, operation="load", message="No saved context found",
                detail={"selected": Source.NONE.value, "needs_choice": False, "project_hash": resolution.project_hash},
            )

        record = resolution.context
        logger.info("LOAD session %s from %s", record.session_id, resolution.selected)
        return OperationResponse(
            success=True,
            operation="load",
            message=format_context(record),
            detail={
                "selected": resolution.selected.value,
                "needs_choice": False,
                "project_hash": resolution.project_hash,
                "session_id": record.session_id,
                "updated_at": record.updated_at,
            },
        )

    def clear(self, include_remote: bool = False) -> OperationResponse:
        cleared: list[str] = []
        try:
            if self.local.delete():
                cleared.append(Source.LOCAL.value)
            if include_remote:
                if self.remote is None:
                    return OperationResponse(
                        success=False, operation="clear",
                        message="Remote storage is not configured", detail={"cleared": cleared},
                    )
                self.remote.delete(self._identify(self.project_dir).project_hash)
                cleared.append(Source.REMOTE.value)
        except ContextError as exc:
            resp = self._failure("clear", exc)
            resp.detail["cleared"] = cleared
            return resp
        return OperationResponse(
            success=True, operation="clear",
            message="Context cleared" if cleared else "No context to clear",
            detail={"cleared": cleared},
        )

    def load_more(self, stop_point_index: int | None = None, max_tokens: int | None = None) -> OperationResponse:
        """
        Replay the window anchored at the next older stopping point.

        Without *stop_point_index* the window after the stored one is used.
        The new window and its position are saved back to the local record.
        """
        try:
            record = self.local.load()
        except NotFound:
            return OperationResponse(success=False, operation="load_more", message="No saved context")
        except ContextError as exc:
            return self._failure("load_more", exc)

        if record.conversation is None or not record.conversation.messages:
            return OperationResponse(
                success=False, operation="load_more",
                message="No conversation stored; save with a transcript first",
            )

        meta = record.replay_metadata
        points = meta.all_stopping_points if meta is not None else None
        if stop_point_index is None:
            current = meta.current_stop_index if meta is not None and meta.current_stop_index is not None else -1
            stop_point_index = current + 1

        messages = record.conversation.messages
        if points is None:
            points = find_stopping_points(messages)
        if not has_earlier_stop(points, stop_point_index):
            return OperationResponse(
                success=True, operation="load_more", message="No earlier stopping points",
                detail={"has_more": False, "stopping_points": len(points), "stop_point_index": stop_point_index},
            )

        budget = max_tokens if max_tokens is not None else self.config.max_replay_tokens
        replay = generate_replay(messages, max_tokens=budget, stop_point_index=stop_point_index, stopping_points=points)
        now = self._clock()
        try:
            self.local.save(record.updated(
                at=now,
                conversation_replay=replay.replay,
                replay_metadata=replay.to_metadata(now),
            ))
        except ContextError as exc:
            return self._failure("load_more", exc)

        return OperationResponse(
            success=True,
            operation="load_more",
            message=replay.replay or "No conversation in this window",
            detail={
                "has_more": has_earlier_stop(points, replay.current_stop_index + 1),
                "current_stop_index": replay.current_stop_index,
                "stopping_point_type": replay.stopping_point_type,
                "start_message_index": replay.start_message_index,
                "message_count": replay.message_count,
                "token_count": replay.token_count,
            },
        )

    def list_locations(self) -> OperationResponse:
        try:
            locations = self.resolver.list_locations(self.project_dir)
        except ContextError as exc:
            return self._failure("list_locations", exc)
        found = [loc.source.value for loc in (locations.local, locations.remote) if loc is not None]
        return OperationResponse(
            success=True,
            operation="list_locations",
            message=format_preview(locations) if found else "No saved context in any location",
            detail=_locations_detail(locations),
        )

    def _require_remote(self, operation: str) -> OperationResponse | None:
        if self.remote is None:
            return OperationResponse(success=False, operation=operation, message="Remote storage is not configured")
        return None

    def remote_summary(self) -> OperationResponse:
        missing = self._require_remote("remote_summary")
        if missing is not None:
            return missing
        try:
            summary = self.remote.summary(self._identify(self.project_dir).project_hash)
        except ContextError as exc:
            return self._failure("remote_summary", exc)
        return OperationResponse(
            success=True, operation="remote_summary",
            message=summary.summary, detail=summary.model_dump(exclude_none=True),
        )

    def remote_segments(self, start_index: int = 0, limit: int = 20, message_type: str = "all") -> OperationResponse:
        missing = self._require_remote("remote_segments")
        if missing is not None:
            return missing
        try:
            segments = self.remote.segments(
                self._identify(self.project_dir).project_hash,
                start_index=start_index, limit=limit, message_type=message_type,
            )
        except ContextError as exc:
            return self._failure("remote_segments", exc)
        text = "\n\n".join(f"[{s.index}] {s.type}: {s.content}" for s in segments)
        return OperationResponse(
            success=True, operation="remote_segments",
            message=text or "No segments in range",
            detail={"segments": [s.model_dump(exclude_none=True) for s in segments], "count": len(segments)},
        )


def _locations_detail(locations: Locations) -> dict[str, Any]:
    return {
        "project_hash": locations.project_hash,
        "local": locations.local.model_dump(mode="json") if locations.local else None,
        "remote": locations.remote.model_dump(mode="json") if locations.remote else None,
    }
