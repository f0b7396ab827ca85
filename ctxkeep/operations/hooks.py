"""
ctxkeep.operations.hooks — Host lifecycle events.

  SessionStart  startup / resume   record the session, surface saved context
                compact            surface saved context again
                clear              drop the local context
  PreCompact                       best-effort snapshot before the host compacts
  SessionEnd                       nothing (saving is an explicit operation)

Whatever a hook wants the assistant to see is returned as markdown in
``HookResult.output``; the CLI prints it on stdout.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ctxkeep.core.errors import ContextError, HookInputInvalid, PartialSaveError
from ctxkeep.core.models import CompactionTrigger, ContextRecord, HookInput, KeeperConfig, Location, Source
from ctxkeep.operations.engine import ContextEngine, format_context, format_preview
from ctxkeep.operations.resolution import Locations

logger = logging.getLogger("ctxkeep.hooks")

SNAPSHOT_SUMMARY = "Auto-saved before compaction"


@dataclass
class HookResult:
    event: str
    context_loaded: bool = False
    context_saved: bool = False
    context_cleared: bool = False
    needs_choice: bool = False
    source: str | None = None
    output: str = ""
    error: str | None = None


def parse_hook_input(raw: str) -> HookInput:
    try:
        return HookInput.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        raise HookInputInvalid(f"Invalid hook input: {exc}") from exc


def _default_engine(project_dir: Path) -> ContextEngine:
    return ContextEngine(KeeperConfig.for_project(project_dir))


class HookHandler:
    def __init__(self, engine_factory: Callable[[Path], ContextEngine] = _default_engine) -> None:
        self._engine_factory = engine_factory

    def handle(self, hook: HookInput) -> HookResult:
        event = hook.hook_event_name
        if event not in ("SessionStart", "PreCompact"):
            logger.debug("Ignoring hook event %s", event)
            return HookResult(event=event)

        try:
            engine = self._engine_factory(Path(hook.cwd))
        except ContextError as exc:
            logger.error("Cannot handle %s in %s: %s", event, hook.cwd, exc.message)
            return HookResult(event=event, error=exc.message)
        with engine:
            if event == "SessionStart":
                return self.session_start(hook, engine)
            return self.pre_compact(hook, engine)

    # ── SessionStart ─────────────────────────────────────────────────────

    def session_start(self, hook: HookInput, engine: ContextEngine) -> HookResult:
        source = hook.source or "startup"
        logger.debug("SessionStart (%s) for session %s in %s", source, hook.session_id, hook.cwd)

        if source == "clear":
            resp = engine.clear()
            return HookResult(
                event="SessionStart",
                context_cleared=resp.success,
                error=None if resp.success else resp.message,
            )

        try:
            engine.record_session(hook.session_id, hook.transcript_path, count_session=source != "compact")
        except ContextError as exc:
            logger.warning("Could not record session metadata: %s", exc.message)
        return self._surface(engine)

    def _surface(self, engine: ContextEngine) -> HookResult:
        try:
            resolution = engine.resolver.resolve(engine.project_dir)
        except ContextError as exc:
            logger.error("Context resolution failed: %s", exc.message)
            return HookResult(event="SessionStart", error=exc.message)

        if resolution.needs_choice:
            assert resolution.locations is not None
            return HookResult(
                event="SessionStart",
                needs_choice=True,
                output=format_preview(resolution.locations)
                + "\n\nLocal and remote copies differ. Ask the user which to restore, "
                "then call ctxkeep_load with scope 'local' or 'remote'.",
            )
        record = resolution.context
        if record is None:
            return HookResult(event="SessionStart")

        if engine.config.auto_load_on_start:
            logger.info("Context loaded from %s (session %s)", resolution.selected, record.session_id)
            return HookResult(
                event="SessionStart",
                context_loaded=True,
                source=resolution.selected.value,
                output=format_context(record),
            )

        preview = Locations(project_hash=resolution.project_hash)
        location = Location.of(resolution.selected, record)
        if resolution.selected == Source.REMOTE:
            preview.remote = location
        else:
            preview.local = location
        return HookResult(
            event="SessionStart",
            source=resolution.selected.value,
            output=format_preview(preview) + "\n\nCall ctxkeep_load to restore this context.",
        )

    # ── PreCompact ───────────────────────────────────────────────────────

    def pre_compact(self, hook: HookInput, engine: ContextEngine) -> HookResult:
        trigger = CompactionTrigger(hook.trigger or "auto")
        logger.debug("PreCompact (%s) for session %s", trigger, hook.session_id)

        try:
            existing = engine.existing_local()
        except ContextError as exc:
            logger.warning("Could not read existing context: %s", exc.message)
            existing = None
        if existing is not None:
            record = existing.updated(
                session_id=hook.session_id,
                is_pre_compaction_snapshot=True,
                compaction_trigger=trigger,
            )
        else:
            record = ContextRecord.new(
                hook.session_id,
                SNAPSHOT_SUMMARY,
                is_pre_compaction_snapshot=True,
                compaction_trigger=trigger,
            )
        record = engine.enrich(record, hook.transcript_path)
        if record.conversation is not None and record.conversation.token_estimate is not None:
            record = record.updated(pre_compaction_token_count=record.conversation.token_estimate)

        try:
            engine.resolver.save(
                record, engine.project_dir, save_local=True, save_remote=engine.remote is not None,
            )
        except PartialSaveError as exc:
            logger.warning("Pre-compaction snapshot incomplete: %s", exc.message)
            return HookResult(
                event="PreCompact",
                context_saved=Source.LOCAL.value in exc.saved,
                error=exc.message,
            )
        logger.info("Context snapshot saved before %s compaction (session %s)", trigger, hook.session_id)
        return HookResult(event="PreCompact", context_saved=True)
