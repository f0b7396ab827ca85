"""
ctxkeep.operations.resolution — Choose between local and remote copies.

Decision table for :meth:`ContextResolver.resolve` when no source is forced::

    local   remote   outcome
    ─────   ──────   ───────────────────────────────────────────────
      -       -      none
      ✓       -      local
      -       ✓      remote
      ✓       ✓      local     if same session and updated within window
                     preferred if a preferred source was given
                     none      with needs_choice and both previews

An unhealthy or unreachable remote counts as "-"; so does a local record
that fails to decode (the failure is logged).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from ctxkeep.core.errors import ContextError, Corrupted, NotFound, PartialSaveError, RemoteError, RemoteNotFound
from ctxkeep.core.models import (
    SUMMARY_PREVIEW_CHARS,
    ContextRecord,
    Location,
    ProjectIdentity,
    RemoteSummary,
    Source,
    TranscriptSegment,
)
from ctxkeep.vcs.identity import identify_project

logger = logging.getLogger("ctxkeep.resolution")

# Two copies of one session saved this close together are the same state
SAME_SESSION_WINDOW_MS = 60_000

REMOTE_NOT_CONFIGURED = "Remote storage is not configured"


class LocalStore(Protocol):
    def exists(self) -> bool: ...
    def load(self) -> ContextRecord: ...
    def save(self, record: ContextRecord) -> object: ...
    def delete(self) -> bool: ...


class RemoteStore(Protocol):
    def health_check(self) -> bool: ...
    def exists(self, project_hash: str) -> bool: ...
    def load(self, project_hash: str) -> ContextRecord: ...
    def save(self, project_hash: str, record: ContextRecord) -> None: ...
    def delete(self, project_hash: str) -> None: ...
    def summary(self, project_hash: str) -> RemoteSummary: ...
    def segments(
        self, project_hash: str, start_index: int = ..., limit: int = ..., message_type: str = ...,
    ) -> list[TranscriptSegment]: ...


@dataclass
class Locations:
    project_hash: str
    local: Location | None = None
    remote: Location | None = None


@dataclass
class Resolution:
    selected: Source
    project_hash: str
    context: ContextRecord | None = None
    needs_choice: bool = False
    locations: Locations | None = None


@dataclass
class SaveReport:
    saved: list[str] = field(default_factory=list)
    project_hash: str | None = None


class ContextResolver:
    """Load/save policy over a local store and an optional remote store."""

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore | None = None,
        identify: Callable[[Path], ProjectIdentity] = identify_project,
        conflation_window_ms: int = SAME_SESSION_WINDOW_MS,
    ) -> None:
        self.local = local
        self.remote = remote
        self._identify = identify
        self.conflation_window_ms = conflation_window_ms

    # ── Probes ───────────────────────────────────────────────────────────

    def _load_local(self) -> ContextRecord | None:
        if not self.local.exists():
            return None
        try:
            return self.local.load()
        except NotFound:
            return None
        except Corrupted as exc:
            logger.error("Local context is unreadable (%s); treating as absent", exc.message)
            return None

    def _load_remote(self, project_hash: str) -> ContextRecord | None:
        if self.remote is None:
            return None
        try:
            if not self.remote.health_check():
                logger.debug("Remote store unhealthy; treating as absent")
                return None
            if not self.remote.exists(project_hash):
                return None
            return self.remote.load(project_hash)
        except RemoteNotFound:
            return None
        except RemoteError as exc:
            logger.warning("Remote context unavailable (%s); treating as absent", exc.message)
            return None

    # ── Public API ───────────────────────────────────────────────────────

    def resolve(
        self,
        project_dir: Path,
        preferred_source: Source | None = None,
        force_source: Source | None = None,
    ) -> Resolution:
        project_hash = self._identify(project_dir).project_hash

        if force_source == Source.LOCAL:
            record = self._load_local()
            return Resolution(Source.LOCAL if record else Source.NONE, project_hash, record)
        if force_source == Source.REMOTE:
            record = self._load_remote(project_hash)
            return Resolution(Source.REMOTE if record else Source.NONE, project_hash, record)

        local = self._load_local()
        remote = self._load_remote(project_hash)

        if local is None and remote is None:
            logger.debug("No context found in any source")
            return Resolution(Source.NONE, project_hash)
        if remote is None:
            logger.debug("Using local context (only source), session %s", local.session_id)
            return Resolution(Source.LOCAL, project_hash, local)
        if local is None:
            logger.debug("Using remote context (only source), session %s", remote.session_id)
            return Resolution(Source.REMOTE, project_hash, remote)

        if (
            local.session_id == remote.session_id
            and abs(local.updated_at - remote.updated_at) < self.conflation_window_ms
        ):
            logger.debug("Using local context (same session %s)", local.session_id)
            return Resolution(Source.LOCAL, project_hash, local)
        if preferred_source == Source.LOCAL:
            return Resolution(Source.LOCAL, project_hash, local)
        if preferred_source == Source.REMOTE:
            return Resolution(Source.REMOTE, project_hash, remote)

        logger.info(
            "Local (%d) and remote (%d) contexts diverge; a choice is needed",
            local.updated_at, remote.updated_at,
        )
        return Resolution(
            Source.NONE,
            project_hash,
            needs_choice=True,
            locations=Locations(
                project_hash=project_hash,
                local=Location.of(Source.LOCAL, local),
                remote=Location.of(Source.REMOTE, remote),
            ),
        )

    def save(
        self,
        record: ContextRecord,
        project_dir: Path,
        save_local: bool = True,
        save_remote: bool = False,
    ) -> SaveReport:
        """
        Write *record* to each requested destination.

        Destinations are attempted independently.  If any fails, raises
        :class:`PartialSaveError` naming the failures; its ``saved`` lists
        the destinations that landed.
        """
        report = SaveReport()
        failures: dict[str, str] = {}

        if save_local:
            try:
                self.local.save(record)
                report.saved.append(Source.LOCAL.value)
            except ContextError as exc:
                logger.error("Failed to save context locally: %s", exc.message)
                failures[Source.LOCAL.value] = exc.message

        if save_remote:
            if self.remote is None:
                logger.error("Failed to save context remotely: %s", REMOTE_NOT_CONFIGURED)
                failures[Source.REMOTE.value] = REMOTE_NOT_CONFIGURED
            else:
                report.project_hash = self._identify(project_dir).project_hash
                try:
                    self.remote.save(report.project_hash, record)
                    report.saved.append(Source.REMOTE.value)
                except ContextError as exc:
                    logger.error("Failed to save context remotely: %s", exc.message)
                    failures[Source.REMOTE.value] = exc.message

        if failures:
            raise PartialSaveError(failures, saved=report.saved)
        return report

    def list_locations(self, project_dir: Path) -> Locations:
        """Previews of every stored copy, without choosing between them."""
        project_hash = self._identify(project_dir).project_hash
        locations = Locations(project_hash=project_hash)

        local = self._load_local()
        if local is not None:
            locations.local = Location.of(Source.LOCAL, local)

        if self.remote is not None:
            try:
                if self.remote.health_check():
                    summary = self.remote.summary(project_hash)
                    locations.remote = Location(
                        source=Source.REMOTE,
                        updated_at=summary.updated_at,
                        session_id=summary.session_id,
                        summary_preview=summary.summary[:SUMMARY_PREVIEW_CHARS],
                    )
            except RemoteNotFound:
                pass
            except RemoteError as exc:
                logger.warning("Could not list remote context: %s", exc.message)
        return locations
