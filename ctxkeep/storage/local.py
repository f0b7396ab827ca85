"""
ctxkeep.storage.local — Project-local context store under ``.ctxkeep/``.

Layout::

    .ctxkeep/
      context.ctx      current record (binary envelope)
      context.json     pre-envelope record, read only when context.ctx is absent
      metadata.json    ContextMetadata sidecar
      config.json      project config (see KeeperConfig)
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from ctxkeep.core.codec import Format, decode, decode_legacy, detect_format, encode
from ctxkeep.core.errors import DeserializeFailed, IoFailure, NotFound
from ctxkeep.core.models import ContextMetadata, ContextRecord

logger = logging.getLogger("ctxkeep.local")

CONTEXT_FILE = "context.ctx"
LEGACY_CONTEXT_FILE = "context.json"
METADATA_FILE = "metadata.json"


def _atomic_write(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_bytes(data)
        os.replace(tmp, path)
    except OSError as exc:
        raise IoFailure(f"Failed to write {path.name}: {exc}", path=str(path)) from exc


class LocalContextStore:
    """Reads and writes the single context record of one project."""

    def __init__(self, store_dir: Path) -> None:
        self.store_dir = Path(store_dir)

    @property
    def context_path(self) -> Path:
        return self.store_dir / CONTEXT_FILE

    @property
    def legacy_path(self) -> Path:
        return self.store_dir / LEGACY_CONTEXT_FILE

    @property
    def metadata_path(self) -> Path:
        return self.store_dir / METADATA_FILE

    def exists(self) -> bool:
        return self.context_path.is_file() or self.legacy_path.is_file()

    def load(self) -> ContextRecord:
        """
        Decode the stored record.

        Raises :class:`NotFound` when neither file exists and
        :class:`DeserializeFailed` when the bytes are not a valid record.
        """
        if self.context_path.is_file():
            path = self.context_path
        elif self.legacy_path.is_file():
            path = self.legacy_path
        else:
            raise NotFound("No local context", path=str(self.context_path))

        try:
            data = path.read_bytes()
        except OSError as exc:
            raise IoFailure(f"Failed to read {path.name}: {exc}", path=str(path)) from exc

        fmt = detect_format(data)
        if fmt == Format.ENVELOPE:
            return decode(data)
        if fmt == Format.LEGACY_JSON:
            logger.debug("Reading legacy JSON context from %s", path)
            return decode_legacy(data)
        raise DeserializeFailed("bad magic header", path=str(path))

    def save(self, record: ContextRecord) -> Path:
        _atomic_write(self.context_path, encode(record))
        if self.legacy_path.exists():
            # The envelope now supersedes the legacy file
            try:
                self.legacy_path.unlink()
            except OSError as exc:
                logger.warning("Could not remove legacy context %s: %s", self.legacy_path, exc)
        logger.info("Saved local context for session %s", record.session_id)
        return self.context_path

    def delete(self) -> bool:
        """Remove the stored record.  Returns False if there was nothing to remove."""
        removed = False
        for path in (self.context_path, self.legacy_path):
            if path.exists():
                try:
                    path.unlink()
                except OSError as exc:
                    raise IoFailure(f"Failed to delete {path.name}: {exc}", path=str(path)) from exc
                removed = True
        if removed:
            logger.info("Deleted local context in %s", self.store_dir)
        return removed

    # ── Metadata sidecar ─────────────────────────────────────────────────

    def load_metadata(self) -> ContextMetadata | None:
        if not self.metadata_path.is_file():
            return None
        try:
            return ContextMetadata.model_validate(json.loads(self.metadata_path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable metadata %s: %s", self.metadata_path, exc)
            return None

    def save_metadata(self, metadata: ContextMetadata) -> Path:
        _atomic_write(
            self.metadata_path,
            json.dumps(metadata.model_dump(exclude_none=True), indent=2).encode("utf-8"),
        )
        return self.metadata_path
