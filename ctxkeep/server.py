"""
ctxkeep.server — Remote context store (FastAPI).

Serves the REST surface that :class:`ctxkeep.storage.remote.RemoteContextClient`
talks to, so several machines can share one project's context::

    GET    /api/health
    GET    /api/contexts
    GET    /api/contexts/{hash}
    PUT    /api/contexts/{hash}
    DELETE /api/contexts/{hash}
    GET    /api/contexts/{hash}/exists
    GET    /api/contexts/{hash}/summary
    GET    /api/contexts/{hash}/segments?start_index=&limit=&message_type=

Each project is stored as ``contexts/<hash>/context.ctx`` (the same binary
envelope the local store writes) plus a small ``metadata.json`` used for
listing without decoding every record.

Runs on ``http://127.0.0.1:8787`` by default (``ctxkeep serve``).
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from ctxkeep import __version__
from ctxkeep.core.codec import decode, encode
from ctxkeep.core.errors import Corrupted, ValidationFailed
from ctxkeep.core.models import ContextRecord, RemoteSummary, get_global_config_dir
from ctxkeep.core.transcript import transcript_segments

logger = logging.getLogger("ctxkeep.server")

_HASH_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

CONTEXT_FILE = "context.ctx"
METADATA_FILE = "metadata.json"


def _write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class RemoteStorage:
    """One directory per project hash under ``<root>/contexts``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.contexts_dir = self.root / "contexts"
        self.contexts_dir.mkdir(parents=True, exist_ok=True)

    def _dir(self, project_hash: str) -> Path:
        return self.contexts_dir / project_hash

    def exists(self, project_hash: str) -> bool:
        return (self._dir(project_hash) / CONTEXT_FILE).is_file()

    def load(self, project_hash: str) -> ContextRecord | None:
        path = self._dir(project_hash) / CONTEXT_FILE
        if not path.is_file():
            return None
        return decode(path.read_bytes())

    def save(self, project_hash: str, record: ContextRecord) -> None:
        d = self._dir(project_hash)
        d.mkdir(parents=True, exist_ok=True)
        _write_atomic(d / CONTEXT_FILE, encode(record))
        meta = {
            "project_hash": project_hash,
            "session_id": record.session_id,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }
        _write_atomic(d / METADATA_FILE, json.dumps(meta, indent=2).encode("utf-8"))
        logger.info("Stored context %s (session %s)", project_hash, record.session_id)

    def delete(self, project_hash: str) -> bool:
        d = self._dir(project_hash)
        if not d.is_dir():
            return False
        shutil.rmtree(d)
        logger.info("Deleted context %s", project_hash)
        return True

    def list_projects(self) -> list[dict[str, Any]]:
        projects = []
        for d in sorted(self.contexts_dir.iterdir()):
            meta_path = d / METADATA_FILE
            if not meta_path.is_file():
                continue
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable metadata %s: %s", meta_path, exc)
                continue
            projects.append({"project_hash": d.name, "updated_at": meta.get("updated_at", 0)})
        return projects


def summarize(project_hash: str, record: ContextRecord) -> RemoteSummary:
    return RemoteSummary(
        project_hash=project_hash,
        session_id=record.session_id,
        summary=record.summary,
        updated_at=record.updated_at,
        created_at=record.created_at,
        has_conversation=record.conversation is not None,
        message_count=record.conversation.message_count if record.conversation else None,
        key_files=record.key_files,
        active_tasks=record.active_tasks,
    )


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

def create_app(storage_dir: Path, api_keys: list[str] | None = None) -> FastAPI:
    """Build the app.  With no *api_keys* every request is accepted."""
    storage = RemoteStorage(storage_dir)
    keys = frozenset(k for k in (api_keys or []) if k)

    app = FastAPI(
        title="ctxkeep — Remote Context Store",
        description="Shared storage for assistant working context.",
        version=__version__,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.storage = storage

    def require_key(request: Request) -> None:
        if not keys:
            return
        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or token not in keys:
            raise HTTPException(status_code=401, detail="Invalid or missing API key")

    def checked_hash(project_hash: str) -> str:
        if not _HASH_RE.match(project_hash):
            raise HTTPException(status_code=400, detail="Invalid project hash")
        return project_hash

    def load_or_404(project_hash: str) -> ContextRecord:
        try:
            record = storage.load(project_hash)
        except Corrupted as exc:
            logger.error("Stored context %s is unreadable: %s", project_hash, exc.message)
            raise HTTPException(status_code=500, detail=f"Stored context is unreadable: {exc.message}") from exc
        if record is None:
            raise HTTPException(status_code=404, detail="Context not found")
        return record

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "service": "ctxkeep", "version": __version__}

    @app.get("/api/contexts", dependencies=[Depends(require_key)])
    def list_contexts() -> dict[str, Any]:
        return {"projects": storage.list_projects()}

    @app.get("/api/contexts/{project_hash}", dependencies=[Depends(require_key)])
    def get_context(project_hash: str) -> dict[str, Any]:
        return load_or_404(checked_hash(project_hash)).to_wire()

    @app.put("/api/contexts/{project_hash}", dependencies=[Depends(require_key)])
    async def put_context(project_hash: str, request: Request) -> dict[str, Any]:
        checked_hash(project_hash)
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Body must be JSON") from exc
        try:
            record = ContextRecord.from_wire(body)
        except ValidationFailed as exc:
            raise HTTPException(status_code=400, detail=exc.message) from exc
        await run_in_threadpool(storage.save, project_hash, record)
        return {"saved": True, "project_hash": project_hash, "updated_at": record.updated_at}

    @app.delete("/api/contexts/{project_hash}", dependencies=[Depends(require_key)])
    def delete_context(project_hash: str) -> dict[str, Any]:
        if not storage.delete(checked_hash(project_hash)):
            raise HTTPException(status_code=404, detail="Context not found")
        return {"deleted": True}

    @app.get("/api/contexts/{project_hash}/exists", dependencies=[Depends(require_key)])
    def context_exists(project_hash: str) -> dict[str, bool]:
        return {"exists": storage.exists(checked_hash(project_hash))}

    @app.get("/api/contexts/{project_hash}/summary", dependencies=[Depends(require_key)])
    def context_summary(project_hash: str) -> dict[str, Any]:
        record = load_or_404(checked_hash(project_hash))
        return summarize(project_hash, record).model_dump(exclude_none=True)

    @app.get("/api/contexts/{project_hash}/segments", dependencies=[Depends(require_key)])
    def context_segments(
        project_hash: str,
        start_index: int = Query(0, ge=0),
        limit: int = Query(20, ge=1, le=500),
        message_type: str = Query("all"),
    ) -> dict[str, Any]:
        record = load_or_404(checked_hash(project_hash))
        if record.conversation is None:
            return {"segments": [], "total": 0}
        try:
            segments = transcript_segments(record.conversation, start_index, limit, message_type)
        except ValidationFailed as exc:
            raise HTTPException(status_code=400, detail=exc.message) from exc
        return {
            "segments": [s.model_dump(exclude_none=True) for s in segments],
            "total": record.conversation.message_count,
        }

    return app


def app_from_env() -> FastAPI:
    """Factory for ``uvicorn --factory``: storage and keys from the environment."""
    storage = os.getenv("CTXKEEP_SERVER_STORAGE") or str(get_global_config_dir() / "server")
    keys = [k.strip() for k in os.getenv("CTXKEEP_SERVER_API_KEYS", "").split(",") if k.strip()]
    logger.info("ctxkeep server storage at %s (%s)", storage, "auth on" if keys else "auth off")
    return create_app(Path(storage), keys)
