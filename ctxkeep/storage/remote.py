"""
ctxkeep.storage.remote — HTTP client for a shared remote context store.

Every request carries a bounded timeout.  Transport failures and 5xx replies
are retried with exponential backoff; 401/403 and 404 fail immediately, as
does any other 4xx.  Once the attempt budget is spent the last failure is
raised as the matching :class:`~ctxkeep.core.errors.RemoteError`.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx
from pydantic import ValidationError

from ctxkeep.core.errors import (
    AuthFailed,
    NetworkTimeout,
    NetworkUnreachable,
    RemoteError,
    RemoteNotFound,
    RemoteRequestError,
    RemoteServerError,
    ValidationFailed,
)
from ctxkeep.core.models import ContextRecord, KeeperConfig, RemoteSummary, TranscriptSegment

logger = logging.getLogger("ctxkeep.remote")

DEFAULT_TIMEOUT = 30.0          # seconds, per request
DEFAULT_MAX_ATTEMPTS = 3
BACKOFF_BASE_DELAY = 1.0        # seconds, doubles each retry


class RemoteContextClient:
    """
    Blocking client for the ``/api`` REST surface served by
    :mod:`ctxkeep.server`.

    *sleep* is injectable so tests can observe the backoff schedule without
    waiting; *transport* lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._sleep = sleep

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: KeeperConfig, **kwargs: Any) -> "RemoteContextClient | None":
        """Client for the configured remote, or ``None`` when none is set."""
        if not config.remote_enabled:
            return None
        return cls(
            config.remote_url,
            api_key=config.api_key or None,
            timeout=config.remote_timeout,
            max_attempts=config.retry_attempts,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RemoteContextClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ── Request core ─────────────────────────────────────────────────────

    def _backoff(self, attempt: int, reason: str) -> None:
        delay = self.backoff_base * (2 ** attempt)
        logger.warning(
            "Remote %s (attempt %d/%d) — retrying in %.1fs…",
            reason, attempt + 1, self.max_attempts, delay,
        )
        self._sleep(delay)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send one logical request, retrying transient failures."""
        last_exc: RemoteError | None = None
        for attempt in range(self.max_attempts):
            final = attempt == self.max_attempts - 1
            try:
                resp = self._client.request(method, path, **kwargs)
            except httpx.TimeoutException as exc:
                last_exc = NetworkTimeout("Request timed out", timeout=self.timeout, path=path)
                last_exc.__cause__ = exc
                if not final:
                    self._backoff(attempt, "timeout")
                continue
            except httpx.TransportError as exc:
                last_exc = NetworkUnreachable(
                    "Cannot reach remote server", url=f"{self.base_url}{path}", error=str(exc),
                )
                last_exc.__cause__ = exc
                if not final:
                    self._backoff(attempt, "unreachable")
                continue

            status = resp.status_code
            if status in (401, 403):
                raise AuthFailed("Authentication failed", status=status)
            if status == 404:
                raise RemoteNotFound("Context not found on remote server", path=path)
            if status >= 500:
                last_exc = RemoteServerError("Remote server error", status=status)
                if not final:
                    self._backoff(attempt, f"server error {status}")
                continue
            if status >= 400:
                raise RemoteRequestError("Request failed", status=status, reason=resp.reason_phrase)

            try:
                return resp.json()
            except ValueError as exc:
                raise RemoteServerError("Remote returned a non-JSON response", status=status) from exc

        assert last_exc is not None
        raise last_exc

    # ── Operations ───────────────────────────────────────────────────────

    def health_check(self) -> bool:
        """False when the server is down or unreachable; auth errors propagate."""
        try:
            data = self._request("GET", "/api/health")
        except (NetworkUnreachable, NetworkTimeout, RemoteServerError) as exc:
            logger.info("Remote store unavailable: %s", exc.message)
            return False
        return bool(data.get("ok")) if isinstance(data, dict) else False

    def exists(self, project_hash: str) -> bool:
        try:
            data = self._request("GET", f"/api/contexts/{project_hash}/exists")
        except RemoteNotFound:
            return False
        return bool(data.get("exists")) if isinstance(data, dict) else False

    def load(self, project_hash: str) -> ContextRecord:
        data = self._request("GET", f"/api/contexts/{project_hash}")
        try:
            record = ContextRecord.from_wire(data)
        except ValidationFailed as exc:
            raise RemoteServerError(f"Remote returned an invalid context: {exc.message}") from exc
        logger.info("Loaded remote context %s (session %s)", project_hash, record.session_id)
        return record

    def save(self, project_hash: str, record: ContextRecord) -> None:
        self._request("PUT", f"/api/contexts/{project_hash}", content=record.to_json_bytes())
        logger.info("Saved remote context %s (session %s)", project_hash, record.session_id)

    def delete(self, project_hash: str) -> None:
        """Delete the remote copy; a missing copy counts as deleted."""
        try:
            self._request("DELETE", f"/api/contexts/{project_hash}")
        except RemoteNotFound:
            logger.debug("Remote context %s already absent", project_hash)

    def summary(self, project_hash: str) -> RemoteSummary:
        data = self._request("GET", f"/api/contexts/{project_hash}/summary")
        try:
            return RemoteSummary.model_validate(data)
        except ValidationError as exc:
            raise RemoteServerError(f"Remote returned an invalid summary: {exc}") from exc

    def segments(
        self,
        project_hash: str,
        start_index: int = 0,
        limit: int = 20,
        message_type: str = "all",
    ) -> list[TranscriptSegment]:
        params = {"start_index": start_index, "limit": limit, "message_type": message_type}
        data = self._request("GET", f"/api/contexts/{project_hash}/segments", params=params)
        raw = data.get("segments", []) if isinstance(data, dict) else []
        try:
            return [TranscriptSegment.model_validate(s) for s in raw]
        except ValidationError as exc:
            raise RemoteServerError(f"Remote returned invalid segments: {exc}") from exc

    def list_projects(self) -> list[dict[str, Any]]:
        data = self._request("GET", "/api/contexts")
        return list(data.get("projects", [])) if isinstance(data, dict) else []
