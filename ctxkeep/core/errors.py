"""
ctxkeep.core.errors — Exception taxonomy shared by stores, codec and client.

Every error carries a machine-readable ``code``, a human-readable message and
an optional ``details`` mapping.  The operations layer converts these into
``OperationResponse`` envelopes, so nothing below it needs to catch broadly.
"""

from __future__ import annotations

from typing import Any


class ContextError(Exception):
    """Base class for all ctxkeep failures."""

    code = "CONTEXT_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


# -- Local / storage ---------------------------------------------------------

class NotFound(ContextError):
    """No record at the requested location."""
    code = "CONTEXT_NOT_FOUND"


class Corrupted(ContextError):
    """A record exists but fails decoding or validation."""
    code = "CONTEXT_CORRUPTED"


class DeserializeFailed(Corrupted):
    """The binary envelope could not be decoded.  ``reason`` is one of the
    fixed envelope-check outcomes (``"truncated"``, ``"bad magic header"``…)."""
    code = "DESERIALIZE_FAILED"

    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__(reason, **details)
        self.reason = reason


class IoFailure(ContextError):
    """The storage medium failed; the OS error is chained as ``__cause__``."""
    code = "IO_FAILURE"


class ValidationFailed(ContextError):
    """Malformed input record or malformed stored bytes."""
    code = "VALIDATION_FAILED"


# -- Remote ------------------------------------------------------------------

class RemoteError(ContextError):
    code = "REMOTE_ERROR"


class NetworkUnreachable(RemoteError):
    code = "NETWORK_UNREACHABLE"


class NetworkTimeout(RemoteError):
    code = "NETWORK_TIMEOUT"


class AuthFailed(RemoteError):
    code = "AUTH_FAILED"


class RemoteNotFound(RemoteError):
    code = "REMOTE_NOT_FOUND"


class RemoteServerError(RemoteError):
    """5xx from the remote store after the retry budget was spent."""
    code = "REMOTE_SERVER_ERROR"


class RemoteRequestError(RemoteError):
    """Non-retryable 4xx (other than auth and not-found)."""
    code = "REMOTE_REQUEST_ERROR"


# -- Composite / surface -----------------------------------------------------

class PartialSaveError(ContextError):
    """One or more save destinations failed.

    ``failures`` maps destination name (``"local"`` / ``"remote"``) to the
    underlying error message; ``saved`` lists the destinations that landed.
    """
    code = "SAVE_FAILED"

    def __init__(self, failures: dict[str, str], saved: list[str] | None = None) -> None:
        joined = "; ".join(f"{dest}: {msg}" for dest, msg in failures.items())
        super().__init__(f"Failed to save context: {joined}", failures=failures)
        self.failures = dict(failures)
        self.saved = list(saved or [])


class ConfigInvalid(ContextError):
    code = "CONFIG_INVALID"


class HookInputInvalid(ContextError):
    code = "HOOK_INVALID_INPUT"
