"""
ctxkeep.mcp_server — MCP (Model Context Protocol) server for ctxkeep.

Exposes the context operations as MCP tools so the assistant can save,
restore and page through its own context, plus one resource
(``ctxkeep://context``) with the current record rendered as markdown.

Usage:
    ctxkeep mcp                Start the MCP server (stdio transport)

MCP config (e.g. ``.mcp.json``)::

    {
        "mcpServers": {
            "ctxkeep": {"command": "ctxkeep", "args": ["mcp"]}
        }
    }
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, TextIO

from ctxkeep.core.errors import ContextError, NotFound
from ctxkeep.core.models import KeeperConfig, OperationResponse
from ctxkeep.operations.engine import ContextEngine, format_context

logger = logging.getLogger("ctxkeep.mcp_server")

PROTOCOL_VERSION = "2024-11-05"
CONTEXT_RESOURCE_URI = "ctxkeep://context"


MCP_TOOLS = [
    {
        "name": "ctxkeep_status",
        "description": "Show whether this project has saved context, and its session, age and replay state.",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "ctxkeep_save",
        "description": (
            "Save the current working context: a summary of the session, key files "
            "and active tasks. The conversation replay is rebuilt from the session "
            "transcript automatically."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "session_id": {"type": "string", "description": "Current session ID."},
                "summary": {"type": "string", "description": "Summary of the work so far."},
                "key_files": {"type": "array", "items": {"type": "string"}, "description": "Important files."},
                "active_tasks": {"type": "array", "items": {"type": "string"}, "description": "Open tasks."},
                "save_remote": {"type": "boolean", "description": "Also save to the remote store. Default: false."},
            },
            "required": ["session_id", "summary"],
        },
    },
    {
        "name": "ctxkeep_load",
        "description": (
            "Load saved context. scope 'auto' picks the right copy or asks for a choice "
            "when local and remote differ; 'local' or 'remote' forces one copy."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "scope": {"type": "string", "enum": ["auto", "local", "remote"], "description": "Default: auto."},
            },
            "required": [],
        },
    },
    {
        "name": "ctxkeep_clear",
        "description": "Delete the saved local context (and the remote copy when include_remote is set).",
        "inputSchema": {
            "type": "object",
            "properties": {"include_remote": {"type": "boolean", "description": "Default: false."}},
            "required": [],
        },
    },
    {
        "name": "ctxkeep_load_more",
        "description": (
            "Replay earlier conversation: moves the replay window back to the next "
            "older stopping point (commit, completed task or 'done' remark)."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "stop_point_index": {"type": "integer", "description": "Explicit stopping point; default is the next older one."},
                "max_tokens": {"type": "integer", "description": "Token budget for the window."},
            },
            "required": [],
        },
    },
    {
        "name": "ctxkeep_locations",
        "description": "Preview every stored copy (local and remote) without loading either.",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "ctxkeep_remote_summary",
        "description": "Fetch the remote copy's summary, key files and tasks without downloading the conversation.",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "ctxkeep_remote_segments",
        "description": "Page through the conversation stored in the remote copy.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "start_index": {"type": "integer", "description": "First transcript position. Default: 0."},
                "limit": {"type": "integer", "description": "Maximum segments. Default: 20."},
                "message_type": {"type": "string", "enum": ["all", "user", "assistant"], "description": "Default: all."},
            },
            "required": [],
        },
    },
]

MCP_RESOURCES = [
    {
        "uri": CONTEXT_RESOURCE_URI,
        "name": "Project Context",
        "description": "The persisted context for this project",
        "mimeType": "text/markdown",
    },
]


# ---------------------------------------------------------------------------
# Persistent session state (stdio transport is stateful)
# ---------------------------------------------------------------------------

class _MCPSession:
    """Builds the engine on first use so startup stays instant."""

    def __init__(self, factory: Callable[[], ContextEngine]) -> None:
        self._factory = factory
        self._engine: ContextEngine | None = None

    @property
    def engine(self) -> ContextEngine:
        if self._engine is None:
            self._engine = self._factory()
            logger.info("MCP session bound to %s", self._engine.project_dir)
        return self._engine

    def close(self) -> None:
        if self._engine is not None:
            self._engine.close()


def handle_tool_call(engine: ContextEngine, tool_name: str, arguments: dict[str, Any]) -> OperationResponse:
    """Dispatch one tool call to the engine."""
    if tool_name == "ctxkeep_status":
        return engine.status()

    elif tool_name == "ctxkeep_save":
        return engine.save(
            session_id=arguments["session_id"],
            summary=arguments["summary"],
            key_files=arguments.get("key_files"),
            active_tasks=arguments.get("active_tasks"),
            save_remote=bool(arguments.get("save_remote", False)),
        )

    elif tool_name == "ctxkeep_load":
        return engine.load(scope=arguments.get("scope", "auto"))

    elif tool_name == "ctxkeep_clear":
        return engine.clear(include_remote=bool(arguments.get("include_remote", False)))

    elif tool_name == "ctxkeep_load_more":
        return engine.load_more(
            stop_point_index=arguments.get("stop_point_index"),
            max_tokens=arguments.get("max_tokens"),
        )

    elif tool_name == "ctxkeep_locations":
        return engine.list_locations()

    elif tool_name == "ctxkeep_remote_summary":
        return engine.remote_summary()

    elif tool_name == "ctxkeep_remote_segments":
        return engine.remote_segments(
            start_index=int(arguments.get("start_index", 0)),
            limit=int(arguments.get("limit", 20)),
            message_type=arguments.get("message_type", "all"),
        )

    return OperationResponse(success=False, operation=tool_name, message=f"Unknown tool: {tool_name}")


def read_context_resource(engine: ContextEngine) -> str:
    try:
        record = engine.local.load()
    except NotFound:
        return "No context found for this project."
    except ContextError as exc:
        return f"Error loading context: {exc.message}"
    return format_context(record)


def handle_message(session: _MCPSession, msg: dict[str, Any]) -> dict[str, Any] | None:
    """
    Answer one JSON-RPC message.  Returns the response object, or ``None``
    for notifications.
    """
    method = msg.get("method", "")
    msg_id = msg.get("id")
    params = msg.get("params") or {}

    try:
        if method == "initialize":
            return _result(msg_id, {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {
                    "tools": {"listChanged": False},
                    "resources": {"listChanged": False},
                },
                "serverInfo": {"name": "ctxkeep", "version": _get_version()},
            })

        elif method.startswith("notifications/"):
            return None

        elif method == "tools/list":
            return _result(msg_id, {"tools": MCP_TOOLS})

        elif method == "tools/call":
            resp = handle_tool_call(session.engine, params.get("name", ""), params.get("arguments") or {})
            content = [{"type": "text", "text": resp.message}]
            if resp.detail:
                content.append({"type": "text", "text": json.dumps(resp.detail, indent=2, default=str)})
            return _result(msg_id, {"content": content, "isError": not resp.success})

        elif method == "resources/list":
            return _result(msg_id, {"resources": MCP_RESOURCES})

        elif method == "resources/read":
            uri = params.get("uri", "")
            if uri != CONTEXT_RESOURCE_URI:
                return _error(msg_id, -32602, f"Unknown resource: {uri}")
            return _result(msg_id, {
                "contents": [{
                    "uri": uri,
                    "mimeType": "text/markdown",
                    "text": read_context_resource(session.engine),
                }],
            })

        elif method == "ping":
            return _result(msg_id, {})

        return _error(msg_id, -32601, f"Method not found: {method}")

    except KeyError as exc:
        return _error(msg_id, -32602, f"Missing argument: {exc.args[0]}")
    except ContextError as exc:
        logger.error("MCP error handling %s: %s", method, exc.message)
        return _error(msg_id, -32603, exc.message)
    except Exception as exc:
        # Keep the protocol loop alive; the failure goes back to the client.
        logger.error("MCP error handling %s: %s", method, exc, exc_info=True)
        return _error(msg_id, -32603, str(exc))


def _result(msg_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "result": result}


def _error(msg_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}}


def _get_version() -> str:
    from ctxkeep import __version__
    return __version__


# ---------------------------------------------------------------------------
# MCP stdio Transport (JSON-RPC over stdin/stdout)
# ---------------------------------------------------------------------------

def run_mcp_stdio(
    project_root: Path | None = None,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
    engine_factory: Callable[[], ContextEngine] | None = None,
) -> None:
    """
    Serve JSON-RPC 2.0, one message per line, until stdin closes.

    The host launches ``ctxkeep mcp`` as a subprocess; stdout is the
    protocol channel, so all logging goes to stderr.
    """
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    if engine_factory is None:
        def engine_factory() -> ContextEngine:
            return ContextEngine(KeeperConfig.for_project(project_root))
    session = _MCPSession(engine_factory)

    logger.info("ctxkeep MCP server ready (stdio transport)")
    try:
        for line in stdin:
            line = line.strip()
            if not line:
                continue
            try:
                msg = json.loads(line)
            except json.JSONDecodeError:
                _write(stdout, _error(None, -32700, "Parse error"))
                continue
            if not isinstance(msg, dict):
                _write(stdout, _error(None, -32600, "Invalid request"))
                continue
            response = handle_message(session, msg)
            if response is not None:
                _write(stdout, response)
    finally:
        session.close()


def _write(stdout: TextIO, response: dict[str, Any]) -> None:
    stdout.write(json.dumps(response, default=str) + "\n")
    stdout.flush()


def setup_stderr_logging(level: int = logging.INFO) -> None:
    """Route all ctxkeep logging to stderr so stdout stays clean for JSON-RPC."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s — %(message)s", datefmt="%H:%M:%S"
    ))
    root = logging.getLogger("ctxkeep")
    root.addHandler(handler)
    root.setLevel(level)
    # Prevent propagation to root logger (which might write to stdout)
    root.propagate = False
