"""
ctxkeep — durable working context for conversational coding assistants.

Persists an assistant's session summary, file references, tool history and a
condensed replay of recent dialogue, and reconciles that context between a
project-local store and an optional remote store.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ctxkeep")
except PackageNotFoundError:
    # running from a source tree that was never installed
    __version__ = "0.0.0"
