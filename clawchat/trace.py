"""Trace file channel.

A plain append-only text log for protocol debugging, separate from the
``logging`` tree so that per-delta chatter never reaches application log
handlers.

Path resolution:
    CLAWCHAT_TRACE_LOG unset or empty -> tracing disabled.
    Otherwise the main conversation writes to that path and sub-agent
    conversations write to a sibling file derived from it when a session
    context is set (``trace.log`` -> ``trace_<session>.log``).

Usage:
    from clawchat.trace import trace

    trace("router", "dropped frame: missing runId")
"""

import os
import re
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Optional, Set

TRACE_ENV_VAR = "CLAWCHAT_TRACE_LOG"

_created_dirs: Set[Path] = set()

# Conversation key of the event currently being traced; None for main.
_trace_session_key: ContextVar[Optional[str]] = ContextVar(
    'trace_session_key', default=None
)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def set_trace_session_context(session_key: Optional[str] = None) -> None:
    """Route subsequent trace lines to the file of ``session_key``.

    ``None`` routes back to the base file.
    """
    _trace_session_key.set(session_key)


def clear_trace_session_context() -> None:
    _trace_session_key.set(None)


def _session_trace_path(base_path: str) -> str:
    session_key = _trace_session_key.get()
    if not session_key:
        return base_path
    root, ext = os.path.splitext(base_path)
    return f"{root}_{_UNSAFE_CHARS.sub('_', session_key)}{ext}"


def resolve_trace_path() -> Optional[str]:
    """Return the active trace file path, or None if tracing is disabled."""
    base = os.environ.get(TRACE_ENV_VAR)
    if not base:
        return None
    return _session_trace_path(base)


def trace_write(component: str, msg: str, trace_path: Optional[str]) -> None:
    """Append one timestamped line to ``trace_path``.

    A missing path is a no-op. I/O failures are dropped so tracing can
    never break the stream it is observing.
    """
    if not trace_path:
        return
    path = Path(trace_path)
    stamp = datetime.now().isoformat(timespec="milliseconds")[11:]
    try:
        if path.parent not in _created_dirs:
            path.parent.mkdir(parents=True, exist_ok=True)
            _created_dirs.add(path.parent)
        with path.open("a", encoding="utf-8") as f:
            f.write(f"[{stamp}] [{component}] {msg}\n")
    except OSError:
        pass


def trace(component: str, msg: str) -> None:
    """Write a trace line for ``component`` to the resolved trace file."""
    trace_write(component, msg, resolve_trace_path())
