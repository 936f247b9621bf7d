"""Wire trace logging.

Appends raw stream frames and request outcomes to a plain text file so
protocol problems can be inspected after the fact without turning on
DEBUG logging for the whole process.

Tracing is off unless OPENCODE_TRACE_LOG names a file. An empty value
also disables it.

Usage:
    from opencode_link.trace import trace

    trace("sse", line)
    trace("http", "POST /session -> 500", include_traceback=True)
"""

import os
import traceback as _traceback_module
from datetime import datetime
from typing import Optional, Set


TRACE_ENV_VAR = "OPENCODE_TRACE_LOG"

# Directories already created, to avoid an os.makedirs call per write.
_ensured_dirs: Set[str] = set()


def _ensure_parent_dirs(file_path: str) -> None:
    """Create parent directories for a file path if they don't exist."""
    parent = os.path.dirname(os.path.abspath(file_path))
    if parent not in _ensured_dirs:
        os.makedirs(parent, exist_ok=True)
        _ensured_dirs.add(parent)


def resolve_trace_path(*env_vars: str) -> Optional[str]:
    """Resolve the trace file path from environment variables.

    Checks env vars in order and returns the first non-empty value.

    Args:
        *env_vars: Environment variable names to check, in priority order.

    Returns:
        Resolved file path, or None if tracing is disabled.
    """
    for var in env_vars:
        value = os.environ.get(var)
        if value:
            return value
    return None


def trace_write(
    component: str,
    msg: str,
    trace_path: Optional[str],
    *,
    include_traceback: bool = False,
) -> None:
    """Write a trace message to the given path.

    Never raises - tracing errors are ignored so they cannot break the
    event stream.

    Args:
        component: Component name for the log prefix (e.g. "sse", "http").
        msg: Message to write.
        trace_path: File path to write to. If None, does nothing.
        include_traceback: If True, append the current exception traceback.
    """
    if not trace_path:
        return
    try:
        _ensure_parent_dirs(trace_path)
        with open(trace_path, "a", encoding="utf-8") as f:
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            f.write(f"[{ts}] [{component}] {msg}\n")
            if include_traceback:
                tb = _traceback_module.format_exc()
                if tb and tb.strip() != "NoneType: None":
                    f.write(f"[{ts}] [{component}] Traceback:\n{tb}\n")
    except OSError:
        pass


def trace(
    component: str,
    msg: str,
    *,
    include_traceback: bool = False,
) -> None:
    """Write a trace message to the file named by OPENCODE_TRACE_LOG."""
    trace_write(
        component,
        msg,
        resolve_trace_path(TRACE_ENV_VAR),
        include_traceback=include_traceback,
    )


__all__ = [
    "TRACE_ENV_VAR",
    "resolve_trace_path",
    "trace",
    "trace_write",
]
