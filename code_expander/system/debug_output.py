"""
Pipeline trace output.

Trace lines are written to stderr as ``[LEVEL][component] message`` while debug mode is on.
Debug mode is either pinned for the whole process with set_debug_mode (the service does this
when EXPANDER_DEBUG is set) or read from the Streamlit session toggle. Every line shown is
mirrored to the ``code_expander.trace`` logger so host applications can file it.
"""

import logging
import sys
from typing import Any, Dict, Optional

try:
    import streamlit as st
except Exception:  # pragma: no cover - streamlit not available in all contexts
    st = None

SESSION_DEBUG_KEY = "debug_mode"

trace_logger = logging.getLogger("code_expander.trace")

_process_debug: Optional[bool] = None


def set_debug_mode(enabled: Optional[bool]) -> None:
    """Pin debug mode for this process; None hands control back to the session toggle."""
    global _process_debug
    _process_debug = enabled


def _session_debug() -> bool:
    if st is None:
        return False
    try:
        return bool(st.session_state.get(SESSION_DEBUG_KEY, False))
    except Exception:
        # session_state is unavailable outside a script run
        return False


def is_debug_enabled() -> bool:
    if _process_debug is not None:
        return _process_debug
    return _session_debug()


def format_trace(level: str, component: str, message: str, context: Optional[Dict[str, Any]] = None) -> str:
    """
    Build one trace line.

    Context values that are None or empty are dropped; the rest are appended as
    ``(key=value, ...)`` so a line can name the report or value set it belongs to.
    """
    component_label = "_".join(str(component).split()) or "code_expander"
    line = f"[{str(level).upper()}][{component_label}] {message}"
    details = [f"{key}={value}" for key, value in (context or {}).items() if value not in (None, "")]
    if details:
        line += f" ({', '.join(details)})"
    return line


def emit_console(level: str, component: str, message: str, *, force: bool = False, **context: Any) -> None:
    """Write a trace line; hidden unless debug mode is on or force is set."""
    if not force and not is_debug_enabled():
        return

    line = format_trace(level, component, message, context)
    print(line, file=sys.stderr)
    log_level = logging.getLevelName(str(level).upper())
    trace_logger.log(log_level if isinstance(log_level, int) else logging.DEBUG, line)


def emit_debug(component: str, message: str, **context: Any) -> None:
    emit_console("DEBUG", component, message, **context)


def emit_error(component: str, message: str, **context: Any) -> None:
    """Errors are always shown, debug mode or not."""
    emit_console("ERROR", component, message, force=True, **context)
