"""
System utilities for the code expander: settings, error taxonomy and debug logging
"""

from .debug_logger import ExpansionDebugLogger, get_debug_logger
from .debug_output import emit_debug, emit_error, is_debug_enabled, set_debug_mode
from .error_handling import (
    ConfigurationError,
    ErrorHandler,
    ExpanderError,
    FailureReason,
    PreconditionError,
    RemoteProtocolError,
    RemoteTransportError,
    ResolutionStatus,
    TerminologyServerError,
)
from .settings import ExpanderSettings, load_settings
from .version import __version__

__all__ = [
    'ExpanderSettings',
    'load_settings',
    'ExpanderError',
    'ConfigurationError',
    'PreconditionError',
    'TerminologyServerError',
    'RemoteTransportError',
    'RemoteProtocolError',
    'ResolutionStatus',
    'FailureReason',
    'ErrorHandler',
    'ExpansionDebugLogger',
    'get_debug_logger',
    'emit_debug',
    'emit_error',
    'is_debug_enabled',
    'set_debug_mode',
    '__version__',
]
