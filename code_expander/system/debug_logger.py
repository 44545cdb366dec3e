"""
Debug Logging Utility
Structured audit logging for the expansion pipeline, switched on by debug mode.
"""

import logging
import sys
from typing import Dict, Optional, TYPE_CHECKING

from .debug_output import is_debug_enabled
from .version import __version__

if TYPE_CHECKING:
    from ..metadata.models import ValueSetResult


class ExpansionDebugLogger:
    """
    Debug logger for the EMIS to SNOMED expansion process.
    Provides structured logging for audit trails and troubleshooting.
    """

    def __init__(self, enable_debug: bool = False):
        """
        Initialise the debug logger.

        Args:
            enable_debug: Whether to enable debug logging
        """
        self.enable_debug = enable_debug
        self.logger = logging.getLogger("code_expander.audit")

        if self.enable_debug:
            self.logger.setLevel(logging.DEBUG)
            self.logger.propagate = False

            formatter = logging.Formatter("[%(levelname)s][%(name)s] %(message)s")

            # Keep a single managed handler so formatting stays consistent.
            self.logger.handlers.clear()

            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)
            self.logger.debug(f"Audit logging enabled (code_expander {__version__})")

    def log_translation_summary(self, requested: int, translated: int) -> None:
        """Log how many source codes the concept maps resolved."""
        if not self.enable_debug:
            return

        self.logger.info(f"ConceptMap translation: {translated}/{requested} codes translated")

    def log_historical_summary(self, redirects: Dict[str, str]) -> None:
        """Log inactive concepts that were redirected to a replacement."""
        if not self.enable_debug:
            return

        self.logger.info(f"Historical resolution: {len(redirects)} inactive concepts redirected")
        for old_code, new_code in redirects.items():
            self.logger.debug(f"Historical redirect: {old_code} -> {new_code}")

    def log_value_set_result(self, result: "ValueSetResult") -> None:
        """Log the outcome of one value set expansion."""
        if not self.enable_debug:
            return

        self.logger.info(
            f"Value set {result.friendly_name} ({result.hash}): {len(result.concepts)} concepts, "
            f"{len(result.failed_codes)} failed codes, {len(result.refsets_resolved)} refsets from RF2"
        )
        if result.expansion_error:
            self.logger.warning(f"Value set {result.friendly_name}: {result.expansion_error}")

    def log_error(self, error: Exception, context: str = "") -> None:
        """Log errors with context."""
        if not self.enable_debug:
            return

        context_msg = f" in {context}" if context else ""
        self.logger.error(f"Error{context_msg}: {str(error)}", exc_info=True)


def get_debug_logger(enable_debug: Optional[bool] = None) -> ExpansionDebugLogger:
    """
    Get a debug logger instance based on the debug toggle.

    Returns:
        ExpansionDebugLogger instance
    """
    if enable_debug is None:
        enable_debug = is_debug_enabled()
    return ExpansionDebugLogger(enable_debug)
