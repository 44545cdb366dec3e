"""
Expansion Service Layer

Wires settings, the terminology client, the RF2 caches and the orchestrator together:
- Credentials from Streamlit secrets or environment, replaceable at runtime
- One service per Streamlit session, process singleton elsewhere
- Report-level batch expansion with progress and cancellation
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

from ..caching.rf2_cache import Rf2Caches, get_rf2_caches
from ..metadata.models import ReportExpansionResult, ReportInput, ValueSetInput, ValueSetResult
from ..system.debug_output import set_debug_mode
from ..system.error_handling import ConfigurationError
from ..system.settings import ExpanderSettings, load_settings
from ..terminology_server.client import TerminologyClient
from .orchestrator import ValueSetExpansionOrchestrator

logger = logging.getLogger(__name__)

try:
    import streamlit as st
except Exception:
    st = None


class ExpansionService:
    """Service for expanding EMIS value sets into SNOMED CT concept sets"""

    def __init__(self, settings: Optional[ExpanderSettings] = None, caches: Optional[Rf2Caches] = None):
        self.settings = settings or load_settings()
        self.caches = caches or get_rf2_caches(self.settings)
        self._lock = threading.RLock()
        self.client: Optional[TerminologyClient] = None
        self.orchestrator: Optional[ValueSetExpansionOrchestrator] = None

        if self.settings.debug_mode:
            set_debug_mode(True)
        if self.settings.has_credentials:
            self._build_pipeline()

        logger.info("Initialised Expansion Service")

    def _build_pipeline(self) -> None:
        self.client = TerminologyClient(self.settings)
        self.orchestrator = ValueSetExpansionOrchestrator(self.client, self.caches, self.settings)

    def configure_credentials(self, client_id: str, client_secret: str):
        """Configure terminology server credentials"""
        with self._lock:
            self.settings = replace(self.settings, client_id=client_id, client_secret=client_secret)
            self._build_pipeline()
        logger.info("Configured terminology server client")

    @property
    def is_configured(self) -> bool:
        return self.orchestrator is not None

    def _require_orchestrator(self) -> ValueSetExpansionOrchestrator:
        if self.orchestrator is None:
            raise ConfigurationError(
                "Client not configured. Call configure_credentials first.", setting_name="client_id"
            )
        return self.orchestrator

    def expand_value_set(
        self, value_set: ValueSetInput, report_id: str = "", report_name: str = ""
    ) -> ValueSetResult:
        return self._require_orchestrator().expand_value_set(value_set, report_id, report_name)

    def expand_report(
        self,
        report: ReportInput,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> ReportExpansionResult:
        return self._require_orchestrator().expand_report(report, cancel_event, progress_callback)

    def test_connection(self) -> Tuple[bool, str]:
        if self.client is None:
            return False, "Terminology server credentials are not configured"
        return self.client.test_connection()

    def get_cache_statistics(self) -> Dict[str, Any]:
        """RF2 index sizes; reading them builds the indexes if needed."""
        return {
            "refsets": self.caches.refsets.get_stats(),
            "descriptions": self.caches.descriptions.get_stats(),
        }


# Process-wide fallback singleton (used outside Streamlit session contexts)
_expansion_service: Optional[ExpansionService] = None
_service_lock = threading.Lock()


def get_expansion_service() -> ExpansionService:
    """
    Get expansion service instance.

    - In Streamlit runtime: scope to current session via st.session_state
    - Outside Streamlit (tests/scripts): fall back to process singleton
    """
    if st is not None:
        try:
            session_key = "code_expansion_service"
            if session_key not in st.session_state:
                st.session_state[session_key] = ExpansionService()
            return st.session_state[session_key]
        except Exception:
            # If session state isn't available, use process singleton fallback.
            pass

    global _expansion_service
    with _service_lock:
        if _expansion_service is None:
            _expansion_service = ExpansionService()
    return _expansion_service


def reset_expansion_service() -> None:
    global _expansion_service
    with _service_lock:
        _expansion_service = None
