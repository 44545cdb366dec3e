"""
Pytest configuration: isolate process-wide state between tests.
"""

import pytest

from code_expander.caching.rf2_cache import reset_rf2_caches
from code_expander.expansion.service import reset_expansion_service
from code_expander.system.debug_output import set_debug_mode


@pytest.fixture(autouse=True)
def _isolate_process_state():
    set_debug_mode(False)
    yield
    set_debug_mode(None)
    reset_rf2_caches()
    reset_expansion_service()
