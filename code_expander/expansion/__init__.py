"""
Value set expansion: orchestration, service facade and tabular views.

Usage:
    from code_expander.expansion import get_expansion_service
    from code_expander.metadata import ReportInput

    service = get_expansion_service()
    service.configure_credentials(client_id, client_secret)
    result = service.expand_report(ReportInput.from_dict(parsed_report))
"""

from .aggregate import (
    build_concept_rows,
    build_normalised_tables,
    build_summary_frame,
    format_for_sql,
    generate_sql_in_clause,
)
from .orchestrator import ExpansionState, ResolvedValue, ValueSetExpansionOrchestrator
from .service import ExpansionService, get_expansion_service, reset_expansion_service

__all__ = [
    'ValueSetExpansionOrchestrator',
    'ExpansionState',
    'ResolvedValue',
    'ExpansionService',
    'get_expansion_service',
    'reset_expansion_service',
    'build_concept_rows',
    'build_normalised_tables',
    'build_summary_frame',
    'format_for_sql',
    'generate_sql_in_clause',
]
