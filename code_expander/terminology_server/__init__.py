"""
FHIR terminology server integration for value set expansion.

Main Components:
- TerminologyClient: API client with OAuth2 token caching
- ConceptMapTranslator / HistoricalResolver: per-code resolution in rate-limited groups
- RefsetExpander / SctConstExpander: refset members and substance products
- ECL builder helpers for ValueSet/$expand
"""

from .batching import GroupedBatchResult, run_in_groups
from .client import TerminologyClient, TokenManager
from .ecl_builder import (
    ClassifiedValue,
    build_batched_ecl_query,
    build_uk_product_ecl,
    estimate_ecl_complexity,
    separate_refsets,
)
from .historical import ASSOCIATION_PRIORITY, HistoricalResolution, HistoricalResolver
from .refset_expander import RefsetExpander
from .sct_const import SctConstExpander
from .translator import (
    ACCEPTED_EQUIVALENCES,
    ConceptMapStrategy,
    ConceptMapTranslator,
    ResolutionOutcome,
)

__all__ = [
    'TerminologyClient',
    'TokenManager',
    'GroupedBatchResult',
    'run_in_groups',
    'ClassifiedValue',
    'build_batched_ecl_query',
    'build_uk_product_ecl',
    'estimate_ecl_complexity',
    'separate_refsets',
    'ASSOCIATION_PRIORITY',
    'HistoricalResolution',
    'HistoricalResolver',
    'RefsetExpander',
    'SctConstExpander',
    'ACCEPTED_EQUIVALENCES',
    'ConceptMapStrategy',
    'ConceptMapTranslator',
    'ResolutionOutcome',
]
