"""
Value set models, code checks and identifier derivation
"""

from .code_systems import is_substance_constraint
from .code_validation import RefsetPatternRule, is_valid_snomed_code, validate_snomed_code
from .hash_ids import (
    generate_deterministic_id,
    generate_value_set_friendly_name,
    generate_value_set_hash,
    generate_value_set_id,
    generate_value_set_short_name,
    hash_string,
)
from .models import (
    ConceptSource,
    FailedCode,
    OriginalCodeRecord,
    RefsetSummary,
    ReportExpansionResult,
    ReportInput,
    SourceValue,
    TargetConcept,
    TranslatedCode,
    ValueSetInput,
    ValueSetResult,
)

__all__ = [
    'ConceptSource',
    'SourceValue',
    'ValueSetInput',
    'ReportInput',
    'TranslatedCode',
    'TargetConcept',
    'OriginalCodeRecord',
    'FailedCode',
    'RefsetSummary',
    'ValueSetResult',
    'ReportExpansionResult',
    'RefsetPatternRule',
    'is_valid_snomed_code',
    'validate_snomed_code',
    'is_substance_constraint',
    'generate_value_set_hash',
    'generate_value_set_id',
    'generate_value_set_friendly_name',
    'generate_value_set_short_name',
    'generate_deterministic_id',
    'hash_string',
]
