"""
Code system label helpers for values coming out of the EMIS search parser.
"""

SNOMED_CONCEPT = "SNOMED_CONCEPT"
SCT_CONST = "SCT_CONST"
EMISINTERNAL = "EMISINTERNAL"

DEFAULT_CODE_SYSTEM = EMISINTERNAL


def normalise_code_system(code_system: str) -> str:
    """Upper-case a code system label, defaulting missing labels to EMISINTERNAL."""
    if not code_system or not str(code_system).strip():
        return DEFAULT_CODE_SYSTEM
    return str(code_system).strip().upper()


def is_substance_constraint(code_system: str) -> bool:
    """SCT_CONST values name a substance whose products must be expanded."""
    return (code_system or "").upper() == SCT_CONST

