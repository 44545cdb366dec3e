"""
Syntactic checks applied to every code before it reaches a terminology server query.
"""

import re
from typing import Optional

_SNOMED_CODE_PATTERN = re.compile(r"[0-9]{6,18}")


def validate_snomed_code(code: str) -> Optional[str]:
    """
    Validate SNOMED code format

    Returns:
        Error message if invalid, None if valid
    """
    if not code or not code.strip():
        return "Code cannot be empty"

    if code != code.strip():
        return f"Invalid code format: '{code}' has surrounding whitespace"

    # SNOMED codes are numeric and 6-18 digits
    if not code.isascii() or not code.isdigit():
        return f"Invalid code format: '{code}' should contain only numbers"

    if len(code) < 6:
        return f"Code '{code}' is too short (SNOMED codes are 6-18 digits)"

    if len(code) > 18:
        return f"Code '{code}' is too long (SNOMED codes are 6-18 digits)"

    return None


def is_valid_snomed_code(code: str) -> bool:
    return bool(code) and _SNOMED_CODE_PATTERN.fullmatch(code) is not None


class RefsetPatternRule:
    """
    Marks refset-like codes by numeric prefix and minimum length.

    EMIS exports do not always flag refsets explicitly; locally defined refsets use the
    999 namespace prefix and long identifiers. Any callable taking a code and returning
    a bool can replace this rule.
    """

    def __init__(self, prefix: str = "999", min_length: int = 15):
        self.prefix = prefix
        self.min_length = min_length

    def __call__(self, code: str) -> bool:
        if not is_valid_snomed_code(code):
            return False
        return code.startswith(self.prefix) and len(code) >= self.min_length

    def __repr__(self) -> str:
        return f"RefsetPatternRule(prefix={self.prefix!r}, min_length={self.min_length})"
