"""
Deterministic hashes, identifiers and readable names for value sets.

Identifiers must be reproducible: expanding the same report twice yields the same value set
ids, and two value sets with the same codes share a hash wherever they appear.
"""

import hashlib
import re
from typing import Iterable, List, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ValueSetInput

# Condition names collapse to fixed abbreviations; an empty replacement drops the phrase.
KEYWORD_MAP = {
    # Long term conditions
    "diabetes": "dm",
    "hypertension": "htn",
    "chronic kidney disease": "ckd",
    "kidney disease": "ckd",
    "chronic obstructive pulmonary disease": "copd",
    "obstructive pulmonary disease": "copd",
    "asthma": "asthma",
    "heart failure": "hf",
    "coronary heart disease": "chd",
    "heart disease": "hd",
    "atrial fibrillation": "af",
    "fibrillation": "af",
    "stroke": "stroke",
    "epilepsy": "epilepsy",
    "dementia": "dementia",
    "depression": "depression",
    "anxiety": "anxiety",
    "osteoarthritis": "oa",
    "rheumatoid arthritis": "ra",
    "arthritis": "ra",

    # Register/programme filler
    "register": "reg",
    "long term condition": "",
    "ltc": "",
    "lcs": "",
    "ltc lcs": "",
    "long term": "",

    # Connectives are kept
    "on": "on",
    "and": "and",
    "the": "the",
    "for": "for",
    "of": "of",
    "in": "in",
    "by": "by",
    "with": "with",
    "using": "using",
    "calculation": "calc",
    "calculated": "calc",
    "estimated": "est",
    "measurement": "meas",
    "test": "test",
    "screening": "screen",
    "monitoring": "monitor",
    "management": "mgmt",
    "treatment": "tx",
    "therapy": "tx",
}

# Longest phrases first so "chronic kidney disease" wins over "kidney disease"
_KEYWORD_PATTERNS = [
    (re.compile(rf"\b{re.escape(key)}\b", re.IGNORECASE | re.ASCII), KEYWORD_MAP[key])
    for key in sorted(KEYWORD_MAP, key=len, reverse=True)
]

_MAX_FRIENDLY_LENGTH = 60
_MAX_ACRONYM_LENGTH = 15


def _collapse_spaces(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def apply_keyword_mappings(text: str) -> str:
    result = text.lower().strip()

    for pattern, replacement in _KEYWORD_PATTERNS:
        if replacement == "":
            result = _collapse_spaces(pattern.sub(" ", result))
        else:
            result = pattern.sub(lambda _match, value=replacement: value, result)

    result = re.sub(r"\bpriority\s+group\s+(\d+)\b", r"pg\1", result, flags=re.IGNORECASE | re.ASCII)
    result = re.sub(r"\bpg\s+(\d+)\b", r"pg\1", result, flags=re.IGNORECASE | re.ASCII)

    return _collapse_spaces(result)


def _prepare_report_name(report_name: str) -> str:
    processed = re.sub(r"\[.*?\]", "", report_name or "").strip()
    # "Register (HRC)" -> "Register  HRC "
    processed = re.sub(r"\(([^)]+)\)", r" \1 ", processed)
    processed = processed.replace("-", " ")
    return apply_keyword_mappings(processed)


def generate_value_set_hash(codes: Iterable[str]) -> str:
    """First 16 hex characters of SHA-256 over the sorted codes joined with '|'."""
    code_string = "|".join(sorted(codes))
    return hashlib.sha256(code_string.encode("utf-8")).hexdigest()[:16]


def generate_value_set_id(report_id: str, value_set_hash: str, value_set_index: int) -> str:
    """
    Deterministic UUID-shaped identifier for a value set.

    The index is part of the content so two value sets with identical codes in the same
    report still get distinct ids.
    """
    content = f"{report_id}::{value_set_index}::{value_set_hash}"
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return f"{digest[0:8]}-{digest[8:12]}-{digest[12:16]}-{digest[16:20]}-{digest[20:32]}"


def generate_value_set_friendly_name(report_name: str, value_set_index: int) -> str:
    """
    Slug built from the report name, e.g. "On Diabetes Register (HRC)" -> "on_dm_reg_hrc_vs1".
    """
    sanitized = re.sub(r"[^a-z0-9\s]", "", _prepare_report_name(report_name).lower())
    sanitized = re.sub(r"\s+", "_", sanitized)
    sanitized = re.sub(r"_+", "_", sanitized).strip("_")
    sanitized = sanitized[:_MAX_FRIENDLY_LENGTH]
    return f"{sanitized}_vs{value_set_index + 1}"


def generate_value_set_short_name(report_name: str, value_set_index: int) -> str:
    """Initials of the shortened report name, e.g. "on_dm_reg_hrc_vs1" -> "odrh_vs1"."""
    cleaned = re.sub(r"[^a-z0-9\s]", "", _prepare_report_name(report_name).lower())
    words = [word for word in cleaned.split() if word]
    acronym = "".join(word[0] for word in words)[:_MAX_ACRONYM_LENGTH]
    return f"{acronym}_vs{value_set_index + 1}"


_MASK32 = 0xFFFFFFFF
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _imul(a: int, b: int) -> int:
    return ((a & _MASK32) * (b & _MASK32)) & _MASK32


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: List[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def _utf16_units(text: str) -> Iterable[int]:
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def hash_string(value: str) -> str:
    """
    14-character base-36 hash from two 32-bit multiplicative lanes.

    Operates on UTF-16 code units so hashes match those produced by browser-side tooling.
    """
    h1 = 0xDEADBEEF
    h2 = 0x41C6CE57

    for unit in _utf16_units(value):
        h1 = _imul(h1 ^ unit, 2654435761)
        h2 = _imul(h2 ^ unit, 1597334677)

    h1 = _imul(h1 ^ (h1 >> 16), 2246822507)
    h1 ^= _imul(h2 ^ (h2 >> 13), 3266489909)
    h2 = _imul(h2 ^ (h2 >> 16), 2246822507)
    h2 ^= _imul(h1 ^ (h1 >> 13), 3266489909)

    return _to_base36(h2 & _MASK32).rjust(7, "0") + _to_base36(h1 & _MASK32).rjust(7, "0")


def _js_bool(value: bool) -> str:
    return "true" if value else "false"


def generate_deterministic_id(
    name: str,
    search_name: str,
    rule: str,
    value_sets: Sequence["ValueSetInput"],
    report_index: int,
) -> str:
    """Stable UUID-shaped report identifier derived from the report's content."""
    summaries = []
    for idx, value_set in enumerate(value_sets):
        value_details = ",".join(sorted(
            f"{v.code}:{_js_bool(v.include_children)}:{_js_bool(v.is_refset)}:{v.display_name or ''}"
            for v in value_set.values
        ))
        exceptions = ",".join(sorted(value_set.excluded_codes))
        summaries.append(f"{idx}:{value_set.code_system or ''}:[{value_details}]:[{exceptions}]")

    content = f"{report_index}::{name}::{search_name}::{rule}::{'|'.join(summaries)}"
    digest = hash_string(content)

    return (
        f"{digest[0:8]}-{digest[8:12]}-{digest[12:16]}-"
        f"{hash_string(content + 'a')[0:4]}-{hash_string(content + 'b')[0:12]}"
    )
