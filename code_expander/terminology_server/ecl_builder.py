"""
ECL (Expression Constraint Language) construction for ValueSet/$expand.

Every code is checked before it is placed in an expression; one malformed code is dropped
with a warning instead of making the whole server query fail.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple, TypeVar

from ..metadata.code_validation import is_valid_snomed_code
from ..system.debug_output import emit_debug

logger = logging.getLogger(__name__)

UK_PRODUCT_CONCEPT = "10363601000001109"
HAS_PRECISE_ACTIVE_INGREDIENT = "762949000"


@dataclass(frozen=True)
class ClassifiedValue:
    """A code ready for query construction."""
    code: str
    include_children: bool = False
    is_refset: bool = False


# Anything with code / include_children / is_refset attributes (SourceValue included)
V = TypeVar("V")


def separate_refsets(values: Sequence[V]) -> Tuple[List[V], List[V]]:
    """Split values into (refsets, non-refsets), keeping input order in each."""
    refsets = [v for v in values if v.is_refset]
    non_refsets = [v for v in values if not v.is_refset]
    return refsets, non_refsets


def _valid_unique(values: Sequence[V]) -> List[V]:
    unique = {}
    for value in values:
        if not is_valid_snomed_code(value.code):
            logger.warning(f"Filtering out invalid SNOMED code: {value.code!r}")
            continue
        if value.code in unique:
            emit_debug("ecl_builder", f"Removing duplicate code: {value.code}")
            continue
        unique[value.code] = value
    return list(unique.values())


def _valid_exclusions(excluded_codes: Sequence[str]) -> List[str]:
    exclusions = []
    for code in excluded_codes or []:
        if not is_valid_snomed_code(code):
            logger.warning(f"Filtering out invalid exclusion code: {code!r}")
            continue
        if code not in exclusions:
            exclusions.append(code)
    return exclusions


def build_batched_ecl_query(values: Sequence[V], excluded_codes: Sequence[str] = ()) -> str:
    """
    Build one ECL expression covering every value.

    Refsets become "^ code", values with children "<< code", the rest the bare code. Terms are
    joined with OR in that group order; exclusions are subtracted with their descendants.

    Returns:
        The expression, or "" when no valid code remains
    """
    deduplicated = _valid_unique(values)

    refsets = [v for v in deduplicated if v.is_refset]
    with_children = [v for v in deduplicated if not v.is_refset and v.include_children]
    exact = [v for v in deduplicated if not v.is_refset and not v.include_children]

    emit_debug(
        "ecl_builder",
        f"Total: {len(deduplicated)}, Refsets: {len(refsets)}, "
        f"With descendants (<<): {len(with_children)}, Exact match: {len(exact)}",
    )

    parts = [f"^ {v.code}" for v in refsets]
    parts.extend(f"<< {v.code}" for v in with_children)
    parts.extend(v.code for v in exact)

    expression = " OR ".join(parts)
    if not expression.strip():
        return ""

    exclusions = _valid_exclusions(excluded_codes)
    if exclusions:
        excluded = " OR ".join(f"<< {code}" for code in exclusions)
        expression = f"({expression}) MINUS ({excluded})"

    return expression


def build_batched_ecl_query_without_refsets(values: Sequence[V], excluded_codes: Sequence[str] = ()) -> str:
    _, non_refsets = separate_refsets(values)
    return build_batched_ecl_query(non_refsets, excluded_codes)


def build_uk_product_ecl(substance_code: str) -> str:
    """UK products whose precise active ingredient is the substance or one of its descendants."""
    return (
        f"<< (< {UK_PRODUCT_CONCEPT} |UK Product| : "
        f"{HAS_PRECISE_ACTIVE_INGREDIENT} |Has precise active ingredient| = << {substance_code})"
    )


def estimate_ecl_complexity(expression: str) -> int:
    """Rough query cost: one per OR, two per descendant operator."""
    return len(re.findall(r"OR", expression)) + 2 * len(re.findall(r"<<", expression))
