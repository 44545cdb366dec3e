"""
Tabular views over report expansion results for the export layer.

All views are pandas DataFrames with one row per record; column names follow the
normalised export tables (valuesets, original_codes, expanded_concepts, failed_codes,
exceptions).
"""

from typing import Dict, Iterable, List

import pandas as pd

from ..metadata.models import ReportExpansionResult, ValueSetResult

VALUESET_COLUMNS = [
    "valueset_id", "report_id", "valueset_index", "valueset_hash", "valueset_friendly_name",
    "code_system", "expansion_error", "expanded_at",
]
ORIGINAL_CODE_COLUMNS = [
    "original_code_id", "valueset_id", "original_code", "display_name", "code_system",
    "include_children", "is_refset", "translated_to_snomed_code", "translated_to_display",
]
EXPANDED_CONCEPT_COLUMNS = [
    "concept_id", "valueset_id", "snomed_code", "display", "source", "exclude_children",
]
FAILED_CODE_COLUMNS = [
    "failed_code_id", "valueset_id", "original_code", "display_name", "code_system", "reason",
]
EXCEPTION_COLUMNS = ["exception_id", "valueset_id", "excluded_code"]

CONCEPT_ROW_COLUMNS = [
    "report_id", "report_name", "valueset_id", "valueset_index", "valueset_hash",
    "valueset_friendly_name", "snomed_code", "display", "source", "is_refset", "exclude_children",
]


def format_for_sql(codes: Iterable[str]) -> str:
    """Single-quoted, comma-separated codes for an SQL IN clause."""
    return ", ".join("'" + str(code).replace("'", "''") + "'" for code in codes)


def generate_sql_in_clause(codes: Iterable[str], column_name: str = "code") -> str:
    return f"WHERE {column_name} IN ({format_for_sql(codes)})"


def _value_set_code_system(value_set: ValueSetResult) -> str:
    return value_set.original_codes[0].code_system if value_set.original_codes else ""


def build_concept_rows(report: ReportExpansionResult) -> pd.DataFrame:
    """Flattened concepts with the value set each one belongs to."""
    rows = []
    for value_set in report.value_sets:
        for concept in value_set.concepts:
            rows.append({
                "report_id": report.report_id,
                "report_name": report.report_name,
                "valueset_id": value_set.id,
                "valueset_index": value_set.index,
                "valueset_hash": value_set.hash,
                "valueset_friendly_name": value_set.friendly_name,
                "snomed_code": concept.code,
                "display": concept.display,
                "source": concept.source.value,
                "is_refset": concept.is_refset,
                "exclude_children": concept.exclude_children,
            })
    return pd.DataFrame(rows, columns=CONCEPT_ROW_COLUMNS)


def build_summary_frame(report: ReportExpansionResult) -> pd.DataFrame:
    """One row per value set with concept and failure counts."""
    rows = [
        {
            "valueset_id": value_set.id,
            "valueset_index": value_set.index,
            "valueset_friendly_name": value_set.friendly_name,
            "original_codes": len(value_set.original_codes),
            "concepts": len(value_set.concepts),
            "failed_codes": len(value_set.failed_codes),
            "refsets_from_rf2": len(value_set.refsets_resolved),
            "expansion_error": value_set.expansion_error or "",
        }
        for value_set in report.value_sets
    ]
    return pd.DataFrame(rows, columns=[
        "valueset_id", "valueset_index", "valueset_friendly_name", "original_codes", "concepts",
        "failed_codes", "refsets_from_rf2", "expansion_error",
    ])


def build_normalised_tables(report: ReportExpansionResult) -> Dict[str, pd.DataFrame]:
    """Normalised export tables keyed by table name."""
    valuesets: List[Dict] = []
    original_codes: List[Dict] = []
    concepts: List[Dict] = []
    failed_codes: List[Dict] = []
    exceptions: List[Dict] = []

    for value_set in report.value_sets:
        valuesets.append({
            "valueset_id": value_set.id,
            "report_id": report.report_id,
            "valueset_index": value_set.index,
            "valueset_hash": value_set.hash,
            "valueset_friendly_name": value_set.friendly_name,
            "code_system": _value_set_code_system(value_set),
            "expansion_error": value_set.expansion_error or "",
            "expanded_at": value_set.expanded_at.isoformat(),
        })

        for n, record in enumerate(value_set.original_codes, start=1):
            original_codes.append({
                "original_code_id": f"{value_set.id}-oc{n}",
                "valueset_id": value_set.id,
                "original_code": record.original_code,
                "display_name": record.display_name,
                "code_system": record.code_system,
                "include_children": record.include_children,
                "is_refset": record.is_refset,
                "translated_to_snomed_code": record.translated_to or "",
                "translated_to_display": record.translated_to_display or "",
            })

        for n, concept in enumerate(value_set.concepts, start=1):
            concepts.append({
                "concept_id": f"{value_set.id}-c{n}",
                "valueset_id": value_set.id,
                "snomed_code": concept.code,
                "display": concept.display,
                "source": concept.source.value,
                "exclude_children": concept.exclude_children,
            })

        for n, failed in enumerate(value_set.failed_codes, start=1):
            failed_codes.append({
                "failed_code_id": f"{value_set.id}-f{n}",
                "valueset_id": value_set.id,
                "original_code": failed.original_code,
                "display_name": failed.display_name,
                "code_system": failed.code_system,
                "reason": failed.reason.description,
            })

        for n, code in enumerate(value_set.excluded_codes, start=1):
            exceptions.append({
                "exception_id": f"{value_set.id}-x{n}",
                "valueset_id": value_set.id,
                "excluded_code": code,
            })

    return {
        "valuesets": pd.DataFrame(valuesets, columns=VALUESET_COLUMNS),
        "original_codes": pd.DataFrame(original_codes, columns=ORIGINAL_CODE_COLUMNS),
        "expanded_concepts": pd.DataFrame(concepts, columns=EXPANDED_CONCEPT_COLUMNS),
        "failed_codes": pd.DataFrame(failed_codes, columns=FAILED_CODE_COLUMNS),
        "exceptions": pd.DataFrame(exceptions, columns=EXCEPTION_COLUMNS),
    }
