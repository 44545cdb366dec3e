"""
Canonical models for the expansion pipeline.
Inputs come from the EMIS search parser; results are consumed by UI and export layers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..system.error_handling import FailureReason
from ..system.settings import SNOMED_SYSTEM_URI
from .code_systems import DEFAULT_CODE_SYSTEM, normalise_code_system


class ConceptSource(Enum):
    """Where an expanded concept came from."""
    LOCAL_FILE = "rf2_file"
    REMOTE_QUERY = "terminology_server"


def _first_present(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class SourceValue:
    """One line item of a value set as declared in the EMIS export."""
    code: str
    display_name: str = ""
    include_children: bool = False
    is_refset: bool = False
    code_system: str = DEFAULT_CODE_SYSTEM

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceValue":
        """Accept parser output in camelCase or snake_case."""
        code = str(_first_present(data, "code", "emis_guid", default="")).strip()
        display = _first_present(data, "displayName", "display_name", "display", default="")
        return cls(
            code=code,
            display_name=str(display) if display else code,
            include_children=bool(_first_present(data, "includeChildren", "include_children", default=False)),
            is_refset=bool(_first_present(data, "isRefset", "is_refset", default=False)),
            code_system=normalise_code_system(_first_present(data, "codeSystem", "code_system", default="")),
        )


@dataclass(frozen=True)
class ValueSetInput:
    """Ordered source values plus the codes to subtract from the final concept set."""
    values: List[SourceValue]
    excluded_codes: List[str] = field(default_factory=list)
    value_set_id: str = ""
    index: int = 0
    code_system: str = ""

    @property
    def codes(self) -> List[str]:
        return [value.code for value in self.values]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: Optional[int] = None) -> "ValueSetInput":
        raw_values = _first_present(data, "values", default=[])
        excluded = _first_present(data, "excludedCodes", "excluded_codes", "exclusions", default=[])
        return cls(
            values=[SourceValue.from_dict(item) for item in raw_values],
            excluded_codes=[str(code).strip() for code in excluded if str(code).strip()],
            value_set_id=str(_first_present(data, "valueSetId", "value_set_id", "id", default="")),
            index=int(index if index is not None else _first_present(data, "index", default=0)),
            code_system=str(_first_present(data, "codeSystem", "code_system", default="")),
        )


@dataclass(frozen=True)
class ReportInput:
    """All value sets belonging to one parent search/report."""
    report_id: str
    report_name: str
    value_sets: List[ValueSetInput]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReportInput":
        raw_value_sets = _first_present(data, "valueSets", "value_sets", default=[])
        return cls(
            report_id=str(_first_present(data, "reportId", "report_id", "id", default="")),
            report_name=str(_first_present(data, "reportName", "report_name", "name", default="")),
            value_sets=[ValueSetInput.from_dict(vs, index=i) for i, vs in enumerate(raw_value_sets)],
        )


@dataclass(frozen=True)
class TranslatedCode:
    """Successful ConceptMap translation of an EMIS code."""
    code: str
    display: Optional[str] = None
    equivalence: Optional[str] = None
    concept_map_id: Optional[str] = None


@dataclass(frozen=True)
class TargetConcept:
    """An expanded SNOMED CT concept with provenance."""
    code: str
    display: str
    system: str = SNOMED_SYSTEM_URI
    source: ConceptSource = ConceptSource.REMOTE_QUERY
    is_refset: bool = False
    exclude_children: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "display": self.display,
            "system": self.system,
            "source": self.source.value,
            "isRefset": self.is_refset,
            "excludeChildren": self.exclude_children,
        }


@dataclass(frozen=True)
class OriginalCodeRecord:
    """A source value plus what the pipeline did with it."""
    original_code: str
    display_name: str
    code_system: str
    include_children: bool
    is_refset: bool
    translated_to: Optional[str] = None
    translated_to_display: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalCode": self.original_code,
            "displayName": self.display_name,
            "codeSystem": self.code_system,
            "includeChildren": self.include_children,
            "isRefset": self.is_refset,
            "translatedTo": self.translated_to,
            "translatedToDisplay": self.translated_to_display,
        }


@dataclass(frozen=True)
class FailedCode:
    original_code: str
    display_name: str
    code_system: str
    reason: FailureReason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalCode": self.original_code,
            "displayName": self.display_name,
            "codeSystem": self.code_system,
            "reason": self.reason.description,
        }


@dataclass(frozen=True)
class RefsetSummary:
    refset_id: str
    name: str


@dataclass(frozen=True)
class ValueSetResult:
    """Fully attributed expansion of one value set."""
    id: str
    hash: str
    friendly_name: str
    index: int
    value_set_id: str
    concepts: List[TargetConcept]
    original_codes: List[OriginalCodeRecord]
    failed_codes: List[FailedCode]
    refsets_resolved: List[RefsetSummary]
    expansion_error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    excluded_codes: List[str] = field(default_factory=list)
    expanded_at: datetime = field(default_factory=datetime.now)

    @property
    def concept_codes(self) -> List[str]:
        return [concept.code for concept in self.concepts]

    @property
    def sql_formatted_codes(self) -> str:
        from ..expansion.aggregate import format_for_sql
        return format_for_sql(self.concept_codes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valueSetId": self.id,
            "valueSetHash": self.hash,
            "valueSetFriendlyName": self.friendly_name,
            "valueSetIndex": self.index,
            "sourceValueSetId": self.value_set_id,
            "concepts": [concept.to_dict() for concept in self.concepts],
            "originalCodes": [record.to_dict() for record in self.original_codes],
            "failedCodes": [failed.to_dict() for failed in self.failed_codes],
            "refsetsResolved": [
                {"refsetId": refset.refset_id, "refsetName": refset.name} for refset in self.refsets_resolved
            ],
            "expansionError": self.expansion_error,
            "warnings": list(self.warnings),
            "excludedCodes": list(self.excluded_codes),
            "expandedAt": self.expanded_at.isoformat(),
        }


@dataclass(frozen=True)
class ReportExpansionResult:
    """Results for every value set of one report, in input order."""
    report_id: str
    report_name: str
    value_sets: List[ValueSetResult]
    cancelled: bool = False
    expanded_at: datetime = field(default_factory=datetime.now)

    def unique_concepts(self) -> List[TargetConcept]:
        """Concepts across all value sets, first occurrence wins."""
        seen: Dict[str, TargetConcept] = {}
        for value_set in self.value_sets:
            for concept in value_set.concepts:
                if concept.code not in seen:
                    seen[concept.code] = concept
        return list(seen.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reportId": self.report_id,
            "reportName": self.report_name,
            "cancelled": self.cancelled,
            "expandedAt": self.expanded_at.isoformat(),
            "valueSets": [value_set.to_dict() for value_set in self.value_sets],
            "uniqueConceptCount": len(self.unique_concepts()),
        }
