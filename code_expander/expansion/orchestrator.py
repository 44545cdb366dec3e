"""
Value set expansion orchestrator.

Drives one value set through translation, historical resolution, classification, expansion,
merging and finalisation. Remote failures only remove results from one source; the sole
exception that escapes expand_value_set is PreconditionError for an empty value set.

Value sets of a report are expanded one after another, each with its own working state, so
flags on a code in one value set never leak into a sibling that shares the code.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from ..caching.rf2_cache import Rf2Caches
from ..metadata.code_systems import is_substance_constraint
from ..metadata.code_validation import RefsetPatternRule
from ..metadata.hash_ids import (
    generate_value_set_friendly_name,
    generate_value_set_hash,
    generate_value_set_id,
)
from ..metadata.models import (
    FailedCode,
    OriginalCodeRecord,
    ReportExpansionResult,
    ReportInput,
    SourceValue,
    TargetConcept,
    TranslatedCode,
    ValueSetInput,
    ValueSetResult,
)
from ..system.debug_logger import ExpansionDebugLogger, get_debug_logger
from ..system.debug_output import emit_debug, emit_error
from ..system.error_handling import (
    REFSET_UNAVAILABLE_MESSAGE,
    ErrorHandler,
    ExpanderError,
    FailureReason,
    PreconditionError,
)
from ..system.settings import ExpanderSettings
from ..terminology_server.client import TerminologyClient
from ..terminology_server.ecl_builder import build_batched_ecl_query, separate_refsets
from ..terminology_server.historical import HistoricalResolution, HistoricalResolver
from ..terminology_server.refset_expander import RefsetExpander
from ..terminology_server.sct_const import SctConstExpander
from ..terminology_server.translator import ConceptMapTranslator

logger = logging.getLogger(__name__)

RefsetRule = Callable[[str], bool]


class ExpansionState(Enum):
    INIT = "init"
    TRANSLATING = "translating"
    CLASSIFYING = "classifying"
    EXPANDING = "expanding"
    MERGING = "merging"
    FINALIZING = "finalizing"
    DONE = "done"


_STATE_ORDER = list(ExpansionState)


class _ExpansionRun:
    """Forward-only state tracker for one value set."""

    def __init__(self, value_set: ValueSetInput):
        self.label = value_set.value_set_id or f"index {value_set.index}"
        self.state = ExpansionState.INIT
        self.warnings: List[str] = []

    def advance(self, state: ExpansionState) -> None:
        if _STATE_ORDER.index(state) <= _STATE_ORDER.index(self.state):
            raise RuntimeError(f"Invalid expansion state transition {self.state.value} -> {state.value}")
        emit_debug("orchestrator", f"{self.state.value} -> {state.value}", value_set=self.label)
        self.state = state


@dataclass(frozen=True)
class ResolvedValue:
    """A source value after translation, historical resolution and refset probing."""
    source: SourceValue
    position: int
    code: str
    translation: Optional[TranslatedCode]
    is_refset: bool
    is_substance: bool

    @property
    def include_children(self) -> bool:
        return self.source.include_children

    @property
    def translated(self) -> bool:
        return self.translation is not None


class ValueSetExpansionOrchestrator:
    """Expands value sets into attributed SNOMED CT concept sets"""

    def __init__(
        self,
        client: TerminologyClient,
        caches: Rf2Caches,
        settings: ExpanderSettings,
        translator: Optional[ConceptMapTranslator] = None,
        resolver: Optional[HistoricalResolver] = None,
        refset_expander: Optional[RefsetExpander] = None,
        sct_expander: Optional[SctConstExpander] = None,
        refset_rule: Optional[RefsetRule] = None,
        debug_logger: Optional[ExpansionDebugLogger] = None,
    ):
        self.client = client
        self.caches = caches
        self.settings = settings
        self.translator = translator or ConceptMapTranslator(client, settings)
        self.resolver = resolver or HistoricalResolver(client, settings)
        self.refset_expander = refset_expander or RefsetExpander(caches, client, settings)
        self.sct_expander = sct_expander or SctConstExpander(client)
        if refset_rule is None and settings.refset_pattern_enabled:
            refset_rule = RefsetPatternRule(settings.refset_pattern_prefix, settings.refset_pattern_min_length)
        self.refset_rule = refset_rule
        self.debug_logger = debug_logger or get_debug_logger(settings.debug_mode or None)
        self.error_handler = ErrorHandler(__name__)

    def _is_refset_like(self, value: SourceValue) -> bool:
        if value.is_refset:
            return True
        return self.refset_rule is not None and bool(self.refset_rule(value.code))

    def _resolve_value(
        self,
        value: SourceValue,
        position: int,
        translation: Optional[TranslatedCode],
        resolutions: Dict[str, HistoricalResolution],
    ) -> ResolvedValue:
        snomed_code = translation.code if translation else value.code
        resolution = resolutions.get(snomed_code)
        code = resolution.current_id if resolution else snomed_code
        is_substance = is_substance_constraint(value.code_system)
        is_refset = self._is_refset_like(value)

        # Untranslated codes may be refset ids the concept maps know nothing about
        if translation is None and not is_refset and not is_substance:
            for candidate in dict.fromkeys([code, value.code]):
                if self.refset_expander.refset_exists(candidate):
                    emit_debug("orchestrator", f"Reclassified {value.code} as RF2 refset {candidate}")
                    is_refset = True
                    code = candidate
                    break

        return ResolvedValue(
            source=value,
            position=position,
            code=code,
            translation=translation,
            is_refset=is_refset,
            is_substance=is_substance,
        )

    @staticmethod
    def _merge(*sources: Sequence[TargetConcept]) -> List[TargetConcept]:
        merged: Dict[str, TargetConcept] = {}
        for source in sources:
            for concept in source:
                if concept.code not in merged:
                    merged[concept.code] = concept
        return list(merged.values())

    @staticmethod
    def _reconcile(concepts: List[TargetConcept], resolved: List[ResolvedValue]) -> List[TargetConcept]:
        """Concepts that are themselves parent codes take that parent's refset and children intent."""
        by_code: Dict[str, ResolvedValue] = {}
        for value in resolved:
            by_code.setdefault(value.code, value)

        reconciled = []
        for concept in concepts:
            parent = by_code.get(concept.code)
            if parent is not None:
                concept = replace(
                    concept, is_refset=parent.is_refset, exclude_children=not parent.include_children
                )
            reconciled.append(concept)
        return reconciled

    def expand_value_set(
        self,
        value_set: ValueSetInput,
        report_id: str = "",
        report_name: str = "",
    ) -> ValueSetResult:
        """
        Expand one value set.

        Args:
            value_set: source values and exclusions
            report_id: id of the owning report, part of the value set id
            report_name: display name of the owning report, basis of the friendly name

        Returns:
            ValueSetResult

        Raises:
            PreconditionError: the value set has no codes
        """
        if not value_set.values:
            raise PreconditionError("No parent codes provided", value_set_id=value_set.value_set_id)

        run = _ExpansionRun(value_set)
        values = value_set.values

        run.advance(ExpansionState.TRANSLATING)
        source_codes = [value.code for value in values]
        translations = self.translator.translate_batch(source_codes)
        self.debug_logger.log_translation_summary(len(set(source_codes)), len(translations))

        snomed_codes = [translations[code].code if code in translations else code for code in source_codes]
        resolutions = self.resolver.resolve_batch(snomed_codes)
        self.debug_logger.log_historical_summary(
            {code: r.current_id for code, r in resolutions.items() if r.current_id != code}
        )

        resolved = [
            self._resolve_value(value, position, translations.get(value.code), resolutions)
            for position, value in enumerate(values)
        ]

        run.advance(ExpansionState.CLASSIFYING)
        substances = [r for r in resolved if r.is_substance]
        refsets, others = separate_refsets([r for r in resolved if not r.is_substance])
        emit_debug(
            "orchestrator",
            f"{len(substances)} SCT_CONST, {len(refsets)} refsets, {len(others)} other values",
        )

        run.advance(ExpansionState.EXPANDING)
        product_concepts: List[TargetConcept] = []
        expanded_substances = set()
        for value in substances:
            products = self.sct_expander.expand_substance(value.code, value.include_children)
            if products:
                expanded_substances.add(value.position)
                product_concepts.extend(products)

        local_refsets = self.refset_expander.expand_many(r.code for r in refsets)
        fallback_refsets = [r for r in refsets if r.code not in local_refsets]
        if fallback_refsets:
            emit_debug("orchestrator", f"{len(fallback_refsets)} refsets not in RF2, querying via ECL")

        ecl_concepts: List[TargetConcept] = []
        ecl = build_batched_ecl_query(others + fallback_refsets, value_set.excluded_codes)
        if ecl:
            try:
                ecl_concepts = self.client.expand_ecl(ecl)
            except ExpanderError as e:
                logger.warning(f"ECL expansion failed for value set {run.label}: {e.message}")
                run.warnings.append(f"ECL expansion failed: {e.message}")

        run.advance(ExpansionState.MERGING)
        refset_concepts = [concept for members in local_refsets.values() for concept in members]
        merged = self._reconcile(self._merge(refset_concepts, ecl_concepts, product_concepts), resolved)
        excluded = set(value_set.excluded_codes)
        concepts = [concept for concept in merged if concept.code not in excluded]
        if len(concepts) != len(merged):
            emit_debug("orchestrator", f"Excluded {len(merged) - len(concepts)} concepts")

        run.advance(ExpansionState.FINALIZING)
        expansion_error = self._detect_refset_error(resolved, concepts)
        failed_codes = self._classify_failures(resolved, concepts, expanded_substances, set(local_refsets))

        original_codes = [
            OriginalCodeRecord(
                original_code=r.source.code,
                display_name=r.source.display_name,
                code_system=r.source.code_system,
                include_children=r.include_children,
                is_refset=r.is_refset,
                translated_to=r.code if r.translated else None,
                translated_to_display=r.translation.display if r.translated else None,
            )
            for r in resolved
        ]

        value_set_hash = generate_value_set_hash(source_codes)
        result = ValueSetResult(
            id=generate_value_set_id(report_id, value_set_hash, value_set.index),
            hash=value_set_hash,
            friendly_name=generate_value_set_friendly_name(report_name, value_set.index),
            index=value_set.index,
            value_set_id=value_set.value_set_id,
            concepts=concepts,
            original_codes=original_codes,
            failed_codes=failed_codes,
            refsets_resolved=[self.refset_expander.refset_summary(refset_id) for refset_id in local_refsets],
            expansion_error=expansion_error,
            warnings=list(run.warnings),
            excluded_codes=list(value_set.excluded_codes),
        )

        self.debug_logger.log_value_set_result(result)
        run.advance(ExpansionState.DONE)
        return result

    @staticmethod
    def _detect_refset_error(resolved: List[ResolvedValue], concepts: List[TargetConcept]) -> Optional[str]:
        """A refset-only value set whose expansion echoed back just its own ids was not recognised."""
        if not concepts or not all(r.is_refset for r in resolved):
            return None

        original_codes = {r.code for r in resolved}
        if all(concept.code in original_codes for concept in concepts):
            # A refset that lists itself as a member also lands here
            emit_debug("orchestrator", "Refset expansion returned only the refset ids themselves")
            return REFSET_UNAVAILABLE_MESSAGE
        return None

    @staticmethod
    def _classify_failures(
        resolved: List[ResolvedValue],
        concepts: List[TargetConcept],
        expanded_substances: set,
        local_refset_ids: set,
    ) -> List[FailedCode]:
        final_codes = {concept.code for concept in concepts}
        failed = []
        for value in resolved:
            if value.is_substance and value.position in expanded_substances:
                continue
            if value.is_refset and value.code in local_refset_ids:
                continue
            if value.code in final_codes or value.source.code in final_codes:
                continue

            if value.translated or value.is_refset:
                reason = FailureReason.NOT_IN_EXPANSION
            else:
                reason = FailureReason.NO_TRANSLATION
            failed.append(FailedCode(
                original_code=value.source.code,
                display_name=value.source.display_name,
                code_system=value.source.code_system,
                reason=reason,
            ))
        return failed

    def _error_result(self, value_set: ValueSetInput, report: ReportInput, message: str) -> ValueSetResult:
        value_set_hash = generate_value_set_hash(value_set.codes)
        return ValueSetResult(
            id=generate_value_set_id(report.report_id, value_set_hash, value_set.index),
            hash=value_set_hash,
            friendly_name=generate_value_set_friendly_name(report.report_name, value_set.index),
            index=value_set.index,
            value_set_id=value_set.value_set_id,
            concepts=[],
            original_codes=[
                OriginalCodeRecord(
                    original_code=value.code,
                    display_name=value.display_name,
                    code_system=value.code_system,
                    include_children=value.include_children,
                    is_refset=value.is_refset,
                )
                for value in value_set.values
            ],
            failed_codes=[],
            refsets_resolved=[],
            expansion_error=message,
            excluded_codes=list(value_set.excluded_codes),
        )

    def expand_report(
        self,
        report: ReportInput,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> ReportExpansionResult:
        """
        Expand every value set of a report, one at a time.

        Cancellation is checked between value sets; results already produced are kept and
        the returned record is flagged as cancelled.

        Args:
            report: the report and its value sets
            cancel_event: set it to stop before the next value set
            progress_callback: Optional callback(completed, total)

        Returns:
            ReportExpansionResult
        """
        results: List[ValueSetResult] = []
        total = len(report.value_sets)
        cancelled = False

        for position, value_set in enumerate(report.value_sets):
            if position > 0 and self.settings.value_set_pause > 0:
                time.sleep(self.settings.value_set_pause)

            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Expansion of report {report.report_id} cancelled after {len(results)}/{total} value sets")
                cancelled = True
                break

            try:
                result = self.expand_value_set(value_set, report.report_id, report.report_name)
            except Exception as e:
                # One failing value set must not stop its siblings
                error = self.error_handler.log_exception(f"expand value set {value_set.index}", e)
                emit_error("orchestrator", error.message, report=report.report_id, value_set=value_set.value_set_id)
                result = self._error_result(value_set, report, error.message)

            results.append(result)
            if progress_callback:
                progress_callback(len(results), total)

        return ReportExpansionResult(
            report_id=report.report_id,
            report_name=report.report_name,
            value_sets=results,
            cancelled=cancelled,
        )
