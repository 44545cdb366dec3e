"""
EMIS -> SNOMED CT translation through server-side ConceptMaps.

Concept maps are tried in a fixed order (clinical codes first, then the DrugCodeID map).
Each attempt reports SUCCESS, NOT_FOUND or ERROR; anything but SUCCESS moves on to the
next map. Only "equivalent" and "narrower" matches count: a broader mapping would widen
the clinical population a search selects.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from ..metadata.models import TranslatedCode
from ..system.debug_output import emit_debug
from ..system.error_handling import ExpanderError, RemoteProtocolError, ResolutionStatus
from ..system.settings import ExpanderSettings
from .batching import run_in_groups
from .client import TerminologyClient, element_value, find_parameter, find_part

logger = logging.getLogger(__name__)

ACCEPTED_EQUIVALENCES = ("equivalent", "narrower")


@dataclass(frozen=True)
class ResolutionOutcome:
    """Tri-state result of one resolver attempt."""
    status: ResolutionStatus
    value: Optional[TranslatedCode] = None
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == ResolutionStatus.SUCCESS


def parse_translate_response(response: Dict, concept_map_id: Optional[str] = None) -> ResolutionOutcome:
    """Interpret a $translate Parameters resource."""
    result = find_parameter(response, "result")
    if result is None or element_value(result) is not True:
        return ResolutionOutcome(ResolutionStatus.NOT_FOUND, detail="no match")

    match = find_parameter(response, "match")
    if match is None:
        return ResolutionOutcome(ResolutionStatus.NOT_FOUND, detail="no match")

    equivalence_part = find_part(match, "equivalence")
    equivalence = element_value(equivalence_part) if equivalence_part else None
    if equivalence not in ACCEPTED_EQUIVALENCES:
        return ResolutionOutcome(
            ResolutionStatus.NOT_FOUND, detail=f"equivalence rejected: {equivalence or 'unspecified'}"
        )

    concept_part = find_part(match, "concept")
    coding = (concept_part or {}).get("valueCoding") or {}
    code = coding.get("code")
    if not code:
        return ResolutionOutcome(ResolutionStatus.NOT_FOUND, detail="match without concept")

    return ResolutionOutcome(
        ResolutionStatus.SUCCESS,
        value=TranslatedCode(
            code=str(code),
            display=coding.get("display"),
            equivalence=equivalence,
            concept_map_id=concept_map_id,
        ),
    )


@dataclass(frozen=True)
class ConceptMapStrategy:
    """Translation through one ConceptMap resource."""
    name: str
    concept_map_id: str

    def attempt(self, client: TerminologyClient, code: str) -> ResolutionOutcome:
        try:
            response = client.translate(code, self.concept_map_id)
        except RemoteProtocolError as e:
            if e.is_not_found:
                return ResolutionOutcome(ResolutionStatus.NOT_FOUND, detail="404")
            logger.warning(f"ConceptMap {self.name} failed for code {code}: {e.message}")
            return ResolutionOutcome(ResolutionStatus.ERROR, detail=e.message)
        except ExpanderError as e:
            logger.warning(f"ConceptMap {self.name} failed for code {code}: {e.message}")
            return ResolutionOutcome(ResolutionStatus.ERROR, detail=e.message)

        return parse_translate_response(response, self.concept_map_id)


def default_strategies(settings: ExpanderSettings) -> List[ConceptMapStrategy]:
    return [
        ConceptMapStrategy("primary", settings.concept_map_id),
        ConceptMapStrategy("drug_code_fallback", settings.fallback_concept_map_id),
    ]


class ConceptMapTranslator:
    """Translates EMIS codes to SNOMED CT using an ordered list of ConceptMap strategies"""

    def __init__(
        self,
        client: TerminologyClient,
        settings: ExpanderSettings,
        strategies: Optional[Sequence[ConceptMapStrategy]] = None,
    ):
        self.client = client
        self.settings = settings
        self.strategies = list(strategies) if strategies is not None else default_strategies(settings)

    def translate_with_outcome(self, code: str) -> ResolutionOutcome:
        """Try each strategy in order; the last outcome is returned when none succeeds."""
        outcome = ResolutionOutcome(ResolutionStatus.NOT_FOUND, detail="no strategies")
        for strategy in self.strategies:
            outcome = strategy.attempt(self.client, code)
            if outcome.succeeded:
                emit_debug("translator", f"{code} -> {outcome.value.code} via {strategy.name}")
                return outcome
            emit_debug("translator", f"{code}: {strategy.name} {outcome.status.value} ({outcome.detail})")
        return outcome

    def translate(self, code: str) -> Optional[TranslatedCode]:
        """SNOMED translation of one EMIS code, or None when no map yields an accepted match."""
        if not code:
            return None
        return self.translate_with_outcome(code).value

    def translate_batch(self, codes: Iterable[str]) -> Dict[str, TranslatedCode]:
        """
        Translate codes in rate-limited groups.

        Returns:
            Dict mapping source code -> TranslatedCode; unmapped codes are omitted
        """
        batch = run_in_groups(
            codes,
            self.translate,
            group_size=self.settings.translation_batch_size,
            pause_seconds=self.settings.translation_batch_pause,
            concurrent=self.settings.concurrent_requests,
            label="concept_map_translate",
        )
        translations = {code: result for code, result in batch.results.items() if result is not None}
        logger.info(
            f"ConceptMap translation complete: {len(translations)} successful, "
            f"{batch.total_items - len(translations)} failed/rejected "
            f"(equivalence filter: {', '.join(ACCEPTED_EQUIVALENCES)})"
        )
        return translations
