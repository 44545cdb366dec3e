"""
Resolution of inactive SNOMED CT concepts to their current replacements.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence

from ..metadata.code_validation import is_valid_snomed_code
from ..system.debug_output import emit_debug
from ..system.error_handling import ExpanderError, RemoteProtocolError
from ..system.settings import ExpanderSettings
from .batching import run_in_groups
from .client import (
    TerminologyClient,
    element_value,
    find_part,
    find_property,
    parse_lookup_display,
)

logger = logging.getLogger(__name__)

# Historical association refsets, strongest first
ASSOCIATION_PRIORITY = ("SAME_AS", "REPLACED_BY", "POSSIBLY_EQUIVALENT_TO")


@dataclass(frozen=True)
class HistoricalResolution:
    current_id: str
    is_historical: bool
    display: Optional[str] = None
    association: Optional[str] = None


def _property_value(response: Dict, code: str):
    value_part = find_part(find_property(response, code), "value")
    return element_value(value_part) if value_part else None


def parse_lookup_response(
    concept_id: str,
    response: Dict,
    associations: Sequence[str] = ASSOCIATION_PRIORITY,
) -> HistoricalResolution:
    """Interpret a $lookup response for a possibly inactive concept."""
    display = parse_lookup_display(response)

    if _property_value(response, "inactive") is not True:
        return HistoricalResolution(current_id=concept_id, is_historical=False, display=display)

    for association in associations:
        target = _property_value(response, association)
        if target:
            return HistoricalResolution(
                current_id=str(target), is_historical=True, display=display, association=association
            )

    # Inactive with no association: keep the id, it may still expand through a refset or ECL
    return HistoricalResolution(current_id=concept_id, is_historical=True, display=display)


class HistoricalResolver:
    """Maps possibly inactive concept ids to their active replacements"""

    def __init__(
        self,
        client: TerminologyClient,
        settings: ExpanderSettings,
        associations: Sequence[str] = ASSOCIATION_PRIORITY,
    ):
        self.client = client
        self.settings = settings
        self.associations = tuple(associations)

    def resolve(self, concept_id: str) -> HistoricalResolution:
        unchanged = HistoricalResolution(current_id=concept_id, is_historical=False)
        if not is_valid_snomed_code(concept_id):
            return unchanged

        properties = ("inactive",) + self.associations
        try:
            response = self.client.lookup(concept_id, properties=properties)
        except RemoteProtocolError as e:
            if not e.is_not_found:
                logger.warning(f"Failed to lookup concept {concept_id}: {e.message}")
            return unchanged
        except ExpanderError as e:
            logger.warning(f"Error resolving historical concept {concept_id}: {e.message}")
            return unchanged

        resolution = parse_lookup_response(concept_id, response, self.associations)
        if resolution.is_historical:
            if resolution.association:
                emit_debug(
                    "historical",
                    f"{concept_id} is inactive, {resolution.association} -> {resolution.current_id}",
                )
            else:
                emit_debug("historical", f"{concept_id} is inactive with no historical association")
        return resolution

    def resolve_batch(self, concept_ids: Iterable[str]) -> Dict[str, HistoricalResolution]:
        """
        Resolve ids in rate-limited groups.

        Returns:
            Dict mapping every requested id -> HistoricalResolution
        """
        ids = list(concept_ids)
        batch = run_in_groups(
            ids,
            self.resolve,
            group_size=self.settings.lookup_batch_size,
            pause_seconds=self.settings.lookup_batch_pause,
            concurrent=self.settings.concurrent_requests,
            label="historical_lookup",
        )
        resolutions = {}
        for concept_id in ids:
            if not concept_id:
                continue
            resolutions[concept_id] = batch.results.get(
                concept_id, HistoricalResolution(current_id=concept_id, is_historical=False)
            )

        redirected = sum(1 for r in resolutions.values() if r.association)
        logger.info(f"Historical resolution complete: {redirected} of {len(resolutions)} concepts redirected")
        return resolutions
