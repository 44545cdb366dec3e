"""
Refset expansion from the local RF2 snapshot.

Members come from the refset membership index. Display names come from the local description
index first; members outside the snapshot are looked up on the terminology server in small
groups, and a failed lookup leaves that member with an empty display.
"""

import logging
from typing import Dict, Iterable, List, Optional

from ..caching.rf2_cache import Rf2Caches
from ..metadata.models import ConceptSource, RefsetSummary, TargetConcept
from ..system.debug_output import emit_debug
from ..system.error_handling import ExpanderError
from ..system.settings import ExpanderSettings
from .batching import run_in_groups
from .client import TerminologyClient

logger = logging.getLogger(__name__)


class RefsetExpander:
    """Expands refsets present in the local RF2 refset file"""

    def __init__(self, caches: Rf2Caches, client: Optional[TerminologyClient], settings: ExpanderSettings):
        self.caches = caches
        self.client = client
        self.settings = settings

    def refset_exists(self, refset_id: str) -> bool:
        return self.caches.refsets.refset_exists(refset_id)

    def refset_name(self, refset_id: str) -> str:
        return self.caches.refset_display_name(refset_id)

    def refset_summary(self, refset_id: str) -> RefsetSummary:
        return RefsetSummary(refset_id=refset_id, name=self.refset_name(refset_id))

    def _lookup_display(self, code: str) -> Optional[str]:
        try:
            return self.client.lookup_display(code)
        except ExpanderError as e:
            logger.warning(f"Failed to get display for refset member {code}: {e.message}")
            return None

    def _remote_displays(self, codes: List[str]) -> Dict[str, str]:
        if not codes:
            return {}
        if self.client is None:
            logger.warning(f"{len(codes)} refset members have no local description and no client is configured")
            return {}

        emit_debug("refset_expander", f"Looking up {len(codes)} member displays on the terminology server")
        batch = run_in_groups(
            codes,
            self._lookup_display,
            group_size=self.settings.display_lookup_batch_size,
            pause_seconds=self.settings.display_lookup_batch_pause,
            concurrent=self.settings.concurrent_requests,
            label="refset_display_lookup",
        )
        return {code: display for code, display in batch.results.items() if display}

    def expand(self, refset_id: str) -> List[TargetConcept]:
        """
        Members of a locally known refset, tagged as coming from the RF2 file.

        Returns an empty list when the refset is not in the local file; the caller falls
        back to an ECL member-of query on the terminology server.
        """
        members = self.caches.refsets.members_of(refset_id)
        if not members:
            return []

        displays = self.caches.descriptions.display_names_of(members)
        missing = [code for code in members if code not in displays]
        displays.update(self._remote_displays(missing))

        emit_debug(
            "refset_expander",
            f"{len(members)} members, {len(missing)} displays looked up remotely",
            refset=refset_id,
        )
        return [
            TargetConcept(
                code=code,
                display=(displays.get(code) or "").strip(),
                source=ConceptSource.LOCAL_FILE,
            )
            for code in members
        ]

    def expand_many(self, refset_ids: Iterable[str]) -> Dict[str, List[TargetConcept]]:
        """Expand several refsets; only refsets with at least one member appear in the result."""
        expanded = {}
        for refset_id in dict.fromkeys(refset_ids):
            concepts = self.expand(refset_id)
            if concepts:
                expanded[refset_id] = concepts
        return expanded
