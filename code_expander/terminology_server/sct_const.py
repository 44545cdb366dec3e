"""
Expansion of SCT_CONST (substance constituent) values to UK products.
"""

import logging
from typing import List

from ..metadata.code_validation import is_valid_snomed_code
from ..metadata.models import ConceptSource, TargetConcept
from ..system.debug_output import emit_debug
from ..system.error_handling import ExpanderError
from .client import TerminologyClient
from .ecl_builder import build_uk_product_ecl

logger = logging.getLogger(__name__)


class SctConstExpander:
    """Finds the UK products whose precise active ingredient is a given substance"""

    def __init__(self, client: TerminologyClient):
        self.client = client

    def expand_substance(self, substance_code: str, include_children: bool = False) -> List[TargetConcept]:
        """
        Products for one substance, each flagged exclude_children = not include_children.

        Server failures are logged and give an empty list.
        """
        if not is_valid_snomed_code(substance_code):
            logger.warning(f"Skipping SCT_CONST expansion for invalid substance code {substance_code!r}")
            return []

        ecl = build_uk_product_ecl(substance_code)
        try:
            products = self.client.expand_ecl(ecl)
        except ExpanderError as e:
            logger.warning(f"Error expanding UK products for substance {substance_code}: {e.message}")
            return []

        emit_debug("sct_const", f"Substance {substance_code}: {len(products)} UK products")
        return [
            TargetConcept(
                code=product.code,
                display=product.display,
                system=product.system,
                source=ConceptSource.REMOTE_QUERY,
                exclude_children=not include_children,
            )
            for product in products
        ]
