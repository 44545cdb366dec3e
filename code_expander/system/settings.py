"""
Runtime configuration for the code expander.

Settings are read from Streamlit secrets when available and from the process environment
otherwise. Every value has a default except the OAuth credentials.
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

try:
    import streamlit as st
except Exception:
    st = None

logger = logging.getLogger(__name__)

SNOMED_SYSTEM_URI = "http://snomed.info/sct"
EMIS_SYSTEM_URI = "http://LDS.nhs/EMIS/CodeID/cs"

DEFAULT_BASE_URL = "https://ontology.onelondon.online/production1/fhir"
DEFAULT_TOKEN_URL = (
    "https://ontology.nhs.uk/authorisation/auth/realms/nhs-digital-terminology/protocol/openid-connect/token"
)
PRIMARY_CONCEPT_MAP_ID = "8d2953a3-b70b-4727-8a6a-8b4d912535ad"
DRUG_CODE_CONCEPT_MAP_ID = "b5519813-31eb-4cad-8c77-b8999420e3c9"

RF2_RELEASE_DIR = "SnomedCT_UKPrimaryCareRF2_PRODUCTION_20251211T000000Z"
RF2_REFSET_FILE = "Snapshot/Refset/Content/der2_Refset_SimpleUKPCSnapshot_1000230_20251211.txt"
RF2_DESCRIPTION_FILE = "Snapshot/Terminology/sct2_Description_UKPCSnapshot-en_1000230_20251211.txt"

# setting name -> secret / environment keys, first match wins
_SETTING_KEYS = {
    "client_id": ("NHSTSERVER_ID", "CLIENT_ID"),
    "client_secret": ("NHSTSERVER_TOKEN", "CLIENT_SECRET"),
    "base_url": ("TERMINOLOGY_SERVER",),
    "token_url": ("ACCESS_TOKEN_URL",),
    "rf2_refset_path": ("RF2_REFSET_PATH",),
    "rf2_description_path": ("RF2_DESCRIPTION_PATH",),
    "debug_mode": ("EXPANDER_DEBUG",),
}


@dataclass(frozen=True)
class ExpanderSettings:
    """Configuration for the terminology server and the expansion pipeline"""
    client_id: str = ""
    client_secret: str = ""
    base_url: str = DEFAULT_BASE_URL
    token_url: str = DEFAULT_TOKEN_URL

    concept_map_id: str = PRIMARY_CONCEPT_MAP_ID
    fallback_concept_map_id: str = DRUG_CODE_CONCEPT_MAP_ID
    emis_system: str = EMIS_SYSTEM_URI
    snomed_system: str = SNOMED_SYSTEM_URI

    translate_timeout: float = 10.0
    lookup_timeout: float = 10.0
    expand_timeout: float = 30.0
    token_timeout: float = 30.0
    token_expiry_margin_seconds: int = 60
    max_retries: int = 3
    expansion_page_size: int = 1000
    max_expansion_results: int = 50000

    translation_batch_size: int = 10
    translation_batch_pause: float = 0.2
    lookup_batch_size: int = 10
    lookup_batch_pause: float = 0.2
    display_lookup_batch_size: int = 20
    display_lookup_batch_pause: float = 0.1
    value_set_pause: float = 0.01
    concurrent_requests: bool = True

    rf2_refset_path: Optional[str] = None
    rf2_description_path: Optional[str] = None

    refset_pattern_enabled: bool = True
    refset_pattern_prefix: str = "999"
    refset_pattern_min_length: int = 15

    debug_mode: bool = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def without_pauses(self) -> "ExpanderSettings":
        """Copy with every rate-limit pause removed and remote groups run sequentially."""
        return replace(
            self,
            translation_batch_pause=0.0,
            lookup_batch_pause=0.0,
            display_lookup_batch_pause=0.0,
            value_set_pause=0.0,
            concurrent_requests=False,
        )


def _read_secret(key: str) -> Optional[str]:
    if st is None:
        return None
    try:
        value = st.secrets.get(key)
    except Exception:
        # No secrets.toml outside a configured Streamlit deployment
        return None
    return str(value) if value not in (None, "") else None


def _lookup(keys) -> Optional[str]:
    for key in keys:
        value = _read_secret(key)
        if value is None:
            value = os.getenv(key) or None
        if value is not None:
            return value
    return None


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def load_settings(**overrides) -> ExpanderSettings:
    """
    Build settings from Streamlit secrets and environment variables.

    Args:
        **overrides: explicit values that win over secrets and environment

    Returns:
        ExpanderSettings
    """
    defaults = ExpanderSettings()
    values = {}
    for setting_name, keys in _SETTING_KEYS.items():
        raw = _lookup(keys)
        if raw is None:
            continue
        try:
            values[setting_name] = _coerce(raw, getattr(defaults, setting_name))
        except ValueError:
            logger.warning(f"Ignoring invalid value for {setting_name}: {raw!r}")

    valid_names = {f.name for f in fields(ExpanderSettings)}
    unknown = set(overrides) - valid_names
    if unknown:
        raise TypeError(f"Unknown settings: {', '.join(sorted(unknown))}")
    values.update(overrides)

    settings = replace(defaults, **values)
    if not settings.has_credentials:
        logger.info("Terminology server credentials not configured")
    return settings
