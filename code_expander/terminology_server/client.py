"""
FHIR Terminology Server Client

Thin client for the three operations the expansion pipeline needs:
- ConceptMap/$translate (EMIS code -> SNOMED CT)
- CodeSystem/$lookup (inactivity, historical associations, display)
- ValueSet/$expand (ECL evaluation)

Features:
- OAuth2 client-credentials authentication with a shared, thread-safe token cache
- Retry on expired tokens, rate limiting and server errors
- Transport failures and non-2xx responses raised as distinct exception types
"""

import json
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

import requests

from ..metadata.models import ConceptSource, TargetConcept
from ..system.debug_output import emit_debug
from ..system.error_handling import (
    ConfigurationError,
    RemoteProtocolError,
    RemoteTransportError,
    TerminologyServerError,
    create_error_context,
)
from ..system.settings import ExpanderSettings
from ..system.version import USER_AGENT

logger = logging.getLogger(__name__)

HISTORICAL_PROPERTIES = ("inactive", "SAME_AS", "REPLACED_BY", "POSSIBLY_EQUIVALENT_TO")
CONNECTION_TEST_CODE = "73211009"

_VALUE_KEYS = ("valueBoolean", "valueCode", "valueString", "valueUri", "valueInteger")


def _parse_fhir_error(response_text: str) -> Tuple[str, str]:
    """
    Parse a FHIR OperationOutcome to extract error details

    Returns:
        (error_type, detail_message)
    """
    try:
        data = json.loads(response_text)

        if data.get("resourceType") == "OperationOutcome":
            issues = data.get("issue", [])
            for issue in issues:
                diagnostics = (issue.get("diagnostics") or "").lower()
                details_text = (issue.get("details", {}).get("text") or "").lower()
                combined = f"{diagnostics} {details_text}"

                if any(phrase in combined for phrase in [
                    "invalid code", "malformed", "not a valid", "syntax error", "parse error"
                ]):
                    return "invalid_request", issue.get("diagnostics") or "Invalid request"

                if any(phrase in combined for phrase in [
                    "not found", "unknown code", "does not exist"
                ]):
                    return "code_not_found", issue.get("diagnostics") or "Code not found"

            if issues:
                return "server_error", issues[0].get("diagnostics") or response_text[:200]

    except (json.JSONDecodeError, KeyError, TypeError, AttributeError):
        pass

    return "server_error", response_text[:200] if response_text else "Unknown error"


def element_value(element: Dict[str, Any]) -> Any:
    """Value of a FHIR Parameters element, whichever value[x] it carries."""
    for key in _VALUE_KEYS:
        if key in element:
            return element[key]
    coding = element.get("valueCoding")
    if isinstance(coding, dict):
        return coding.get("code")
    return None


def find_parameter(response: Optional[Dict], name: str) -> Optional[Dict]:
    for parameter in (response or {}).get("parameter", []) or []:
        if parameter.get("name") == name:
            return parameter
    return None


def find_part(parameter: Optional[Dict], name: str) -> Optional[Dict]:
    for part in (parameter or {}).get("part", []) or []:
        if part.get("name") == name:
            return part
    return None


def find_property(response: Optional[Dict], code: str) -> Optional[Dict]:
    """The $lookup 'property' parameter whose code part equals code."""
    for parameter in (response or {}).get("parameter", []) or []:
        if parameter.get("name") != "property":
            continue
        code_part = find_part(parameter, "code")
        if code_part is not None and element_value(code_part) == code:
            return parameter
    return None


def parse_lookup_display(response: Optional[Dict]) -> Optional[str]:
    parameter = find_parameter(response, "display")
    if parameter is None:
        return None
    display = element_value(parameter)
    return str(display).strip() if display else None


class TokenManager:
    """Thread-safe OAuth2 token management"""

    def __init__(self, settings: ExpanderSettings):
        self.settings = settings
        self.access_token: Optional[str] = None
        self.token_expires: Optional[datetime] = None
        self._lock = threading.Lock()
        self.fetch_count = 0

    def get_valid_token(self) -> str:
        """Get a valid access token, refreshing if necessary"""
        token = self._current_token()
        if token:
            return token

        # Callers arriving during a refresh block here and reuse its token
        with self._lock:
            token = self._current_token()
            if token:
                return token
            return self._authenticate()

    def _current_token(self) -> Optional[str]:
        """The cached token while it is outside the expiry safety margin, else None"""
        token, expires = self.access_token, self.token_expires
        if not token or not expires:
            return None
        margin = timedelta(seconds=self.settings.token_expiry_margin_seconds)
        return token if datetime.now() < (expires - margin) else None

    def _authenticate(self) -> str:
        """Perform the client-credentials exchange"""
        if not self.settings.has_credentials:
            raise ConfigurationError(
                "OAuth configuration missing: client id and client secret are required",
                setting_name="client_id",
            )

        auth_data = {
            "grant_type": "client_credentials",
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
        }
        context = create_error_context("oauth_token", url=self.settings.token_url)
        self.fetch_count += 1

        try:
            response = requests.post(
                self.settings.token_url,
                data=auth_data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.settings.token_timeout,
            )
        except requests.exceptions.Timeout as e:
            raise RemoteTransportError(
                "Token request timed out", error_type="timeout_error", operation="oauth_token",
                context=context, original_exception=e,
            )
        except requests.exceptions.RequestException as e:
            raise RemoteTransportError(
                f"Token request failed: {e}", error_type="connection_error", operation="oauth_token",
                context=context, original_exception=e,
            )

        if response.status_code != 200:
            logger.error(f"Authentication failed with status {response.status_code}: {response.text[:200]}")
            raise RemoteProtocolError(
                f"Failed to get access token: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
                error_type="authentication_failed",
                operation="oauth_token",
                context=context,
            )

        try:
            token_data = response.json()
        except ValueError as e:
            raise RemoteProtocolError(
                "Token endpoint returned invalid JSON", status_code=response.status_code,
                error_type="malformed_response", operation="oauth_token", context=context,
                original_exception=e,
            )

        access_token = token_data.get("access_token")
        if not access_token:
            raise RemoteProtocolError(
                "Token endpoint response has no access_token", status_code=response.status_code,
                error_type="malformed_response", operation="oauth_token", context=context,
            )

        expires_in = token_data.get("expires_in", 1800)
        self.token_expires = datetime.now() + timedelta(seconds=int(expires_in))
        self.access_token = access_token

        logger.info("Successfully authenticated with terminology server")
        return access_token

    def invalidate_token(self):
        """Invalidate the current token to force re-authentication"""
        with self._lock:
            self.access_token = None
            self.token_expires = None


class TerminologyClient:
    """
    FHIR terminology server client used by the expansion pipeline.

    Holds no per-request state; the token manager is the only thing shared between calls.
    """

    def __init__(self, settings: ExpanderSettings, token_manager: Optional[TokenManager] = None):
        self.settings = settings
        self.token_manager = token_manager or TokenManager(settings)

        logger.info(f"Initialised terminology client for {settings.base_url}")

    def _headers(self, token: str, with_body: bool) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/fhir+json",
            "User-Agent": USER_AGENT,
        }
        if with_body:
            headers["Content-Type"] = "application/fhir+json"
        return headers

    def _make_request(
        self,
        method: str,
        endpoint: str,
        operation: str,
        timeout: float,
        params: Optional[Dict] = None,
        payload: Optional[Dict] = None,
        retry_count: int = 0,
    ) -> Dict:
        """
        Make an authenticated request with retry logic

        Returns:
            Parsed JSON body

        Raises:
            RemoteTransportError: no HTTP response was received
            RemoteProtocolError: non-2xx status after retries
        """
        token = self.token_manager.get_valid_token()
        url = f"{self.settings.base_url}/{endpoint}"
        context = create_error_context(operation, url=url)

        try:
            if method == "POST":
                response = requests.post(
                    url, headers=self._headers(token, True), json=payload, params=params, timeout=timeout
                )
            else:
                response = requests.get(url, headers=self._headers(token, False), params=params, timeout=timeout)
        except requests.exceptions.Timeout as e:
            if retry_count < self.settings.max_retries:
                logger.warning(f"{operation} timed out, retrying (attempt {retry_count + 1})")
                time.sleep(1)
                return self._make_request(method, endpoint, operation, timeout, params, payload, retry_count + 1)
            raise RemoteTransportError(
                f"{operation} request timed out after {timeout}s", error_type="timeout_error",
                operation=operation, context=context, original_exception=e,
            )
        except requests.exceptions.RequestException as e:
            raise RemoteTransportError(
                f"Network error during {operation}: {e}", error_type="connection_error",
                operation=operation, context=context, original_exception=e,
            )

        if 200 <= response.status_code < 300:
            try:
                return response.json()
            except ValueError as e:
                raise RemoteProtocolError(
                    f"Invalid JSON response from {operation}", status_code=response.status_code,
                    error_type="malformed_response", operation=operation, context=context,
                    original_exception=e,
                )

        if response.status_code == 401 and retry_count < self.settings.max_retries:
            # Token expired - invalidate and retry
            self.token_manager.invalidate_token()
            logger.info(f"Token rejected, retrying {operation} (attempt {retry_count + 1})")
            time.sleep(0.5 * (retry_count + 1))
            return self._make_request(method, endpoint, operation, timeout, params, payload, retry_count + 1)

        if (response.status_code == 429 or response.status_code >= 500) and retry_count < self.settings.max_retries:
            wait_time = 2 ** retry_count
            logger.warning(f"{operation} returned {response.status_code}, retrying in {wait_time}s")
            time.sleep(wait_time)
            return self._make_request(method, endpoint, operation, timeout, params, payload, retry_count + 1)

        error_type, detail = _parse_fhir_error(response.text)
        if response.status_code == 401:
            error_type = "authentication_failed"
        elif response.status_code == 404:
            error_type = "code_not_found"
        elif response.status_code == 429:
            error_type = "rate_limit_exceeded"

        raise RemoteProtocolError(
            f"Terminology server request failed: {response.status_code} {detail}",
            status_code=response.status_code,
            error_type=error_type,
            api_response={"status_code": response.status_code, "body": response.text[:500]},
            operation=operation,
            context=context,
        )

    def translate(self, code: str, concept_map_id: str) -> Dict:
        """POST ConceptMap/{id}/$translate for one EMIS code; returns the Parameters resource."""
        payload = {
            "resourceType": "Parameters",
            "parameter": [
                {"name": "code", "valueCode": code},
                {"name": "system", "valueUri": self.settings.emis_system},
                {"name": "target", "valueUri": self.settings.snomed_system},
            ],
        }
        return self._make_request(
            "POST",
            f"ConceptMap/{concept_map_id}/$translate",
            operation="translate",
            timeout=self.settings.translate_timeout,
            payload=payload,
        )

    def lookup(self, code: str, properties: Iterable[str] = HISTORICAL_PROPERTIES) -> Dict:
        """POST CodeSystem/$lookup for one SNOMED concept with the requested properties."""
        parameters = [
            {"name": "system", "valueUri": self.settings.snomed_system},
            {"name": "code", "valueCode": code},
        ]
        parameters.extend({"name": "property", "valueCode": prop} for prop in properties)
        return self._make_request(
            "POST",
            "CodeSystem/$lookup",
            operation="lookup",
            timeout=self.settings.lookup_timeout,
            payload={"resourceType": "Parameters", "parameter": parameters},
        )

    def lookup_display(self, code: str) -> Optional[str]:
        return parse_lookup_display(self.lookup(code, properties=()))

    def expand_url(self, ecl: str) -> str:
        """Implicit ValueSet URL; the ECL is encoded here and the whole URL again by requests."""
        return f"{self.settings.snomed_system}?fhir_vs=ecl/{quote(ecl, safe='')}"

    def expand_ecl(self, ecl: str) -> List[TargetConcept]:
        """
        Evaluate an ECL expression with ValueSet/$expand, following server paging.

        An empty expression means there is nothing to query and returns no concepts.
        """
        if not ecl or not ecl.strip():
            logger.warning("Empty ECL expression provided; skipping expansion")
            return []

        concepts: List[TargetConcept] = []
        seen_codes = set()
        offset = 0
        page_size = self.settings.expansion_page_size
        emit_debug("terminology_client", f"Expanding ECL: {ecl}")

        while True:
            params = {"url": self.expand_url(ecl), "count": page_size, "offset": offset}
            response = self._make_request(
                "GET",
                "ValueSet/$expand",
                operation="expand",
                timeout=self.settings.expand_timeout,
                params=params,
            )

            expansion = response.get("expansion", {}) or {}
            contains = expansion.get("contains", []) or []
            total = expansion.get("total")

            added = 0
            for item in contains:
                code = str(item.get("code", ""))
                if code in seen_codes:
                    continue
                seen_codes.add(code)
                added += 1
                concepts.append(TargetConcept(
                    code=code,
                    display=item.get("display", "") or "",
                    system=item.get("system") or self.settings.snomed_system,
                    source=ConceptSource.REMOTE_QUERY,
                ))

            if not contains or added == 0:
                if total is not None and len(concepts) < total:
                    logger.warning(
                        f"Expansion stopped at {len(concepts)} of {total} concepts: "
                        f"server returned no new concepts at offset {offset}"
                    )
                break
            # count is a hint; servers may return smaller pages
            if total is not None:
                if len(concepts) >= total:
                    break
            elif len(contains) < page_size:
                break
            if len(concepts) >= self.settings.max_expansion_results:
                logger.warning(f"Expansion capped at {self.settings.max_expansion_results} concepts")
                break
            offset += len(contains)

        emit_debug("terminology_client", f"ECL expansion returned {len(concepts)} concepts")
        return concepts

    def test_connection(self) -> Tuple[bool, str]:
        """Check credentials and connectivity with a lookup of a well-known concept."""
        try:
            display = self.lookup_display(CONNECTION_TEST_CODE)
        except (TerminologyServerError, ConfigurationError) as e:
            return False, e.get_user_friendly_message()
        return True, f"Connected to {self.settings.base_url} ({CONNECTION_TEST_CODE}: {display or 'no display'})"
