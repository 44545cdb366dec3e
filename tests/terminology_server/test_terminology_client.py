import json
import threading
import time
import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import requests

from code_expander.metadata.models import ConceptSource
from code_expander.system.error_handling import (
    ConfigurationError,
    RemoteProtocolError,
    RemoteTransportError,
)
from code_expander.system.settings import ExpanderSettings
from code_expander.terminology_server.client import (
    TerminologyClient,
    TokenManager,
    _parse_fhir_error,
    find_property,
    parse_lookup_display,
)

CLIENT_MODULE = "code_expander.terminology_server.client"


def _response(status_code=200, body=None, text=None):
    response = MagicMock()
    response.status_code = status_code
    if body is not None:
        response.json.return_value = body
        response.text = json.dumps(body)
    else:
        response.json.side_effect = ValueError("no json")
        response.text = text or ""
    return response


def _token_response(token="token-1", expires_in=1800):
    return _response(200, {"access_token": token, "expires_in": expires_in})


def _expansion(codes, total=None):
    return _response(200, {
        "resourceType": "ValueSet",
        "expansion": {
            "total": total if total is not None else len(codes),
            "contains": [{"system": "http://snomed.info/sct", "code": c, "display": f"Concept {c}"} for c in codes],
        },
    })


class TestFhirParsing(unittest.TestCase):
    def test_parse_fhir_error_not_found(self):
        outcome = json.dumps({
            "resourceType": "OperationOutcome",
            "issue": [{"diagnostics": "Unknown code 123 in system"}],
        })
        error_type, detail = _parse_fhir_error(outcome)
        self.assertEqual(error_type, "code_not_found")
        self.assertIn("Unknown code", detail)

    def test_parse_fhir_error_plain_text(self):
        self.assertEqual(_parse_fhir_error("Bad Gateway"), ("server_error", "Bad Gateway"))
        self.assertEqual(_parse_fhir_error(""), ("server_error", "Unknown error"))

    def test_lookup_helpers(self):
        response = {
            "parameter": [
                {"name": "display", "valueString": " Diabetes mellitus "},
                {"name": "property", "part": [
                    {"name": "code", "valueCode": "inactive"},
                    {"name": "value", "valueBoolean": False},
                ]},
            ]
        }
        self.assertEqual(parse_lookup_display(response), "Diabetes mellitus")
        self.assertIsNotNone(find_property(response, "inactive"))
        self.assertIsNone(find_property(response, "SAME_AS"))
        self.assertIsNone(parse_lookup_display({}))


class TestTokenManager(unittest.TestCase):
    def setUp(self):
        self.settings = ExpanderSettings(client_id="client", client_secret="secret")

    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_token_is_cached_until_margin(self, mock_post):
        mock_post.return_value = _token_response()
        manager = TokenManager(self.settings)

        self.assertEqual(manager.get_valid_token(), "token-1")
        self.assertEqual(manager.get_valid_token(), "token-1")
        self.assertEqual(manager.fetch_count, 1)

        data = mock_post.call_args.kwargs["data"]
        self.assertEqual(data["grant_type"], "client_credentials")
        self.assertEqual(data["client_id"], "client")

    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_token_refreshed_inside_expiry_margin(self, mock_post):
        mock_post.side_effect = [_token_response("token-1"), _token_response("token-2")]
        manager = TokenManager(self.settings)
        manager.get_valid_token()

        manager.token_expires = datetime.now() + timedelta(seconds=30)
        self.assertEqual(manager.get_valid_token(), "token-2")
        self.assertEqual(manager.fetch_count, 2)

    def test_missing_credentials_raise_configuration_error(self):
        manager = TokenManager(ExpanderSettings())
        with self.assertRaises(ConfigurationError):
            manager.get_valid_token()

    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_rejected_credentials_raise_protocol_error(self, mock_post):
        mock_post.return_value = _response(401, text="invalid_client")
        with self.assertRaises(RemoteProtocolError) as ctx:
            TokenManager(self.settings).get_valid_token()
        self.assertEqual(ctx.exception.status_code, 401)

    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_token_timeout_raises_transport_error(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout("slow")
        with self.assertRaises(RemoteTransportError):
            TokenManager(self.settings).get_valid_token()

    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_concurrent_callers_share_one_fetch(self, mock_post):
        def slow_token(*args, **kwargs):
            time.sleep(0.05)
            return _token_response()

        mock_post.side_effect = slow_token
        manager = TokenManager(self.settings)
        tokens = []
        threads = [threading.Thread(target=lambda: tokens.append(manager.get_valid_token())) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(tokens, ["token-1"] * 8)
        self.assertEqual(mock_post.call_count, 1)

    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_invalidate_forces_new_fetch(self, mock_post):
        mock_post.side_effect = [_token_response("token-1"), _token_response("token-2")]
        manager = TokenManager(self.settings)
        manager.get_valid_token()
        manager.invalidate_token()
        self.assertEqual(manager.get_valid_token(), "token-2")

    def test_invalidation_during_fast_path_never_returns_none(self):
        manager = TokenManager(self.settings)
        manager.access_token = "token-1"
        real_now = datetime.now()
        manager.token_expires = real_now + timedelta(minutes=30)

        def now_then_invalidate():
            manager.invalidate_token()
            return real_now

        with patch(f"{CLIENT_MODULE}.datetime") as mock_datetime:
            mock_datetime.now.side_effect = now_then_invalidate
            self.assertEqual(manager.get_valid_token(), "token-1")


class TestTerminologyClient(unittest.TestCase):
    def setUp(self):
        self.settings = ExpanderSettings(client_id="client", client_secret="secret", max_retries=0)
        self.token_manager = MagicMock()
        self.token_manager.get_valid_token.return_value = "tok"
        self.client = TerminologyClient(self.settings, token_manager=self.token_manager)

    def test_expand_url_encodes_ecl(self):
        self.assertEqual(
            self.client.expand_url("<< 73211009"),
            "http://snomed.info/sct?fhir_vs=ecl/%3C%3C%2073211009",
        )

    @patch(f"{CLIENT_MODULE}.requests.get")
    def test_empty_ecl_makes_no_request(self, mock_get):
        with self.assertLogs(CLIENT_MODULE, level="WARNING"):
            self.assertEqual(self.client.expand_ecl("  "), [])
        mock_get.assert_not_called()

    @patch(f"{CLIENT_MODULE}.requests.get")
    def test_expand_returns_remote_concepts(self, mock_get):
        mock_get.return_value = _expansion(["73211009", "46635009"])
        concepts = self.client.expand_ecl("<< 73211009")

        self.assertEqual([c.code for c in concepts], ["73211009", "46635009"])
        self.assertTrue(all(c.source is ConceptSource.REMOTE_QUERY for c in concepts))
        params = mock_get.call_args.kwargs["params"]
        self.assertEqual(params["url"], "http://snomed.info/sct?fhir_vs=ecl/%3C%3C%2073211009")
        self.assertEqual(params["offset"], 0)
        self.assertEqual(mock_get.call_args.kwargs["headers"]["Authorization"], "Bearer tok")

    @patch(f"{CLIENT_MODULE}.requests.get")
    def test_expand_follows_paging(self, mock_get):
        client = TerminologyClient(
            ExpanderSettings(client_id="c", client_secret="s", expansion_page_size=2),
            token_manager=self.token_manager,
        )
        mock_get.side_effect = [_expansion(["1000001", "1000002"], total=3), _expansion(["1000003"], total=3)]

        concepts = client.expand_ecl("<< 1000000")

        self.assertEqual([c.code for c in concepts], ["1000001", "1000002", "1000003"])
        self.assertEqual([call.kwargs["params"]["offset"] for call in mock_get.call_args_list], [0, 2])

    @patch(f"{CLIENT_MODULE}.requests.get")
    def test_expand_follows_server_capped_pages_to_total(self, mock_get):
        all_codes = [str(1000000 + i) for i in range(1200)]

        def capped_page(url, headers=None, params=None, timeout=None):
            offset = params["offset"]
            return _expansion(all_codes[offset:offset + 500], total=1200)

        mock_get.side_effect = capped_page
        concepts = self.client.expand_ecl("<< 1000000")

        self.assertEqual([c.code for c in concepts], all_codes)
        self.assertEqual([call.kwargs["params"]["offset"] for call in mock_get.call_args_list], [0, 500, 1000])

    @patch(f"{CLIENT_MODULE}.requests.get")
    def test_expand_stops_when_server_ignores_offset(self, mock_get):
        page = _response(200, {
            "resourceType": "ValueSet",
            "expansion": {"contains": [{"code": str(1000000 + i)} for i in range(1000)]},
        })
        mock_get.return_value = page

        concepts = self.client.expand_ecl("<< 1000000")

        self.assertEqual(len(concepts), 1000)
        self.assertEqual(len({c.code for c in concepts}), 1000)
        self.assertEqual(mock_get.call_count, 2)

    @patch(f"{CLIENT_MODULE}.requests.get")
    def test_expand_warns_when_total_is_not_reached(self, mock_get):
        mock_get.side_effect = [_expansion(["1000001", "1000002"], total=5), _expansion([], total=5)]
        with self.assertLogs(CLIENT_MODULE, level="WARNING"):
            concepts = self.client.expand_ecl("<< 1000000")
        self.assertEqual(len(concepts), 2)

    @patch(f"{CLIENT_MODULE}.requests.get")
    def test_network_failure_is_transport_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")
        with self.assertRaises(RemoteTransportError) as ctx:
            self.client.expand_ecl("<< 73211009")
        self.assertEqual(ctx.exception.error_type, "connection_error")

    @patch(f"{CLIENT_MODULE}.requests.get")
    def test_server_rejection_is_protocol_error(self, mock_get):
        mock_get.return_value = _response(400, text="ECL syntax error")
        with self.assertRaises(RemoteProtocolError) as ctx:
            self.client.expand_ecl("<< 73211009")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertNotIsInstance(ctx.exception, RemoteTransportError)

    @patch(f"{CLIENT_MODULE}.time.sleep")
    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_unauthorised_response_refreshes_token_and_retries(self, mock_post, mock_sleep):
        client = TerminologyClient(
            ExpanderSettings(client_id="c", client_secret="s", max_retries=1),
            token_manager=self.token_manager,
        )
        mock_post.side_effect = [_response(401, text="expired"), _response(200, {"resourceType": "Parameters"})]

        self.assertEqual(client.translate("EMIS1", "map-1"), {"resourceType": "Parameters"})
        self.token_manager.invalidate_token.assert_called_once()
        self.assertEqual(mock_post.call_count, 2)

    @patch(f"{CLIENT_MODULE}.time.sleep")
    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_server_errors_retry_with_backoff(self, mock_post, mock_sleep):
        client = TerminologyClient(
            ExpanderSettings(client_id="c", client_secret="s", max_retries=2),
            token_manager=self.token_manager,
        )
        mock_post.return_value = _response(503, text="unavailable")

        with self.assertRaises(RemoteProtocolError) as ctx:
            client.lookup("73211009")

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(mock_post.call_count, 3)
        self.assertEqual([call.args[0] for call in mock_sleep.call_args_list], [1, 2])

    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_not_found_is_flagged(self, mock_post):
        mock_post.return_value = _response(404, text="")
        with self.assertRaises(RemoteProtocolError) as ctx:
            self.client.translate("EMIS1", "map-1")
        self.assertTrue(ctx.exception.is_not_found)

    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_translate_payload(self, mock_post):
        mock_post.return_value = _response(200, {"resourceType": "Parameters"})
        self.client.translate("EMISNQ1", "map-1")

        url = mock_post.call_args.args[0]
        self.assertTrue(url.endswith("/ConceptMap/map-1/$translate"))
        parameters = mock_post.call_args.kwargs["json"]["parameter"]
        self.assertIn({"name": "code", "valueCode": "EMISNQ1"}, parameters)
        self.assertIn({"name": "target", "valueUri": "http://snomed.info/sct"}, parameters)

    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_lookup_requests_properties(self, mock_post):
        mock_post.return_value = _response(200, {"resourceType": "Parameters"})
        self.client.lookup("73211009", properties=("inactive", "SAME_AS"))

        parameters = mock_post.call_args.kwargs["json"]["parameter"]
        requested = [p["valueCode"] for p in parameters if p["name"] == "property"]
        self.assertEqual(requested, ["inactive", "SAME_AS"])

    @patch(f"{CLIENT_MODULE}.requests.post")
    def test_connection_check_reports_failure(self, mock_post):
        mock_post.return_value = _response(500, text="boom")
        ok, message = self.client.test_connection()
        self.assertFalse(ok)
        self.assertTrue(message)


if __name__ == "__main__":
    unittest.main()
