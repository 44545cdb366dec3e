import threading
import unittest

from code_expander.caching.rf2_cache import Rf2Caches, Rf2DescriptionIndex, Rf2RefsetIndex
from code_expander.expansion.orchestrator import (
    ExpansionState,
    ValueSetExpansionOrchestrator,
    _ExpansionRun,
)
from code_expander.metadata.models import ConceptSource, ReportInput, SourceValue, ValueSetInput
from code_expander.system.error_handling import (
    REFSET_UNAVAILABLE_MESSAGE,
    FailureReason,
    PreconditionError,
    RemoteTransportError,
)
from code_expander.system.settings import ExpanderSettings
from code_expander.terminology_server.ecl_builder import build_uk_product_ecl
from terminology_fakes import FakeTerminologyClient

DIABETES = "73211009"
TYPE_2_DIABETES = "44054006"
HYPERTENSION = "38341003"
REFSET = "999012891000230104"


def _caches(members=None, terms=None):
    return Rf2Caches(
        refsets=Rf2RefsetIndex.from_members(members or {}),
        descriptions=Rf2DescriptionIndex.from_terms(terms or {}),
    )


def _value_set(*values, excluded=(), index=0, value_set_id="vs-1"):
    return ValueSetInput(values=list(values), excluded_codes=list(excluded), value_set_id=value_set_id, index=index)


class OrchestratorTestCase(unittest.TestCase):
    settings = ExpanderSettings().without_pauses()

    def orchestrator(self, client, caches=None, settings=None, **kwargs):
        return ValueSetExpansionOrchestrator(
            client=client,
            caches=caches or _caches(),
            settings=settings or self.settings,
            **kwargs,
        )


class TestExpandValueSet(OrchestratorTestCase):
    def test_translated_code_expands_to_one_concept(self):
        client = FakeTerminologyClient(
            translations={"EMIS1": (DIABETES, "Diabetes mellitus", "equivalent")},
            concepts={DIABETES: "Diabetes mellitus"},
            ecl_results={DIABETES: [(DIABETES, "Diabetes mellitus")]},
        )
        result = self.orchestrator(client).expand_value_set(
            _value_set(SourceValue("EMIS1", "Diabetes", include_children=False))
        )

        self.assertEqual(result.concept_codes, [DIABETES])
        self.assertEqual(result.failed_codes, [])
        self.assertIsNone(result.expansion_error)
        self.assertTrue(result.concepts[0].exclude_children)
        self.assertEqual(result.original_codes[0].translated_to, DIABETES)
        self.assertEqual(result.original_codes[0].translated_to_display, "Diabetes mellitus")

    def test_unrecognised_refset_reports_unavailable(self):
        client = FakeTerminologyClient(ecl_results={f"^ {REFSET}": [(REFSET, "")]})
        result = self.orchestrator(client).expand_value_set(
            _value_set(SourceValue(REFSET, "Asthma refset", is_refset=True))
        )

        self.assertEqual(result.expansion_error, REFSET_UNAVAILABLE_MESSAGE)
        self.assertEqual(client.expanded_ecls, [f"^ {REFSET}"])

    def test_excluded_concepts_are_removed_after_merge(self):
        client = FakeTerminologyClient(
            translations={"EMIS1": (DIABETES, "Diabetes mellitus", "equivalent")},
            ecl_results={
                f"(<< {DIABETES}) MINUS (<< {TYPE_2_DIABETES})": [
                    (DIABETES, "Diabetes mellitus"),
                    (TYPE_2_DIABETES, "Type 2 diabetes mellitus"),
                ],
            },
        )
        result = self.orchestrator(client).expand_value_set(
            _value_set(SourceValue("EMIS1", include_children=True), excluded=[TYPE_2_DIABETES])
        )

        self.assertEqual(result.concept_codes, [DIABETES])
        self.assertEqual(result.excluded_codes, [TYPE_2_DIABETES])

    def test_excluded_code_is_removed_from_local_refset_members(self):
        caches = _caches({REFSET: ["100000", "200000"]}, {"100000": "Member A", "200000": "Member B"})
        client = FakeTerminologyClient()
        result = self.orchestrator(client, caches=caches).expand_value_set(
            _value_set(SourceValue(REFSET, is_refset=True), excluded=["200000"])
        )

        self.assertEqual(result.concept_codes, ["100000"])
        self.assertEqual(result.concepts[0].source, ConceptSource.LOCAL_FILE)
        self.assertEqual(result.excluded_codes, ["200000"])
        self.assertEqual(client.expanded_ecls, [])

    def test_every_source_code_is_accounted_for(self):
        client = FakeTerminologyClient(
            translations={
                "EMIS1": (DIABETES, "Diabetes mellitus", "equivalent"),
                "EMIS3": (HYPERTENSION, "Hypertensive disorder", "equivalent"),
            },
            ecl_results={
                f"<< {DIABETES} OR {HYPERTENSION}": [
                    (DIABETES, "Diabetes mellitus"),
                    (TYPE_2_DIABETES, "Type 2 diabetes mellitus"),
                ],
            },
        )
        values = [
            SourceValue("EMIS1", "Diabetes", include_children=True),
            SourceValue("EMIS2", "Unmapped local code"),
            SourceValue("EMIS3", "Hypertension"),
        ]
        result = self.orchestrator(client).expand_value_set(_value_set(*values))

        self.assertEqual(result.concept_codes, [DIABETES, TYPE_2_DIABETES])
        failures = {failed.original_code: failed.reason for failed in result.failed_codes}
        self.assertEqual(failures, {
            "EMIS2": FailureReason.NO_TRANSLATION,
            "EMIS3": FailureReason.NOT_IN_EXPANSION,
        })
        self.assertEqual([record.original_code for record in result.original_codes], ["EMIS1", "EMIS2", "EMIS3"])
        self.assertFalse(result.concepts[0].exclude_children)

    def test_inactive_translation_follows_historical_association(self):
        client = FakeTerminologyClient(
            translations={"EMIS1": ("11111111", "Old diabetes concept", "equivalent")},
            inactive={"11111111": {"SAME_AS": DIABETES}},
            ecl_results={DIABETES: [(DIABETES, "Diabetes mellitus")]},
        )
        result = self.orchestrator(client).expand_value_set(_value_set(SourceValue("EMIS1")))

        self.assertEqual(result.concept_codes, [DIABETES])
        self.assertEqual(result.original_codes[0].translated_to, DIABETES)
        self.assertEqual(result.failed_codes, [])

    def test_untranslated_code_found_in_rf2_is_expanded_as_refset(self):
        caches = _caches({"12345678901": ["100000", "200000"]}, {"100000": "Member A", "200000": "Member B"})
        client = FakeTerminologyClient()
        result = self.orchestrator(client, caches=caches).expand_value_set(_value_set(SourceValue("12345678901")))

        self.assertEqual(result.concept_codes, ["100000", "200000"])
        self.assertTrue(all(c.source is ConceptSource.LOCAL_FILE for c in result.concepts))
        self.assertTrue(result.original_codes[0].is_refset)
        self.assertEqual([r.refset_id for r in result.refsets_resolved], ["12345678901"])
        self.assertEqual(result.failed_codes, [])
        self.assertEqual(client.expanded_ecls, [])

    def test_refset_pattern_rule_can_be_disabled(self):
        client = FakeTerminologyClient()
        self.orchestrator(client).expand_value_set(_value_set(SourceValue(REFSET)))
        self.assertEqual(client.expanded_ecls, [f"^ {REFSET}"])

        client = FakeTerminologyClient()
        settings = ExpanderSettings(refset_pattern_enabled=False).without_pauses()
        self.orchestrator(client, settings=settings).expand_value_set(_value_set(SourceValue(REFSET)))
        self.assertEqual(client.expanded_ecls, [REFSET])

    def test_refset_rule_is_replaceable(self):
        client = FakeTerminologyClient()
        orchestrator = self.orchestrator(client, refset_rule=lambda code: code == HYPERTENSION)
        orchestrator.expand_value_set(_value_set(SourceValue(HYPERTENSION)))
        self.assertEqual(client.expanded_ecls, [f"^ {HYPERTENSION}"])

    def test_empty_value_set_is_rejected(self):
        with self.assertRaises(PreconditionError):
            self.orchestrator(FakeTerminologyClient()).expand_value_set(_value_set())

    def test_results_are_deterministic(self):
        def run():
            client = FakeTerminologyClient(
                translations={"EMIS1": (DIABETES, "Diabetes mellitus", "equivalent")},
                ecl_results={f"<< {DIABETES}": [(DIABETES, "Diabetes mellitus"), (TYPE_2_DIABETES, "Type 2")]},
            )
            return self.orchestrator(client).expand_value_set(
                _value_set(SourceValue("EMIS1", include_children=True)), "report-1", "Diabetes Register"
            )

        first, second = run(), run()
        self.assertEqual(first.id, second.id)
        self.assertEqual(first.hash, second.hash)
        self.assertEqual(first.concept_codes, second.concept_codes)
        self.assertEqual(first.friendly_name, "dm_reg_vs1")

    def test_ecl_failure_keeps_local_results(self):
        caches = _caches({REFSET: ["100000"]}, {"100000": "Member A"})
        client = FakeTerminologyClient(
            translations={"EMIS1": (DIABETES, "Diabetes mellitus", "equivalent")},
            expand_error=RemoteTransportError("timed out", error_type="timeout_error"),
        )
        values = [SourceValue(REFSET, is_refset=True), SourceValue("EMIS1")]
        with self.assertLogs("code_expander.expansion.orchestrator", level="WARNING"):
            result = self.orchestrator(client, caches=caches).expand_value_set(_value_set(*values))

        self.assertEqual(result.concept_codes, ["100000"])
        self.assertTrue(result.warnings[0].startswith("ECL expansion failed"))
        self.assertEqual([f.original_code for f in result.failed_codes], ["EMIS1"])

    def test_substance_products_exempt_the_substance_from_failures(self):
        ecl = build_uk_product_ecl("387517004")
        client = FakeTerminologyClient(ecl_results={ecl: [("322236009", "Paracetamol 500mg tablets")]})
        values = [
            SourceValue("387517004", "Paracetamol", code_system="SCT_CONST"),
            SourceValue("372687004", "Amoxicillin", code_system="SCT_CONST"),
        ]
        result = self.orchestrator(client).expand_value_set(_value_set(*values))

        self.assertEqual(result.concept_codes, ["322236009"])
        self.assertTrue(result.concepts[0].exclude_children)
        self.assertEqual([f.original_code for f in result.failed_codes], ["372687004"])


class TestExpandReport(OrchestratorTestCase):
    def _client(self):
        return FakeTerminologyClient(
            concepts={DIABETES: "Diabetes mellitus"},
            ecl_results={
                f"<< {DIABETES}": [(DIABETES, "Diabetes mellitus"), (TYPE_2_DIABETES, "Type 2")],
                DIABETES: [(DIABETES, "Diabetes mellitus")],
            },
        )

    def _report(self):
        return ReportInput(
            report_id="report-1",
            report_name="Diabetes Register",
            value_sets=[
                _value_set(SourceValue(DIABETES, include_children=True), index=0, value_set_id="a"),
                _value_set(SourceValue(DIABETES, include_children=False), index=1, value_set_id="b"),
            ],
        )

    def test_shared_code_flags_do_not_leak_between_value_sets(self):
        result = self.orchestrator(self._client()).expand_report(self._report())

        first, second = result.value_sets
        self.assertEqual(first.concept_codes, [DIABETES, TYPE_2_DIABETES])
        self.assertFalse(first.concepts[0].exclude_children)
        self.assertEqual(second.concept_codes, [DIABETES])
        self.assertTrue(second.concepts[0].exclude_children)
        self.assertNotEqual(first.id, second.id)

    def test_cancellation_keeps_completed_value_sets(self):
        cancel_event = threading.Event()
        progress = []

        def on_progress(completed, total):
            progress.append((completed, total))
            cancel_event.set()

        result = self.orchestrator(self._client()).expand_report(
            self._report(), cancel_event=cancel_event, progress_callback=on_progress
        )

        self.assertTrue(result.cancelled)
        self.assertEqual(len(result.value_sets), 1)
        self.assertEqual(progress, [(1, 2)])

    def test_failing_value_set_does_not_stop_siblings(self):
        report = ReportInput(
            report_id="report-1",
            report_name="Diabetes Register",
            value_sets=[
                _value_set(index=0, value_set_id="empty"),
                _value_set(SourceValue(DIABETES), index=1, value_set_id="b"),
            ],
        )
        with self.assertLogs("code_expander.expansion.orchestrator", level="WARNING"):
            result = self.orchestrator(self._client()).expand_report(report)

        self.assertFalse(result.cancelled)
        self.assertEqual(result.value_sets[0].expansion_error, "No parent codes provided")
        self.assertEqual(result.value_sets[0].concepts, [])
        self.assertEqual(result.value_sets[1].concept_codes, [DIABETES])


class TestExpansionRun(unittest.TestCase):
    def test_states_only_move_forward(self):
        run = _ExpansionRun(_value_set(SourceValue(DIABETES)))
        run.advance(ExpansionState.TRANSLATING)
        run.advance(ExpansionState.CLASSIFYING)

        with self.assertRaises(RuntimeError):
            run.advance(ExpansionState.TRANSLATING)
        with self.assertRaises(RuntimeError):
            run.advance(ExpansionState.CLASSIFYING)


if __name__ == "__main__":
    unittest.main()
