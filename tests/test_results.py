import json
import tempfile
import unittest
from pathlib import Path

from src.suite.results import (
    TestResult,
    apply_exit_code_fallback,
    extract_counts,
    flag_strategy,
    parse_result,
    structured_strategy,
    summarize_failures,
)

GINKGO_REPORT = [
    {
        "SuiteDescription": "CloudNativePG Operator E2E",
        "SpecReports": [
            {"LeafNodeType": "BeforeSuite", "State": "passed"},
            {"LeafNodeType": "It", "LeafNodeText": "creates a cluster", "State": "passed"},
            {"LeafNodeType": "It", "LeafNodeText": "fails over", "State": "passed"},
            {
                "LeafNodeType": "It",
                "ContainerHierarchyTexts": ["Switchover"],
                "LeafNodeText": "promotes a replica",
                "State": "failed",
            },
            {"LeafNodeType": "It", "LeafNodeText": "backs up", "State": "skipped"},
        ],
    }
]


class ParseResultTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.report = Path(self.tmpdir.name) / "report.json"

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_missing_report_is_all_zero(self) -> None:
        result = parse_result(self.report, exit_code=1)
        self.assertEqual(result.to_dict(), {"passed": 0, "failed": 0, "skipped": 0, "total": 0})

    def test_missing_report_ignores_exit_code(self) -> None:
        self.assertEqual(parse_result(self.report, exit_code=0), TestResult())

    def test_structured_report(self) -> None:
        self.report.write_text(json.dumps(GINKGO_REPORT), encoding="utf-8")
        result = parse_result(self.report, exit_code=1)
        self.assertEqual((result.passed, result.failed, result.skipped), (2, 1, 1))
        self.assertEqual(result.total, 4)
        self.assertEqual(summarize_failures(self.report), ["Switchover promotes a replica"])

    def test_unrecognised_report_with_success_exit(self) -> None:
        self.report.write_text(json.dumps({"unexpected": True}), encoding="utf-8")
        with self.assertLogs("src.suite.results", level="WARNING"):
            result = parse_result(self.report, exit_code=0)
        self.assertEqual(result.to_dict(), {"passed": 1, "failed": 0, "skipped": 0, "total": 1})

    def test_unrecognised_report_with_failure_exit(self) -> None:
        self.report.write_text("not json at all", encoding="utf-8")
        self.assertEqual(parse_result(self.report, exit_code=2), TestResult())


def test_capitalised_state_markers() -> None:
    text = '{"State": "passed"} {"State":"passed"} {"State":"failed"}'
    assert extract_counts(text) == TestResult(passed=2, failed=1, skipped=0)


def test_lowercase_state_markers() -> None:
    text = '[{"state":"passed"},{"state":"skipped"}]'
    assert extract_counts(text) == TestResult(passed=1, failed=0, skipped=1)


def test_boolean_flag_markers() -> None:
    text = '[{"Passed":true},{"Passed":false,"Skipped":true},{"Passed":false,"Skipped":false}]'
    assert flag_strategy(text) == TestResult(passed=1, failed=1, skipped=1)
    assert extract_counts(text) == TestResult(passed=1, failed=1, skipped=1)


def test_structured_strategy_needs_spec_reports() -> None:
    assert structured_strategy('{"State":"passed"}') is None


def test_first_non_zero_strategy_wins() -> None:
    text = '[{"State":"passed"},{"state":"failed"},{"Passed":false}]'
    assert extract_counts(text) == TestResult(passed=1, failed=0, skipped=0)


def test_fallback_only_applies_to_empty_success() -> None:
    assert apply_exit_code_fallback(TestResult(), 0) == TestResult(passed=1)
    assert apply_exit_code_fallback(TestResult(), 1) == TestResult()
    assert apply_exit_code_fallback(TestResult(skipped=3), 0) == TestResult(passed=1)
    assert apply_exit_code_fallback(TestResult(passed=4), 0) == TestResult(passed=4)
