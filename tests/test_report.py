"""Tests for run and replay reports."""

import json
import shutil
import tempfile
import unittest
from pathlib import Path

from shadowfuzz.campaign import CampaignResult
from shadowfuzz.corpus_manager import ReplayOutcome, ReplayVerdict
from shadowfuzz.report import (
    build_report,
    format_duration,
    format_text,
    truncate_string,
    write_report,
)
from shadowfuzz.types import (
    CorpusEntry,
    DifferentialResult,
    ExecutionResult,
    ExecutionStatus,
    FailureClass,
    Finding,
    GeneratedTest,
    OperationCall,
    StrategyKind,
)

TEST = GeneratedTest(
    id="Stack-schema-s0-00001",
    schema_ref="Stack",
    operation_sequence=(OperationCall("push", ("1",)), OperationCall("size"), OperationCall("pop")),
    rendered_source="...",
    strategy=StrategyKind.SCHEMA,
)
MINIMIZED = GeneratedTest(
    id="Stack-schema-s0-00001.min",
    schema_ref="Stack",
    operation_sequence=(OperationCall("push", ("1",)), OperationCall("pop")),
    rendered_source="...",
    strategy=StrategyKind.SCHEMA,
)
HANG = ExecutionResult(ExecutionStatus.TIMEOUT, 900, "", "", None)
OK = ExecutionResult(ExecutionStatus.COMPLETED, 12, "1\n", "", 0)


def make_result():
    findings = [
        Finding(TEST, FailureClass.TIMEOUT, HANG, MINIMIZED, "f" * 64, True),
        Finding(
            TEST,
            FailureClass.ASYMMETRIC_HANG,
            DifferentialResult(HANG, OK, True, "asymmetric hang: a timed out, b finished", FailureClass.ASYMMETRIC_HANG),
        ),
    ]
    return CampaignResult(total=5, passed=3, findings=findings, duration_s=75.5)


class TestRunReport(unittest.TestCase):
    """Test report structure for a campaign."""

    def test_summary_and_grouping(self):
        report = build_report("run", make_result(), health={"execution.spawn_failure": 0})
        summary = report["summary"]
        self.assertEqual((summary["total"], summary["passed"], summary["findings"]), (5, 3, 2))
        self.assertEqual(summary["new_corpus_entries"], 1)
        self.assertEqual(set(report["findings"]), {cls.value for cls in FailureClass})
        (timeout,) = report["findings"]["Timeout"]
        self.assertEqual(timeout["original_length"], 3)
        self.assertEqual(timeout["minimized_length"], 2)
        self.assertEqual(timeout["minimized_operations"], ["push(1)", "pop()"])
        (hang,) = report["findings"]["AsymmetricHang"]
        self.assertEqual(hang["duration_ms"], 900)
        self.assertIsNone(hang["minimized_length"])
        json.dumps(report)

    def test_text_format(self):
        text = format_text(build_report("run", make_result()))
        self.assertIn("SHADOWFUZZ RUN REPORT", text)
        self.assertIn("FINDINGS BY CLASS", text)
        self.assertIn("Timeout: 1", text)
        self.assertIn("push(1) ; pop()", text)
        self.assertIn("1m 15.5s", text)

    def test_write_report(self):
        tmp_dir = Path(tempfile.mkdtemp())
        try:
            report = build_report("run", make_result())
            path = write_report(report, tmp_dir / "nested" / "report.json", "json")
            self.assertEqual(json.loads(path.read_text())["summary"]["findings"], 2)
            path = write_report(report, tmp_dir / "report.txt", "text")
            self.assertTrue(path.read_text().startswith("=" * 80))
        finally:
            shutil.rmtree(tmp_dir)


class TestReplayReport(unittest.TestCase):
    def test_verdict_counts(self):
        entry = CorpusEntry("a" * 64, MINIMIZED, FailureClass.TIMEOUT, "t0", "t0")
        outcomes = [
            ReplayOutcome(entry, ReplayVerdict.REGRESSED, FailureClass.TIMEOUT, HANG, HANG),
            ReplayOutcome(entry, ReplayVerdict.STILL_RESOLVED, None, OK, OK),
        ]
        report = build_report("replay", replay=outcomes)
        self.assertNotIn("summary", report)
        self.assertEqual(report["replay"]["total"], 2)
        self.assertEqual(report["replay"]["verdicts"]["REGRESSED"], 1)
        self.assertEqual(report["replay"]["verdicts"]["RESOLVED"], 0)
        text = format_text(report)
        self.assertIn("REPLAY", text)
        self.assertIn("aaaaaaaaaaaa Timeout: REGRESSED", text)


class TestFormattingHelpers(unittest.TestCase):
    def test_truncate_string(self):
        self.assertEqual(truncate_string("short", 10), "short")
        self.assertEqual(truncate_string("abcdefghij", 6), "abc...")

    def test_format_duration(self):
        self.assertEqual(format_duration(5.3), "5.3s")
        self.assertEqual(format_duration(125), "2m 5.0s")
        self.assertEqual(format_duration(-1), "N/A")


if __name__ == "__main__":
    unittest.main()
