"""Tests for the CampaignRunner worker pool."""

import shutil
import tempfile
import threading
import unittest
from io import StringIO
from pathlib import Path
from unittest.mock import patch

from shadowfuzz.campaign import CampaignRunner
from shadowfuzz.corpus_manager import CorpusManager
from shadowfuzz.errors import ToolchainSpawnError
from shadowfuzz.generator import generate
from shadowfuzz.health import HealthMonitor
from shadowfuzz.oracle import Verdict
from shadowfuzz.schema import load
from shadowfuzz.types import ExecutionResult, ExecutionStatus, FailureClass

STACK = load(
    """
type_name: Stack
constructor:
  name: new
operations:
  - name: push
    parameters: [int]
    effects: ["!is_empty"]
  - name: pop
    preconditions: ["!is_empty"]
  - name: size
max_sequence_length: 10
"""
)


def has_push_push_pop(names):
    return any(names[i : i + 3] == ["push", "push", "pop"] for i in range(len(names)))


class PatternOracle:
    """Simulated toolchain: hangs iff push, push, pop appear consecutively."""

    def __init__(self):
        self.lock = threading.Lock()
        self.executions = 0

    def classify(self, test):
        with self.lock:
            self.executions += 1
        if has_push_push_pop(test.operation_names):
            return Verdict(FailureClass.TIMEOUT, ExecutionResult(ExecutionStatus.TIMEOUT, 500, "", "", None))
        return Verdict(None, ExecutionResult(ExecutionStatus.COMPLETED, 3, "", "", 0))

    def __call__(self, test):
        return self.classify(test).failure_class


class FlakyOracle(PatternOracle):
    """Fails on the first execution only."""

    def classify(self, test):
        with self.lock:
            self.executions += 1
            first = self.executions == 1
        if first:
            return Verdict(FailureClass.CRASHED, ExecutionResult(ExecutionStatus.CRASHED, 3, "", "", 1))
        return Verdict(None, ExecutionResult(ExecutionStatus.COMPLETED, 3, "", "", 0))


class BrokenOracle(PatternOracle):
    def classify(self, test):
        raise ToolchainSpawnError("cannot spawn backend 'default'", test_id=test.id)


class TestCampaignRunner(unittest.TestCase):
    """Test execute -> confirm -> minimize -> record."""

    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp())
        self.corpus = CorpusManager(self.tmp_dir / "corpus")
        self.monitor = HealthMonitor(self.tmp_dir / "health.jsonl")
        self.stderr_patch = patch("sys.stderr", new_callable=StringIO)
        self.stderr = self.stderr_patch.start()

    def tearDown(self):
        self.stderr_patch.stop()
        shutil.rmtree(self.tmp_dir)

    def make_runner(self, oracle, **kwargs):
        kwargs.setdefault("workers", 4)
        return CampaignRunner(
            oracle,
            corpus=self.corpus,
            schemas={"Stack": STACK},
            health_monitor=self.monitor,
            **kwargs,
        )

    def test_discovers_and_minimizes_push_push_pop(self):
        """Within 1000 generated tests the hang is found and reduced to three calls."""
        tests = generate(STACK, "schema", 1000, seed=2024)
        result = self.make_runner(PatternOracle()).run_tests(tests)

        self.assertEqual(result.total, 1000)
        self.assertTrue(result.findings)
        self.assertEqual(result.passed + len(result.findings), 1000)
        self.assertEqual(result.flaky, [])
        for finding in result.findings:
            self.assertEqual(finding.failure_class, FailureClass.TIMEOUT)
            self.assertEqual(finding.minimized.operation_names, ["push", "push", "pop"])

        entries = self.corpus.entries()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].occurrence_count, len(result.findings))
        self.assertEqual(sum(1 for f in result.findings if f.new_in_corpus), 1)
        self.assertIn("[!!!]", self.stderr.getvalue())
        self.assertTrue(result.failed)
        self.assertEqual(set(result.by_class()), {FailureClass.TIMEOUT})

    def test_all_passing(self):
        tests = [t for t in generate(STACK, "schema", 50, seed=1) if not has_push_push_pop(t.operation_names)]
        result = self.make_runner(PatternOracle()).run_tests(tests)
        self.assertEqual(result.passed, len(tests))
        self.assertFalse(result.failed)
        self.assertEqual(len(self.corpus), 0)

    def test_flaky_failure_not_recorded(self):
        tests = generate(STACK, "schema", 1, seed=0)
        result = self.make_runner(FlakyOracle(), workers=1).run_tests(tests)
        self.assertEqual(len(result.flaky), 1)
        self.assertEqual(result.findings, [])
        self.assertTrue(result.failed)
        self.assertEqual(len(self.corpus), 0)
        self.assertEqual(self.monitor.get_summary().get("execution.flaky_finding"), 1)

    def test_without_minimization(self):
        tests = [t for t in generate(STACK, "schema", 200, seed=5) if has_push_push_pop(t.operation_names)][:1]
        self.assertEqual(len(tests), 1)
        result = self.make_runner(PatternOracle(), minimize=False, confirm_runs=0).run_tests(tests)
        (finding,) = result.findings
        self.assertIsNone(finding.minimized)
        self.assertEqual(self.corpus.get(finding.corpus_signature).minimal_test, tests[0])

    def test_harness_fault_propagates(self):
        tests = generate(STACK, "schema", 5, seed=0)
        with self.assertRaises(ToolchainSpawnError):
            self.make_runner(BrokenOracle()).run_tests(tests)


if __name__ == "__main__":
    unittest.main()
