"""Tests for the ExecutionHarness, using the running interpreter as backend."""

import sys
import tempfile
import time
import unittest
from pathlib import Path

import psutil

from shadowfuzz import execution
from shadowfuzz.config import Backend, HarnessConfig
from shadowfuzz.errors import HarnessError, ToolchainSpawnError
from shadowfuzz.execution import TRUNCATION_MARKER, ExecutionHarness, verify_backend
from shadowfuzz.health import HealthMonitor
from shadowfuzz.types import ExecutionStatus, GeneratedTest, OperationCall, StrategyKind


def python_backend(code, name="py", env=None):
    # The source path is appended to the argv and shows up as sys.argv[1].
    return Backend(name, (sys.executable, "-c", code), env or {})


def helper_alive(pid):
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


class TestExecute(unittest.TestCase):
    """Test single executions and their classification."""

    def setUp(self):
        self.config = HarnessConfig(kill_grace_ms=2000)

    def run_code(self, code, source="fun main() {}\n", timeout_ms=10000, config=None):
        harness = ExecutionHarness(python_backend(code), config or self.config)
        return harness.execute(source, timeout_ms, test_id="t1")

    def test_completed(self):
        result = self.run_code("print('hello')")
        self.assertEqual(result.status, ExecutionStatus.COMPLETED)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.stdout, "hello\n")
        self.assertFalse(result.truncated)
        self.assertIsNone(result.failure_class)

    def test_source_file_is_passed(self):
        result = self.run_code("import sys; print(open(sys.argv[1]).read(), end='')", source="obj.push(1);\n")
        self.assertEqual(result.stdout, "obj.push(1);\n")

    def test_non_zero_exit_is_crash(self):
        result = self.run_code("import sys; sys.stderr.write('boom'); sys.exit(3)")
        self.assertEqual(result.status, ExecutionStatus.CRASHED)
        self.assertEqual(result.exit_code, 3)
        self.assertEqual(result.stderr, "boom")
        self.assertTrue(result.is_failure)

    def test_hang_is_killed_within_budget(self):
        """A busy loop is reported as a Timeout with duration == budget."""
        start = time.monotonic()
        result = self.run_code("while True: pass", timeout_ms=200)
        elapsed = time.monotonic() - start
        self.assertEqual(result.status, ExecutionStatus.TIMEOUT)
        self.assertEqual(result.duration_ms, 200)
        self.assertIsNone(result.exit_code)
        self.assertLess(elapsed, 0.2 + self.config.kill_grace_ms / 1000 + 0.5)

    def test_hung_descendants_are_killed(self):
        """Grandchildren that keep the output open do not stall the harness."""
        code = (
            "import subprocess, sys, time\n"
            "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
            "print('spawned', flush=True)\n"
            "time.sleep(60)\n"
        )
        start = time.monotonic()
        result = self.run_code(code, timeout_ms=1000)
        self.assertEqual(result.status, ExecutionStatus.TIMEOUT)
        self.assertLess(time.monotonic() - start, 10.0)

    def test_helpers_of_completed_run_are_killed(self):
        """A helper forked by a toolchain that exits normally is not left running."""
        code = (
            "import subprocess, sys\n"
            "helper = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
            "print(helper.pid, flush=True)\n"
        )
        result = self.run_code(code)
        self.assertEqual(result.status, ExecutionStatus.COMPLETED)
        helper_pid = int(result.stdout.strip())
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline and helper_alive(helper_pid):
            time.sleep(0.05)
        self.assertFalse(helper_alive(helper_pid))

    def test_output_is_capped(self):
        config = HarnessConfig(output_cap_bytes=100)
        with tempfile.TemporaryDirectory() as tmp:
            monitor = HealthMonitor(Path(tmp) / "health.jsonl")
            harness = ExecutionHarness(python_backend("print('x' * 5000)"), config, monitor)
            result = harness.execute("", 10000, test_id="big")
            self.assertTrue(result.truncated)
            self.assertTrue(result.stdout.startswith("x" * 100))
            self.assertTrue(result.stdout.endswith(TRUNCATION_MARKER))
            self.assertEqual(len(result.stdout), 100 + len(TRUNCATION_MARKER))
            self.assertEqual(monitor.get_summary(), {"execution.output_truncated": 1})

    def test_backend_environment(self):
        backend = python_backend("import os; print(os.environ['SHADOWFUZZ_MARK'])", env={"SHADOWFUZZ_MARK": "on"})
        result = ExecutionHarness(backend, self.config).execute("", 10000)
        self.assertEqual(result.stdout.strip(), "on")

    def test_spawn_failure(self):
        with tempfile.TemporaryDirectory() as tmp:
            monitor = HealthMonitor(Path(tmp) / "health.jsonl")
            backend = Backend("missing", (str(Path(tmp) / "no-such-toolchain"),))
            harness = ExecutionHarness(backend, self.config, monitor)
            with self.assertRaises(ToolchainSpawnError) as ctx:
                harness.execute("", 1000, test_id="t9", schema="Stack")
            self.assertIsInstance(ctx.exception, HarnessError)
            self.assertEqual(ctx.exception.test_id, "t9")
            self.assertIn("schema=Stack", str(ctx.exception))
            self.assertEqual(monitor.get_summary(), {"execution.spawn_failure": 1})

    def test_rejects_non_positive_timeout(self):
        harness = ExecutionHarness(python_backend("pass"), self.config)
        with self.assertRaises(ValueError):
            harness.execute("", 0)


class TestTimeoutBudget(unittest.TestCase):
    """Test the per-test budget computation."""

    def setUp(self):
        self.test = GeneratedTest(
            id="t",
            schema_ref="Stack",
            operation_sequence=(OperationCall("push", ("1",), 100), OperationCall("pop", (), 200)),
            rendered_source="",
            strategy=StrategyKind.SCHEMA,
            constructor_call=OperationCall("new", (), 100),
        )

    def test_sum_of_calls_plus_allowance(self):
        self.assertEqual(execution.test_timeout_ms(self.test), 900)
        self.assertEqual(execution.test_timeout_ms(self.test, startup_allowance_ms=0), 400)

    def test_config_override(self):
        harness = ExecutionHarness(python_backend("pass"), HarnessConfig(timeout_ms=50))
        self.assertEqual(harness.test_timeout_ms(self.test), 50)
        harness = ExecutionHarness(python_backend("pass"), HarnessConfig(startup_allowance_ms=1000))
        self.assertEqual(harness.test_timeout_ms(self.test), 1400)

    def test_execute_test_uses_budget(self):
        harness = ExecutionHarness(python_backend("while True: pass"), HarnessConfig(startup_allowance_ms=0))
        result = harness.execute_test(self.test)
        self.assertEqual(result.status, ExecutionStatus.TIMEOUT)
        self.assertEqual(result.duration_ms, 400)


class TestVerifyBackend(unittest.TestCase):
    def test_probe_runs(self):
        harness = ExecutionHarness(python_backend("pass"), HarnessConfig())
        result = verify_backend(harness, timeout_ms=10000)
        self.assertEqual(result.status, ExecutionStatus.COMPLETED)

    def test_probe_failure_is_not_fatal(self):
        harness = ExecutionHarness(python_backend("raise SystemExit(2)"), HarnessConfig())
        result = verify_backend(harness, timeout_ms=10000)
        self.assertEqual(result.status, ExecutionStatus.CRASHED)


if __name__ == "__main__":
    unittest.main()
