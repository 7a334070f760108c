"""
Child process execution for shadowfuzz.

The ExecutionHarness runs one rendered program on one backend and reports
what happened. Every attempt gets a fresh working directory, its own
process group, and output redirected to files (so a chatty child can never
block on a full pipe). When the budget expires the whole process tree is
killed, including descendants that moved to another group, and the attempt
is reported as a Timeout with ``duration_ms`` equal to the budget.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from textwrap import dedent, indent

import psutil

from shadowfuzz.config import Backend, HarnessConfig
from shadowfuzz.errors import ToolchainSpawnError
from shadowfuzz.health import HealthMonitor
from shadowfuzz.types import ExecutionResult, ExecutionStatus, GeneratedTest

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[... output truncated ...]\n"

# A trivial program used to check that a backend can be spawned at all.
PROBE_SOURCE = dedent("""\
    fun main() {
        println("shadowfuzz probe");
    }
""")


def test_timeout_ms(test: GeneratedTest, startup_allowance_ms: int = 500) -> int:
    """Budget for one test: every call's timeout, constructor included,
    plus a fixed allowance for toolchain start-up."""
    total = sum(call.timeout_ms for call in test.operation_sequence)
    if test.constructor_call is not None:
        total += test.constructor_call.timeout_ms
    return total + startup_allowance_ms


def kill_process_tree(proc: subprocess.Popen, grace_s: float) -> None:
    """SIGKILL the child's process group and every known descendant."""
    try:
        descendants = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        descendants = []
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    for child in descendants:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    try:
        proc.wait(timeout=grace_s)
    except subprocess.TimeoutExpired:
        logger.warning("[!] Process %d survived SIGKILL for %.1fs", proc.pid, grace_s)
    psutil.wait_procs(descendants, timeout=grace_s)


def kill_process_group(pgid: int, grace_s: float) -> None:
    """SIGKILL whatever is left in the group of a child that already exited."""
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        return
    leftovers = []
    for candidate in psutil.process_iter():
        try:
            if os.getpgid(candidate.pid) == pgid:
                leftovers.append(candidate)
        except OSError:
            continue
    logger.debug("Killed %d leftover process(es) in group %d", len(leftovers), pgid)
    psutil.wait_procs(leftovers, timeout=grace_s)


def _read_capped(path: Path, cap: int) -> tuple[str, bool]:
    with open(path, "rb") as f:
        data = f.read(cap + 1)
    truncated = len(data) > cap
    text = data[:cap].decode("utf-8", errors="replace")
    if truncated:
        text += TRUNCATION_MARKER
    return text, truncated


class ExecutionHarness:
    """Runs rendered programs on a single backend, one process per attempt."""

    def __init__(
        self,
        backend: Backend,
        config: HarnessConfig | None = None,
        health_monitor: HealthMonitor | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or HarnessConfig()
        self.health_monitor = health_monitor

    def test_timeout_ms(self, test: GeneratedTest) -> int:
        if self.config.timeout_ms is not None:
            return self.config.timeout_ms
        return test_timeout_ms(test, self.config.startup_allowance_ms)

    def execute(
        self,
        rendered_source: str,
        timeout_ms: int,
        *,
        test_id: str | None = None,
        schema: str | None = None,
    ) -> ExecutionResult:
        """Run ``rendered_source`` once, bounded by ``timeout_ms``.

        Raises ToolchainSpawnError when the backend cannot be started; every
        other outcome, including a hang, is reported in the result.
        """
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        workdir = Path(tempfile.mkdtemp(prefix="shadowfuzz_"))
        try:
            source_path = workdir / f"program{self.config.source_suffix}"
            source_path.write_text(rendered_source, encoding="utf-8")
            stdout_path = workdir / "stdout.txt"
            stderr_path = workdir / "stderr.txt"
            argv = self.backend.argv(source_path)
            env = os.environ.copy()
            env.update(self.backend.env)

            with open(stdout_path, "wb") as out, open(stderr_path, "wb") as err:
                start = time.monotonic()
                try:
                    proc = subprocess.Popen(
                        argv,
                        stdin=subprocess.DEVNULL,
                        stdout=out,
                        stderr=err,
                        cwd=workdir,
                        env=env,
                        start_new_session=True,
                    )
                except OSError as e:
                    if self.health_monitor:
                        self.health_monitor.record_spawn_failure(self.backend.name, str(e), test_id)
                    raise ToolchainSpawnError(
                        f"cannot spawn backend '{self.backend.name}' ({argv[0]}): {e}",
                        test_id=test_id,
                        schema=schema,
                    ) from e
                try:
                    exit_code = proc.wait(timeout=timeout_ms / 1000)
                    timed_out = False
                except subprocess.TimeoutExpired:
                    kill_process_tree(proc, self.config.kill_grace_ms / 1000)
                    exit_code = None
                    timed_out = True
                elapsed_ms = int((time.monotonic() - start) * 1000)
                if not timed_out:
                    # Helpers forked by the toolchain must not outlive the attempt.
                    kill_process_group(proc.pid, self.config.kill_grace_ms / 1000)

            stdout, stdout_truncated = _read_capped(stdout_path, self.config.output_cap_bytes)
            stderr, stderr_truncated = _read_capped(stderr_path, self.config.output_cap_bytes)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        if self.health_monitor:
            for stream, truncated in (("stdout", stdout_truncated), ("stderr", stderr_truncated)):
                if truncated:
                    self.health_monitor.record_output_truncated(self.backend.name, test_id, stream)

        if timed_out:
            status = ExecutionStatus.TIMEOUT
            duration_ms = timeout_ms
        else:
            status = ExecutionStatus.COMPLETED if exit_code == 0 else ExecutionStatus.CRASHED
            duration_ms = elapsed_ms

        logger.debug(
            "%s on %s: %s (exit=%s, %dms)",
            test_id or "<source>",
            self.backend.name,
            status.value,
            exit_code,
            duration_ms,
        )
        return ExecutionResult(
            status=status,
            duration_ms=duration_ms,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            truncated=stdout_truncated or stderr_truncated,
        )

    def execute_test(self, test: GeneratedTest, timeout_ms: int | None = None) -> ExecutionResult:
        return self.execute(
            test.rendered_source,
            timeout_ms or self.test_timeout_ms(test),
            test_id=test.id,
            schema=test.schema_ref,
        )


def verify_backend(harness: ExecutionHarness, timeout_ms: int = 15000) -> ExecutionResult:
    """Check that the backend can be spawned and runs a trivial program.

    Raises ToolchainSpawnError when it cannot be started. A probe that
    crashes or hangs is reported but not fatal: some toolchains reject the
    probe syntax and still fuzz fine.
    """
    print(f"[*] Verifying backend '{harness.backend.name}': {' '.join(harness.backend.command)}", file=sys.stderr)
    result = harness.execute(PROBE_SOURCE, timeout_ms, test_id="probe")
    if result.status is ExecutionStatus.COMPLETED:
        print("  [+] Backend validated successfully.", file=sys.stderr)
    else:
        output = (result.stderr + "\n" + result.stdout).strip()
        print(
            f"  [!] Probe program finished with status {result.status.value} "
            f"(exit={result.exit_code}):\n{indent(output[:500], '    ')}",
            file=sys.stderr,
        )
    return result
