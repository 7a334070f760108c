"""
Differential execution: the same program on two backends.

The two runs are independent harness executions with the same budget. They
are compared in order: hang asymmetry first, then exit codes, then (only
when both completed) normalized stdout. The first mismatch decides the
failure class and the summary.
"""

from __future__ import annotations

import difflib
import logging
from typing import Callable

from shadowfuzz.config import Backend, HarnessConfig
from shadowfuzz.execution import ExecutionHarness
from shadowfuzz.health import HealthMonitor
from shadowfuzz.types import DifferentialResult, ExecutionResult, ExecutionStatus, FailureClass

logger = logging.getLogger(__name__)

MAX_DIFF_LINES = 40

Normalizer = Callable[[str], str]


def normalize_output(text: str) -> str:
    """Strip trailing whitespace on every line and trailing blank lines."""
    lines = [line.rstrip() for line in text.splitlines()]
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def _identity(text: str) -> str:
    return text


def _diff(a: str, b: str, name_a: str, name_b: str) -> str:
    diff = list(
        difflib.unified_diff(
            a.splitlines(), b.splitlines(), fromfile=name_a, tofile=name_b, lineterm=""
        )
    )
    if len(diff) > MAX_DIFF_LINES:
        diff = diff[:MAX_DIFF_LINES] + [f"... ({len(diff) - MAX_DIFF_LINES} more diff lines)"]
    return "\n".join(diff)


class DifferentialComparator:
    """Runs programs on two backends and reports semantic divergence."""

    def __init__(
        self,
        config: HarnessConfig | None = None,
        normalize: bool | None = None,
        normalizer: Normalizer | None = None,
        health_monitor: HealthMonitor | None = None,
    ) -> None:
        self.config = config or HarnessConfig()
        self.health_monitor = health_monitor
        enabled = self.config.normalize_output if normalize is None else normalize
        if normalizer is not None:
            self.normalizer = normalizer
        else:
            self.normalizer = normalize_output if enabled else _identity

    def harness_for(self, backend: Backend) -> ExecutionHarness:
        return ExecutionHarness(backend, self.config, self.health_monitor)

    def compare(
        self,
        rendered_source: str,
        backend_a: Backend,
        backend_b: Backend,
        timeout_ms: int,
        *,
        test_id: str | None = None,
        schema: str | None = None,
    ) -> DifferentialResult:
        result_a = self.harness_for(backend_a).execute(
            rendered_source, timeout_ms, test_id=test_id, schema=schema
        )
        result_b = self.harness_for(backend_b).execute(
            rendered_source, timeout_ms, test_id=test_id, schema=schema
        )
        result = self.compare_results(result_a, result_b, backend_a.name, backend_b.name)
        if result.diverged:
            logger.info("[DIFFERENTIAL] %s: %s", test_id or "<source>", result.diff_summary.splitlines()[0])
        return result

    def compare_results(
        self,
        result_a: ExecutionResult,
        result_b: ExecutionResult,
        name_a: str = "a",
        name_b: str = "b",
    ) -> DifferentialResult:
        """Classify two already-collected results."""
        timeout_a = result_a.status is ExecutionStatus.TIMEOUT
        timeout_b = result_b.status is ExecutionStatus.TIMEOUT

        # 1. Exactly one side hung
        if timeout_a != timeout_b:
            hung = name_a if timeout_a else name_b
            finished = name_b if timeout_a else name_a
            return DifferentialResult(
                result_a,
                result_b,
                diverged=True,
                diff_summary=f"asymmetric hang: {hung} timed out, {finished} finished",
                failure_class=FailureClass.ASYMMETRIC_HANG,
            )
        if timeout_a and timeout_b:
            return DifferentialResult(result_a, result_b, diverged=False, diff_summary="both timed out")

        # 2. Exit code mismatch
        if result_a.exit_code != result_b.exit_code:
            return DifferentialResult(
                result_a,
                result_b,
                diverged=True,
                diff_summary=(
                    f"exit code mismatch: {name_a}={result_a.exit_code}, {name_b}={result_b.exit_code}"
                ),
                failure_class=FailureClass.OUTPUT_DIVERGENCE,
            )

        # 3. Stdout mismatch, only meaningful when both completed
        if result_a.status is ExecutionStatus.COMPLETED and result_b.status is ExecutionStatus.COMPLETED:
            out_a = self.normalizer(result_a.stdout)
            out_b = self.normalizer(result_b.stdout)
            if out_a != out_b:
                return DifferentialResult(
                    result_a,
                    result_b,
                    diverged=True,
                    diff_summary="stdout mismatch\n" + _diff(out_a, out_b, name_a, name_b),
                    failure_class=FailureClass.OUTPUT_DIVERGENCE,
                )

        return DifferentialResult(result_a, result_b, diverged=False)
