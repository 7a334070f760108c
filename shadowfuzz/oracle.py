"""Turns one test into one failure classification."""

from __future__ import annotations

from dataclasses import dataclass

from shadowfuzz.config import Backend
from shadowfuzz.differential import DifferentialComparator
from shadowfuzz.execution import ExecutionHarness
from shadowfuzz.types import (
    DifferentialResult,
    ExecutionResult,
    FailureClass,
    GeneratedTest,
)


@dataclass(frozen=True)
class Verdict:
    failure_class: FailureClass | None
    evidence: ExecutionResult | DifferentialResult

    @property
    def failed(self) -> bool:
        return self.failure_class is not None

    @property
    def duration_ms(self) -> int:
        if isinstance(self.evidence, DifferentialResult):
            return max(self.evidence.backend_a.duration_ms, self.evidence.backend_b.duration_ms)
        return self.evidence.duration_ms


class FailureOracle:
    """Executes a test (on one backend, or two when differential) and
    classifies the outcome.

    In differential mode a divergence wins; when the backends agree, a
    shared hang or crash is still reported as TIMEOUT or CRASHED.
    """

    def __init__(
        self,
        harness: ExecutionHarness,
        comparator: DifferentialComparator | None = None,
        backend_b: Backend | None = None,
    ) -> None:
        if (comparator is None) != (backend_b is None):
            raise ValueError("differential mode needs both a comparator and a second backend")
        self.harness = harness
        self.comparator = comparator
        self.backend_b = backend_b

    @property
    def differential(self) -> bool:
        return self.comparator is not None

    def classify(self, test: GeneratedTest) -> Verdict:
        timeout_ms = self.harness.test_timeout_ms(test)
        if self.comparator is None:
            result = self.harness.execute_test(test, timeout_ms)
            return Verdict(result.failure_class, result)

        assert self.backend_b is not None
        diff = self.comparator.compare(
            test.rendered_source,
            self.harness.backend,
            self.backend_b,
            timeout_ms,
            test_id=test.id,
            schema=test.schema_ref,
        )
        if diff.diverged:
            return Verdict(diff.failure_class, diff)
        return Verdict(diff.backend_a.failure_class, diff)

    def __call__(self, test: GeneratedTest) -> FailureClass | None:
        return self.classify(test).failure_class

