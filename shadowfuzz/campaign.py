"""
Campaign runner: executes a batch of tests on a worker pool.

Each worker owns one child process at a time. A failing test is confirmed
(re-run ``confirm_runs`` times), then minimized and recorded in the corpus.
Findings are data: the runner only raises for harness faults such as a
backend that cannot be spawned.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Mapping, Sequence

from shadowfuzz.corpus_manager import CorpusManager
from shadowfuzz.health import HealthMonitor
from shadowfuzz.minimize import DEFAULT_MAX_ATTEMPTS, Minimizer
from shadowfuzz.oracle import FailureOracle, Verdict
from shadowfuzz.render import Renderer
from shadowfuzz.schema import Schema
from shadowfuzz.types import FailureClass, Finding, GeneratedTest

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[GeneratedTest, Verdict], None]


@dataclass
class CampaignResult:
    """Everything a run produced, in test order."""

    total: int = 0
    passed: int = 0
    findings: list[Finding] = field(default_factory=list)
    flaky: list[Finding] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def failed(self) -> bool:
        return bool(self.findings or self.flaky)

    def by_class(self) -> dict[FailureClass, list[Finding]]:
        grouped: dict[FailureClass, list[Finding]] = {}
        for finding in self.findings:
            grouped.setdefault(finding.failure_class, []).append(finding)
        return grouped


class CampaignRunner:
    def __init__(
        self,
        oracle: FailureOracle,
        *,
        corpus: CorpusManager | None = None,
        schemas: Mapping[str, Schema] | None = None,
        renderer: Renderer | None = None,
        workers: int = 1,
        confirm_runs: int = 1,
        minimize: bool = True,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        health_monitor: HealthMonitor | None = None,
    ) -> None:
        self.oracle = oracle
        self.corpus = corpus
        self.schemas = dict(schemas or {})
        self.renderer = renderer or Renderer()
        self.workers = max(1, workers)
        self.confirm_runs = max(0, confirm_runs)
        self.minimize = minimize
        self.max_attempts = max_attempts
        self.health_monitor = health_monitor
        self._print_lock = threading.Lock()

    def _say(self, message: str) -> None:
        with self._print_lock:
            print(message, file=sys.stderr)

    def _confirm(self, test: GeneratedTest, failure_class: FailureClass) -> int:
        """Number of confirmation runs that reproduced the same failure family."""
        reproduced = 0
        for _ in range(self.confirm_runs):
            if failure_class.matches(self.oracle(test)):
                reproduced += 1
        return reproduced

    def _minimize(self, test: GeneratedTest, failure_class: FailureClass) -> GeneratedTest:
        minimizer = Minimizer(
            self.oracle,
            schema=self.schemas.get(test.schema_ref or ""),
            renderer=self.renderer,
            max_attempts=self.max_attempts,
            health_monitor=self.health_monitor,
        )
        return minimizer.minimize(test, failure_class)

    def process(self, test: GeneratedTest) -> tuple[Verdict, Finding | None, bool]:
        """Run one test through execute, confirm, minimize and record.

        Returns the verdict, the finding (if any) and whether it was flaky.
        """
        verdict = self.oracle.classify(test)
        if self.health_monitor:
            if verdict.failure_class is FailureClass.TIMEOUT:
                self.health_monitor.record_timeout(test.schema_ref or "<grammar>")
            else:
                self.health_monitor.reset_timeout_streak()
        if verdict.failure_class is None:
            self._say(f"  [.] {test.id}: pass ({verdict.duration_ms}ms)")
            return verdict, None, False

        failure_class = verdict.failure_class
        self._say(f"  [!!!] {test.id}: {failure_class.value} DETECTED")
        finding = Finding(test=test, failure_class=failure_class, evidence=verdict.evidence)

        if self.confirm_runs:
            reproduced = self._confirm(test, failure_class)
            if reproduced == 0:
                self._say(f"  [-] {test.id}: did not reproduce in {self.confirm_runs} run(s); flaky")
                if self.health_monitor:
                    self.health_monitor.record_flaky_finding(
                        test.id, failure_class.value, reproduced, self.confirm_runs
                    )
                return verdict, finding, True

        minimized = None
        if self.minimize:
            minimized = self._minimize(test, failure_class)

        signature = None
        new_in_corpus = False
        if self.corpus is not None:
            entry = self.corpus.record(minimized or test, failure_class)
            signature = entry.signature
            new_in_corpus = entry.occurrence_count == 1

        finding = Finding(
            test=test,
            failure_class=failure_class,
            evidence=verdict.evidence,
            minimized=minimized,
            corpus_signature=signature,
            new_in_corpus=new_in_corpus,
        )
        return verdict, finding, False

    def run_tests(self, tests: Sequence[GeneratedTest]) -> CampaignResult:
        """Execute every test; harness faults propagate after the pool drains."""
        result = CampaignResult(total=len(tests))
        start = time.monotonic()
        logger.info("[*] Running %d test(s) with %d worker(s)", len(tests), self.workers)

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = [pool.submit(self.process, test) for test in tests]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()
            # Re-raise the first harness fault, in submission order.
            for future in futures:
                if future in done and future.exception() is not None:
                    raise future.exception()

        for future in futures:
            _, finding, flaky = future.result()
            if finding is None:
                result.passed += 1
            elif flaky:
                result.flaky.append(finding)
            else:
                result.findings.append(finding)

        result.duration_s = time.monotonic() - start
        logger.info(
            "[+] %d passed, %d finding(s), %d flaky in %.1fs",
            result.passed,
            len(result.findings),
            len(result.flaky),
            result.duration_s,
        )
        return result
