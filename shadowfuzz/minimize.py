"""
Delta-debugging minimizer for failing tests.

A failing test with an operation sequence is reduced over its list of calls:
the list is split into ``n`` chunks, each chunk and then each complement is
tried, and the first candidate that still fails in the same way replaces
the current sequence. When no chunk or complement works the granularity
doubles. Final passes then try removing each remaining call on its own
until no single removal still fails.

Candidates are replayed against the schema's shadow state before anything
is executed; a candidate that breaks a precondition is skipped for free.
A candidate "still fails" only if its failure class belongs to the same
family as the original one (a hang that turns into a crash is a different
bug and is rejected).

Source-only tests (grammar or token mutations) are reduced line by line
with the same algorithm.

Every executed candidate costs one attempt. When ``max_attempts`` runs out
the smallest failing candidate found so far is returned and the exhaustion
is logged.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Hashable, Sequence, TypeVar

from shadowfuzz.errors import MinimizationBudgetExceeded
from shadowfuzz.health import HealthMonitor
from shadowfuzz.render import Renderer
from shadowfuzz.schema import Schema
from shadowfuzz.shadow_state import is_valid_sequence
from shadowfuzz.types import FailureClass, GeneratedTest, OperationCall

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 200

Oracle = Callable[[GeneratedTest], "FailureClass | None"]
T = TypeVar("T", bound=Hashable)


class _BudgetExhausted(Exception):
    pass


@dataclass
class MinimizationStats:
    attempts: int = 0
    skipped_invalid: int = 0
    original_length: int = 0
    final_length: int = 0
    budget_exceeded: bool = False
    mode: str = "calls"


def split_chunks(items: Sequence[T], n: int) -> list[list[T]]:
    """Split into ``n`` contiguous, nearly equal, non-empty chunks."""
    n = max(1, min(n, len(items)))
    size, extra = divmod(len(items), n)
    chunks, start = [], 0
    for i in range(n):
        end = start + size + (1 if i < extra else 0)
        chunks.append(list(items[start:end]))
        start = end
    return chunks


def ddmin(items: Sequence[T], still_fails: Callable[[list[T]], bool]) -> list[T]:
    """Classic ddmin followed by single-element removal passes until
    none succeeds, so the result is 1-minimal.

    ``still_fails`` is never called with an empty list.
    """
    current = list(items)
    n = 2
    while len(current) >= 2:
        chunks = split_chunks(current, n)
        reduced = False
        for chunk in chunks:
            if len(chunk) < len(current) and still_fails(chunk):
                current, n, reduced = chunk, 2, True
                break
        if not reduced and n > 2:
            for index in range(len(chunks)):
                complement = [item for i, c in enumerate(chunks) if i != index for item in c]
                if still_fails(complement):
                    current, n, reduced = complement, max(n - 1, 2), True
                    break
        if not reduced:
            if n >= len(current):
                break
            n = min(len(current), n * 2)

    changed = True
    while changed and len(current) > 1:
        changed = False
        index = 0
        while len(current) > 1 and index < len(current):
            candidate = current[:index] + current[index + 1 :]
            if still_fails(candidate):
                current, changed = candidate, True
            else:
                index += 1
    return current


class Minimizer:
    """Reduces failing tests to a minimal reproduction."""

    def __init__(
        self,
        oracle: Oracle,
        schema: Schema | None = None,
        renderer: Renderer | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        health_monitor: HealthMonitor | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.oracle = oracle
        self.schema = schema
        self.renderer = renderer or Renderer()
        self.max_attempts = max_attempts
        self.health_monitor = health_monitor
        self.last_stats = MinimizationStats()

    def _uses_calls(self, test: GeneratedTest) -> bool:
        return (
            bool(test.operation_sequence)
            and self.schema is not None
            and test.schema_ref == self.schema.type_name
        )

    def _with_calls(self, test: GeneratedTest, calls: Sequence[OperationCall]) -> GeneratedTest:
        assert self.schema is not None
        constructor = test.constructor_call or OperationCall(
            self.schema.constructor.name, (), self.schema.constructor.timeout_ms
        )
        source = self.renderer.render(self.schema.type_name, constructor, calls)
        return dataclasses.replace(
            test,
            operation_sequence=tuple(calls),
            rendered_source=source,
            constructor_call=constructor,
        )

    @staticmethod
    def _with_lines(test: GeneratedTest, lines: Sequence[str]) -> GeneratedTest:
        return dataclasses.replace(test, rendered_source="".join(lines))

    def minimize(self, test: GeneratedTest, failure_class: FailureClass | None = None) -> GeneratedTest:
        """Return the smallest test found that fails like ``test``.

        When ``failure_class`` is None the test is executed once to learn it;
        a test that does not fail at all is returned unchanged.
        """
        stats = MinimizationStats()
        self.last_stats = stats
        if failure_class is None:
            stats.attempts += 1
            failure_class = self.oracle(test)
            if failure_class is None:
                logger.warning("[-] %s does not fail; nothing to minimize", test.id)
                return test

        cache: dict[tuple, bool] = {}

        def still_fails(candidate: GeneratedTest, key: tuple, validate: bool) -> bool:
            if key in cache:
                return cache[key]
            if validate and not is_valid_sequence(self.schema, candidate.operation_sequence):
                stats.skipped_invalid += 1
                cache[key] = False
                return False
            if stats.attempts >= self.max_attempts:
                raise _BudgetExhausted
            stats.attempts += 1
            outcome = failure_class.matches(self.oracle(candidate))
            cache[key] = outcome
            return outcome

        best: list = []
        if self._uses_calls(test):
            stats.mode = "calls"
            items: list = list(test.operation_sequence)

            def check(calls: list) -> bool:
                if still_fails(self._with_calls(test, calls), tuple(calls), True):
                    best[:] = calls
                    return True
                return False

            build = self._with_calls
        else:
            stats.mode = "lines"
            items = test.rendered_source.splitlines(keepends=True)

            def check(lines: list) -> bool:
                if still_fails(self._with_lines(test, lines), tuple(lines), False):
                    best[:] = lines
                    return True
                return False

            build = self._with_lines

        stats.original_length = len(items)
        best[:] = items
        try:
            reduced = ddmin(items, check)
        except _BudgetExhausted:
            reduced = list(best)
            stats.budget_exceeded = True
            warning = MinimizationBudgetExceeded(
                f"{test.id}: minimization stopped after {stats.attempts} attempts "
                f"at {len(reduced)} of {len(items)} {stats.mode}"
            )
            logger.warning("[!] %s", warning)
            if self.health_monitor:
                self.health_monitor.record_minimization_budget_exceeded(test.id, stats.attempts, len(reduced))

        stats.final_length = len(reduced)
        logger.info(
            "[+] Minimized %s: %d -> %d %s in %d attempt(s) (%d invalid skipped)",
            test.id,
            stats.original_length,
            stats.final_length,
            stats.mode,
            stats.attempts,
            stats.skipped_invalid,
        )
        if stats.final_length == stats.original_length:
            return test
        minimized = build(test, reduced)
        return dataclasses.replace(minimized, id=f"{test.id}.min")


def minimize(
    failing_test: GeneratedTest,
    oracle: Oracle,
    *,
    schema: Schema | None = None,
    renderer: Renderer | None = None,
    failure_class: FailureClass | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> GeneratedTest:
    return Minimizer(oracle, schema, renderer, max_attempts).minimize(failing_test, failure_class)
