"""
Mutation of existing tests.

Seeds come from the corpus or from seed source files. A seed that carries an
operation sequence is mutated at the call level (delete, duplicate or swap a
call or a run of calls) and every candidate is replayed against a fresh
shadow state; invalid candidates are discarded and another edit is tried.
Seeds that are only source text get token-level edits of the same shape.
"""

from __future__ import annotations

import logging
import random
import re
from typing import Callable, Sequence

from shadowfuzz.render import Renderer
from shadowfuzz.schema import Schema
from shadowfuzz.shadow_state import is_valid_sequence
from shadowfuzz.strategies.base import Strategy, content_id
from shadowfuzz.types import GeneratedTest, OperationCall, StrategyKind

logger = logging.getLogger(__name__)

# Whitespace runs, identifiers/numbers, string literals, or single punctuation.
TOKEN_PATTERN = re.compile(r'\s+|"(?:\\.|[^"\\])*"|\w+|[^\w\s]')
MAX_RUN = 4
MAX_CALL_ATTEMPTS = 20

Edit = Callable[[list, random.Random], list]


def _pick_run(length: int, rng: random.Random) -> tuple[int, int]:
    start = rng.randrange(length)
    end = min(length, start + rng.randint(1, MAX_RUN))
    return start, end


def delete_one(items: list, rng: random.Random) -> list:
    index = rng.randrange(len(items))
    return items[:index] + items[index + 1 :]


def delete_run(items: list, rng: random.Random) -> list:
    start, end = _pick_run(len(items), rng)
    return items[:start] + items[end:]


def duplicate_one(items: list, rng: random.Random) -> list:
    index = rng.randrange(len(items))
    return items[: index + 1] + [items[index]] + items[index + 1 :]


def duplicate_run(items: list, rng: random.Random) -> list:
    start, end = _pick_run(len(items), rng)
    return items[:end] + items[start:end] + items[end:]


def swap_two(items: list, rng: random.Random) -> list:
    if len(items) < 2:
        return list(items)
    first, second = rng.sample(range(len(items)), 2)
    result = list(items)
    result[first], result[second] = result[second], result[first]
    return result


def swap_runs(items: list, rng: random.Random) -> list:
    """Exchange two adjacent runs: ``A B`` -> ``B A``."""
    if len(items) < 2:
        return list(items)
    start = rng.randrange(len(items) - 1)
    middle = rng.randint(start + 1, min(len(items) - 1, start + MAX_RUN))
    end = min(len(items), middle + rng.randint(1, MAX_RUN))
    return items[:start] + items[middle:end] + items[start:middle] + items[end:]


class SequenceMutator:
    """Applies a random pipeline of list edits to calls or tokens."""

    def __init__(self) -> None:
        self.edits: list[Edit] = [
            delete_one,
            delete_run,
            duplicate_one,
            duplicate_run,
            swap_two,
            swap_runs,
        ]

    def mutate(self, items: Sequence, rng: random.Random, edits: int | None = None) -> tuple[list, list[str]]:
        result = list(items)
        count = edits if edits is not None else rng.randint(1, 3)
        applied = []
        for edit in rng.choices(self.edits, k=count):
            if not result:
                break
            result = edit(result, rng)
            applied.append(edit.__name__)
        return result, applied


def tokenize(source: str) -> tuple[str, list[str]]:
    """Split source into leading whitespace plus tokens that each carry
    their trailing whitespace, so edits keep the line structure intact."""
    leading = ""
    units: list[str] = []
    for token in TOKEN_PATTERN.findall(source):
        if not token.isspace():
            units.append(token)
        elif units:
            units[-1] += token
        else:
            leading += token
    return leading, units


class MutationStrategy(Strategy):
    """Derives new tests from seed tests."""

    kind = StrategyKind.MUTATION

    def __init__(
        self,
        seeds: Sequence[GeneratedTest],
        schema: Schema | None = None,
        renderer: Renderer | None = None,
    ) -> None:
        if not seeds:
            raise ValueError("the mutation strategy needs at least one seed test")
        self.seeds = list(seeds)
        self.schema = schema
        self.renderer = renderer or Renderer()
        self.mutator = SequenceMutator()

    def _can_mutate_calls(self, seed: GeneratedTest) -> bool:
        return (
            bool(seed.operation_sequence)
            and self.schema is not None
            and seed.schema_ref == self.schema.type_name
        )

    def mutate_calls(self, seed: GeneratedTest, rng: random.Random) -> GeneratedTest | None:
        assert self.schema is not None
        for _ in range(MAX_CALL_ATTEMPTS):
            calls, applied = self.mutator.mutate(seed.operation_sequence, rng)
            calls = calls[: self.schema.max_sequence_length]
            if not is_valid_sequence(self.schema, calls):
                continue
            logger.debug("Call-level edits %s applied to %s", applied, seed.id)
            constructor = seed.constructor_call or OperationCall(
                self.schema.constructor.name, (), self.schema.constructor.timeout_ms
            )
            source = self.renderer.render(self.schema.type_name, constructor, calls)
            return GeneratedTest(
                id=content_id(self.kind, source),
                schema_ref=seed.schema_ref,
                operation_sequence=tuple(calls),
                rendered_source=source,
                strategy=self.kind,
                constructor_call=constructor,
            )
        return None

    def mutate_tokens(self, seed: GeneratedTest, rng: random.Random) -> GeneratedTest:
        leading, units = tokenize(seed.rendered_source)
        mutated, applied = self.mutator.mutate(units, rng)
        logger.debug("Token-level edits %s applied to %s", applied, seed.id)
        source = leading + "".join(mutated)
        return GeneratedTest(
            id=content_id(self.kind, source),
            schema_ref=seed.schema_ref,
            operation_sequence=(),
            rendered_source=source,
            strategy=self.kind,
        )

    def next_test(self, rng: random.Random) -> GeneratedTest:
        seed = rng.choice(self.seeds)
        if self._can_mutate_calls(seed):
            mutated = self.mutate_calls(seed, rng)
            if mutated is not None:
                return mutated
            logger.debug("No valid call-level mutant of %s; using token edits", seed.id)
        return self.mutate_tokens(seed, rng)
