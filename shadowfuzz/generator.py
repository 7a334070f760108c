"""
Batch test generation.

`generate` turns a schema (or a grammar, or seed tests) into a list of
`GeneratedTest` objects. Each test in a batch gets its own random stream
derived from the batch seed and its index, so re-running with the same seed
reproduces the batch exactly and any single test can be regenerated in
isolation.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import random
from typing import Sequence

from shadowfuzz.errors import PreconditionUnsatisfiable
from shadowfuzz.health import HealthMonitor
from shadowfuzz.render import Renderer
from shadowfuzz.schema import Schema
from shadowfuzz.strategies import (
    BoundaryStrategy,
    Grammar,
    GrammarStrategy,
    MutationStrategy,
    SchemaStrategy,
    Strategy,
)
from shadowfuzz.strategies.base import slugify
from shadowfuzz.types import GeneratedTest, StrategyKind

logger = logging.getLogger(__name__)

BOOTSTRAP_SEED_COUNT = 16


def derive_seed(seed: int, index: int) -> int:
    """Stable per-test seed; independent of Python's hash randomization."""
    digest = hashlib.sha256(f"{seed}:{index}".encode("ascii")).digest()
    return int.from_bytes(digest[:8], "big")


def build_strategy(
    kind: StrategyKind | str,
    schema: Schema | None,
    *,
    seed: int = 0,
    renderer: Renderer | None = None,
    grammar: Grammar | None = None,
    seeds: Sequence[GeneratedTest] | None = None,
) -> Strategy:
    """Instantiate the strategy named by ``kind``.

    Raises PreconditionUnsatisfiable for schema-driven strategies when the
    schema enables nothing after construction, and ValueError when a
    required input (schema, seeds) is missing.
    """
    kind = StrategyKind(kind)
    if kind is StrategyKind.GRAMMAR:
        return GrammarStrategy(grammar, schema_ref=schema.type_name if schema else None)
    if kind is StrategyKind.MUTATION:
        if not seeds:
            if schema is None:
                raise ValueError("mutation needs seed tests or a schema to bootstrap them")
            # No corpus yet: bootstrap the seed pool with schema walks.
            seeds = _generate_with(SchemaStrategy(schema, renderer), BOOTSTRAP_SEED_COUNT, seed)
        return MutationStrategy(seeds, schema, renderer)
    if schema is None:
        raise ValueError(f"the {kind.value} strategy requires a schema")
    if kind is StrategyKind.BOUNDARY:
        return BoundaryStrategy(schema, renderer)
    return SchemaStrategy(schema, renderer)


def _generate_with(strategy: Strategy, count: int, seed: int, prefix: str = "") -> list[GeneratedTest]:
    tests = []
    for index in range(count):
        test_seed = derive_seed(seed, index)
        test = strategy.next_test(random.Random(test_seed))
        tests.append(
            dataclasses.replace(
                test,
                id=f"{prefix}{strategy.label}-s{seed}-{index:05d}",
                seed=test_seed,
            )
        )
    return tests


def generate(
    schema: Schema | None,
    strategy: StrategyKind | str | Strategy,
    count: int,
    seed: int,
    *,
    renderer: Renderer | None = None,
    grammar: Grammar | None = None,
    seeds: Sequence[GeneratedTest] | None = None,
    health_monitor: HealthMonitor | None = None,
) -> list[GeneratedTest]:
    """Generate ``count`` tests, deterministically in ``seed``.

    When the schema's constructor leaves no operation enabled a warning is
    logged and an empty list is returned.
    """
    if count < 0:
        raise ValueError("count must be non-negative")
    try:
        if not isinstance(strategy, Strategy):
            strategy = build_strategy(
                strategy, schema, seed=seed, renderer=renderer, grammar=grammar, seeds=seeds
            )
    except PreconditionUnsatisfiable as e:
        logger.warning("[!] %s; no tests generated", e)
        if health_monitor and schema is not None:
            health_monitor.record_precondition_unsatisfiable(schema.type_name)
        return []

    prefix = f"{slugify(schema.type_name)}-" if schema is not None else ""
    tests = _generate_with(strategy, count, seed, prefix)
    logger.info("[+] Generated %d %s test(s) with seed %d", len(tests), strategy.label, seed)
    return tests
