"""
Schema-driven operation sequence generation.

Sequences are built one call at a time. At each step only the operations
whose preconditions hold in the current shadow state are candidates; one is
picked uniformly, given concrete arguments, and its effects are applied to
the shadow state before the next step. Generation stops at the schema's
``max_sequence_length`` or when no operation is enabled.
"""

from __future__ import annotations

import logging
import random
from typing import Callable

from shadowfuzz.errors import PreconditionUnsatisfiable
from shadowfuzz.render import Renderer
from shadowfuzz.schema import OperationSpec, ParamSpec, Schema
from shadowfuzz.shadow_state import ShadowState
from shadowfuzz.strategies.base import Strategy, content_id
from shadowfuzz.types import GeneratedTest, OperationCall, StrategyKind
from shadowfuzz.values import random_value

logger = logging.getLogger(__name__)

ValueFactory = Callable[[ParamSpec, random.Random], str]


class SchemaStrategy(Strategy):
    """Random walk over the schema's enabled operations."""

    kind = StrategyKind.SCHEMA

    def __init__(
        self,
        schema: Schema,
        renderer: Renderer | None = None,
        value_factory: ValueFactory | None = None,
    ) -> None:
        self.schema = schema
        self.renderer = renderer or Renderer()
        self.value_factory = value_factory or random_value
        if not schema.operations or not ShadowState.initial(schema).enabled_operations(schema):
            raise PreconditionUnsatisfiable(
                f"{schema.type_name}: no operation is enabled after construction"
            )

    def build_call(self, op: OperationSpec, rng: random.Random) -> OperationCall:
        arguments = tuple(self.value_factory(param, rng) for param in op.parameters)
        return OperationCall(op.name, arguments, op.timeout_ms)

    def build_sequence(self, rng: random.Random) -> tuple[OperationCall, tuple[OperationCall, ...]]:
        constructor = self.build_call(self.schema.constructor, rng)
        state = ShadowState.initial(self.schema)
        calls: list[OperationCall] = []
        while len(calls) < self.schema.max_sequence_length:
            enabled = state.enabled_operations(self.schema)
            if not enabled:
                logger.debug(
                    "No enabled operation after %s; stopping at %d calls",
                    state.history,
                    len(calls),
                )
                break
            op = rng.choice(enabled)
            calls.append(self.build_call(op, rng))
            state.record(op)
        return constructor, tuple(calls)

    def next_test(self, rng: random.Random) -> GeneratedTest:
        constructor, calls = self.build_sequence(rng)
        source = self.renderer.render(self.schema.type_name, constructor, calls)
        return GeneratedTest(
            id=content_id(self.kind, source),
            schema_ref=self.schema.type_name,
            operation_sequence=calls,
            rendered_source=source,
            strategy=self.kind,
            constructor_call=constructor,
        )
