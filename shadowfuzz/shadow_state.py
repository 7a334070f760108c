"""
Shadow-state tracking for precondition-aware sequence generation.

The shadow state is the set of predicate literals currently known to hold
for the instance being built up by a generated sequence. A literal is either
a plain name (``is_empty``) or its negation (``!is_empty``). Asserting a
literal removes its complement, so the set never holds both. A predicate
nobody has asserted yet is unknown, which satisfies neither ``x`` nor
``!x``.

Execution is black-box: the shadow state exists only while generating and
while minimizing (to re-validate candidate subsequences).
"""

from __future__ import annotations

from typing import Iterable, Sequence

from shadowfuzz.schema import OperationSpec, Schema, negate
from shadowfuzz.types import OperationCall


class ShadowState:
    """An explicit, serializable set of predicate literals."""

    def __init__(self, literals: Iterable[str] = ()) -> None:
        self._literals: set[str] = set()
        self.history: list[str] = []
        self.apply(literals)

    @classmethod
    def initial(cls, schema: Schema) -> "ShadowState":
        """Return the state established by the schema's constructor."""
        state = cls(schema.constructor.effects)
        state.history.append(schema.constructor.name)
        return state

    @property
    def literals(self) -> frozenset[str]:
        return frozenset(self._literals)

    def holds(self, literal: str) -> bool:
        return literal in self._literals

    def satisfies(self, preconditions: Iterable[str]) -> bool:
        return all(literal in self._literals for literal in preconditions)

    def apply(self, effects: Iterable[str]) -> None:
        for literal in effects:
            self._literals.discard(negate(literal))
            self._literals.add(literal)

    def record(self, op: OperationSpec) -> None:
        """Apply an operation's effects immediately after it is appended."""
        self.history.append(op.name)
        self.apply(op.effects)

    def enabled_operations(self, schema: Schema) -> list[OperationSpec]:
        """Operations whose preconditions hold now, in schema order."""
        return [op for op in schema.operations if self.satisfies(op.preconditions)]

    def copy(self) -> "ShadowState":
        clone = ShadowState()
        clone._literals = set(self._literals)
        clone.history = list(self.history)
        return clone

    def to_list(self) -> list[str]:
        return sorted(self._literals)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ShadowState):
            return NotImplemented
        return self._literals == other._literals

    def __repr__(self) -> str:
        return f"ShadowState({self.to_list()!r})"


def first_invalid_call(schema: Schema, calls: Sequence[OperationCall]) -> int | None:
    """Replay ``calls`` from a fresh state.

    Returns the index of the first call whose preconditions do not hold (or
    whose operation the schema does not know), or None if the whole sequence
    is valid.
    """
    state = ShadowState.initial(schema)
    for index, call in enumerate(calls):
        try:
            op = schema.operation(call.operation)
        except KeyError:
            return index
        if not state.satisfies(op.preconditions):
            return index
        state.record(op)
    return None


def is_valid_sequence(schema: Schema, calls: Sequence[OperationCall]) -> bool:
    return first_invalid_call(schema, calls) is None
