"""Schema walks whose arguments are drawn from each parameter's edge values."""

from __future__ import annotations

from shadowfuzz.render import Renderer
from shadowfuzz.schema import Schema
from shadowfuzz.strategies.sequence import SchemaStrategy
from shadowfuzz.types import StrategyKind
from shadowfuzz.values import boundary_value


class BoundaryStrategy(SchemaStrategy):
    """Same walk as the schema strategy; arguments come from
    ``boundary_candidates`` (type limits, off-by-one, empty and oversized
    strings and lists, deep nesting) instead of the random ranges.
    """

    kind = StrategyKind.BOUNDARY

    def __init__(self, schema: Schema, renderer: Renderer | None = None) -> None:
        super().__init__(schema, renderer, value_factory=boundary_value)
