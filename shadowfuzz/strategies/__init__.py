from shadowfuzz.strategies.base import Strategy
from shadowfuzz.strategies.boundary import BoundaryStrategy
from shadowfuzz.strategies.grammar import Grammar, GrammarStrategy, default_grammar
from shadowfuzz.strategies.mutation import MutationStrategy
from shadowfuzz.strategies.sequence import SchemaStrategy

__all__ = [
    "BoundaryStrategy",
    "Grammar",
    "GrammarStrategy",
    "MutationStrategy",
    "SchemaStrategy",
    "Strategy",
    "default_grammar",
]
