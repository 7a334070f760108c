"""Tests for the generation strategies."""

import random
import unittest

from shadowfuzz.errors import PreconditionUnsatisfiable
from shadowfuzz.schema import load
from shadowfuzz.shadow_state import is_valid_sequence
from shadowfuzz.strategies import (
    BoundaryStrategy,
    Grammar,
    GrammarStrategy,
    MutationStrategy,
    SchemaStrategy,
    default_grammar,
)
from shadowfuzz.strategies.base import content_id, slugify
from shadowfuzz.strategies.grammar import Ref, Repeat, Terminal, parse_production
from shadowfuzz.strategies.mutation import (
    SequenceMutator,
    delete_one,
    duplicate_one,
    swap_runs,
    swap_two,
    tokenize,
)
from shadowfuzz.types import GeneratedTest, StrategyKind
from shadowfuzz.values import boundary_candidates

STACK = load(
    """
type_name: Stack
constructor:
  name: new
operations:
  - name: push
    parameters: [i8]
    effects: ["!is_empty"]
  - name: pop
    preconditions: ["!is_empty"]
  - name: size
max_sequence_length: 6
"""
)


class TestSchemaStrategy(unittest.TestCase):
    """Test precondition-aware random walks."""

    def test_sequences_respect_preconditions(self):
        """No generated sequence ever pops before pushing."""
        strategy = SchemaStrategy(STACK)
        rng = random.Random(42)
        for _ in range(300):
            test = strategy.next_test(rng)
            self.assertTrue(is_valid_sequence(STACK, test.operation_sequence))
            self.assertLessEqual(len(test.operation_sequence), STACK.max_sequence_length)
            self.assertNotEqual(test.operation_names[:1], ["pop"])
            self.assertEqual(test.schema_ref, "Stack")
            self.assertEqual(test.strategy, StrategyKind.SCHEMA)

    def test_same_rng_seed_same_test(self):
        strategy = SchemaStrategy(STACK)
        self.assertEqual(strategy.next_test(random.Random(5)), strategy.next_test(random.Random(5)))

    def test_call_timeouts_come_from_schema(self):
        test = SchemaStrategy(STACK).next_test(random.Random(1))
        self.assertEqual(test.constructor_call.timeout_ms, 100)
        for call in test.operation_sequence:
            self.assertEqual(call.timeout_ms, 1000)

    def test_stops_early_when_nothing_is_enabled(self):
        schema = load(
            """
type_name: Once
constructor: {name: new, effects: [fresh]}
operations:
  - name: consume
    preconditions: [fresh]
    effects: ["!fresh"]
"""
        )
        test = SchemaStrategy(schema).next_test(random.Random(0))
        self.assertEqual(test.operation_names, ["consume"])

    def test_unsatisfiable_constructor_state(self):
        schema = load(
            """
type_name: Locked
constructor: {name: new}
operations:
  - name: open
    preconditions: [unlocked]
    effects: [unlocked]
"""
        )
        with self.assertRaises(PreconditionUnsatisfiable):
            SchemaStrategy(schema)

    def test_no_operations(self):
        schema = load("type_name: Empty\nconstructor: {name: new}\noperations: []\n")
        with self.assertRaises(PreconditionUnsatisfiable):
            SchemaStrategy(schema)


class TestBoundaryStrategy(unittest.TestCase):
    def test_arguments_are_edge_values(self):
        strategy = BoundaryStrategy(STACK)
        allowed = set(boundary_candidates(STACK.operation("push").parameters[0]))
        rng = random.Random(9)
        for _ in range(50):
            test = strategy.next_test(rng)
            self.assertEqual(test.strategy, StrategyKind.BOUNDARY)
            self.assertTrue(is_valid_sequence(STACK, test.operation_sequence))
            for call in test.operation_sequence:
                if call.operation == "push":
                    self.assertIn(call.arguments[0], allowed)


class TestGrammar(unittest.TestCase):
    """Test grammar parsing and expansion."""

    def test_parse_production_kinds(self):
        self.assertEqual(parse_production("<expr>"), Ref("expr"))
        self.assertEqual(parse_production("<>"), Terminal("<>"))
        self.assertEqual(parse_production(3), Terminal("3"))
        self.assertEqual(parse_production({"repeat": "x", "min": 1, "max": 2}), Repeat(Terminal("x"), 1, 2))
        with self.assertRaises(ValueError):
            parse_production({"repeat": "x", "min": 3, "max": 1})
        with self.assertRaises(ValueError):
            parse_production({"sequence": []})

    def test_undefined_references_rejected(self):
        with self.assertRaises(ValueError):
            Grammar.from_mapping({"start": "a", "rules": {"a": "<b>"}})
        with self.assertRaises(ValueError):
            Grammar.from_mapping({"start": "missing", "rules": {"a": "x"}})
        with self.assertRaises(ValueError):
            Grammar.from_mapping({"start": "a"})

    def test_recursion_is_depth_limited(self):
        grammar = Grammar.from_mapping(
            {"start": "e", "max_depth": 3, "rules": {"e": {"choice": [["(", "<e>", ")"]]}}}
        )
        self.assertEqual(grammar.generate(random.Random(0)), "((((" + "))))")

    def test_default_grammar_programs(self):
        grammar = default_grammar()
        for seed in range(20):
            source = grammar.generate(random.Random(seed))
            self.assertTrue(source.startswith("fun main() {\n"))
            self.assertTrue(source.endswith("}\n"))
        self.assertEqual(grammar.generate(random.Random(4)), grammar.generate(random.Random(4)))

    def test_grammar_strategy_is_source_only(self):
        test = GrammarStrategy(schema_ref="Stack").next_test(random.Random(2))
        self.assertEqual(test.operation_sequence, ())
        self.assertEqual(test.strategy, StrategyKind.GRAMMAR)
        self.assertEqual(test.schema_ref, "Stack")
        self.assertEqual(test.id, content_id(StrategyKind.GRAMMAR, test.rendered_source))


class TestMutationEdits(unittest.TestCase):
    """Test the list edits shared by call and token mutation."""

    def setUp(self):
        self.rng = random.Random(11)
        self.items = list("abcdefgh")

    def test_delete_and_duplicate_change_length_by_one(self):
        self.assertEqual(len(delete_one(self.items, self.rng)), len(self.items) - 1)
        self.assertEqual(len(duplicate_one(self.items, self.rng)), len(self.items) + 1)

    def test_swaps_preserve_items(self):
        for _ in range(50):
            self.assertEqual(sorted(swap_two(self.items, self.rng)), self.items)
            self.assertEqual(sorted(swap_runs(self.items, self.rng)), self.items)

    def test_mutator_reports_applied_edits(self):
        mutated, applied = SequenceMutator().mutate(self.items, self.rng, edits=2)
        self.assertEqual(len(applied), 2)
        self.assertIsInstance(mutated, list)

    def test_tokenize_keeps_layout(self):
        leading, units = tokenize('  let x = "a b";\n')
        self.assertEqual(leading, "  ")
        self.assertEqual(units, ["let ", "x ", "= ", '"a b"', ";\n"])
        self.assertEqual(leading + "".join(units), '  let x = "a b";\n')


class TestMutationStrategy(unittest.TestCase):
    def test_requires_seeds(self):
        with self.assertRaises(ValueError):
            MutationStrategy([])

    def test_call_level_mutants_stay_valid(self):
        rng = random.Random(3)
        schema_strategy = SchemaStrategy(STACK)
        seeds = [schema_strategy.next_test(rng) for _ in range(10)]
        strategy = MutationStrategy(seeds, STACK)
        for _ in range(100):
            test = strategy.next_test(rng)
            self.assertEqual(test.strategy, StrategyKind.MUTATION)
            if test.operation_sequence:
                self.assertTrue(is_valid_sequence(STACK, test.operation_sequence))
                self.assertLessEqual(len(test.operation_sequence), STACK.max_sequence_length)

    def test_source_only_seed_uses_token_edits(self):
        seed = GeneratedTest(
            id="seed",
            schema_ref=None,
            operation_sequence=(),
            rendered_source="fun main() {\n    let x = 1;\n    println(x);\n}\n",
            strategy=StrategyKind.GRAMMAR,
        )
        test = MutationStrategy([seed]).next_test(random.Random(8))
        self.assertEqual(test.operation_sequence, ())
        self.assertEqual(test.strategy, StrategyKind.MUTATION)


class TestSlugify(unittest.TestCase):
    def test_slugify(self):
        self.assertEqual(slugify("Vec<i32>"), "Vec_i32")
        self.assertEqual(slugify("HashMap<String, i64>"), "HashMap_String_i64")
        self.assertEqual(slugify("<>"), "test")


if __name__ == "__main__":
    unittest.main()
