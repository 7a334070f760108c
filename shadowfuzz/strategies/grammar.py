"""
Grammar-based program generation.

A grammar maps rule names to productions built from five node kinds:
terminals, references to other rules, concatenations, choices, optional
parts and bounded repetitions. Expansion is depth-limited: a reference
expanded beyond ``max_depth`` produces nothing, which keeps recursive rules
such as ``statement -> if_stmt -> statement*`` finite.

Grammars can be written as plain mappings (and so loaded from YAML)::

    start: program
    max_depth: 8
    rules:
      program: ["fun main() {\\n", {repeat: "<statement>", max: 4}, "}\\n"]
      statement: {choice: ["<let_stmt>", "<expr_stmt>"]}
      let_stmt: ["    let ", "<identifier>", " = ", "<expr>", ";\\n"]

A string wrapped in angle brackets is a rule reference; any other string is
a terminal.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml

from shadowfuzz.strategies.base import Strategy, content_id
from shadowfuzz.types import GeneratedTest, StrategyKind

DEFAULT_MAX_DEPTH = 10
DEFAULT_REPEAT_MAX = 3


@dataclass(frozen=True)
class Terminal:
    text: str


@dataclass(frozen=True)
class Ref:
    name: str


@dataclass(frozen=True)
class Concat:
    parts: tuple["Production", ...]


@dataclass(frozen=True)
class Choice:
    options: tuple["Production", ...]


@dataclass(frozen=True)
class Opt:
    body: "Production"


@dataclass(frozen=True)
class Repeat:
    body: "Production"
    min: int = 0
    max: int = DEFAULT_REPEAT_MAX


Production = Union[Terminal, Ref, Concat, Choice, Opt, Repeat]


def parse_production(raw: Any) -> Production:
    if isinstance(raw, str):
        if len(raw) > 2 and raw.startswith("<") and raw.endswith(">"):
            return Ref(raw[1:-1])
        return Terminal(raw)
    if isinstance(raw, (int, float, bool)):
        return Terminal(str(raw))
    if isinstance(raw, list):
        return Concat(tuple(parse_production(item) for item in raw))
    if isinstance(raw, dict):
        if "choice" in raw:
            return Choice(tuple(parse_production(item) for item in raw["choice"]))
        if "optional" in raw:
            return Opt(parse_production(raw["optional"]))
        if "repeat" in raw:
            low = int(raw.get("min", 0))
            high = int(raw.get("max", DEFAULT_REPEAT_MAX))
            if low < 0 or high < low:
                raise ValueError(f"invalid repeat bounds: min={low}, max={high}")
            return Repeat(parse_production(raw["repeat"]), low, high)
    raise ValueError(f"cannot interpret grammar production: {raw!r}")


def _references(production: Production) -> set[str]:
    if isinstance(production, Ref):
        return {production.name}
    if isinstance(production, (Concat, Choice)):
        children = production.parts if isinstance(production, Concat) else production.options
        names: set[str] = set()
        for child in children:
            names |= _references(child)
        return names
    if isinstance(production, (Opt, Repeat)):
        return _references(production.body)
    return set()


@dataclass
class Grammar:
    start: str
    rules: dict[str, Production] = field(default_factory=dict)
    max_depth: int = DEFAULT_MAX_DEPTH

    def __post_init__(self) -> None:
        if self.start not in self.rules:
            raise ValueError(f"start rule '{self.start}' is not defined")
        for name, production in self.rules.items():
            missing = _references(production) - set(self.rules)
            if missing:
                raise ValueError(f"rule '{name}' references undefined rules: {sorted(missing)}")

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "Grammar":
        if not isinstance(data, dict) or not isinstance(data.get("rules"), dict):
            raise ValueError("a grammar needs a 'rules' mapping")
        rules = {str(name): parse_production(body) for name, body in data["rules"].items()}
        return cls(
            start=str(data.get("start", "program")),
            rules=rules,
            max_depth=int(data.get("max_depth", DEFAULT_MAX_DEPTH)),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "Grammar":
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ValueError(f"{path}: invalid grammar YAML: {e}") from e
        return cls.from_mapping(data)

    def generate(self, rng: random.Random) -> str:
        return self._expand(Ref(self.start), rng, 0)

    def _expand(self, production: Production, rng: random.Random, depth: int) -> str:
        if isinstance(production, Terminal):
            return production.text
        if isinstance(production, Ref):
            if depth > self.max_depth:
                return ""
            return self._expand(self.rules[production.name], rng, depth + 1)
        if isinstance(production, Concat):
            return "".join(self._expand(part, rng, depth) for part in production.parts)
        if isinstance(production, Choice):
            if not production.options:
                return ""
            return self._expand(rng.choice(production.options), rng, depth)
        if isinstance(production, Opt):
            return self._expand(production.body, rng, depth) if rng.random() < 0.5 else ""
        count = rng.randint(production.min, production.max)
        return "".join(self._expand(production.body, rng, depth) for _ in range(count))


# A small expression/statement language in the toolchain's surface syntax.
MINIMAL_GRAMMAR: dict[str, Any] = {
    "start": "program",
    "max_depth": DEFAULT_MAX_DEPTH,
    "rules": {
        "program": ["fun main() {\n", {"repeat": "<statement>", "min": 1, "max": 4}, "}\n"],
        "statement": {"choice": ["<let_stmt>", "<if_stmt>", "<expr_stmt>", "<print_stmt>"]},
        "let_stmt": ["    let ", "<identifier>", " = ", "<expr>", ";\n"],
        "if_stmt": [
            "    if ",
            "<expr>",
            " {\n",
            {"repeat": "<statement>"},
            "    }",
            {"optional": [" else {\n", {"repeat": "<statement>"}, "    }"]},
            "\n",
        ],
        "expr_stmt": ["    ", "<expr>", ";\n"],
        "print_stmt": ["    println(", "<expr>", ");\n"],
        "expr": {"choice": ["<literal>", "<identifier>", "<binary_op>", ["(", "<expr>", ")"]]},
        "binary_op": ["<literal>", " ", "<operator>", " ", "<expr>"],
        "operator": {"choice": ["+", "-", "*", "/", "%", "==", "!=", "<", ">", "&&", "||"]},
        "literal": {"choice": ["<integer>", "<boolean>", "<string>"]},
        "integer": {"choice": ["0", "1", "-1", "42", "100", "2147483647"]},
        "boolean": {"choice": ["true", "false"]},
        "string": {"choice": ['"hello"', '"world"', '""']},
        "identifier": {"choice": ["x", "y", "result"]},
    },
}


def default_grammar() -> Grammar:
    return Grammar.from_mapping(MINIMAL_GRAMMAR)


class GrammarStrategy(Strategy):
    """Expands a grammar's start rule; produces source-only tests."""

    kind = StrategyKind.GRAMMAR

    def __init__(self, grammar: Grammar | None = None, schema_ref: str | None = None) -> None:
        self.grammar = grammar or default_grammar()
        self.schema_ref = schema_ref

    def next_test(self, rng: random.Random) -> GeneratedTest:
        source = self.grammar.generate(rng)
        return GeneratedTest(
            id=content_id(self.kind, source),
            schema_ref=self.schema_ref,
            operation_sequence=(),
            rendered_source=source,
            strategy=self.kind,
        )
