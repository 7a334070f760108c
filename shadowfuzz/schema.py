"""
Declarative runtime schemas for behavioral fuzzing.

A schema describes one runtime type of the toolchain under test: how to
construct it, which operations may be invoked on it, the predicates that
gate each operation, and the time budget every step must respect.

Example (YAML; JSON is accepted too)::

    type_name: Vec<i32>
    constructor:
      name: new
      timeout_ms: 100
      returns: Vec<i32>
      effects: [is_empty]
    operations:
      - name: push
        parameters: [i32]
        effects: ["!is_empty"]
        timeout_ms: 100
      - name: pop
        preconditions: ["!is_empty"]
        timeout_ms: 100
        returns: Option<i32>
    max_sequence_length: 10

Loaded schemas are immutable value data; nothing here reflects over the
toolchain's real types.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from shadowfuzz.errors import MalformedSchema, UnknownPredicate

DEFAULT_CONSTRUCTOR_TIMEOUT_MS = 100
DEFAULT_OPERATION_TIMEOUT_MS = 1000
DEFAULT_MAX_SEQUENCE_LENGTH = 10
DEFAULT_MAX_LENGTH = 8

TOP_LEVEL_FIELDS = frozenset({"type_name", "constructor", "operations", "max_sequence_length"})
CONSTRUCTOR_FIELDS = frozenset(
    {"name", "parameters", "timeout_ms", "returns", "effects", "postconditions", "preconditions"}
)
OPERATION_FIELDS = frozenset(
    {"name", "parameters", "preconditions", "effects", "postconditions", "timeout_ms", "returns"}
)
PARAM_FIELDS = frozenset({"name", "type", "min", "max", "max_length", "values", "literal"})

# Default draw windows; boundary generation uses the full type limits.
INT_TYPES: dict[str, tuple[int, int]] = {
    "int": (-(2**31), 2**31 - 1),
    "i8": (-(2**7), 2**7 - 1),
    "i16": (-(2**15), 2**15 - 1),
    "i32": (-(2**31), 2**31 - 1),
    "i64": (-(2**63), 2**63 - 1),
    "u8": (0, 2**8 - 1),
    "u16": (0, 2**16 - 1),
    "u32": (0, 2**32 - 1),
    "u64": (0, 2**64 - 1),
    "usize": (0, 2**64 - 1),
    "isize": (-(2**63), 2**63 - 1),
}
FLOAT_TYPES = frozenset({"float", "f32", "f64"})
BOOL_TYPES = frozenset({"bool"})
STRING_TYPES = frozenset({"string", "str", "String", "&str"})

LIST_TYPE_PATTERN = re.compile(r"^(?:list|Vec)<\s*(.+?)\s*>$|^\[\s*(.+?)\s*\]$")
PREDICATE_PATTERN = re.compile(r"^!?[A-Za-z_][A-Za-z0-9_.:-]*$")


def predicate_name(literal: str) -> str:
    """Strip the negation marker from a predicate literal."""
    return literal[1:] if literal.startswith("!") else literal


def negate(literal: str) -> str:
    return literal[1:] if literal.startswith("!") else f"!{literal}"


@dataclass(frozen=True)
class ParamSpec:
    """How to build one argument value.

    ``kind`` is one of ``int``, ``float``, ``bool``, ``string``, ``list`` or
    ``literal``. Literal parameters render verbatim and are never varied.
    """

    kind: str
    type_tag: str
    name: str | None = None
    min: int | float | None = None
    max: int | float | None = None
    max_length: int = DEFAULT_MAX_LENGTH
    values: tuple[str, ...] = ()
    literal: str | None = None
    element: "ParamSpec | None" = None

    @property
    def type_limits(self) -> tuple[int, int] | None:
        return INT_TYPES.get(self.type_tag)


@dataclass(frozen=True)
class OperationSpec:
    name: str
    parameters: tuple[ParamSpec, ...] = ()
    preconditions: tuple[str, ...] = ()
    effects: tuple[str, ...] = ()
    timeout_ms: int = DEFAULT_OPERATION_TIMEOUT_MS
    returns: str = "void"


@dataclass(frozen=True)
class Schema:
    type_name: str
    constructor: OperationSpec
    operations: tuple[OperationSpec, ...]
    max_sequence_length: int = DEFAULT_MAX_SEQUENCE_LENGTH

    def operation(self, name: str) -> OperationSpec:
        for op in self.operations:
            if op.name == name:
                return op
        raise KeyError(name)

    @property
    def declared_predicates(self) -> frozenset[str]:
        names = {predicate_name(lit) for lit in self.constructor.effects}
        for op in self.operations:
            names.update(predicate_name(lit) for lit in op.effects)
        return frozenset(names)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _require_str(value: Any, where: str, type_name: str | None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise MalformedSchema(f"{where} must be a non-empty string", type_name)
    return value


def _require_int(value: Any, where: str, type_name: str | None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedSchema(f"{where} must be an integer", type_name)
    return value


def _require_list(value: Any, where: str, type_name: str | None) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedSchema(f"{where} must be a list", type_name)
    return value


def _parse_predicates(value: Any, where: str, type_name: str | None) -> tuple[str, ...]:
    literals = []
    for item in _require_list(value, where, type_name):
        literal = _require_str(item, where, type_name).strip()
        if not PREDICATE_PATTERN.match(literal):
            raise MalformedSchema(f"{where}: invalid predicate '{literal}'", type_name)
        literals.append(literal)
    return tuple(literals)


def _type_kind(tag: str) -> str | None:
    if tag in INT_TYPES:
        return "int"
    if tag in FLOAT_TYPES:
        return "float"
    if tag in BOOL_TYPES:
        return "bool"
    if tag in STRING_TYPES:
        return "string"
    match = LIST_TYPE_PATTERN.match(tag)
    if match and _type_kind((match.group(1) or match.group(2)).strip()) is not None:
        return "list"
    return None


def parse_param(raw: Any, where: str, type_name: str | None = None) -> ParamSpec:
    """Build a ParamSpec from a type tag, a literal, or a mapping."""
    if isinstance(raw, bool):
        return ParamSpec(kind="literal", type_tag="literal", literal="true" if raw else "false")
    if isinstance(raw, (int, float)):
        return ParamSpec(kind="literal", type_tag="literal", literal=str(raw))
    if isinstance(raw, str):
        tag = raw.strip()
        kind = _type_kind(tag)
        if kind is None:
            return ParamSpec(kind="literal", type_tag="literal", literal=raw)
        return _typed_param(tag, kind, where, type_name)
    if isinstance(raw, dict):
        unknown = set(raw) - PARAM_FIELDS
        if unknown:
            raise MalformedSchema(f"{where}: unknown fields {sorted(unknown)}", type_name)
        if "literal" in raw:
            return ParamSpec(
                kind="literal",
                type_tag="literal",
                name=raw.get("name"),
                literal=str(raw["literal"]),
            )
        tag = _require_str(raw.get("type"), f"{where}.type", type_name).strip()
        kind = _type_kind(tag)
        if kind is None:
            raise MalformedSchema(f"{where}: unknown parameter type '{tag}'", type_name)
        lo, hi = raw.get("min"), raw.get("max")
        for bound_name, bound in (("min", lo), ("max", hi)):
            if bound is not None and (isinstance(bound, bool) or not isinstance(bound, (int, float))):
                raise MalformedSchema(f"{where}.{bound_name} must be a number", type_name)
        if lo is not None and hi is not None and lo > hi:
            raise MalformedSchema(f"{where}: min > max", type_name)
        max_length = raw.get("max_length", DEFAULT_MAX_LENGTH)
        if _require_int(max_length, f"{where}.max_length", type_name) < 0:
            raise MalformedSchema(f"{where}.max_length must be >= 0", type_name)
        values = tuple(str(v) for v in _require_list(raw.get("values"), f"{where}.values", type_name))
        base = _typed_param(tag, kind, where, type_name)
        return ParamSpec(
            kind=base.kind,
            type_tag=base.type_tag,
            name=raw.get("name"),
            min=lo,
            max=hi,
            max_length=max_length,
            values=values,
            element=base.element,
        )
    raise MalformedSchema(f"{where}: unsupported parameter declaration {raw!r}", type_name)


def _typed_param(tag: str, kind: str, where: str, type_name: str | None) -> ParamSpec:
    element = None
    if kind == "list":
        match = LIST_TYPE_PATTERN.match(tag)
        assert match is not None
        inner = (match.group(1) or match.group(2)).strip()
        element = parse_param(inner, f"{where}<element>", type_name)
    return ParamSpec(kind=kind, type_tag=tag, element=element)


def _parse_operation(
    raw: Any, where: str, allowed: frozenset[str], default_timeout: int, type_name: str | None
) -> OperationSpec:
    if not isinstance(raw, dict):
        raise MalformedSchema(f"{where} must be a mapping", type_name)
    unknown = set(raw) - allowed
    if unknown:
        raise MalformedSchema(f"{where}: unknown fields {sorted(unknown)}", type_name)
    if "name" not in raw:
        raise MalformedSchema(f"{where}: missing required field 'name'", type_name)
    name = _require_str(raw["name"], f"{where}.name", type_name).strip()
    if "effects" in raw and "postconditions" in raw:
        raise MalformedSchema(f"{where}: use either 'effects' or 'postconditions'", type_name)
    effects_raw = raw.get("effects", raw.get("postconditions"))
    timeout_ms = _require_int(
        raw.get("timeout_ms", default_timeout), f"{where}.timeout_ms", type_name
    )
    if timeout_ms <= 0:
        raise MalformedSchema(f"{where}.timeout_ms must be > 0", type_name)
    returns = raw.get("returns", "void")
    return OperationSpec(
        name=name,
        parameters=tuple(
            parse_param(p, f"{where}.parameters[{i}]", type_name)
            for i, p in enumerate(_require_list(raw.get("parameters"), f"{where}.parameters", type_name))
        ),
        preconditions=_parse_predicates(
            raw.get("preconditions"), f"{where}.preconditions", type_name
        ),
        effects=_parse_predicates(effects_raw, f"{where}.effects", type_name),
        timeout_ms=timeout_ms,
        returns=_require_str(returns, f"{where}.returns", type_name),
    )


def _check_predicates_declared(schema: Schema) -> None:
    declared = schema.declared_predicates
    for op in schema.operations:
        for literal in op.preconditions:
            if predicate_name(literal) not in declared:
                raise UnknownPredicate(literal, op.name, schema.type_name)


def from_mapping(data: Any) -> Schema:
    """Validate an already-parsed mapping and build a Schema."""
    if not isinstance(data, dict):
        raise MalformedSchema("schema document must be a mapping")
    type_name = data.get("type_name") if isinstance(data.get("type_name"), str) else None

    unknown = set(data) - TOP_LEVEL_FIELDS
    if unknown:
        raise MalformedSchema(f"unknown top-level fields {sorted(unknown)}", type_name)
    for required in ("type_name", "constructor", "operations"):
        if required not in data:
            raise MalformedSchema(f"missing required field '{required}'", type_name)
    type_name = _require_str(data["type_name"], "type_name", None).strip()

    constructor = _parse_operation(
        data["constructor"],
        "constructor",
        CONSTRUCTOR_FIELDS,
        DEFAULT_CONSTRUCTOR_TIMEOUT_MS,
        type_name,
    )
    if constructor.preconditions:
        raise MalformedSchema("constructor must not declare preconditions", type_name)

    raw_ops = data["operations"]
    if not isinstance(raw_ops, list):
        raise MalformedSchema("operations must be a list", type_name)
    operations = tuple(
        _parse_operation(
            raw, f"operations[{i}]", OPERATION_FIELDS, DEFAULT_OPERATION_TIMEOUT_MS, type_name
        )
        for i, raw in enumerate(raw_ops)
    )
    seen: set[str] = set()
    for op in operations:
        if op.name in seen:
            raise MalformedSchema(f"duplicate operation '{op.name}'", type_name)
        seen.add(op.name)

    max_len = _require_int(
        data.get("max_sequence_length", DEFAULT_MAX_SEQUENCE_LENGTH),
        "max_sequence_length",
        type_name,
    )
    if max_len < 1:
        raise MalformedSchema("max_sequence_length must be >= 1", type_name)

    schema = Schema(
        type_name=type_name,
        constructor=constructor,
        operations=operations,
        max_sequence_length=max_len,
    )
    _check_predicates_declared(schema)
    return schema


def load(schema_text: str) -> Schema:
    """Parse and validate schema text (YAML or JSON)."""
    try:
        data = yaml.safe_load(schema_text)
    except yaml.YAMLError as e:
        raise MalformedSchema(f"could not parse schema: {e}") from e
    return from_mapping(data)


def load_schema_file(path: str | Path) -> Schema:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MalformedSchema(f"could not read schema file {path}: {e}") from e
    return load(text)
