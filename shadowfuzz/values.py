"""
Argument value construction driven by ParamSpec declarations.

Values are produced directly as source text in the toolchain's literal
syntax, since they are only ever pasted into rendered programs.
"""

from __future__ import annotations

import json
import random
import string

from shadowfuzz.schema import ParamSpec

# Window used for undeclared integer ranges; the full type limits are kept
# for boundary generation.
DEFAULT_INT_WINDOW = (-1000, 1000)
DEFAULT_FLOAT_WINDOW = (-1000.0, 1000.0)
STRING_ALPHABET = string.ascii_letters + string.digits + " _-"
LONG_STRING_LENGTH = 4096
NESTING_DEPTH = 32


def render_string(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def render_list(items: list[str]) -> str:
    return "[" + ", ".join(items) + "]"


def _int_bounds(param: ParamSpec, window: bool) -> tuple[int, int]:
    limits = param.type_limits or (-(2**31), 2**31 - 1)
    lo = int(param.min) if param.min is not None else None
    hi = int(param.max) if param.max is not None else None
    if lo is None and hi is None and window:
        return max(limits[0], DEFAULT_INT_WINDOW[0]), min(limits[1], DEFAULT_INT_WINDOW[1])
    width = DEFAULT_INT_WINDOW[1] - DEFAULT_INT_WINDOW[0]
    # A one-sided declaration slides the window so it never crosses the bound.
    if lo is None:
        lo = max(limits[0], min(DEFAULT_INT_WINDOW[0], hi - width)) if window else limits[0]
    if hi is None:
        hi = min(limits[1], max(DEFAULT_INT_WINDOW[1], lo + width)) if window else limits[1]
    return min(lo, hi), hi


def _float_bounds(param: ParamSpec) -> tuple[float, float]:
    lo = float(param.min) if param.min is not None else None
    hi = float(param.max) if param.max is not None else None
    width = DEFAULT_FLOAT_WINDOW[1] - DEFAULT_FLOAT_WINDOW[0]
    if lo is None:
        lo = DEFAULT_FLOAT_WINDOW[0] if hi is None else min(DEFAULT_FLOAT_WINDOW[0], hi - width)
    if hi is None:
        hi = max(DEFAULT_FLOAT_WINDOW[1], lo + width)
    return lo, hi


def random_value(param: ParamSpec, rng: random.Random) -> str:
    """Build one random value respecting the declared type and range."""
    if param.kind == "literal":
        return param.literal or ""
    if param.values:
        return rng.choice(param.values)
    if param.kind == "int":
        lo, hi = _int_bounds(param, window=True)
        return str(rng.randint(lo, hi))
    if param.kind == "float":
        lo, hi = _float_bounds(param)
        return repr(min(hi, max(lo, round(rng.uniform(lo, hi), 3))))
    if param.kind == "bool":
        return rng.choice(("true", "false"))
    if param.kind == "string":
        length = rng.randint(0, param.max_length)
        return render_string("".join(rng.choice(STRING_ALPHABET) for _ in range(length)))
    if param.kind == "list":
        assert param.element is not None
        length = rng.randint(0, param.max_length)
        return render_list([random_value(param.element, rng) for _ in range(length)])
    raise ValueError(f"unsupported parameter kind: {param.kind}")


def boundary_candidates(param: ParamSpec) -> list[str]:
    """Known edge values for a parameter, in a stable order."""
    if param.kind == "literal":
        return [param.literal or ""]
    candidates: list[str] = list(param.values)
    if param.kind == "int":
        lo, hi = _int_bounds(param, window=False)
        for value in (0, 1, -1, lo, lo - 1, hi, hi + 1):
            text = str(value)
            if text not in candidates:
                candidates.append(text)
    elif param.kind == "float":
        extra = ["0.0", "-0.0", "1e308", "-1e308", "5e-324"]
        if param.min is not None:
            extra.append(repr(float(param.min)))
        if param.max is not None:
            extra.append(repr(float(param.max)))
        candidates.extend(value for value in extra if value not in candidates)
    elif param.kind == "bool":
        candidates.extend(value for value in ("true", "false") if value not in candidates)
    elif param.kind == "string":
        for value in ("", "a", "é中", "a" * max(LONG_STRING_LENGTH, param.max_length + 1)):
            rendered = render_string(value)
            if rendered not in candidates:
                candidates.append(rendered)
    elif param.kind == "list":
        assert param.element is not None
        element_edges = boundary_candidates(param.element)
        nested = "[" * NESTING_DEPTH + "]" * NESTING_DEPTH
        candidates.extend(
            [
                render_list([]),
                render_list(element_edges[:1]),
                render_list(element_edges),
                render_list([element_edges[0]] * (param.max_length + 1)),
                nested,
            ]
        )
    return candidates


def boundary_value(param: ParamSpec, rng: random.Random) -> str:
    return rng.choice(boundary_candidates(param))
