"""
Rendering of operation sequences into toolchain source text.

Every call is rendered with one fixed template fragment; fragments are
joined in order and wrapped in the harness boilerplate (construct the
instance, then invoke operations on it). Each line carries its timeout
budget as a comment so a saved reproduction documents the expectation it
violated.

Templates use ``string.Template`` placeholders (``$name``, ``${args}``)
because the target languages are brace-heavy.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from string import Template
from typing import Any, Sequence

from shadowfuzz.types import OperationCall

DEFAULT_PROLOGUE = "fun main() {\n"
DEFAULT_CONSTRUCTOR = "    let obj = ${type_name}::${name}(${args});  // Timeout: <${timeout_ms}ms\n"
DEFAULT_CALL = "    obj.${name}(${args});  // Timeout: <${timeout_ms}ms\n"
DEFAULT_EPILOGUE = "}\n"


@dataclass(frozen=True)
class RenderTemplate:
    """Placeholders: ``type_name``, ``name``, ``args``, ``timeout_ms``, ``index``."""

    prologue: str = DEFAULT_PROLOGUE
    constructor: str = DEFAULT_CONSTRUCTOR
    call: str = DEFAULT_CALL
    epilogue: str = DEFAULT_EPILOGUE
    separator: str = ", "

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RenderTemplate":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown render template fields: {sorted(unknown)}")
        return cls(**{key: str(value) for key, value in data.items()})


class Renderer:
    """Turns a constructor call plus an operation sequence into a program."""

    def __init__(self, template: RenderTemplate | None = None) -> None:
        self.template = template or RenderTemplate()

    def _fragment(self, pattern: str, type_name: str, call: OperationCall, index: int) -> str:
        return Template(pattern).safe_substitute(
            type_name=type_name,
            name=call.operation,
            args=self.template.separator.join(call.arguments),
            timeout_ms=call.timeout_ms,
            index=index,
        )

    def render(
        self,
        type_name: str,
        constructor: OperationCall,
        calls: Sequence[OperationCall],
    ) -> str:
        parts = [Template(self.template.prologue).safe_substitute(type_name=type_name)]
        parts.append(self._fragment(self.template.constructor, type_name, constructor, 0))
        for index, call in enumerate(calls, start=1):
            parts.append(self._fragment(self.template.call, type_name, call, index))
        parts.append(Template(self.template.epilogue).safe_substitute(type_name=type_name))
        return "".join(parts)
