"""Shared type definitions for shadowfuzz.

This module holds the value types that flow between the generator, the
harness, the minimizer and the corpus. Keeping them in one module avoids
circular imports between those components.

Everything here is a frozen dataclass or an Enum: generated tests and
execution results are never mutated after creation, and corpus updates go
through ``dataclasses.replace``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class StrategyKind(str, Enum):
    SCHEMA = "schema"
    GRAMMAR = "grammar"
    MUTATION = "mutation"
    BOUNDARY = "boundary"


class ExecutionStatus(str, Enum):
    COMPLETED = "Completed"
    TIMEOUT = "Timeout"
    CRASHED = "Crashed"


class FailureClass(str, Enum):
    """Classification of a detected bug.

    ``family`` groups the two divergence kinds together; minimization and
    corpus signatures compare families, so a reduction that turns an
    asymmetric hang into an output divergence is still "the same" failure,
    while a hang that turns into a crash is not.
    """

    TIMEOUT = "Timeout"
    CRASHED = "Crashed"
    ASYMMETRIC_HANG = "AsymmetricHang"
    OUTPUT_DIVERGENCE = "OutputDivergence"

    @property
    def family(self) -> str:
        if self in (FailureClass.ASYMMETRIC_HANG, FailureClass.OUTPUT_DIVERGENCE):
            return "Diverged"
        return self.value

    def matches(self, other: "FailureClass | None") -> bool:
        return other is not None and self.family == other.family


@dataclass(frozen=True)
class OperationCall:
    """A single invocation of an operation with concrete, rendered arguments."""

    operation: str
    arguments: tuple[str, ...] = ()
    timeout_ms: int = 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "arguments": list(self.arguments),
            "timeout_ms": self.timeout_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperationCall":
        return cls(
            operation=data["operation"],
            arguments=tuple(data.get("arguments", ())),
            timeout_ms=int(data.get("timeout_ms", 1000)),
        )

    def __str__(self) -> str:
        return f"{self.operation}({', '.join(self.arguments)})"


@dataclass(frozen=True)
class GeneratedTest:
    """A runnable test program plus the operation sequence it was rendered from.

    Grammar-generated and token-mutated tests have an empty
    ``operation_sequence``; their only representation is the source text.
    """

    id: str
    schema_ref: str | None
    operation_sequence: tuple[OperationCall, ...]
    rendered_source: str
    strategy: StrategyKind
    seed: int | None = None
    constructor_call: OperationCall | None = None

    @property
    def operation_names(self) -> list[str]:
        return [call.operation for call in self.operation_sequence]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "schema_ref": self.schema_ref,
            "operation_sequence": [call.to_dict() for call in self.operation_sequence],
            "rendered_source": self.rendered_source,
            "strategy": self.strategy.value,
            "seed": self.seed,
            "constructor_call": self.constructor_call.to_dict() if self.constructor_call else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GeneratedTest":
        return cls(
            id=str(data["id"]),
            schema_ref=data.get("schema_ref"),
            operation_sequence=tuple(
                OperationCall.from_dict(call) for call in data.get("operation_sequence", ())
            ),
            rendered_source=data["rendered_source"],
            strategy=StrategyKind(data.get("strategy", StrategyKind.SCHEMA.value)),
            seed=data.get("seed"),
            constructor_call=(
                OperationCall.from_dict(data["constructor_call"])
                if data.get("constructor_call")
                else None
            ),
        )


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of exactly one child process execution."""

    status: ExecutionStatus
    duration_ms: int
    stdout: str
    stderr: str
    exit_code: int | None
    truncated: bool = False

    @property
    def is_failure(self) -> bool:
        return self.status is not ExecutionStatus.COMPLETED

    @property
    def failure_class(self) -> FailureClass | None:
        if self.status is ExecutionStatus.TIMEOUT:
            return FailureClass.TIMEOUT
        if self.status is ExecutionStatus.CRASHED:
            return FailureClass.CRASHED
        return None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class DifferentialResult:
    backend_a: ExecutionResult
    backend_b: ExecutionResult
    diverged: bool
    diff_summary: str = ""
    failure_class: FailureClass | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend_a": self.backend_a.to_dict(),
            "backend_b": self.backend_b.to_dict(),
            "diverged": self.diverged,
            "diff_summary": self.diff_summary,
            "failure_class": self.failure_class.value if self.failure_class else None,
        }


@dataclass(frozen=True)
class CorpusEntry:
    """A minimized, deduplicated known failure."""

    signature: str
    minimal_test: GeneratedTest
    failure_class: FailureClass
    first_seen: str  # ISO 8601
    last_seen: str  # ISO 8601
    occurrence_count: int = 1
    resolved: bool = False
    resolved_at: str | None = None
    regressed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "failure_class": self.failure_class.value,
            "rendered_source": self.minimal_test.rendered_source,
            "minimal_test": self.minimal_test.to_dict(),
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "occurrence_count": self.occurrence_count,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at,
            "regressed_at": self.regressed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CorpusEntry":
        return cls(
            signature=data["signature"],
            minimal_test=GeneratedTest.from_dict(data["minimal_test"]),
            failure_class=FailureClass(data["failure_class"]),
            first_seen=data["first_seen"],
            last_seen=data.get("last_seen", data["first_seen"]),
            occurrence_count=int(data.get("occurrence_count", 1)),
            resolved=bool(data.get("resolved", False)),
            resolved_at=data.get("resolved_at"),
            regressed_at=data.get("regressed_at"),
        )


@dataclass(frozen=True)
class Finding:
    """A bug detected while running a test, with its minimized form if any."""

    test: GeneratedTest
    failure_class: FailureClass
    evidence: ExecutionResult | DifferentialResult
    minimized: GeneratedTest | None = None
    corpus_signature: str | None = None
    new_in_corpus: bool = False
    extra: dict[str, Any] = field(default_factory=dict)
