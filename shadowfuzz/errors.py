"""Exception hierarchy for shadowfuzz.

Detected bugs (timeouts, crashes, divergences) are data and never raised;
the classes below describe problems with the inputs or with the harness
itself.
"""


class ShadowfuzzError(RuntimeError):
    """Base class for domain-specific errors."""


class SchemaError(ShadowfuzzError):
    """Raised when a schema cannot be loaded."""

    def __init__(self, message: str, type_name: str | None = None):
        self.type_name = type_name
        if type_name:
            message = f"{type_name}: {message}"
        super().__init__(message)


class MalformedSchema(SchemaError):
    """Structural problem: missing/unknown fields, wrong types, bad values."""


class UnknownPredicate(SchemaError):
    """A precondition or effect names a predicate no effect ever declares."""

    def __init__(self, predicate: str, operation: str, type_name: str | None = None):
        self.predicate = predicate
        self.operation = operation
        super().__init__(
            f"operation '{operation}' references undeclared predicate '{predicate}'",
            type_name,
        )


class PreconditionUnsatisfiable(ShadowfuzzError):
    """The constructor's shadow state enables no operation.

    Reported as a warning by the generator; zero tests are produced.
    """


class HarnessError(ShadowfuzzError):
    """A fault inside the harness rather than in the toolchain under test."""

    def __init__(self, message: str, *, test_id: str | None = None, schema: str | None = None):
        self.test_id = test_id
        self.schema = schema
        context = ", ".join(
            f"{key}={value}" for key, value in (("schema", schema), ("test", test_id)) if value
        )
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class ToolchainSpawnError(HarnessError):
    """The toolchain process could not be started."""


class CorpusWriteError(HarnessError):
    """A corpus entry could not be persisted."""


class MinimizationBudgetExceeded(UserWarning):
    """The minimizer ran out of execution attempts.

    Only ever logged; the best candidate found so far is returned.
    """
