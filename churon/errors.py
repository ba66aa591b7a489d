"""Error taxonomy for the session API.

Every failure the package reports is a ChuronError carrying an ErrorKind
tag and the input/output names it implicates. The set of kinds is closed:
callers can match on the exception class or on `err.kind` and be sure
nothing else will turn up.

Validation failures additionally derive from ValidationError, which keeps
the full list of diagnostics (errors and warnings) that produced it.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Iterable, Sequence

if TYPE_CHECKING:
    from .validation.core import Phase, ValidationResult


class ErrorKind(Enum):
    """Closed set of failure categories."""
    MODEL_LOAD       = "ModelLoadError"
    INVALID_PROVIDER = "InvalidProvider"
    EMPTY_INPUT      = "EmptyInputError"
    UNNAMED_INPUT    = "UnnamedInputError"
    DUPLICATE_NAME   = "DuplicateNameError"
    MISSING_REQUIRED = "MissingRequiredInput"
    UNEXPECTED_INPUT = "UnexpectedInput"
    TYPE_MISMATCH    = "TypeMismatch"
    SHAPE_MISMATCH   = "ShapeMismatch"
    INFERENCE        = "InferenceError"


class ChuronError(Exception):
    """Base class for all errors raised by churon."""

    kind: ErrorKind

    def __init__(self, message: str, names: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.names: tuple[str, ...] = tuple(names)


# ---------------------------------------------------------------------------
# Open-time errors
# ---------------------------------------------------------------------------

class ModelLoadError(ChuronError):
    """Model file is missing, unreadable, or rejected by the engine."""
    kind = ErrorKind.MODEL_LOAD

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to load model '{path}': {reason}")
        self.path = path
        self.reason = reason


class InvalidProvider(ChuronError):
    """One or more requested execution providers are not supported."""
    kind = ErrorKind.INVALID_PROVIDER

    def __init__(self, invalid: Sequence[str], valid: Sequence[str]) -> None:
        super().__init__(
            f"Invalid execution providers: {', '.join(map(str, invalid))}. "
            f"Valid providers are: {', '.join(valid)}",
            names=[str(p) for p in invalid],
        )
        self.invalid = tuple(invalid)
        self.valid = tuple(valid)


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------

class NonFiniteWarning(UserWarning):
    """Input data holds NaN/Inf. Emitted via warnings.warn, not raised."""


class ValidationError(ChuronError):
    """Raised when input validation produces fatal diagnostics.

    Subclasses fix `kind`; the base class is raised directly only when
    strict validation promotes warnings to failures, and then has no kind.

    Attributes:
        phase: The validation phase that failed.
        results: Every diagnostic from that phase, including warnings.
    """

    kind: ErrorKind | None = None

    def __init__(self, phase: Phase, results: list[ValidationResult],
                 names: Iterable[str] = ()) -> None:
        from .validation.core import Severity

        self.phase = phase
        self.results = results
        # set when the error explains an engine failure (POST_FAILURE)
        self.engine_message: str | None = None
        errors = [r for r in results if r.severity == Severity.ERROR]
        if not errors:
            # strict mode: warnings promoted to failures
            errors = [r for r in results if r.severity == Severity.WARNING]
        msg = f"Input validation failed at {phase.name} ({len(errors)} error(s)):\n"
        msg += "\n".join(f"  {r}" for r in errors)
        super().__init__(msg, names=names)

    @property
    def kinds(self) -> set[ErrorKind]:
        """All error kinds reported by this failure."""
        return {r.kind for r in self.results if r.kind is not None}

    def names_for(self, kind: ErrorKind) -> tuple[str, ...]:
        """Names implicated by diagnostics of a given kind, in report order."""
        out: list[str] = []
        for r in self.results:
            if r.kind == kind:
                out.extend(n for n in r.names if n not in out)
        return tuple(out)


class EmptyInputError(ValidationError):
    kind = ErrorKind.EMPTY_INPUT


class UnnamedInputError(ValidationError):
    kind = ErrorKind.UNNAMED_INPUT


class DuplicateNameError(ValidationError):
    kind = ErrorKind.DUPLICATE_NAME


class MissingRequiredInput(ValidationError):
    kind = ErrorKind.MISSING_REQUIRED


class UnexpectedInput(ValidationError):
    kind = ErrorKind.UNEXPECTED_INPUT


class InputSetMismatch(MissingRequiredInput, UnexpectedInput):
    """Required inputs are missing AND undeclared inputs were supplied.

    Catchable as either parent, so handlers written for one kind still
    see the combined failure.
    """
    kind = ErrorKind.MISSING_REQUIRED


# ---------------------------------------------------------------------------
# Marshalling errors
# ---------------------------------------------------------------------------

class TypeMismatch(ValidationError):
    """A host value has no valid conversion to the target element type."""
    kind = ErrorKind.TYPE_MISMATCH


class ShapeMismatch(ValidationError):
    """An array's rank or a static dimension conflicts with its descriptor."""
    kind = ErrorKind.SHAPE_MISMATCH

    def __init__(self, phase: Phase, results: list[ValidationResult],
                 names: Iterable[str] = (),
                 expected: tuple[int, ...] | None = None,
                 actual: tuple[int, ...] | None = None) -> None:
        super().__init__(phase, results, names=names)
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Engine errors
# ---------------------------------------------------------------------------

class InferenceError(ChuronError):
    """The engine failed while executing the graph.

    `engine_message` is the engine's own diagnostic, verbatim.
    """
    kind = ErrorKind.INFERENCE

    def __init__(self, engine_message: str, names: Iterable[str] = ()) -> None:
        super().__init__(f"Inference failed: {engine_message}", names=names)
        self.engine_message = engine_message


class RunCancelled(InferenceError):
    """The run was cancelled through a CancellationToken."""

    def __init__(self, engine_message: str = "run cancelled by caller") -> None:
        super().__init__(engine_message)


ERRORS_BY_KIND: dict[ErrorKind, type[ValidationError]] = {
    ErrorKind.EMPTY_INPUT:      EmptyInputError,
    ErrorKind.UNNAMED_INPUT:    UnnamedInputError,
    ErrorKind.DUPLICATE_NAME:   DuplicateNameError,
    ErrorKind.MISSING_REQUIRED: MissingRequiredInput,
    ErrorKind.UNEXPECTED_INPUT: UnexpectedInput,
    ErrorKind.TYPE_MISMATCH:    TypeMismatch,
    ErrorKind.SHAPE_MISMATCH:   ShapeMismatch,
}
