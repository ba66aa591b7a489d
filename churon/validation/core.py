"""Core validation types, registry, and runner.

All types live here to avoid circular imports: validator submodules
import from core, and __init__ re-exports everything.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Iterable

from ..errors import (
    ERRORS_BY_KIND, ErrorKind, InputSetMismatch, ShapeMismatch, ValidationError,
)


class Phase(Enum):
    """Checkpoints where validation runs.

    Each phase implies the type of artifact being validated:
        STRUCTURAL:    InputBatch (raw caller pairs, engine-independent)
        SEMANTIC:      SignatureCheck (resolved inputs + model descriptors)
        MARSHAL:       raised directly by the marshaller, no registered validators
        POST_FAILURE:  SignatureCheck, re-run after the engine rejected a run
    """
    STRUCTURAL   = auto()
    SEMANTIC     = auto()
    MARSHAL      = auto()
    POST_FAILURE = auto()


class Severity(Enum):
    """Diagnostic severity level.

    ERROR:   The run cannot proceed; the engine is never called.
    WARNING: Suspicious but legitimate for some models (NaN inputs).
    INFO:    Diagnostic observation.
    """
    ERROR   = auto()
    WARNING = auto()
    INFO    = auto()


@dataclass
class ValidationResult:
    """A single diagnostic from a validator.

    `kind` tags errors with their taxonomy entry (None for warnings and
    info); `names` lists the inputs the diagnostic is about.
    """
    validator: str
    severity: Severity
    message: str
    kind: ErrorKind | None = None
    names: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"[{self.severity.name}] {self.validator}: {self.message}"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass
class Validator:
    """A tagged validation check.

    Attributes:
        name: Human-readable identifier.
        phase: When this validator runs.
        check: Callable that inspects the phase's artifact and returns
            diagnostics.
    """
    name: str
    phase: Phase
    check: Callable[..., list[ValidationResult]]


VALIDATORS: list[Validator] = []


def register_validator(name: str, phase: Phase):
    """Decorator to register a validation function.

    Usage:
        @register_validator("my_check", Phase.SEMANTIC)
        def check_something(target: SignatureCheck) -> list[ValidationResult]:
            ...
    """
    def decorator(fn: Callable[..., list[ValidationResult]]):
        VALIDATORS.append(Validator(name=name, phase=phase, check=fn))
        return fn
    return decorator


def run_validators(
    phase: Phase,
    target: Any,
    *,
    fail_on: Severity | None = Severity.ERROR,
) -> list[ValidationResult]:
    """Run all validators registered for a phase.

    Args:
        phase: Which checkpoint to validate.
        target: The artifact to validate (InputBatch or SignatureCheck).
        fail_on: Raise if any result meets or exceeds this severity.
            Set to None to collect without raising.

    Returns:
        All validation results (errors, warnings, and info).

    Raises:
        ValidationError: The taxonomy subclass matching the fatal results.
    """
    results: list[ValidationResult] = []
    for v in VALIDATORS:
        if v.phase == phase:
            results.extend(v.check(target))

    if fail_on is not None:
        fatal = [r for r in results if r.severity.value <= fail_on.value]
        if fatal:
            raise build_error(phase, results, fatal)

    return results


def build_error(phase: Phase, results: list[ValidationResult],
                fatal: Iterable[ValidationResult] | None = None) -> ValidationError:
    """Pick the exception class for a failed phase.

    The first fatal result with a kind decides the class, except that
    missing and unexpected inputs reported together become InputSetMismatch.
    Warnings promoted by strict mode carry no kind and fall back to the
    generic ValidationError.
    """
    if fatal is None:
        fatal = [r for r in results if r.severity == Severity.ERROR]
    fatal = list(fatal)
    names: list[str] = []
    for r in fatal:
        names.extend(n for n in r.names if n not in names)

    kinds = [r.kind for r in fatal if r.kind is not None]
    if ErrorKind.MISSING_REQUIRED in kinds and ErrorKind.UNEXPECTED_INPUT in kinds:
        return InputSetMismatch(phase, results, names=names)
    if not kinds:
        return ValidationError(phase, results, names=names)

    first = next(r for r in fatal if r.kind is not None)
    if first.kind == ErrorKind.SHAPE_MISMATCH:
        return ShapeMismatch(phase, results, names=names,
                             expected=first.details.get("expected"),
                             actual=first.details.get("actual"))
    return ERRORS_BY_KIND[first.kind](phase, results, names=names)


def fail(phase: Phase, validator: str, kind: ErrorKind, message: str,
         names: Iterable[str] = (), **details: Any) -> ValidationError:
    """Build the exception for a single error diagnostic."""
    result = ValidationResult(validator, Severity.ERROR, message,
                              kind=kind, names=tuple(names), details=details)
    return build_error(phase, [result])
