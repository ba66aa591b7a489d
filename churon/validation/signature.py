"""Semantic validators: caller inputs checked against the model's declared inputs.

Covers SEMANTIC (before the engine is called) and POST_FAILURE (after the
engine rejected a run, to turn its opaque message into a structured
error). All validators receive a SignatureCheck.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from ..descriptors import TensorDescriptor
from ..dtypes import HostArray, has_non_finite
from ..errors import ErrorKind
from .tensors import check_shape, check_type
from .core import Phase, Severity, ValidationResult, register_validator


@dataclass
class SignatureCheck:
    """Resolved inputs paired with the model's input descriptors."""
    inputs: dict[str, HostArray]
    descriptors: Sequence[TensorDescriptor]

    @property
    def declared(self) -> dict[str, TensorDescriptor]:
        return {d.name: d for d in self.descriptors}

    @property
    def required(self) -> list[str]:
        return [d.name for d in self.descriptors if d.required]


def _check_names(target: SignatureCheck, name: str) -> list[ValidationResult]:
    results = []
    declared = target.declared
    unexpected = [n for n in target.inputs if n not in declared]
    missing = [n for n in target.required if n not in target.inputs]

    if missing:
        results.append(ValidationResult(
            name, Severity.ERROR,
            f"Required input(s) not provided: {', '.join(missing)}",
            kind=ErrorKind.MISSING_REQUIRED,
            names=tuple(missing),
        ))
    if unexpected:
        results.append(ValidationResult(
            name, Severity.ERROR,
            f"Unexpected input(s) provided: {', '.join(unexpected)}; "
            f"model inputs are: {', '.join(declared) or '(none)'}",
            kind=ErrorKind.UNEXPECTED_INPUT,
            names=tuple(unexpected),
        ))
    return results


@register_validator("input_signature", Phase.SEMANTIC)
def validate_signature(target: SignatureCheck) -> list[ValidationResult]:
    """Supplied names must be declared; required names must be supplied.

    Missing and unexpected are separate kinds: the first means the caller
    forgot something, the second usually means a typo.
    """
    return _check_names(target, "input_signature")


@register_validator("integral_non_finite", Phase.SEMANTIC)
def validate_integral_targets(target: SignatureCheck) -> list[ValidationResult]:
    """Flag NaN/Inf headed for an integer input instead of truncating silently."""
    results = []
    declared = target.declared
    for name, host in target.inputs.items():
        desc = declared.get(name)
        if desc is None or desc.element_type is None:
            continue
        if desc.element_type.is_integral and has_non_finite(host.data):
            results.append(ValidationResult(
                "integral_non_finite", Severity.WARNING,
                f"Input '{name}' contains NaN/Inf but the model expects "
                f"{desc.element_type}; these values have no integer representation",
                names=(name,),
            ))
    return results


# ---------------------------------------------------------------------------
# Post-failure re-validation
# ---------------------------------------------------------------------------

@register_validator("post_failure_signature", Phase.POST_FAILURE)
def recheck_signature(target: SignatureCheck) -> list[ValidationResult]:
    """Re-run the name checks that validation='none' skipped."""
    return _check_names(target, "post_failure_signature")


@register_validator("post_failure_tensors", Phase.POST_FAILURE)
def recheck_tensors(target: SignatureCheck) -> list[ValidationResult]:
    """Re-run per-input type and shape checks against the descriptors."""
    results = []
    declared = target.declared
    for name, host in target.inputs.items():
        desc = declared.get(name)
        if desc is None:
            continue
        for check in (check_type, check_shape):
            r = check(host, desc)
            if r is not None:
                results.append(r)
    return results
