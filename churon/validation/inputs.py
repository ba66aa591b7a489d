"""Structural validators: engine-independent checks on caller inputs.

All validators receive an InputBatch. Nothing here knows about the model;
these checks catch construction mistakes (no entries, missing names,
duplicates, values that aren't arrays) before descriptors are consulted.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import numpy as np

from ..dtypes import (
    ElementType, HostArray, coerce_array, describe_dtype, has_non_finite,
    host_element_type, undecodable_text,
)
from ..errors import ErrorKind
from .core import Phase, Severity, ValidationResult, register_validator


@dataclass
class InputEntry:
    """One caller-supplied (name, value) pair, coerced once.

    `array` and `element_type` are None when the value could not be turned
    into a feedable array; `problem` then says why.
    """
    position: int
    name: Any
    value: Any
    array: np.ndarray | None = None
    element_type: ElementType | None = None
    problem: str | None = None

    @property
    def label(self) -> str:
        if isinstance(self.name, str) and self.name:
            return f"'{self.name}'"
        return f"#{self.position}"


@dataclass
class InputBatch:
    """Raw caller inputs, in the order supplied.

    Kept as a list of entries rather than a dict so that duplicate and
    unnamed entries survive long enough to be reported.
    """
    entries: list[InputEntry]

    @classmethod
    def from_inputs(cls, inputs: Any) -> InputBatch:
        """Normalize a mapping or an iterable of (name, value) pairs.

        Items of an iterable that aren't (str | None, value) tuples are
        treated as unnamed values, so `[arr1, arr2]` reports two unnamed
        inputs rather than failing obscurely.
        """
        if inputs is None:
            raise TypeError("inputs is required and cannot be None")
        if isinstance(inputs, Mapping):
            pairs: Iterable[tuple[Any, Any]] = inputs.items()
        elif isinstance(inputs, (np.ndarray, str, bytes)):
            pairs = [(None, inputs)]
        else:
            try:
                items = list(inputs)
            except TypeError:
                raise TypeError(
                    "inputs must be a mapping of name -> array or an iterable "
                    f"of (name, array) pairs, got {type(inputs).__name__}"
                ) from None
            pairs = [_as_pair(item) for item in items]

        return cls([_coerce(i, name, value) for i, (name, value) in enumerate(pairs)])

    @property
    def names(self) -> list[str]:
        return [e.name for e in self.entries if isinstance(e.name, str) and e.name]

    def resolve(self) -> dict[str, HostArray]:
        """Map names to HostArrays. Only valid after the structural phase passed."""
        return {
            e.name: HostArray(e.name, e.array, e.element_type)
            for e in self.entries
        }


def _as_pair(item: Any) -> tuple[Any, Any]:
    if (isinstance(item, tuple) and len(item) == 2
            and (item[0] is None or isinstance(item[0], str))):
        return item
    return (None, item)


def _coerce(position: int, name: Any, value: Any) -> InputEntry:
    entry = InputEntry(position=position, name=name, value=value)
    if value is None:
        entry.problem = "value is None"
        return entry
    try:
        arr = coerce_array(value)
    except (ValueError, TypeError) as exc:
        entry.problem = f"cannot be converted to an array ({exc})"
        return entry
    element_type = host_element_type(arr)
    if element_type is None:
        entry.problem = (f"has unsupported element type {describe_dtype(arr)} "
                         f"(expected numeric or text data)")
        return entry
    if element_type.is_text:
        entry.problem = undecodable_text(arr)
        if entry.problem is not None:
            return entry
    entry.array = arr
    entry.element_type = element_type
    return entry


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------

@register_validator("non_empty", Phase.STRUCTURAL)
def validate_non_empty(batch: InputBatch) -> list[ValidationResult]:
    """At least one input must be supplied."""
    if batch.entries:
        return []
    return [ValidationResult(
        "non_empty", Severity.ERROR,
        "inputs cannot be empty; at least one input tensor is required",
        kind=ErrorKind.EMPTY_INPUT,
    )]


@register_validator("input_names", Phase.STRUCTURAL)
def validate_names(batch: InputBatch) -> list[ValidationResult]:
    """Every entry needs a non-empty string name."""
    unnamed = [e.position for e in batch.entries
               if not (isinstance(e.name, str) and e.name)]
    if not unnamed:
        return []
    return [ValidationResult(
        "input_names", Severity.ERROR,
        f"All inputs must be named; entries at positions {unnamed} have no "
        f"usable name",
        kind=ErrorKind.UNNAMED_INPUT,
        details={"positions": unnamed},
    )]


@register_validator("unique_names", Phase.STRUCTURAL)
def validate_unique(batch: InputBatch) -> list[ValidationResult]:
    """No two entries may share a name."""
    counts = Counter(batch.names)
    dupes = [name for name, n in counts.items() if n > 1]
    if not dupes:
        return []
    return [ValidationResult(
        "unique_names", Severity.ERROR,
        f"Duplicate input names found: {', '.join(dupes)}",
        kind=ErrorKind.DUPLICATE_NAME,
        names=tuple(dupes),
    )]


@register_validator("input_values", Phase.STRUCTURAL)
def validate_values(batch: InputBatch) -> list[ValidationResult]:
    """Every value must be non-null numeric or text data."""
    results = []
    for e in batch.entries:
        if e.problem is None:
            continue
        names = (e.name,) if isinstance(e.name, str) and e.name else ()
        results.append(ValidationResult(
            "input_values", Severity.ERROR,
            f"Input {e.label} {e.problem}",
            kind=ErrorKind.TYPE_MISMATCH,
            names=names,
        ))
    return results


@register_validator("finite_values", Phase.STRUCTURAL)
def validate_finite(batch: InputBatch) -> list[ValidationResult]:
    """NaN and infinities are allowed but reported.

    Some models legitimately take them (masks, sentinels), so this is a
    warning; strict validation promotes it to a failure.
    """
    results = []
    for e in batch.entries:
        if e.array is None or not has_non_finite(e.array):
            continue
        n_nan = int(np.isnan(e.array).sum())
        n_inf = int(np.isinf(e.array).sum())
        names = (e.name,) if isinstance(e.name, str) and e.name else ()
        results.append(ValidationResult(
            "finite_values", Severity.WARNING,
            f"Input {e.label} contains {n_nan} NaN and {n_inf} infinite "
            f"value(s); this may cause inference to fail",
            names=names,
        ))
    return results
