"""Per-tensor checks of a host array against its descriptor.

Used by the marshaller while converting, and by post-failure
re-validation. These aren't registered validators themselves; each
returns one diagnostic or None.
"""

from __future__ import annotations

from ..descriptors import TensorDescriptor
from ..dtypes import HostArray, conversion_problem
from ..errors import ErrorKind
from .core import Severity, ValidationResult


def check_shape(host: HostArray, desc: TensorDescriptor) -> ValidationResult | None:
    """Rank must match; static dims must match exactly; dynamic dims accept anything."""
    if desc.accepts_shape(host.shape):
        return None
    return ValidationResult(
        "input_shape", Severity.ERROR,
        f"Shape mismatch for input '{host.name}': expected "
        f"{list(desc.shape)} ({desc.format_shape()}), got {list(host.shape)}",
        kind=ErrorKind.SHAPE_MISMATCH,
        names=(host.name,),
        details={"expected": desc.shape, "actual": host.shape},
    )


def check_type(host: HostArray, desc: TensorDescriptor) -> ValidationResult | None:
    """The host element type must have a lossless conversion to the declared one."""
    if desc.element_type is None:
        problem = f"model declares non-tensor type {desc.type_name}"
    else:
        problem = conversion_problem(host.data, host.element_type, desc.element_type)
    if problem is None:
        return None
    return ValidationResult(
        "input_type", Severity.ERROR,
        f"Type mismatch for input '{host.name}' ({host.element_type} -> "
        f"{desc.element_type or desc.type_name}): {problem}",
        kind=ErrorKind.TYPE_MISMATCH,
        names=(host.name,),
        details={"expected": desc.element_type, "actual": host.element_type},
    )
