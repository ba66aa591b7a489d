"""Type mapping between ONNX Runtime element types and numpy.

The engine side is the ONNX TensorProto element type enumeration; the host
side is numpy dtypes. The mapping is total in the engine → host direction
(every element type has a numpy representation, widening where numpy has
no native equivalent) and partial in the host → engine direction: only
boolean, integer, floating-point and text arrays can be fed to a model.

    ElementType.FLOAT.numpy_dtype          -> dtype('float32')
    element_type_from_ort("tensor(int64)") -> ElementType.INT64
    host_element_type(np.array(["a"]))     -> ElementType.STRING
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import numpy as np


class ElementType(Enum):
    """Tensor element types.

    Values follow onnx.TensorProto.DataType so they can be compared with
    model protos directly.
    """
    FLOAT      = 1
    UINT8      = 2
    INT8       = 3
    UINT16     = 4
    INT16      = 5
    INT32      = 6
    INT64      = 7
    STRING     = 8
    BOOL       = 9
    FLOAT16    = 10
    DOUBLE     = 11
    UINT32     = 12
    UINT64     = 13
    COMPLEX64  = 14
    COMPLEX128 = 15
    BFLOAT16   = 16

    @property
    def ort_name(self) -> str:
        """The engine's type string, e.g. 'tensor(float)'."""
        return f"tensor({_ORT_SUFFIX[self]})"

    @property
    def numpy_dtype(self) -> np.dtype:
        """Host dtype used when this type comes back from the engine."""
        return np.dtype(_NUMPY_DTYPE[self])

    @property
    def is_integral(self) -> bool:
        return self in _INTEGRAL

    @property
    def is_floating(self) -> bool:
        return self in (ElementType.FLOAT, ElementType.DOUBLE,
                        ElementType.FLOAT16, ElementType.BFLOAT16)

    @property
    def is_text(self) -> bool:
        return self is ElementType.STRING

    @property
    def is_numeric(self) -> bool:
        return self.is_integral or self.is_floating or self is ElementType.BOOL

    @property
    def is_feedable(self) -> bool:
        """Whether host values can be converted into this type."""
        return self.is_numeric or self.is_text

    @property
    def itemsize(self) -> int:
        """Bytes per element inside the engine. Strings count one pointer."""
        if self is ElementType.BFLOAT16:
            return 2
        return self.numpy_dtype.itemsize

    def __str__(self) -> str:
        return _ORT_SUFFIX[self]


_ORT_SUFFIX: dict[ElementType, str] = {
    ElementType.FLOAT:      "float",
    ElementType.UINT8:      "uint8",
    ElementType.INT8:       "int8",
    ElementType.UINT16:     "uint16",
    ElementType.INT16:      "int16",
    ElementType.INT32:      "int32",
    ElementType.INT64:      "int64",
    ElementType.STRING:     "string",
    ElementType.BOOL:       "bool",
    ElementType.FLOAT16:    "float16",
    ElementType.DOUBLE:     "double",
    ElementType.UINT32:     "uint32",
    ElementType.UINT64:     "uint64",
    ElementType.COMPLEX64:  "complex64",
    ElementType.COMPLEX128: "complex128",
    ElementType.BFLOAT16:   "bfloat16",
}

# numpy has no bfloat16: widened to float32 on the way out
_NUMPY_DTYPE: dict[ElementType, Any] = {
    ElementType.FLOAT:      np.float32,
    ElementType.UINT8:      np.uint8,
    ElementType.INT8:       np.int8,
    ElementType.UINT16:     np.uint16,
    ElementType.INT16:      np.int16,
    ElementType.INT32:      np.int32,
    ElementType.INT64:      np.int64,
    ElementType.STRING:     np.object_,
    ElementType.BOOL:       np.bool_,
    ElementType.FLOAT16:    np.float16,
    ElementType.DOUBLE:     np.float64,
    ElementType.UINT32:     np.uint32,
    ElementType.UINT64:     np.uint64,
    ElementType.COMPLEX64:  np.complex64,
    ElementType.COMPLEX128: np.complex128,
    ElementType.BFLOAT16:   np.float32,
}

_INTEGRAL = frozenset({
    ElementType.UINT8, ElementType.INT8, ElementType.UINT16, ElementType.INT16,
    ElementType.INT32, ElementType.INT64, ElementType.UINT32, ElementType.UINT64,
})

_BY_ORT_NAME: dict[str, ElementType] = {t.ort_name: t for t in ElementType}

# Host dtype -> element type. Only feedable kinds appear here.
_FROM_NUMPY: dict[np.dtype, ElementType] = {
    np.dtype(np.bool_):   ElementType.BOOL,
    np.dtype(np.int8):    ElementType.INT8,
    np.dtype(np.int16):   ElementType.INT16,
    np.dtype(np.int32):   ElementType.INT32,
    np.dtype(np.int64):   ElementType.INT64,
    np.dtype(np.uint8):   ElementType.UINT8,
    np.dtype(np.uint16):  ElementType.UINT16,
    np.dtype(np.uint32):  ElementType.UINT32,
    np.dtype(np.uint64):  ElementType.UINT64,
    np.dtype(np.float16): ElementType.FLOAT16,
    np.dtype(np.float32): ElementType.FLOAT,
    np.dtype(np.float64): ElementType.DOUBLE,
}


def element_type_from_ort(type_name: str) -> ElementType | None:
    """Parse an engine type string such as 'tensor(float)'.

    Returns None for non-tensor types (sequences, maps, optionals), which
    have no host array representation.
    """
    return _BY_ORT_NAME.get(type_name)


# ---------------------------------------------------------------------------
# Host side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HostArray:
    """A caller value resolved to a numpy array with a known element type.

    Produced once by structural validation; everything downstream works on
    this closed set of cases instead of arbitrary Python objects.
    """
    name: str
    data: np.ndarray
    element_type: ElementType

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(int(d) for d in self.data.shape)


def coerce_array(value: Any) -> np.ndarray:
    """Turn a caller value (array, nested list, scalar, string) into an ndarray.

    Raises:
        ValueError: For ragged nested sequences numpy cannot lay out.
    """
    if isinstance(value, np.ndarray):
        return value
    if isinstance(value, (str, bytes)):
        return np.array([value], dtype=object)
    return np.asarray(value)


def host_element_type(arr: np.ndarray) -> ElementType | None:
    """Classify a host array, or None if it cannot be fed to the engine.

    Text arrives as numpy unicode/bytes arrays or as object arrays whose
    elements are all str/bytes. Complex, structured, datetime and mixed
    object arrays have no engine mapping.
    """
    dtype = arr.dtype
    if dtype in _FROM_NUMPY:
        return _FROM_NUMPY[dtype]
    if dtype.kind in ("U", "S"):
        return ElementType.STRING
    if dtype.kind == "O":
        if all(isinstance(v, (str, bytes)) for v in arr.flat):
            return ElementType.STRING
    return None


def element_type_of(arr: np.ndarray) -> ElementType | None:
    """Element type of an array produced by the engine.

    Like host_element_type() but also recognizes complex outputs, which
    the engine can return even though callers cannot feed them.
    """
    if arr.dtype == np.complex64:
        return ElementType.COMPLEX64
    if arr.dtype == np.complex128:
        return ElementType.COMPLEX128
    return host_element_type(arr)


def describe_dtype(arr: np.ndarray) -> str:
    """Short human-readable description of a host array's element kind."""
    if arr.dtype.kind == "O":
        kinds = sorted({type(v).__name__ for v in arr.flat})
        return f"object[{', '.join(kinds)}]" if kinds else "object"
    return str(arr.dtype)


def undecodable_text(arr: np.ndarray) -> str | None:
    """Describe the first bytes element that isn't valid UTF-8, or None."""
    if arr.dtype.kind not in ("S", "O"):
        return None
    for i, v in enumerate(arr.flat):
        if not isinstance(v, bytes):
            continue
        try:
            v.decode("utf-8")
        except UnicodeDecodeError as exc:
            return f"holds bytes that are not valid UTF-8 at element {i} ({exc.reason})"
    return None


def has_non_finite(arr: np.ndarray) -> bool:
    """True if a floating-point array holds NaN or +/-Inf."""
    if arr.dtype.kind != "f" or arr.size == 0:
        return False
    return not bool(np.isfinite(arr).all())


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------

def conversion_problem(arr: np.ndarray, source: ElementType,
                       target: ElementType) -> str | None:
    """Explain why `arr` cannot be converted to `target`, or None if it can.

    Numeric -> numeric casts are allowed as long as no value is lost:
    fractional floats and out-of-range integers are refused for integer
    targets, anything but 0/1 for bool targets, and finite values that
    would overflow to infinity for float targets. Float narrowing may still
    round. Text and numbers never convert into each other.
    """
    if not target.is_feedable:
        return f"element type {target} cannot be supplied from the host"
    if source == target:
        return None
    if source.is_text or target.is_text:
        return f"cannot convert {source} data to {target}"
    if not arr.size:
        return None

    if target is ElementType.BOOL:
        if not np.isin(arr, (0, 1)).all():
            return f"values other than 0 and 1 cannot be converted from {source} to bool"
        return None

    if target.is_floating:
        with np.errstate(invalid="ignore", over="ignore"):
            cast = arr.astype(target.numpy_dtype)
        overflow = np.isfinite(arr) & ~np.isfinite(cast)
        if overflow.any():
            return (f"{int(overflow.sum())} value(s) overflow to infinity converting "
                    f"{source} to {target}")
        return None

    if target.is_integral:
        info = np.iinfo(target.numpy_dtype)
        if source.is_floating:
            finite = arr[np.isfinite(arr)]
            if finite.size and not np.array_equal(finite, np.trunc(finite)):
                return f"fractional values would be truncated converting {source} to {target}"
        else:
            finite = arr
        if finite.size:
            lo, hi = finite.min(), finite.max()
            if lo < info.min or hi > info.max:
                return (f"values in [{lo}, {hi}] do not fit {target} "
                        f"range [{info.min}, {info.max}]")
    return None


def to_engine_layout(arr: np.ndarray, target: ElementType) -> np.ndarray:
    """Return a C-contiguous copy/view of `arr` in the target's host dtype.

    np.ascontiguousarray walks the array in logical (row-major) order, so
    Fortran-ordered arrays and strided views come out with the outermost
    dimension first, which is the layout the engine reads.
    """
    if target.is_text:
        flat = [v.decode("utf-8") if isinstance(v, bytes) else str(v)
                for v in arr.flat]
        out = np.empty(arr.shape, dtype=object)
        out.flat[:] = flat
        return out
    if arr.dtype == target.numpy_dtype and arr.flags.c_contiguous:
        return arr
    with np.errstate(invalid="ignore"):
        return np.ascontiguousarray(arr, dtype=target.numpy_dtype)


def to_host_layout(buffer: np.ndarray, element_type: ElementType) -> np.ndarray:
    """Convert an engine output buffer into its host representation.

    bfloat16 buffers arrive as raw uint16 bit patterns and are widened to
    float32 by placing them in the high half of each word.
    """
    if element_type is ElementType.BFLOAT16 and buffer.dtype == np.uint16:
        widened = buffer.astype(np.uint32) << 16
        return widened.view(np.float32)
    if element_type is ElementType.STRING:
        out = np.empty(buffer.shape, dtype=object)
        out.flat[:] = [v.decode("utf-8") if isinstance(v, bytes) else v
                       for v in buffer.flat]
        return out
    return np.array(buffer, dtype=element_type.numpy_dtype, copy=True)
