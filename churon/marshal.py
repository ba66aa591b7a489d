"""Marshalling between host arrays and the engine's native tensors.

to_native() turns resolved HostArrays into a NativeBatch of C-contiguous
buffers typed the way the model declares them; from_native() turns the
engine's output batch back into freshly allocated numpy arrays.

Element order is row-major (outermost dimension first) in both
directions. A layout mistake here produces numerically wrong outputs with
no error anywhere downstream, so every buffer handed to the engine goes
through dtypes.to_engine_layout().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Mapping, Sequence

import numpy as np

from .descriptors import TensorDescriptor
from .dtypes import ElementType, HostArray, to_engine_layout, to_host_layout
from .errors import ErrorKind
from .validation.core import Phase, fail
from .validation.tensors import check_shape, check_type


@dataclass(frozen=True)
class NativeTensor:
    """One tensor in engine layout: typed, shaped, C-contiguous."""
    name: str
    element_type: ElementType
    shape: tuple[int, ...]
    buffer: np.ndarray

    @property
    def nbytes(self) -> int:
        return int(self.buffer.nbytes)


class NativeBatch:
    """Ordered collection of NativeTensors handed to or returned by the engine.

    Holds the only references to the native buffers it owns; release()
    drops them deterministically, and the batch is a context manager so
    callers can scope it to a single run.
    """

    def __init__(self, tensors: Sequence[NativeTensor] = ()) -> None:
        self._tensors: dict[str, NativeTensor] = {}
        for t in tensors:
            self.add(t)

    def add(self, tensor: NativeTensor) -> None:
        if tensor.name in self._tensors:
            raise ValueError(f"Tensor '{tensor.name}' already in batch")
        self._tensors[tensor.name] = tensor

    def release(self) -> None:
        self._tensors.clear()

    @property
    def names(self) -> list[str]:
        return list(self._tensors)

    @property
    def nbytes(self) -> int:
        return sum(t.nbytes for t in self._tensors.values())

    def feeds(self) -> dict[str, np.ndarray]:
        """Name -> buffer mapping, the form InferenceSession.run() consumes."""
        return {name: t.buffer for name, t in self._tensors.items()}

    def __getitem__(self, name: str) -> NativeTensor:
        return self._tensors[name]

    def __contains__(self, name: object) -> bool:
        return name in self._tensors

    def __iter__(self) -> Iterator[NativeTensor]:
        return iter(list(self._tensors.values()))

    def __len__(self) -> int:
        return len(self._tensors)

    def __enter__(self) -> NativeBatch:
        return self

    def __exit__(self, *exc) -> None:
        self.release()


# ---------------------------------------------------------------------------
# Host -> engine
# ---------------------------------------------------------------------------

def to_native(inputs: Mapping[str, HostArray],
              descriptors: Sequence[TensorDescriptor]) -> NativeBatch:
    """Convert resolved host inputs into a native batch.

    All-or-nothing: if any input fails, tensors already converted are
    released and the error propagates; no partial batch is returned.

    Raises:
        EmptyInputError: `inputs` is empty.
        UnexpectedInput: an input has no matching descriptor.
        TypeMismatch: no valid conversion to the declared element type.
        ShapeMismatch: rank or a static dimension disagrees.
    """
    if not inputs:
        raise fail(Phase.MARSHAL, "to_native", ErrorKind.EMPTY_INPUT,
                   "inputs cannot be empty; at least one input tensor is required")

    by_name = {d.name: d for d in descriptors}
    batch = NativeBatch()
    try:
        for name, host in inputs.items():
            desc = by_name.get(name)
            if desc is None:
                raise fail(Phase.MARSHAL, "to_native", ErrorKind.UNEXPECTED_INPUT,
                           f"Input '{name}' is not declared by the model",
                           names=[name])
            batch.add(_convert(host, desc))
    except Exception:
        batch.release()
        raise
    return batch


def _convert(host: HostArray, desc: TensorDescriptor) -> NativeTensor:
    for check in (check_type, check_shape):
        result = check(host, desc)
        if result is not None:
            raise fail(Phase.MARSHAL, result.validator, result.kind,
                       result.message, names=result.names, **result.details)

    target = desc.element_type
    try:
        buffer = to_engine_layout(host.data, target)
    except UnicodeDecodeError as exc:
        raise fail(Phase.MARSHAL, "input_type", ErrorKind.TYPE_MISMATCH,
                   f"Type mismatch for input '{host.name}': text is not valid "
                   f"UTF-8 ({exc.reason})",
                   names=[host.name]) from exc
    return NativeTensor(
        name=host.name,
        element_type=target,
        shape=tuple(int(d) for d in buffer.shape),
        buffer=buffer,
    )


# ---------------------------------------------------------------------------
# Engine -> host
# ---------------------------------------------------------------------------

def from_native(outputs: NativeBatch,
                descriptors: Sequence[TensorDescriptor] = ()) -> dict[str, np.ndarray]:
    """Convert an engine output batch into name -> numpy array.

    Shape and element type come from the native tensors (descriptor shapes
    may be dynamic). Returned arrays are fresh copies owned by the caller.
    Ordered by `descriptors` where given, then by batch order.
    """
    order = [d.name for d in descriptors if d.name in outputs]
    order += [name for name in outputs.names if name not in order]
    result: dict[str, np.ndarray] = {}
    for name in order:
        t = outputs[name]
        result[name] = to_host_layout(t.buffer, t.element_type).reshape(t.shape)
    return result
