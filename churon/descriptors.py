"""Tensor descriptors: name, shape and element type of a model input/output."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from .dtypes import ElementType, element_type_from_ort


DYNAMIC_DIM = -1


@dataclass(frozen=True)
class TensorDescriptor:
    """Metadata for one input or output slot of a loaded model.

    Dynamic dimensions are DYNAMIC_DIM in `shape`; `dim_params` holds the
    symbolic name the model gave that dimension ("batch", "seq_len"), or
    None where the model left it anonymous or static.

    `element_type` is None for non-tensor slots (sequences, maps), which
    the engine may declare but which cannot be marshalled; `type_name`
    always carries the engine's raw type string.

    `required` is False only for inputs that have a default value in the
    model (overridable initializers); outputs are always True.
    """
    name: str
    shape: tuple[int, ...]
    element_type: ElementType | None
    type_name: str = ""
    dim_params: tuple[str | None, ...] = field(default=())
    required: bool = True

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def is_dynamic(self) -> bool:
        return any(d == DYNAMIC_DIM for d in self.shape)

    def accepts_shape(self, shape: Sequence[int]) -> bool:
        """Same rank, and every static dimension matches exactly."""
        if len(shape) != len(self.shape):
            return False
        return all(want == DYNAMIC_DIM or want == got
                   for want, got in zip(self.shape, shape))

    def format_shape(self) -> str:
        """Shape as '1 x 3', with symbolic names shown for dynamic dims."""
        if not self.shape:
            return "scalar"
        dims = []
        for i, d in enumerate(self.shape):
            if d != DYNAMIC_DIM:
                dims.append(str(d))
            elif i < len(self.dim_params) and self.dim_params[i]:
                dims.append(str(self.dim_params[i]))
            else:
                dims.append("?")
        return " x ".join(dims)

    def __str__(self) -> str:
        dtype = self.element_type or self.type_name
        suffix = "" if self.required else ", optional"
        return f"{self.name}: {self.format_shape()} ({dtype}{suffix})"

    @classmethod
    def from_node_arg(cls, arg: Any, required: bool = True) -> TensorDescriptor:
        """Build a descriptor from an onnxruntime NodeArg.

        NodeArg.shape mixes ints, symbolic strings and None; anything that
        isn't a concrete non-negative int becomes DYNAMIC_DIM.
        """
        raw_shape = arg.shape if isinstance(arg.shape, (list, tuple)) else []
        shape: list[int] = []
        params: list[str | None] = []
        for d in raw_shape:
            if isinstance(d, int) and d >= 0:
                shape.append(d)
                params.append(None)
            else:
                shape.append(DYNAMIC_DIM)
                params.append(d if isinstance(d, str) and d else None)
        return cls(
            name=arg.name,
            shape=tuple(shape),
            element_type=element_type_from_ort(arg.type),
            type_name=arg.type,
            dim_params=tuple(params),
            required=required,
        )
