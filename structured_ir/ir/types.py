"""
Element and shaped types for the structured-op IR.

Types are immutable value objects with structural equality. A shaped type is
either a `tensor` (immutable value semantics) or a `memref` (a mutable buffer
that may carry a strided layout). Dynamic extents, strides and offsets are
encoded with sentinels so shapes stay plain integer tuples.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Literal, Optional, Sequence, Tuple

import numpy as np


__all__ = [
    "DYNAMIC",
    "DYNAMIC_STRIDE_OR_OFFSET",
    "IRConstructionError",
    "NumericKind",
    "ScalarType",
    "StridedLayout",
    "ShapedType",
    "SUPPORTED_DTYPES",
    "parse_dtype",
    "numpy_dtype",
    "tensor_type",
    "memref_type",
    "is_dynamic",
    "canonical_strides",
    "get_strides_and_offset",
    "is_contiguous",
    "i1",
    "i8",
    "i16",
    "i32",
    "i64",
    "ui8",
    "ui32",
    "f16",
    "bf16",
    "f32",
    "f64",
    "index",
]


DYNAMIC = -1
DYNAMIC_STRIDE_OR_OFFSET = -(2**63)


class IRConstructionError(Exception):
    """Raised when IR handles or builders are misused."""


class NumericKind(Enum):
    INTEGER = "integer"
    FLOAT = "float"


@dataclass(frozen=True)
class ScalarType:
    kind: Literal["int", "float", "index"]
    width: int = 64
    signed: bool = True
    # Distinguishes float formats of equal width (f16 vs bf16).
    variant: str = ""

    @property
    def numeric_kind(self) -> Optional[NumericKind]:
        if self.kind == "int":
            return NumericKind.INTEGER
        if self.kind == "float":
            return NumericKind.FLOAT
        return None

    def is_index(self) -> bool:
        return self.kind == "index"

    def __str__(self) -> str:
        if self.kind == "index":
            return "index"
        if self.kind == "float":
            return self.variant or f"f{self.width}"
        return f"{'' if self.signed else 'u'}i{self.width}"


i1 = ScalarType("int", 1)
i8 = ScalarType("int", 8)
i16 = ScalarType("int", 16)
i32 = ScalarType("int", 32)
i64 = ScalarType("int", 64)
ui8 = ScalarType("int", 8, signed=False)
ui32 = ScalarType("int", 32, signed=False)
f16 = ScalarType("float", 16)
bf16 = ScalarType("float", 16, variant="bf16")
f32 = ScalarType("float", 32)
f64 = ScalarType("float", 64)
index = ScalarType("index", 64)

SUPPORTED_DTYPES: Dict[str, ScalarType] = {
    str(t): t for t in (i1, i8, i16, i32, i64, ui8, ui32, f16, bf16, f32, f64, index)
}


def parse_dtype(name: str | ScalarType) -> ScalarType:
    if isinstance(name, ScalarType):
        return name
    t = SUPPORTED_DTYPES.get(str(name))
    if t is None:
        raise IRConstructionError(f"unsupported element type: {name}")
    return t


def is_dynamic(size: int) -> bool:
    return size == DYNAMIC or size == DYNAMIC_STRIDE_OR_OFFSET


@dataclass(frozen=True)
class StridedLayout:
    strides: Tuple[int, ...]
    offset: int = 0

    def __str__(self) -> str:
        def fmt(v: int) -> str:
            return "?" if v == DYNAMIC_STRIDE_OR_OFFSET else str(v)

        return f"strided<[{', '.join(fmt(s) for s in self.strides)}], offset: {fmt(self.offset)}>"


@dataclass(frozen=True)
class ShapedType:
    element_type: ScalarType
    shape: Tuple[int, ...]
    container: Literal["tensor", "memref"] = "tensor"
    layout: Optional[StridedLayout] = field(default=None)

    def __post_init__(self):
        object.__setattr__(self, "shape", tuple(int(d) for d in self.shape))
        for d in self.shape:
            if d < 0 and d != DYNAMIC:
                raise IRConstructionError(f"invalid extent {d} in shape {self.shape}")
        if self.layout is not None:
            if self.container != "memref":
                raise IRConstructionError("only memref types carry a strided layout")
            if len(self.layout.strides) != len(self.shape):
                raise IRConstructionError("strided layout rank does not match shape rank")

    @property
    def rank(self) -> int:
        return len(self.shape)

    def is_tensor(self) -> bool:
        return self.container == "tensor"

    def is_memref(self) -> bool:
        return self.container == "memref"

    def is_dynamic_dim(self, i: int) -> bool:
        return self.shape[i] == DYNAMIC

    def has_static_shape(self) -> bool:
        return DYNAMIC not in self.shape

    def num_dynamic_dims(self) -> int:
        return sum(1 for d in self.shape if d == DYNAMIC)

    def with_shape(self, shape: Iterable[int]) -> "ShapedType":
        return replace(self, shape=tuple(shape), layout=None)

    def __str__(self) -> str:
        dims = "".join(("?" if d == DYNAMIC else str(d)) + "x" for d in self.shape)
        layout = f", {self.layout}" if self.layout is not None else ""
        return f"{self.container}<{dims}{self.element_type}{layout}>"


def tensor_type(shape: Sequence[int], element_type: str | ScalarType) -> ShapedType:
    return ShapedType(parse_dtype(element_type), tuple(shape), "tensor")


def memref_type(
    shape: Sequence[int],
    element_type: str | ScalarType,
    layout: StridedLayout | None = None,
) -> ShapedType:
    return ShapedType(parse_dtype(element_type), tuple(shape), "memref", layout)


def canonical_strides(shape: Sequence[int]) -> List[int]:
    """Row-major strides; unknown once a dynamic extent is crossed."""
    strides = [0] * len(shape)
    running = 1
    for i in range(len(shape) - 1, -1, -1):
        strides[i] = running
        if running == DYNAMIC_STRIDE_OR_OFFSET or shape[i] == DYNAMIC:
            running = DYNAMIC_STRIDE_OR_OFFSET
        else:
            running *= shape[i]
    return strides


def get_strides_and_offset(t: ShapedType) -> Tuple[List[int], int]:
    if not t.is_memref():
        raise IRConstructionError(f"expected a memref type, got {t}")
    if t.layout is None:
        return canonical_strides(t.shape), 0
    return list(t.layout.strides), t.layout.offset


def is_contiguous(t: ShapedType) -> bool:
    """True when the buffer layout is the canonical row-major one."""
    if t.layout is None:
        return True
    return t.layout.offset == 0 and list(t.layout.strides) == canonical_strides(t.shape)


def numpy_dtype(t: ScalarType) -> np.dtype:
    """numpy storage dtype for constants and the reference interpreter."""
    if t.kind == "index":
        return np.dtype(np.int64)
    if t.kind == "float":
        # numpy has no bfloat16; keep bf16 payloads in f32.
        return np.dtype(np.float32) if t.variant == "bf16" else np.dtype(f"float{t.width}")
    if t.width == 1:
        return np.dtype(np.bool_)
    return np.dtype(f"{'' if t.signed else 'u'}int{t.width}")
