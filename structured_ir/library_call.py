"""
External library symbol names for structured ops on buffers.

    structured.matmul(memref<4x?xf32>, memref<?x8xf32>, memref<4x8xf32>)
      -> structured_matmul_view4xsxf32_viewsx8xf32_view4x8xf32
"""

from __future__ import annotations

from typing import List

from .ir.core import IRType, Module
from .ir.types import DYNAMIC, ScalarType


def _mangle(t: IRType) -> str:
    if isinstance(t, ScalarType):
        return str(t)
    if t.is_tensor():
        raise ValueError(f"cannot mangle tensor type {t}; library calls take buffers")
    extents = "".join(("s" if d == DYNAMIC else str(d)) + "x" for d in t.shape)
    return f"view{extents}{t.element_type}"


def generate_library_call_name(module: Module, oid: int) -> str:
    op = module.op(oid)
    parts: List[str] = [op.kind.replace(".", "_")]
    for v in op.operands:
        parts.append(_mangle(module.type_of(v)))
    return "_".join(parts)


__all__ = ["generate_library_call_name"]
