"""
Structured-op interface: the queries every structured op kind answers.

Generic ops carry their indexing maps and iterator types as attributes; copy,
fill and the named arithmetic ops synthesize them from operand ranks. Conv
and pooling ops are regionless library-style ops and only expose their
window structure.
"""

from __future__ import annotations

from typing import List, Optional

from ..ops import opset
from .affine import AffineDimExpr, AffineMap
from .core import Module, Operation
from .types import ShapedType


def is_structured(op: Operation) -> bool:
    return op.kind in opset.STRUCTURED_OPS


def shaped_operands(module: Module, op: Operation) -> List[int]:
    return [v for v in op.inputs + op.outputs if isinstance(module.type_of(v), ShapedType)]


def has_tensor_semantics(module: Module, op: Operation) -> bool:
    shaped = [module.type_of(v) for v in op.inputs + op.outputs]
    return all(isinstance(t, ShapedType) and t.is_tensor() for t in shaped if isinstance(t, ShapedType))


def has_buffer_semantics(module: Module, op: Operation) -> bool:
    shaped = [module.type_of(v) for v in op.inputs + op.outputs if isinstance(module.type_of(v), ShapedType)]
    return bool(shaped) and all(t.is_memref() for t in shaped)  # type: ignore[union-attr]


def num_payload_induction_vars(op: Operation) -> int:
    """Leading `index` block arguments carried by loop-indexed kinds."""
    if op.kind != opset.INDEXED_GENERIC:
        return 0
    return len(op.attrs.get("iterator_types", ()))


def _rank(module: Module, vid: int) -> int:
    t = module.type_of(vid)
    return t.rank if isinstance(t, ShapedType) else 0


def named_op_structure(kind: str, output_rank: int):
    """Indexing maps and iterator types of the named arithmetic ops."""
    d = AffineDimExpr
    if kind == opset.MATMUL:
        maps = [
            AffineMap(3, 0, (d(0), d(2))),
            AffineMap(3, 0, (d(2), d(1))),
            AffineMap(3, 0, (d(0), d(1))),
        ]
        return maps, ("parallel", "parallel", "reduction")
    if kind == opset.MATVEC:
        maps = [AffineMap(2, 0, (d(0), d(1))), AffineMap(2, 0, (d(1),)), AffineMap(2, 0, (d(0),))]
        return maps, ("parallel", "reduction")
    if kind == opset.DOT:
        maps = [AffineMap(1, 0, (d(0),)), AffineMap(1, 0, (d(0),)), AffineMap(1, 0, ())]
        return maps, ("reduction",)
    if kind in (opset.ELEMWISE_ADD, opset.ELEMWISE_MUL):
        ident = AffineMap.identity(output_rank)
        return [ident, ident, ident], ("parallel",) * output_rank
    raise KeyError(kind)


def indexing_maps(module: Module, op: Operation) -> Optional[List[AffineMap]]:
    if op.kind in opset.GENERIC_OPS:
        return list(op.attrs.get("indexing_maps", ()))
    if op.kind == opset.COPY:
        rank = _rank(module, op.operands[0])
        in_perm = op.attrs.get("input_permutation") or AffineMap.identity(rank)
        out_perm = op.attrs.get("output_permutation") or AffineMap.identity(rank)
        return [in_perm, out_perm]
    if op.kind == opset.FILL:
        return [AffineMap.identity(_rank(module, op.outputs[0]))]
    if op.kind in opset.NAMED_ARITH_OPS:
        out_rank = _rank(module, op.outputs[0]) if op.outputs else 0
        return named_op_structure(op.kind, out_rank)[0]
    return None


def iterator_types(module: Module, op: Operation) -> Optional[List[str]]:
    if op.kind in opset.GENERIC_OPS:
        return list(op.attrs.get("iterator_types", ()))
    if op.kind == opset.COPY:
        return ["parallel"] * _rank(module, op.operands[0])
    if op.kind == opset.FILL:
        return ["parallel"] * _rank(module, op.outputs[0])
    if op.kind in opset.NAMED_ARITH_OPS:
        out_rank = _rank(module, op.outputs[0]) if op.outputs else 0
        return list(named_op_structure(op.kind, out_rank)[1])
    return None


def num_parallel_loops(module: Module, op: Operation) -> int:
    return sum(1 for t in (iterator_types(module, op) or []) if t == "parallel")


def num_window_loops(module: Module, op: Operation) -> int:
    if op.kind == opset.CONV:
        # Batch and output-channel dims are not windowed.
        return max(0, _rank(module, op.operands[0]) - 2)
    if op.kind in opset.POOLING_OPS:
        return _rank(module, op.operands[1])
    return sum(1 for t in (iterator_types(module, op) or []) if t == "window")


def region_arg_types(module: Module, op: Operation) -> List:
    """Expected payload block argument types for `op`."""
    from .types import index

    types: List = [index] * num_payload_induction_vars(op)
    for v in op.inputs + op.outputs:
        t = module.type_of(v)
        types.append(t.element_type if isinstance(t, ShapedType) else t)
    return types


__all__ = [
    "is_structured",
    "shaped_operands",
    "has_tensor_semantics",
    "has_buffer_semantics",
    "num_payload_induction_vars",
    "named_op_structure",
    "indexing_maps",
    "iterator_types",
    "num_parallel_loops",
    "num_window_loops",
    "region_arg_types",
]
