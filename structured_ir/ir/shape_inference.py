"""
Result-type inference and shape reification for reshape, pad and init ops.

The type functions are pure. `reify_result_shapes` materializes one index
value per result dimension in front of the op it describes, folding to
constants whenever every participating extent is known.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence, Tuple

from ..ops import opset
from .affine import AffineExpr, AffineMap, const, dim, is_reshapable_dim_band, reassociation_to_indices, symbol
from .core import Module, Operation
from .types import (
    DYNAMIC,
    DYNAMIC_STRIDE_OR_OFFSET,
    IRConstructionError,
    ScalarType,
    ShapedType,
    StridedLayout,
    get_strides_and_offset,
    is_contiguous,
    memref_type,
    tensor_type,
)

if TYPE_CHECKING:
    from .builder import OpBuilder


logger = logging.getLogger(__name__)


__all__ = [
    "compute_tensor_reshape_collapsed_type",
    "compute_reshape_collapsed_type",
    "check_reshape_group_shapes",
    "pad_result_type",
    "init_tensor_result_type",
    "is_expanding_reshape",
    "pad_operand_segments",
    "init_tensor_dynamic_size",
    "get_constant_int",
    "can_reify_result_shapes",
    "reify_result_shapes",
]


def _group_product(extents: Sequence[int]) -> int:
    if DYNAMIC in extents:
        return DYNAMIC
    size = 1
    for e in extents:
        size *= e
    return size


def compute_tensor_reshape_collapsed_type(t: ShapedType, reassociation: Sequence[AffineMap]) -> ShapedType:
    shape: List[int] = []
    cur = 0
    for m in reassociation:
        n = m.num_results
        shape.append(_group_product(t.shape[cur : cur + n]))
        cur += n
    return tensor_type(shape, t.element_type)


def compute_reshape_collapsed_type(t: ShapedType, reassociation: Sequence[AffineMap]) -> ShapedType:
    """
    Collapse a buffer type. Groups that cannot be merged without moving data
    get a dynamic size and stride; a contiguous source always yields a
    contiguous result.
    """
    sizes = list(t.shape)
    strides, offset = get_strides_and_offset(t)
    new_sizes: List[int] = []
    new_strides: List[int] = []
    cur = 0
    for m in reassociation:
        n = m.num_results
        stride = strides[cur + n - 1] if n else 1
        if not is_reshapable_dim_band(cur, n, sizes, strides):
            size, stride = DYNAMIC, DYNAMIC_STRIDE_OR_OFFSET
        else:
            size = _group_product(sizes[cur : cur + n])
        new_sizes.append(size)
        new_strides.append(stride)
        cur += n

    if is_contiguous(t):
        return memref_type(new_sizes, t.element_type)
    # Strided result where unknown entries mean a copy may be needed.
    return memref_type(new_sizes, t.element_type, StridedLayout(tuple(new_strides), offset))


def check_reshape_group_shapes(
    collapsed: ShapedType,
    expanded: ShapedType,
    reassociation: Sequence[AffineMap],
    is_expanding: bool,
) -> Optional[str]:
    """Return None when every group is consistent, else a description of the first bad group."""
    start = 0
    for idx, m in enumerate(reassociation):
        dynamic_at: Optional[int] = None
        linearized = 1
        for offset, extent in enumerate(expanded.shape[start : start + m.num_results]):
            if extent == DYNAMIC:
                if is_expanding and dynamic_at is not None:
                    return (
                        f"invalid to have a single dimension ({idx}) expanded into multiple dynamic dims "
                        f"({start + dynamic_at},{start + offset})"
                    )
                dynamic_at = offset
            else:
                linearized *= extent
        if dynamic_at is not None:
            if collapsed.shape[idx] != DYNAMIC:
                return (
                    f"expected dimension {idx} of collapsed type to be dynamic since one or more of "
                    "the corresponding dimensions in the expanded type is dynamic"
                )
        elif collapsed.shape[idx] != linearized:
            return f"expected dimension {idx} of collapsed type to be static value of {linearized}"
        start += m.num_results
    return None


def pad_result_type(source: ShapedType, static_low: Sequence[int], static_high: Sequence[int]) -> ShapedType:
    rank = source.rank
    if len(static_low) != rank or len(static_high) != rank:
        raise IRConstructionError(
            f"pad of rank {rank} needs {rank} low/high entries, got {len(static_low)}/{len(static_high)}"
        )
    shape: List[int] = []
    for i in range(rank):
        if source.shape[i] == DYNAMIC or static_low[i] == DYNAMIC or static_high[i] == DYNAMIC:
            shape.append(DYNAMIC)
        else:
            shape.append(source.shape[i] + static_low[i] + static_high[i])
    return tensor_type(shape, source.element_type)


def init_tensor_result_type(static_sizes: Sequence[int], element_type: ScalarType) -> ShapedType:
    return tensor_type(static_sizes, element_type)


def is_expanding_reshape(module: Module, op: Operation) -> bool:
    src = module.type_of(op.operands[0])
    res = module.type_of(op.results[0])
    return res.rank > src.rank  # type: ignore[union-attr]


def pad_operand_segments(op: Operation) -> Tuple[List[int], List[int]]:
    """Dynamic low and high pad operands of a pad op, in dim order."""
    n_low = sum(1 for v in op.attrs["static_low"] if v == DYNAMIC)
    n_high = sum(1 for v in op.attrs["static_high"] if v == DYNAMIC)
    low = op.operands[1 : 1 + n_low]
    high = op.operands[1 + n_low : 1 + n_low + n_high]
    return list(low), list(high)


def init_tensor_dynamic_size(op: Operation, i: int) -> int:
    """Operand carrying dynamic extent `i` of an init tensor."""
    static_sizes = op.attrs["static_sizes"]
    if static_sizes[i] != DYNAMIC:
        raise IRConstructionError(f"dimension {i} of init tensor #{op.id} is static")
    return op.operands[sum(1 for s in static_sizes[:i] if s == DYNAMIC)]


def get_constant_int(module: Module, vid: int) -> Optional[int]:
    oid = module.defining_op(vid)
    if oid is None:
        return None
    op = module.op(oid)
    if op.kind != opset.CONSTANT:
        return None
    t = module.type_of(vid)
    if not isinstance(t, ScalarType) or t.kind == "float":
        return None
    return int(op.attrs["value"])


def _reify_init_tensor(builder: "OpBuilder", op: Operation) -> List[int]:
    out: List[int] = []
    for i, size in enumerate(op.attrs["static_sizes"]):
        if size == DYNAMIC:
            out.append(init_tensor_dynamic_size(op, i))
        else:
            out.append(builder.constant_index(size))
    return out


def _reify_pad(builder: "OpBuilder", op: Operation) -> List[int]:
    source = op.operands[0]
    rank = builder.module.type_of(source).rank  # type: ignore[union-attr]
    low_values, high_values = pad_operand_segments(op)
    low_it: Iterator[int] = iter(low_values)
    high_it: Iterator[int] = iter(high_values)
    out: List[int] = []
    for i in range(rank):
        # Result extent is source dim + low pad + high pad.
        operands = [builder.create_or_fold_dim(source, i)]
        expr: AffineExpr = dim(0)
        num_symbols = 0
        for static, dynamic in ((op.attrs["static_low"][i], low_it), (op.attrs["static_high"][i], high_it)):
            if static == DYNAMIC:
                expr = expr + symbol(num_symbols)
                num_symbols += 1
                operands.append(next(dynamic))
            else:
                expr = expr + static
        out.append(builder.create_or_fold_affine_apply(AffineMap(1, num_symbols, (expr,)), operands))
    return out


def _expanded_extent_problem(groups: Sequence[Sequence[int]], result_shape: Sequence[int]) -> Optional[str]:
    for group in groups:
        extents = [result_shape[d] for d in group]
        if DYNAMIC not in extents:
            continue
        if extents.count(DYNAMIC) > 1:
            return "single dimension cannot be expanded into multiple dynamic dimensions"
        if 0 in extents:
            return "dynamic extent of a zero-sized group cannot be recovered from the source"
    return None


def can_reify_result_shapes(module: Module, op: Operation) -> bool:
    """Whether `reify_result_shapes` can express every result extent of `op`."""
    if op.kind in (opset.INIT_TENSOR, opset.PAD_TENSOR):
        return True
    if op.kind not in opset.RESHAPE_OPS:
        return False
    if not is_expanding_reshape(module, op):
        return True
    groups = reassociation_to_indices(op.attrs["reassociation"])
    result_shape = module.type_of(op.results[0]).shape  # type: ignore[union-attr]
    return _expanded_extent_problem(groups, result_shape) is None


def _reify_reshape(builder: "OpBuilder", op: Operation) -> List[int]:
    module = builder.module
    src = op.operands[0]
    result_shape = module.type_of(op.results[0]).shape  # type: ignore[union-attr]
    groups = reassociation_to_indices(op.attrs["reassociation"])
    out: List[int] = []
    if not is_expanding_reshape(module, op):
        for group in groups:
            # Product of the source extents of the group.
            operands = [builder.create_or_fold_dim(src, d) for d in group]
            expr: AffineExpr = symbol(0)
            for k in range(1, len(group)):
                expr = expr * symbol(k)
            out.append(builder.create_or_fold_affine_apply(AffineMap(0, len(group), (expr,)), operands))
        return out

    problem = _expanded_extent_problem(groups, result_shape)
    if problem is not None:
        raise IRConstructionError(problem)
    collapsed_of = {d: g for g, group in enumerate(groups) for d in group}
    for d, extent in enumerate(result_shape):
        if extent != DYNAMIC:
            out.append(builder.constant_index(extent))
            continue
        group_idx = collapsed_of[d]
        linearized = 1
        for other in groups[group_idx]:
            if other != d:
                linearized *= result_shape[other]
        source_dim = builder.create_or_fold_dim(src, group_idx)
        out.append(
            builder.create_or_fold_affine_apply(AffineMap(0, 1, (symbol(0).floor_div(const(linearized)),)), [source_dim])
        )
    return out


def reify_result_shapes(builder: "OpBuilder", module: Module, oid: int) -> List[List[int]]:
    """
    One list of index values per result of `oid`, created right before it.
    Supports init tensor, pad tensor and both reshape kinds.
    """
    op = module.op(oid)
    with builder.insertion_guard():
        builder.set_insertion_point(oid)
        if op.kind == opset.INIT_TENSOR:
            shapes = [_reify_init_tensor(builder, op)]
        elif op.kind == opset.PAD_TENSOR:
            shapes = [_reify_pad(builder, op)]
        elif op.kind in opset.RESHAPE_OPS:
            shapes = [_reify_reshape(builder, op)]
        else:
            raise IRConstructionError(f"cannot reify result shapes of {op.kind}")
    logger.debug("reified result shapes of #%d (%s): %s", oid, op.kind, shapes)
    return shapes
