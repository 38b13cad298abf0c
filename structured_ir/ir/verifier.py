"""
Per-kind verification of structured ops and their auxiliary ops.

Verification is fail-fast: the first violated rule of an operation raises a
`VerificationError` carrying exactly one located diagnostic. `verify_module`
checks every op (nested ones included), routes one diagnostic per failing op
to a `DiagnosticEngine` and may fan out across a thread pool since
verification never mutates the IR.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..diagnostics import DiagnosticEngine, ErrorKind, VerificationError, closest_match, make_error
from ..ops import opset
from . import interface
from .affine import AffineMap, find_invalid_reassociation
from .core import Module, Operation
from .shape_inference import (
    check_reshape_group_shapes,
    compute_reshape_collapsed_type,
    compute_tensor_reshape_collapsed_type,
    init_tensor_result_type,
    pad_result_type,
)
from .types import DYNAMIC, ScalarType, ShapedType, index


logger = logging.getLogger(__name__)


Verifier = Callable[[Module, Operation], None]

_VERIFIERS: Dict[str, Verifier] = {}


def _register(*kinds: str):
    def deco(fn: Verifier) -> Verifier:
        for k in kinds:
            _VERIFIERS[k] = fn
        return fn

    return deco


def _fail(op: Operation, kind: ErrorKind, message: str) -> VerificationError:
    return make_error(kind, f"'{op.kind}' op {message}", op=op.id, op_kind=op.kind)


def _shaped(module: Module, op: Operation, vid: int, what: str) -> ShapedType:
    t = module.type_of(vid)
    if not isinstance(t, ShapedType):
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, f"expected {what} to be shaped, got {t}")
    return t


# ---- common structured-op checks ----------------------------------------------


# (inputs, outputs) of structured kinds with a fixed signature.
_STRUCTURED_SIGNATURES: Dict[str, Tuple[int, int]] = {
    opset.COPY: (1, 1),
    opset.FILL: (0, 1),
    opset.CONV: (2, 1),
    **{k: (2, 1) for k in opset.POOLING_OPS},
    **{k: (2, 1) for k in opset.NAMED_ARITH_OPS},
}

# (min operands, max operands, results); None leaves a bound open.
_OPERAND_RESULT_COUNTS: Dict[str, Tuple[int, Optional[int], Optional[int]]] = {
    opset.CONSTANT: (0, 0, 1),
    opset.TENSOR_CAST: (1, 1, 1),
    opset.MEMREF_CAST: (1, 1, 1),
    opset.DIM: (1, 1, 1),
    opset.AFFINE_APPLY: (0, None, 1),
    opset.PAD_TENSOR: (1, None, 1),
    opset.INIT_TENSOR: (0, None, 1),
    **{k: (2, 2, 1) for k in opset.SCALAR_ARITH_OPS},
    **{k: (1, 1, 1) for k in opset.SCALAR_CAST_OPS},
}


def _verify_counts(op: Operation) -> None:
    signature = _STRUCTURED_SIGNATURES.get(op.kind)
    if signature is not None and (op.num_inputs, op.num_outputs) != signature:
        raise _fail(
            op,
            ErrorKind.INVALID_OPERATION,
            f"expects {signature[0]} input(s) and {signature[1]} output(s), got {op.num_inputs} and {op.num_outputs}",
        )
    counts = _OPERAND_RESULT_COUNTS.get(op.kind)
    if counts is None:
        return
    lo, hi, results = counts
    n = len(op.operands)
    if n < lo or (hi is not None and n > hi):
        want = str(lo) if hi == lo else (f"at least {lo}" if hi is None else f"{lo} to {hi}")
        raise _fail(op, ErrorKind.INVALID_OPERATION, f"expects {want} operand(s), got {n}")
    if results is not None and len(op.results) != results:
        raise _fail(op, ErrorKind.INVALID_OPERATION, f"expects {results} result(s), got {len(op.results)}")


def _verify_structured_operands(module: Module, op: Operation) -> None:
    if len(op.operands) < op.num_inputs + op.num_outputs:
        raise _fail(
            op,
            ErrorKind.INVALID_OPERATION,
            f"expected at least {op.num_inputs + op.num_outputs} operands, got {len(op.operands)}",
        )
    if op.num_outputs < 1:
        raise _fail(op, ErrorKind.INVALID_OPERATION, "expected at least one output operand")
    for i, v in enumerate(op.inputs + op.outputs):
        _shaped(module, op, v, f"operand #{i}")


def _verify_structured_interface(module: Module, op: Operation) -> None:
    maps = interface.indexing_maps(module, op)
    iterators = interface.iterator_types(module, op)
    shaped = op.inputs + op.outputs
    if maps is not None and iterators is not None:
        for it in iterators:
            if it not in opset.ITERATOR_TYPES:
                hint = closest_match(it, sorted(opset.ITERATOR_TYPES))
                extra = f" (did you mean {hint[0]!r}?)" if hint else ""
                raise _fail(op, ErrorKind.INVALID_OPERATION, f"unexpected iterator type {it!r}{extra}")
        if len(maps) != len(shaped):
            raise _fail(
                op,
                ErrorKind.ATTRIBUTE_ARITY_MISMATCH,
                f"expected the number of indexing_map ({len(maps)}) to be equal to the number of "
                f"shaped operands ({len(shaped)})",
            )
        for i, (m, v) in enumerate(zip(maps, shaped)):
            if m.num_symbols != 0:
                raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, f"expected indexing_map #{i} to have no symbols")
            if m.num_dims != len(iterators):
                raise _fail(
                    op,
                    ErrorKind.ATTRIBUTE_ARITY_MISMATCH,
                    f"expected indexing_map #{i} to have {len(iterators)} dim(s) to match the number of loops",
                )
            rank = module.type_of(v).rank  # type: ignore[union-attr]
            if m.num_results != rank:
                raise _fail(
                    op,
                    ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH,
                    f"expected indexing_map #{i} results to match view rank: {m.num_results} vs {rank}",
                )

    tensor_outputs = [module.type_of(v) for v in op.outputs if module.type_of(v).is_tensor()]  # type: ignore[union-attr]
    if len(op.results) != len(tensor_outputs):
        raise _fail(
            op,
            ErrorKind.INVALID_OPERATION,
            f"expected the number of results ({len(op.results)}) to be equal to the number of output "
            f"tensors ({len(tensor_outputs)})",
        )
    for i, (r, t) in enumerate(zip(op.results, tensor_outputs)):
        if module.type_of(r) != t:
            raise _fail(
                op,
                ErrorKind.SHAPE_MISMATCH,
                f"expected result #{i} of type {t} to match its output tensor, got {module.type_of(r)}",
            )

    if op.kind in opset.POOLING_OPS or op.kind == opset.CONV:
        return
    if len(op.regions) != 1 or len(op.regions[0]) != 1:
        raise _fail(op, ErrorKind.REGION_SIGNATURE_MISMATCH, "expected a region with a single block")
    block = module.block(op.regions[0][0])
    expected = interface.region_arg_types(module, op)
    if len(block.args) != len(expected):
        raise _fail(
            op,
            ErrorKind.REGION_SIGNATURE_MISMATCH,
            f"expected region with {len(expected)} arguments (element types of inputs and outputs), "
            f"got {len(block.args)}",
        )
    for i, (a, t) in enumerate(zip(block.args, expected)):
        if module.type_of(a) != t:
            raise _fail(
                op,
                ErrorKind.REGION_SIGNATURE_MISMATCH,
                f"expected type of region argument #{i} ({module.type_of(a)}) to match {t}",
            )
    term = module.terminator(block.id)
    if term is None or module.op(term).kind != opset.YIELD:
        raise _fail(op, ErrorKind.REGION_SIGNATURE_MISMATCH, "expected the region to end with a yield")


# ---- structured kinds -----------------------------------------------------------


def _check_permutation(op: Operation, name: str, m: Optional[AffineMap], rank: int) -> None:
    if m is None:
        return
    if rank == 0:
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, f"expected no {name} when rank == 0")
    if m.num_dims != rank:
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, f"expects optional {name} map of rank {rank}")
    if not m.is_permutation():
        raise _fail(op, ErrorKind.INVALID_OPERATION, f"expects optional {name} map to be a permutation")


@_register(opset.COPY)
def _verify_copy(module: Module, op: Operation) -> None:
    in_t = _shaped(module, op, op.inputs[0], "input")
    out_t = _shaped(module, op, op.outputs[0], "output")
    if in_t.element_type != out_t.element_type:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects views of the same type")
    if in_t.rank != out_t.rank:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects views of the same rank")
    _check_permutation(op, "input_permutation", op.attrs.get("input_permutation"), in_t.rank)
    _check_permutation(op, "output_permutation", op.attrs.get("output_permutation"), in_t.rank)


@_register(opset.FILL)
def _verify_fill(module: Module, op: Operation) -> None:
    if len(op.extra_operands) != 1:
        raise _fail(op, ErrorKind.INVALID_OPERATION, "expects exactly one fill value operand")
    view_t = _shaped(module, op, op.outputs[0], "output")
    fill_t = module.type_of(op.extra_operands[0])
    if view_t.element_type != fill_t:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects fill type to match view elemental type")
    if not op.results and not view_t.is_memref():
        raise _fail(op, ErrorKind.INVALID_OPERATION, "expected fill op with no result value to use memref type")


@_register(opset.GENERIC, opset.INDEXED_GENERIC)
def _verify_generic(module: Module, op: Operation) -> None:
    sparse = op.attrs.get("sparse")
    if sparse is None:
        return
    if not interface.has_tensor_semantics(module, op):
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, "expected sparse annotations on tensors only")
    if op.num_outputs != 1:
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, "expected single output tensor")
    shaped = op.inputs + op.outputs
    if len(sparse) != len(shaped):
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, "expected one sparse annotation for each tensor")
    for t, (annotation, v) in enumerate(zip(sparse, shaped)):
        if not isinstance(annotation, (tuple, list)):
            raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, f"expected sparse annotation array for tensor {t}")
        rank = module.type_of(v).rank  # type: ignore[union-attr]
        if len(annotation) != rank:
            raise _fail(
                op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, f"expected sparse annotation with rank {rank} for tensor {t}"
            )
        for d, a in enumerate(annotation):
            if a == "D":
                continue
            if a == "S":
                if t == len(shaped) - 1:
                    raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, "sparse output tensors not supported")
                continue
            raise _fail(
                op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, f"expected sparse annotation at position {d} for tensor {t}"
            )


_NAMED_RANKS: Dict[str, Sequence[int]] = {
    opset.MATMUL: (2, 2, 2),
    opset.MATVEC: (2, 1, 1),
    opset.DOT: (1, 1, 0),
}


@_register(*sorted(opset.NAMED_ARITH_OPS))
def _verify_named(module: Module, op: Operation) -> None:
    if op.num_inputs != 2 or op.num_outputs != 1:
        raise _fail(op, ErrorKind.INVALID_OPERATION, "expects two inputs and one output")
    ranks = [module.type_of(v).rank for v in op.inputs + op.outputs]  # type: ignore[union-attr]
    expected = _NAMED_RANKS.get(op.kind)
    if expected is None:
        expected = (ranks[2],) * 3
    if tuple(ranks) != tuple(expected):
        raise _fail(
            op,
            ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH,
            f"expects operand ranks {tuple(expected)}, got {tuple(ranks)}",
        )


def _check_window_attr(op: Operation, name: str, num_window_loops: int) -> None:
    values = op.attrs.get(name)
    if values is None:
        return
    if len(values) != num_window_loops:
        raise _fail(
            op,
            ErrorKind.ATTRIBUTE_ARITY_MISMATCH,
            f"expects num {name} equal to number of window dimensions: {len(values)} vs {num_window_loops}",
        )


@_register(opset.CONV)
def _verify_conv(module: Module, op: Operation) -> None:
    i_t, f_t = (_shaped(module, op, v, "conv operand") for v in op.inputs)
    o_t = _shaped(module, op, op.outputs[0], "conv output")
    if not (i_t.is_memref() and f_t.is_memref() and o_t.is_memref()):
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects memref operands")
    if o_t.element_type != i_t.element_type or o_t.element_type != f_t.element_type:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects memref elemental types to match")
    if o_t.rank != i_t.rank or o_t.rank != f_t.rank:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects memref ranks to match")
    n = interface.num_window_loops(module, op)
    _check_window_attr(op, "strides", n)
    _check_window_attr(op, "dilations", n)
    padding = op.attrs.get("padding")
    if padding is not None and (len(padding) != n or any(len(p) != 2 for p in padding)):
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, f"expects padding of {n} (low, high) pairs")


@_register(*sorted(opset.POOLING_OPS))
def _verify_pooling(module: Module, op: Operation) -> None:
    in_t = _shaped(module, op, op.inputs[0], "pooling input")
    win_t = _shaped(module, op, op.inputs[1], "window dims")
    out_t = _shaped(module, op, op.outputs[0], "pooling output")
    if out_t.element_type != in_t.element_type:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects memref elemental types to match")
    if out_t.rank != in_t.rank or out_t.rank != win_t.rank:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects memref ranks to match")
    n = interface.num_window_loops(module, op)
    _check_window_attr(op, "strides", n)
    _check_window_attr(op, "dilations", n)


# ---- reshape / pad / init ---------------------------------------------------------


@_register(opset.RESHAPE, opset.TENSOR_RESHAPE)
def _verify_reshape(module: Module, op: Operation) -> None:
    if len(op.operands) != 1 or len(op.results) != 1:
        raise _fail(op, ErrorKind.INVALID_OPERATION, "expects one source and one result")
    src_t = _shaped(module, op, op.operands[0], "source")
    res_t = _shaped(module, op, op.results[0], "result")
    want_memref = op.kind == opset.RESHAPE
    if src_t.is_memref() != want_memref or res_t.is_memref() != want_memref:
        container = "memref" if want_memref else "tensor"
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, f"expects {container} source and result")
    if src_t.element_type != res_t.element_type:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects source and result element types to match")

    is_collapse = src_t.rank > res_t.rank
    expanded, collapsed = (src_t, res_t) if is_collapse else (res_t, src_t)
    if expanded.rank == 0:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expected non-zero memref ranks")
    if expanded.rank == collapsed.rank:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expected to collapse or expand dims")

    maps: List[AffineMap] = list(op.attrs.get("reassociation", ()))
    if collapsed.rank == 0:
        if any(d != 1 for d in expanded.shape):
            raise _fail(
                op,
                ErrorKind.SHAPE_MISMATCH,
                "invalid to reshape tensor/memref with non-unit extent dimensions to zero-rank tensor/memref",
            )
    else:
        if len(maps) != collapsed.rank:
            raise _fail(
                op,
                ErrorKind.MALFORMED_REASSOCIATION,
                f"expected rank of the collapsed type({collapsed.rank}) to be the number of reassociation "
                f"maps({len(maps)})",
            )
        for i, m in enumerate(maps):
            if m.num_dims != expanded.rank:
                raise _fail(
                    op,
                    ErrorKind.MALFORMED_REASSOCIATION,
                    f"expected reassociation map #{i} of same rank as expanded memref({expanded.rank}), "
                    f"but got {m.num_dims}",
                )
        bad = find_invalid_reassociation(maps)
        if bad is not None:
            raise _fail(
                op, ErrorKind.MALFORMED_REASSOCIATION, f"expected reassociation map #{bad} to be valid and contiguous"
            )
        problem = check_reshape_group_shapes(collapsed, expanded, maps, is_expanding=not is_collapse)
        if problem is not None:
            raise _fail(op, ErrorKind.SHAPE_MISMATCH, problem)

    if want_memref:
        expected = compute_reshape_collapsed_type(expanded, maps)
    else:
        expected = compute_tensor_reshape_collapsed_type(expanded, maps)
    if collapsed != expected:
        raise _fail(op, ErrorKind.SHAPE_MISMATCH, f"expected collapsed type to be {expected}, but got {collapsed}")


@_register(opset.PAD_TENSOR)
def _verify_pad(module: Module, op: Operation) -> None:
    src_t = _shaped(module, op, op.operands[0], "source")
    res_t = _shaped(module, op, op.results[0], "result")
    low, high = list(op.attrs.get("static_low", ())), list(op.attrs.get("static_high", ()))
    if len(low) != src_t.rank or len(high) != src_t.rank:
        raise _fail(
            op,
            ErrorKind.ATTRIBUTE_ARITY_MISMATCH,
            f"expected {src_t.rank} static low/high entries, got {len(low)}/{len(high)}",
        )
    num_dynamic = sum(1 for v in low + high if v == DYNAMIC)
    if len(op.operands) != 1 + num_dynamic:
        raise _fail(
            op,
            ErrorKind.ATTRIBUTE_ARITY_MISMATCH,
            f"expected {num_dynamic} dynamic low/high operands, got {len(op.operands) - 1}",
        )
    if res_t.rank != src_t.rank or res_t.element_type != src_t.element_type:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects result rank and element type to match source")
    expected = pad_result_type(src_t, low, high)
    for i in range(src_t.rank):
        if res_t.shape[i] == expected.shape[i] or expected.shape[i] == DYNAMIC:
            continue
        raise _fail(op, ErrorKind.SHAPE_MISMATCH, f"specified type {res_t} does not match the inferred type {expected}")

    if len(op.regions) != 1 or len(op.regions[0]) != 1:
        raise _fail(op, ErrorKind.REGION_SIGNATURE_MISMATCH, "expected a region with a single block")
    block = module.block(op.regions[0][0])
    if len(block.args) != res_t.rank:
        raise _fail(op, ErrorKind.REGION_SIGNATURE_MISMATCH, f"expected the block to have {res_t.rank} arguments")
    for i, a in enumerate(block.args):
        if module.type_of(a) != index:
            raise _fail(op, ErrorKind.REGION_SIGNATURE_MISMATCH, f"expected block argument {i + 1} to be an index")
    term = module.terminator(block.id)
    if term is None or module.op(term).kind != opset.YIELD:
        raise _fail(op, ErrorKind.REGION_SIGNATURE_MISMATCH, "expected the region to end with a yield")


@_register(opset.INIT_TENSOR)
def _verify_init_tensor(module: Module, op: Operation) -> None:
    res_t = _shaped(module, op, op.results[0], "result")
    static_sizes = list(op.attrs.get("static_sizes", ()))
    if len(static_sizes) != res_t.rank:
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, f"expected {res_t.rank} sizes values")
    num_dynamic = sum(1 for s in static_sizes if s == DYNAMIC)
    if len(op.operands) != num_dynamic:
        raise _fail(
            op,
            ErrorKind.ATTRIBUTE_ARITY_MISMATCH,
            f"expected {num_dynamic} dynamic size operands, got {len(op.operands)}",
        )
    for v in op.operands:
        if module.type_of(v) != index:
            raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects index-typed dynamic sizes")
    expected = init_tensor_result_type(static_sizes, res_t.element_type)
    if res_t != expected:
        raise _fail(op, ErrorKind.SHAPE_MISMATCH, f"specified type {res_t} does not match the inferred type {expected}")


# ---- terminators and loops ------------------------------------------------------


@_register(opset.YIELD)
def _verify_yield(module: Module, op: Operation) -> None:
    parent_id = module.parent_op(op.id)
    if parent_id is None:
        raise _fail(op, ErrorKind.INVALID_OPERATION, "expected parent op with structured interface")
    parent = module.op(parent_id)
    if len(parent.regions) != 1 or not parent.regions[0]:
        raise _fail(op, ErrorKind.INVALID_OPERATION, "expected single non-empty parent region")

    if interface.is_structured(parent):
        if len(op.operands) != parent.num_outputs:
            raise _fail(
                op,
                ErrorKind.REGION_SIGNATURE_MISMATCH,
                f"expected number of yield values ({parent.num_outputs}) to match the number of outputs of "
                f"the enclosing op ({len(op.operands)})",
            )
        for i, (v, out) in enumerate(zip(op.operands, parent.outputs)):
            elt = module.type_of(out).element_type  # type: ignore[union-attr]
            if module.type_of(v) != elt:
                raise _fail(
                    op,
                    ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH,
                    f"type of yield operand {i + 1} ({module.type_of(v)}) doesn't match the element type of "
                    f"the enclosing {parent.kind} op ({elt})",
                )
        return
    if parent.kind == opset.PAD_TENSOR:
        if len(op.operands) != 1:
            raise _fail(op, ErrorKind.REGION_SIGNATURE_MISMATCH, f"expected single yield operand (got {len(op.operands)})")
        elt = module.type_of(parent.results[0]).element_type  # type: ignore[union-attr]
        if module.type_of(op.operands[0]) != elt:
            raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expected yield type to match shape element type")
        return
    if parent.kind == opset.TILED_LOOP:
        return
    raise _fail(op, ErrorKind.INVALID_OPERATION, "expected parent op with structured interface")


@_register(opset.TILED_LOOP)
def _verify_tiled_loop(module: Module, op: Operation) -> None:
    segments = tuple(op.attrs.get("operand_segment_sizes", ()))
    if len(segments) != 5 or sum(segments) != len(op.operands):
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, "expected operand segments to cover all operands")
    n_lb, n_ub, n_step = segments[:3]
    iterators = tuple(op.attrs.get("iterator_types", ()))
    if not (n_lb == n_ub == n_step == len(iterators)):
        raise _fail(
            op,
            ErrorKind.ATTRIBUTE_ARITY_MISMATCH,
            f"expected as many lower bounds, upper bounds, steps and iterator types, got "
            f"{n_lb}, {n_ub}, {n_step} and {len(iterators)}",
        )
    for it in iterators:
        if it not in opset.ITERATOR_TYPES:
            raise _fail(op, ErrorKind.INVALID_OPERATION, f"unexpected iterator type {it!r}")


@_register(opset.RETURN)
def _verify_return(module: Module, op: Operation) -> None:
    if op.parent_block != module.body:
        raise _fail(op, ErrorKind.INVALID_OPERATION, "expects to be a top-level terminator")


# ---- auxiliary ops ---------------------------------------------------------------


@_register(opset.CONSTANT)
def _verify_constant(module: Module, op: Operation) -> None:
    if "value" not in op.attrs:
        raise _fail(op, ErrorKind.INVALID_OPERATION, "requires a 'value' attribute")
    t = module.type_of(op.results[0])
    if isinstance(t, ShapedType) and tuple(op.attrs["value"].shape) != t.shape:
        raise _fail(op, ErrorKind.SHAPE_MISMATCH, f"payload shape {op.attrs['value'].shape} does not match {t}")


@_register(*sorted(opset.SCALAR_ARITH_OPS))
def _verify_scalar_arith(module: Module, op: Operation) -> None:
    types = [module.type_of(v) for v in op.operands + op.results]
    if len(op.operands) != 2 or any(t != types[0] for t in types):
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, f"expects operand and result types to match: {types}")
    want = "float" if op.kind in (opset.ADDF, opset.MULF) else "int"
    t = types[0]
    if not isinstance(t, ScalarType) or (t.kind != want and not (want == "int" and t.is_index())):
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, f"expects {want} operands, got {t}")


_CAST_RULES: Dict[str, tuple] = {
    opset.SITOFP: ("int", "float", None),
    opset.UITOFP: ("int", "float", None),
    opset.FPTOSI: ("float", "int", None),
    opset.FPTOUI: ("float", "int", None),
    opset.EXTSI: ("int", "int", "wider"),
    opset.EXTUI: ("int", "int", "wider"),
    opset.TRUNCI: ("int", "int", "narrower"),
    opset.EXTF: ("float", "float", "wider"),
    opset.TRUNCF: ("float", "float", "narrower"),
}


@_register(*sorted(opset.SCALAR_CAST_OPS))
def _verify_scalar_cast(module: Module, op: Operation) -> None:
    src, dst = module.type_of(op.operands[0]), module.type_of(op.results[0])
    src_kind, dst_kind, width_rule = _CAST_RULES[op.kind]
    if not isinstance(src, ScalarType) or not isinstance(dst, ScalarType) or src.kind != src_kind or dst.kind != dst_kind:
        raise _fail(op, ErrorKind.UNSUPPORTED_CAST, f"cannot cast {src} to {dst}")
    if width_rule == "wider" and dst.width <= src.width:
        raise _fail(op, ErrorKind.UNSUPPORTED_CAST, f"expects result {dst} to be wider than {src}")
    if width_rule == "narrower" and dst.width >= src.width:
        raise _fail(op, ErrorKind.UNSUPPORTED_CAST, f"expects result {dst} to be narrower than {src}")


@_register(opset.TENSOR_CAST, opset.MEMREF_CAST)
def _verify_shaped_cast(module: Module, op: Operation) -> None:
    src = _shaped(module, op, op.operands[0], "source")
    dst = _shaped(module, op, op.results[0], "result")
    want_memref = op.kind == opset.MEMREF_CAST
    if src.is_memref() != want_memref or dst.is_memref() != want_memref:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "expects source and result of the cast's container kind")
    if src.element_type != dst.element_type or src.rank != dst.rank:
        raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, f"operand type {src} and result type {dst} are cast incompatible")
    for a, b in zip(src.shape, dst.shape):
        if a != DYNAMIC and b != DYNAMIC and a != b:
            raise _fail(op, ErrorKind.SHAPE_MISMATCH, f"operand type {src} and result type {dst} are cast incompatible")


@_register(opset.DIM)
def _verify_dim(module: Module, op: Operation) -> None:
    t = _shaped(module, op, op.operands[0], "source")
    i = op.attrs.get("index")
    if not isinstance(i, int) or not 0 <= i < t.rank:
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, f"index {i} is out of range for {t}")


@_register(opset.AFFINE_APPLY)
def _verify_affine_apply(module: Module, op: Operation) -> None:
    m = op.attrs.get("map")
    if not isinstance(m, AffineMap) or m.num_results != 1:
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, "expects a single-result affine map")
    if len(op.operands) != m.num_dims + m.num_symbols:
        raise _fail(op, ErrorKind.ATTRIBUTE_ARITY_MISMATCH, "operand count and affine map dimension and symbol count must match")
    for v in op.operands:
        if module.type_of(v) != index:
            raise _fail(op, ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH, "operands must be of type 'index'")


# ---- entry points ----------------------------------------------------------------


def verify_op(module: Module, oid: int) -> None:
    """Raise `VerificationError` for the first violated rule of `oid`."""
    op = module.op(oid)
    if op.kind not in opset.SUPPORTED_OPS:
        hint = closest_match(op.kind, sorted(opset.SUPPORTED_OPS))
        extra = f" (did you mean {hint[0]!r}?)" if hint else ""
        raise _fail(op, ErrorKind.INVALID_OPERATION, f"is not a supported operation{extra}")
    _verify_counts(op)
    structured = interface.is_structured(op)
    if structured:
        _verify_structured_operands(module, op)
    fn = _VERIFIERS.get(op.kind)
    if fn is not None:
        fn(module, op)
    if structured:
        _verify_structured_interface(module, op)


def verify_module(module: Module, engine: Optional[DiagnosticEngine] = None, num_workers: int = 1) -> bool:
    """
    Verify every op of `module`; one diagnostic per failing op goes to
    `engine`. Returns True when the whole module is well formed.
    """
    engine = engine if engine is not None else DiagnosticEngine()
    oids = list(module.walk())

    def check(oid: int) -> bool:
        try:
            verify_op(module, oid)
        except VerificationError as e:
            logger.debug("verification failed: %s", e)
            engine.emit(e.diagnostic)
            return False
        return True

    if num_workers > 1 and len(oids) > 1:
        with ThreadPoolExecutor(max_workers=num_workers) as pool:
            results = list(pool.map(check, oids))
    else:
        results = [check(oid) for oid in oids]
    ok = all(results)
    logger.debug("verified %d ops (%d failed)", len(oids), results.count(False))
    return ok


__all__ = ["verify_op", "verify_module"]
