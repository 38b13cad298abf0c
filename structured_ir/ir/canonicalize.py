"""
Canonicalization: local rewrite patterns driven to a fixed point.

Each pattern matches one root op and either returns False ("no match") or
fully builds its replacement and redirects every use before returning True.
The driver keeps an explicit FIFO worklist of op handles; every op a rewrite
creates, modifies or may have made dead is pushed back onto it. No ordering
between patterns is assumed.
"""

from __future__ import annotations

import logging
import os
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, FrozenSet, List, Optional, Sequence, Set, Tuple

import numpy as np

from ..diagnostics import DiagnosticEngine
from ..ops import opset
from . import interface
from .affine import AffineMap, collapse_reassociation_maps
from .builder import OpBuilder
from .core import IRType, Module, Operation
from .shape_inference import (
    can_reify_result_shapes,
    check_reshape_group_shapes,
    compute_reshape_collapsed_type,
    compute_tensor_reshape_collapsed_type,
    get_constant_int,
    init_tensor_dynamic_size,
    reify_result_shapes,
)
from .types import DYNAMIC, ShapedType, get_strides_and_offset, is_dynamic


logger = logging.getLogger(__name__)


MAX_ITERATIONS_ENV = "STRUCTURED_IR_CANON_MAX_ITERATIONS"
DEFAULT_MAX_ITERATIONS = 10000


def _max_iterations_from_env() -> int:
    raw = os.environ.get(MAX_ITERATIONS_ENV)
    if raw is None:
        return DEFAULT_MAX_ITERATIONS
    try:
        value = int(raw)
    except ValueError:
        logger.warning("ignoring malformed %s=%r", MAX_ITERATIONS_ENV, raw)
        return DEFAULT_MAX_ITERATIONS
    return value if value > 0 else DEFAULT_MAX_ITERATIONS


@dataclass
class CanonicalizeConfig:
    max_iterations: int = field(default_factory=_max_iterations_from_env)
    # None enables every pattern.
    enabled_patterns: Optional[Set[str]] = None
    remove_dead_ops: bool = True


class PatternRewriter(OpBuilder):
    """OpBuilder that reports every touched op back to the driver."""

    def __init__(
        self,
        module: Module,
        on_change: Callable[[int], None],
        *,
        diagnostics: Optional[DiagnosticEngine] = None,
    ) -> None:
        super().__init__(module, diagnostics=diagnostics)
        self._on_change = on_change

    def notify_op_created(self, oid: int) -> None:
        self._on_change(oid)

    def _nested_operand_producers(self, oid: int) -> List[int]:
        module = self.module
        out: List[int] = []
        ops = [oid]
        for region in module.op(oid).regions:
            for bid in region:
                ops.extend(module.walk(bid))
        for o in ops:
            for v in module.op(o).operands:
                p = module.defining_op(v)
                if p is not None:
                    out.append(p)
        return out

    def replace_op(self, oid: int, new_values: Sequence[int]) -> None:
        module = self.module
        producers = self._nested_operand_producers(oid)
        users = [u for r in module.op(oid).results for u in module.users(r)]
        module.replace_op(oid, new_values)
        for u in users:
            self._on_change(u)
        for v in new_values:
            p = module.defining_op(v)
            if p is not None:
                self._on_change(p)
        for p in producers:
            if p in module.ops:
                self._on_change(p)

    def erase_op(self, oid: int) -> None:
        self.replace_op(oid, [])

    def update_operand(self, oid: int, index: int, new_value: int) -> None:
        old_producer = self.module.defining_op(self.module.op(oid).operands[index])
        self.module.set_operand(oid, index, new_value)
        self._on_change(oid)
        if old_producer is not None:
            self._on_change(old_producer)

    def clone_with(
        self,
        op: Operation,
        operands: Sequence[int],
        result_types: Sequence[IRType],
        attrs=None,
        *,
        num_inputs: Optional[int] = None,
    ) -> int:
        """Create a copy of `op` with new operands/types and move its regions over."""
        new = self.create(
            op.kind,
            operands,
            result_types,
            dict(op.attrs) if attrs is None else attrs,
            num_regions=len(op.regions),
            num_inputs=op.num_inputs if num_inputs is None else num_inputs,
            num_outputs=op.num_outputs,
        )
        self.module.move_regions(op.id, new)
        return new


class RewritePattern:
    name: str = ""
    root_kinds: Optional[FrozenSet[str]] = None

    def matches_root(self, kind: str) -> bool:
        return self.root_kinds is None or kind in self.root_kinds

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        raise NotImplementedError


def _producer(module: Module, vid: int, kind: str) -> Optional[Operation]:
    oid = module.defining_op(vid)
    if oid is None:
        return None
    op = module.op(oid)
    return op if op.kind == kind else None


def _preserves_static_shape(source: ShapedType, dest: ShapedType) -> bool:
    """True when `source` knows at least every extent `dest` knows."""
    if source.element_type != dest.element_type or source.rank != dest.rank or source.container != dest.container:
        return False
    return all(d == DYNAMIC or s == d for s, d in zip(source.shape, dest.shape))


def can_fold_tensor_cast(module: Module, vid: int) -> bool:
    cast = _producer(module, vid, opset.TENSOR_CAST)
    if cast is None:
        return False
    return _preserves_static_shape(module.type_of(cast.operands[0]), module.type_of(vid))  # type: ignore[arg-type]


def can_fold_memref_cast(module: Module, vid: int) -> bool:
    cast = _producer(module, vid, opset.MEMREF_CAST)
    if cast is None:
        return False
    src, dst = module.type_of(cast.operands[0]), module.type_of(vid)
    if not _preserves_static_shape(src, dst):  # type: ignore[arg-type]
        return False
    src_strides, src_offset = get_strides_and_offset(src)  # type: ignore[arg-type]
    dst_strides, dst_offset = get_strides_and_offset(dst)  # type: ignore[arg-type]
    if not is_dynamic(dst_offset) and src_offset != dst_offset:
        return False
    return all(is_dynamic(d) or s == d for s, d in zip(src_strides, dst_strides))


_STRUCTURED = frozenset(opset.STRUCTURED_OPS)


class EraseDeadOp(RewritePattern):
    """Structured ops touching a memref with a literal zero extent do no work."""

    name = "erase-dead-op"
    root_kinds = _STRUCTURED

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        if any(module.has_uses(r) for r in op.results):
            return False
        for v in op.inputs + op.outputs:
            t = module.type_of(v)
            # tensor<0x..> does not necessarily mean zero iterations.
            if isinstance(t, ShapedType) and t.is_memref() and 0 in t.shape:
                rewriter.erase_op(op.id)
                return True
        return False


class FoldTensorCast(RewritePattern):
    name = "fold-tensor-cast"
    root_kinds = _STRUCTURED

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        if not any(can_fold_tensor_cast(module, v) for v in op.inputs + op.outputs):
            return False

        def source_of(v: int) -> int:
            return module.op(module.defining_op(v)).operands[0] if can_fold_tensor_cast(module, v) else v  # type: ignore[arg-type]

        new_operands = [source_of(v) for v in op.inputs]
        new_result_types: List[IRType] = []
        for v in op.outputs:
            new_operands.append(source_of(v))
            t = module.type_of(new_operands[-1])
            if isinstance(t, ShapedType) and t.is_tensor():
                new_result_types.append(t)
        new_operands.extend(op.extra_operands)

        old_results = list(op.results)
        new = rewriter.clone_with(op, new_operands, new_result_types)
        replacements: List[int] = []
        for old, fresh in zip(old_results, module.op(new).results):
            old_t = module.type_of(old)
            if module.type_of(fresh) != old_t:
                replacements.append(rewriter.tensor_cast(fresh, old_t))  # type: ignore[arg-type]
            else:
                replacements.append(fresh)
        rewriter.replace_op(op.id, replacements)
        return True


class FoldMemRefCast(RewritePattern):
    name = "fold-memref-cast"
    root_kinds = frozenset(_STRUCTURED | {opset.RESHAPE, opset.TILED_LOOP})

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        folded = False
        for i, v in enumerate(list(op.operands)):
            if not can_fold_memref_cast(module, v):
                continue
            source = module.op(module.defining_op(v)).operands[0]  # type: ignore[arg-type]
            if op.kind == opset.RESHAPE:
                # The declared view type must stay the one inferred from the new source.
                maps = list(op.attrs["reassociation"])
                src_t, res_t = module.type_of(source), module.type_of(op.results[0])
                if src_t.rank > res_t.rank and compute_reshape_collapsed_type(src_t, maps) != res_t:  # type: ignore[union-attr,arg-type]
                    continue
                if src_t.rank < res_t.rank and compute_reshape_collapsed_type(res_t, maps) != src_t:  # type: ignore[union-attr,arg-type]
                    continue
            rewriter.update_operand(op.id, i, source)
            folded = True
        return folded


class DeduplicateInputs(RewritePattern):
    """Generic ops reading the same value through the same map twice keep one input."""

    name = "deduplicate-inputs"
    root_kinds = frozenset(opset.GENERIC_OPS)

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        maps: List[AffineMap] = list(op.attrs["indexing_maps"])
        canonical: dict = {}
        canonical_index: List[int] = []
        for i, v in enumerate(op.inputs):
            canonical_index.append(canonical.setdefault((v, maps[i]), i))
        if len(canonical) == op.num_inputs:
            return False

        kept = [i for i in range(op.num_inputs) if canonical_index[i] == i]
        attrs = dict(op.attrs)
        attrs["indexing_maps"] = tuple([maps[i] for i in kept] + maps[op.num_inputs :])
        if "sparse" in attrs:
            sparse = list(attrs["sparse"])
            attrs["sparse"] = tuple([sparse[i] for i in kept] + sparse[op.num_inputs :])
        operands = [op.inputs[i] for i in kept] + op.outputs + op.extra_operands
        result_types = [module.type_of(r) for r in op.results]
        new = rewriter.clone_with(op, operands, result_types, attrs, num_inputs=len(kept))

        base = interface.num_payload_induction_vars(module.op(new))
        payload = module.region_entry(new)
        args = module.block(payload).args  # type: ignore[arg-type]
        # Erase later arguments first so earlier indices stay valid.
        for i in reversed(range(op.num_inputs)):
            if canonical_index[i] == i:
                continue
            module.replace_all_uses_with(args[base + i], args[base + canonical_index[i]])
            module.erase_block_argument(payload, base + i)  # type: ignore[arg-type]
        rewriter.replace_op(op.id, module.op(new).results)
        return True


class RemoveIdentityOp(RewritePattern):
    name = "remove-identity-op"
    root_kinds = frozenset({opset.COPY} | opset.GENERIC_OPS)

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        if op.kind == opset.COPY:
            if op.inputs[0] == op.outputs[0] and op.attrs.get("input_permutation") == op.attrs.get(
                "output_permutation"
            ):
                rewriter.replace_op(op.id, [op.outputs[0]] * len(op.results))
                return True
            return False

        if not interface.has_tensor_semantics(module, op):
            return False
        if not all(m.is_identity() for m in op.attrs["indexing_maps"]):
            return False
        if any(it != "parallel" for it in op.attrs["iterator_types"]):
            return False
        body = module.region_entry(op.id)
        if body is None or len(module.block(body).ops) != 1:
            return False
        yield_op = module.op(module.block(body).ops[0])
        if yield_op.kind != opset.YIELD:
            return False

        num_index_args = interface.num_payload_induction_vars(op)
        returned: List[int] = []
        for v in yield_op.operands:
            val = module.value(v)
            if val.owner_block != body or val.arg_index < num_index_args:
                return False
            returned.append(op.operands[val.arg_index - num_index_args])
        if len(returned) != len(op.results):
            return False

        replacements: List[int] = []
        for r, v in zip(op.results, returned):
            want = module.type_of(r)
            replacements.append(v if module.type_of(v) == want else rewriter.tensor_cast(v, want))  # type: ignore[arg-type]
        rewriter.replace_op(op.id, replacements)
        return True


def _reshape_is_consistent(module: Module, kind: str, src_t: ShapedType, res_t: ShapedType, maps) -> bool:
    expanding = res_t.rank > src_t.rank
    expanded, collapsed = (res_t, src_t) if expanding else (src_t, res_t)
    if check_reshape_group_shapes(collapsed, expanded, maps, expanding) is not None:
        return False
    if kind == opset.RESHAPE:
        return compute_reshape_collapsed_type(expanded, maps) == collapsed
    return compute_tensor_reshape_collapsed_type(expanded, maps) == collapsed


class FoldReshapeChain(RewritePattern):
    """reshape(reshape(x)) in one direction composes; a round trip folds to x."""

    name = "fold-reshape-chain"
    root_kinds = frozenset(opset.RESHAPE_OPS)

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        producer = _producer(module, op.operands[0], op.kind)
        if producer is None:
            return False
        source = producer.operands[0]
        src_t: ShapedType = module.type_of(source)  # type: ignore[assignment]
        mid_t: ShapedType = module.type_of(op.operands[0])  # type: ignore[assignment]
        res_t: ShapedType = module.type_of(op.results[0])  # type: ignore[assignment]

        if src_t == res_t:
            rewriter.replace_op(op.id, [source])
            return True

        if res_t.rank > mid_t.rank > src_t.rank:
            maps = collapse_reassociation_maps(op.attrs["reassociation"], producer.attrs["reassociation"])
        elif src_t.rank > mid_t.rank > res_t.rank:
            maps = collapse_reassociation_maps(producer.attrs["reassociation"], op.attrs["reassociation"])
        else:
            return False
        if maps is None or not _reshape_is_consistent(module, op.kind, src_t, res_t, maps):
            return False
        if op.kind == opset.RESHAPE:
            new = rewriter.reshape(source, maps, result_type=res_t)
        else:
            new = rewriter.tensor_reshape(source, maps, result_type=res_t)
        rewriter.replace_op(op.id, [new])
        return True


def _splat_value(payload) -> Optional[object]:
    if not isinstance(payload, np.ndarray) or payload.size == 0:
        return None
    first = payload.flat[0]
    return first if bool(np.all(payload == first)) else None


class FoldReshapeWithConstant(RewritePattern):
    name = "fold-reshape-with-constant"
    root_kinds = frozenset({opset.TENSOR_RESHAPE})

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        const_op = _producer(module, op.operands[0], opset.CONSTANT)
        if const_op is None:
            return False
        splat = _splat_value(const_op.attrs["value"])
        res_t: ShapedType = module.type_of(op.results[0])  # type: ignore[assignment]
        if splat is None or not res_t.has_static_shape():
            return False
        rewriter.replace_op(op.id, [rewriter.constant(splat, res_t)])
        return True


class FoldFillReshapeChain(RewritePattern):
    """tensor_reshape(fill(init, v)) -> fill(tensor_reshape(init), v)."""

    name = "fold-fill-reshape-chain"
    root_kinds = frozenset({opset.TENSOR_RESHAPE})

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        fill = _producer(module, op.operands[0], opset.FILL)
        if fill is None or not fill.results:
            return False
        res_t = module.type_of(op.results[0])
        new_init = rewriter.tensor_reshape(fill.outputs[0], op.attrs["reassociation"], result_type=res_t)  # type: ignore[arg-type]
        new_fill = rewriter.fill(new_init, fill.extra_operands[0])
        rewriter.replace_op(op.id, [rewriter.result(new_fill)])
        return True


def _mixed_sizes(module: Module, values: Sequence[int]) -> Tuple[List[int], List[int]]:
    static: List[int] = []
    dynamic: List[int] = []
    for v in values:
        c = get_constant_int(module, v)
        if c is None or c < 0:
            static.append(DYNAMIC)
            dynamic.append(v)
        else:
            static.append(c)
    return static, dynamic


class FoldInitTensorWithReshape(RewritePattern):
    """A reshaped init tensor is only its shape: build an init of the new shape."""

    name = "fold-init-tensor-with-reshape"
    root_kinds = frozenset({opset.TENSOR_RESHAPE})

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        if _producer(module, op.operands[0], opset.INIT_TENSOR) is None:
            return False
        if not can_reify_result_shapes(module, op):
            return False
        shapes = reify_result_shapes(rewriter, module, op.id)
        if len(shapes) != 1:
            return False
        res_t: ShapedType = module.type_of(op.results[0])  # type: ignore[assignment]
        static, dynamic = _mixed_sizes(module, shapes[0])
        init = rewriter.init_tensor(static, res_t.element_type, dynamic)
        if module.type_of(init) != res_t:
            init = rewriter.tensor_cast(init, res_t)
        rewriter.replace_op(op.id, [init])
        return True


class ReplaceStaticShapeDims(RewritePattern):
    """Init tensor sizes defined by constants become static extents."""

    name = "replace-static-shape-dims"
    root_kinds = frozenset({opset.INIT_TENSOR})

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        static: List[int] = []
        dynamic: List[int] = []
        for i, size in enumerate(op.attrs["static_sizes"]):
            if size != DYNAMIC:
                static.append(size)
                continue
            operand = init_tensor_dynamic_size(op, i)
            c = get_constant_int(module, operand)
            # Negative extents stay dynamic.
            if c is not None and c >= 0:
                static.append(c)
            else:
                static.append(DYNAMIC)
                dynamic.append(operand)
        old_t: ShapedType = module.type_of(op.results[0])  # type: ignore[assignment]
        if tuple(static) == old_t.shape:
            return False
        new = rewriter.init_tensor(static, old_t.element_type, dynamic)
        rewriter.replace_op(op.id, [rewriter.tensor_cast(new, old_t)])
        return True


class FoldTiledLoopResults(RewritePattern):
    """
    Drop tensor outputs of a tiled loop whose result is unused and that the
    body yields back unchanged.
    """

    name = "fold-tiled-loop-results"
    root_kinds = frozenset({opset.TILED_LOOP})

    def match_and_rewrite(self, rewriter: PatternRewriter, op: Operation) -> bool:
        module = rewriter.module
        if not op.results:
            return False
        body = module.region_entry(op.id)
        term = module.terminator(body) if body is not None else None
        if term is None or module.op(term).kind != opset.YIELD:
            return False
        yielded = list(module.op(term).operands)
        n_lb, n_ub, n_step, n_in, n_out = op.attrs["operand_segment_sizes"]
        first_out = n_lb + n_ub + n_step + n_in
        outputs = op.operands[first_out : first_out + n_out]
        args = module.block(body).args
        out_arg_base = n_lb + n_in

        kept: List[int] = []
        dropped: List[int] = []
        new_yield: List[int] = []
        replacements: List[int] = []
        result_id = 0
        for j, out in enumerate(outputs):
            t = module.type_of(out)
            if not (isinstance(t, ShapedType) and t.is_tensor()):
                kept.append(j)
                continue
            if result_id >= len(yielded) or result_id >= len(op.results):
                return False
            result, value = op.results[result_id], yielded[result_id]
            if value in (out, args[out_arg_base + j]) and not module.has_uses(result):
                dropped.append(j)
                replacements.append(out)
            else:
                kept.append(j)
                new_yield.append(value)
                replacements.append(-1)
            result_id += 1
        if not dropped:
            return False

        kept_outputs = [outputs[j] for j in kept]
        attrs = dict(op.attrs)
        attrs["operand_segment_sizes"] = (n_lb, n_ub, n_step, n_in, len(kept_outputs))
        result_types: List[IRType] = [
            t for t in (module.type_of(v) for v in kept_outputs) if isinstance(t, ShapedType) and t.is_tensor()
        ]
        new = rewriter.clone_with(op, op.operands[:first_out] + kept_outputs, result_types, attrs)

        module.erase_op(term)
        for j in reversed(dropped):
            module.replace_all_uses_with(args[out_arg_base + j], outputs[j])
            module.erase_block_argument(body, out_arg_base + j)  # type: ignore[arg-type]
        with rewriter.insertion_guard():
            rewriter.set_insertion_point_to_end(body)  # type: ignore[arg-type]
            rewriter.yield_(new_yield)

        fresh = iter(module.op(new).results)
        rewriter.replace_op(op.id, [r if r != -1 else next(fresh) for r in replacements])
        return True


def default_patterns() -> List[RewritePattern]:
    return [
        EraseDeadOp(),
        FoldTensorCast(),
        FoldMemRefCast(),
        DeduplicateInputs(),
        RemoveIdentityOp(),
        FoldReshapeChain(),
        FoldReshapeWithConstant(),
        FoldFillReshapeChain(),
        FoldInitTensorWithReshape(),
        ReplaceStaticShapeDims(),
        FoldTiledLoopResults(),
    ]


def is_trivially_dead(module: Module, op: Operation) -> bool:
    if any(module.has_uses(r) for r in op.results):
        return False
    if op.kind in opset.PURE_OPS:
        return True
    # Tensor-semantics structured ops only produce values.
    return interface.is_structured(op) and bool(op.results) and interface.has_tensor_semantics(module, op)


def apply_patterns_greedily(
    module: Module,
    patterns: Optional[Sequence[RewritePattern]] = None,
    config: Optional[CanonicalizeConfig] = None,
) -> bool:
    """Rewrite `module` in place until no pattern matches. Returns whether anything changed."""
    config = config if config is not None else CanonicalizeConfig()
    active = [
        p
        for p in (default_patterns() if patterns is None else patterns)
        if config.enabled_patterns is None or p.name in config.enabled_patterns
    ]

    worklist: Deque[int] = deque()
    queued: Set[int] = set()

    def push(oid: int) -> None:
        if oid not in queued:
            queued.add(oid)
            worklist.append(oid)

    for oid in module.walk():
        push(oid)
    rewriter = PatternRewriter(module, push)

    changed = False
    steps = 0
    while worklist:
        if steps >= config.max_iterations:
            logger.warning("canonicalization stopped after %d rewrites without reaching a fixed point", steps)
            break
        oid = worklist.popleft()
        queued.discard(oid)
        op = module.ops.get(oid)
        if op is None or op.parent_block is None:
            continue

        if config.remove_dead_ops and is_trivially_dead(module, op):
            logger.debug("erasing dead op #%d (%s)", oid, op.kind)
            rewriter.erase_op(oid)
            changed = True
            steps += 1
            continue

        for pattern in active:
            if not pattern.matches_root(op.kind):
                continue
            with rewriter.insertion_guard():
                rewriter.set_insertion_point(oid)
                matched = pattern.match_and_rewrite(rewriter, op)
            if matched:
                logger.debug("applied %s to #%d (%s)", pattern.name, oid, op.kind)
                changed = True
                steps += 1
                if oid in module.ops:
                    push(oid)
                break
    return changed


def canonicalize(module: Module, config: Optional[CanonicalizeConfig] = None) -> bool:
    return apply_patterns_greedily(module, default_patterns(), config)


__all__ = [
    "MAX_ITERATIONS_ENV",
    "DEFAULT_MAX_ITERATIONS",
    "CanonicalizeConfig",
    "PatternRewriter",
    "RewritePattern",
    "EraseDeadOp",
    "FoldTensorCast",
    "FoldMemRefCast",
    "DeduplicateInputs",
    "RemoveIdentityOp",
    "FoldReshapeChain",
    "FoldReshapeWithConstant",
    "FoldFillReshapeChain",
    "FoldInitTensorWithReshape",
    "ReplaceStaticShapeDims",
    "FoldTiledLoopResults",
    "can_fold_tensor_cast",
    "can_fold_memref_cast",
    "default_patterns",
    "is_trivially_dead",
    "apply_patterns_greedily",
    "canonicalize",
]
