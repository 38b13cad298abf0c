"""
OpBuilder: creates operations at an insertion point inside a `Module`.

Builders of single-result ops return the result value handle; structured
ops, terminators and loops return the operation handle (use `result()` to
get at their results). When no result type is given it is inferred, and
named structured ops get their body from the region builder.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

import numpy as np

from ..diagnostics import DiagnosticEngine
from ..ops import opset
from . import region_builder as _region_builder
from .affine import AffineConstantExpr, AffineDimExpr, AffineMap, AffineSymbolExpr, reassociation_to_maps
from .core import IRType, Module
from .shape_inference import (
    compute_reshape_collapsed_type,
    compute_tensor_reshape_collapsed_type,
    get_constant_int,
    init_tensor_dynamic_size,
    init_tensor_result_type,
    pad_result_type,
)
from .types import DYNAMIC, IRConstructionError, ScalarType, ShapedType, index, numpy_dtype, parse_dtype


BodyFn = Callable[..., Optional[Sequence[int]]]


class OpBuilder:
    def __init__(
        self,
        module: Module,
        block: Optional[int] = None,
        *,
        diagnostics: Optional[DiagnosticEngine] = None,
    ) -> None:
        self.module = module
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticEngine()
        self._block = module.body if block is None else block
        # Insert before this op; None means append at the end of the block.
        self._before: Optional[int] = None

    # ---- insertion point --------------------------------------------------

    def set_insertion_point_to_end(self, bid: int) -> None:
        self.module.block(bid)
        self._block, self._before = bid, None

    def set_insertion_point_to_start(self, bid: int) -> None:
        ops = self.module.block(bid).ops
        self._block, self._before = bid, (ops[0] if ops else None)

    def set_insertion_point(self, before: int) -> None:
        bid = self.module.op(before).parent_block
        if bid is None:
            raise IRConstructionError(f"cannot insert before detached operation #{before}")
        self._block, self._before = bid, before

    @property
    def insertion_block(self) -> int:
        return self._block

    @contextmanager
    def insertion_guard(self) -> Iterator["OpBuilder"]:
        saved = (self._block, self._before)
        try:
            yield self
        finally:
            self._block, self._before = saved

    # ---- generic creation -------------------------------------------------

    def create(
        self,
        kind: str,
        operands: Sequence[int],
        result_types: Sequence[IRType],
        attrs: Optional[Mapping[str, Any]] = None,
        *,
        num_regions: int = 0,
        num_inputs: int = 0,
        num_outputs: int = 0,
    ) -> int:
        oid = self.module.create_op(
            kind,
            operands,
            result_types,
            attrs,
            num_regions=num_regions,
            num_inputs=num_inputs,
            num_outputs=num_outputs,
        )
        if self._before is None:
            self.module.insert_op(oid, self._block)
        else:
            self.module.insert_op_before(oid, self._before)
        self.notify_op_created(oid)
        return oid

    def notify_op_created(self, oid: int) -> None:
        """Hook for subclasses that track new operations."""

    def result(self, oid: int, i: int = 0) -> int:
        return self.module.op(oid).results[i]

    def _single(self, kind: str, operands: Sequence[int], result_type: IRType, attrs=None) -> int:
        return self.result(self.create(kind, operands, [result_type], attrs))

    def _shaped(self, vid: int) -> ShapedType:
        t = self.module.type_of(vid)
        if not isinstance(t, ShapedType):
            raise IRConstructionError(f"expected a shaped value, got %{vid} : {t}")
        return t

    def _build_body(self, bid: int, body: BodyFn, *, terminator: bool = True) -> None:
        args = list(self.module.block(bid).args)
        with self.insertion_guard():
            self.set_insertion_point_to_end(bid)
            yielded = body(self, *args)
            if yielded is not None and terminator:
                self.yield_(list(yielded))

    def _fill_default_region(
        self,
        oid: int,
        input_types: Sequence[IRType],
        output_types: Sequence[IRType],
        captures: Sequence[int] = (),
    ) -> None:
        """Fill the payload of `oid`; the op is erased again if no body can be built."""
        try:
            bid = _region_builder.fill_structured_op_region(self, oid, input_types, output_types, captures)
        except IRConstructionError:
            self.module.erase_op(oid)
            raise
        if bid is None:
            self.module.erase_op(oid)
            raise IRConstructionError(f"could not build the payload of #{oid}")

    # ---- scalar ops -------------------------------------------------------

    def constant(self, value: Any, t: IRType | str) -> int:
        if isinstance(t, str):
            t = parse_dtype(t)
        if isinstance(t, ShapedType):
            if not t.has_static_shape():
                raise IRConstructionError(f"constant of type {t} needs a static shape")
            arr = np.asarray(value, dtype=numpy_dtype(t.element_type))
            payload: Any = np.broadcast_to(arr, t.shape).copy() if arr.ndim == 0 else arr.reshape(t.shape)
        elif t.kind == "float":
            payload = float(value)
        else:
            payload = int(value)
        return self._single(opset.CONSTANT, [], t, {"value": payload})

    def constant_index(self, value: int) -> int:
        return self.constant(int(value), index)

    def addf(self, lhs: int, rhs: int) -> int:
        return self._single(opset.ADDF, [lhs, rhs], self.module.type_of(lhs))

    def addi(self, lhs: int, rhs: int) -> int:
        return self._single(opset.ADDI, [lhs, rhs], self.module.type_of(lhs))

    def mulf(self, lhs: int, rhs: int) -> int:
        return self._single(opset.MULF, [lhs, rhs], self.module.type_of(lhs))

    def muli(self, lhs: int, rhs: int) -> int:
        return self._single(opset.MULI, [lhs, rhs], self.module.type_of(lhs))

    def cast(self, kind: str, to_type: ScalarType, value: int) -> int:
        if kind not in opset.SCALAR_CAST_OPS:
            raise IRConstructionError(f"{kind} is not a scalar cast")
        return self._single(kind, [value], to_type)

    # ---- casts and shape helpers ------------------------------------------

    def tensor_cast(self, source: int, to_type: ShapedType) -> int:
        return self._single(opset.TENSOR_CAST, [source], to_type)

    def memref_cast(self, source: int, to_type: ShapedType) -> int:
        return self._single(opset.MEMREF_CAST, [source], to_type)

    def create_or_fold_dim(self, source: int, i: int) -> int:
        t = self._shaped(source)
        if not 0 <= i < t.rank:
            raise IRConstructionError(f"dim index {i} out of range for {t}")
        if t.shape[i] != DYNAMIC:
            return self.constant_index(t.shape[i])
        producer = self.module.defining_op(source)
        if producer is not None and self.module.op(producer).kind == opset.INIT_TENSOR:
            return init_tensor_dynamic_size(self.module.op(producer), i)
        return self._single(opset.DIM, [source], index, {"index": i})

    def create_or_fold_affine_apply(self, amap: AffineMap, operands: Sequence[int]) -> int:
        """Apply a single-result map to dim operands followed by symbol operands."""
        if amap.num_results != 1 or len(operands) != amap.num_dims + amap.num_symbols:
            raise IRConstructionError(f"affine.apply of {amap} needs one result and matching operands")
        expr = amap.results[0]
        if isinstance(expr, AffineDimExpr):
            return operands[expr.position]
        if isinstance(expr, AffineSymbolExpr):
            return operands[amap.num_dims + expr.position]
        if isinstance(expr, AffineConstantExpr):
            return self.constant_index(expr.value)
        known = [get_constant_int(self.module, v) for v in operands]
        if all(k is not None for k in known):
            dims = known[: amap.num_dims]
            syms = known[amap.num_dims :]
            return self.constant_index(amap.evaluate(dims, syms)[0])  # type: ignore[arg-type]
        return self._single(opset.AFFINE_APPLY, operands, index, {"map": amap})

    def yield_(self, values: Sequence[int] = ()) -> int:
        return self.create(opset.YIELD, values, [])

    def return_(self, values: Sequence[int] = ()) -> int:
        return self.create(opset.RETURN, values, [])

    # ---- structured ops ---------------------------------------------------

    def _tensor_result_types(self, outputs: Sequence[int]) -> List[IRType]:
        return [t for t in (self.module.type_of(v) for v in outputs) if isinstance(t, ShapedType) and t.is_tensor()]

    def copy(
        self,
        input: int,
        output: int,
        input_permutation: Optional[AffineMap] = None,
        output_permutation: Optional[AffineMap] = None,
    ) -> int:
        attrs: Dict[str, Any] = {}
        if input_permutation is not None:
            attrs["input_permutation"] = input_permutation
        if output_permutation is not None:
            attrs["output_permutation"] = output_permutation
        oid = self.create(
            opset.COPY,
            [input, output],
            self._tensor_result_types([output]),
            attrs,
            num_regions=1,
            num_inputs=1,
            num_outputs=1,
        )
        self._fill_default_region(oid, [self.module.type_of(input)], [self.module.type_of(output)])
        return oid

    def fill(self, output: int, value: int) -> int:
        oid = self.create(
            opset.FILL,
            [output, value],
            self._tensor_result_types([output]),
            num_regions=1,
            num_inputs=0,
            num_outputs=1,
        )
        self._fill_default_region(oid, [], [self.module.type_of(output)], captures=[value])
        return oid

    def generic(
        self,
        inputs: Sequence[int],
        outputs: Sequence[int],
        indexing_maps: Sequence[AffineMap],
        iterator_types: Sequence[str],
        body: BodyFn,
        *,
        result_types: Optional[Sequence[IRType]] = None,
        sparse: Optional[Sequence[Sequence[str]]] = None,
        doc: Optional[str] = None,
        library_call: Optional[str] = None,
        indexed: bool = False,
    ) -> int:
        """
        Build a generic op. `body(builder, *block_args)` fills the payload and
        returns the values to yield (or None when it created the yield itself).
        """
        kind = opset.INDEXED_GENERIC if indexed else opset.GENERIC
        attrs: Dict[str, Any] = {
            "indexing_maps": tuple(indexing_maps),
            "iterator_types": tuple(iterator_types),
        }
        if sparse is not None:
            attrs["sparse"] = tuple(tuple(s) for s in sparse)
        if doc is not None:
            attrs["doc"] = doc
        if library_call is not None:
            attrs["library_call"] = library_call
        rtypes = list(result_types) if result_types is not None else self._tensor_result_types(outputs)
        oid = self.create(
            kind,
            list(inputs) + list(outputs),
            rtypes,
            attrs,
            num_regions=1,
            num_inputs=len(inputs),
            num_outputs=len(outputs),
        )
        arg_types: List[IRType] = [index] * (len(iterator_types) if indexed else 0)
        for v in list(inputs) + list(outputs):
            t = self.module.type_of(v)
            arg_types.append(t.element_type if isinstance(t, ShapedType) else t)
        bid = self.module.add_region_block(oid, arg_types)
        self._build_body(bid, body)
        return oid

    def named(
        self,
        kind: str,
        inputs: Sequence[int],
        outputs: Sequence[int],
        result_types: Optional[Sequence[IRType]] = None,
    ) -> int:
        if kind not in opset.NAMED_ARITH_OPS:
            raise IRConstructionError(f"{kind} is not a named arithmetic op")
        rtypes = list(result_types) if result_types is not None else self._tensor_result_types(outputs)
        oid = self.create(
            kind,
            list(inputs) + list(outputs),
            rtypes,
            num_regions=1,
            num_inputs=len(inputs),
            num_outputs=len(outputs),
        )
        self._fill_default_region(
            oid,
            [self.module.type_of(v) for v in inputs],
            [self.module.type_of(v) for v in outputs],
        )
        return oid

    def matmul(self, lhs: int, rhs: int, out: int) -> int:
        return self.named(opset.MATMUL, [lhs, rhs], [out])

    def conv(
        self,
        input: int,
        filter: int,
        output: int,
        strides: Optional[Sequence[int]] = None,
        dilations: Optional[Sequence[int]] = None,
        padding: Optional[Sequence[Sequence[int]]] = None,
    ) -> int:
        attrs: Dict[str, Any] = {}
        if strides is not None:
            attrs["strides"] = tuple(strides)
        if dilations is not None:
            attrs["dilations"] = tuple(dilations)
        if padding is not None:
            attrs["padding"] = tuple(tuple(p) for p in padding)
        return self.create(opset.CONV, [input, filter, output], [], attrs, num_inputs=2, num_outputs=1)

    def pooling(
        self,
        kind: str,
        input: int,
        window_dims: int,
        output: int,
        strides: Optional[Sequence[int]] = None,
        dilations: Optional[Sequence[int]] = None,
    ) -> int:
        if kind not in opset.POOLING_OPS:
            raise IRConstructionError(f"{kind} is not a pooling op")
        attrs: Dict[str, Any] = {}
        if strides is not None:
            attrs["strides"] = tuple(strides)
        if dilations is not None:
            attrs["dilations"] = tuple(dilations)
        return self.create(kind, [input, window_dims, output], [], attrs, num_inputs=2, num_outputs=1)

    # ---- reshape / pad / init ---------------------------------------------

    def reshape(self, src: int, reassociation, result_type: Optional[ShapedType] = None) -> int:
        maps = reassociation_to_maps(reassociation)
        if result_type is None:
            result_type = compute_reshape_collapsed_type(self._shaped(src), maps)
        return self._single(opset.RESHAPE, [src], result_type, {"reassociation": tuple(maps)})

    def tensor_reshape(self, src: int, reassociation, result_type: Optional[ShapedType] = None) -> int:
        maps = reassociation_to_maps(reassociation)
        if result_type is None:
            result_type = compute_tensor_reshape_collapsed_type(self._shaped(src), maps)
        return self._single(opset.TENSOR_RESHAPE, [src], result_type, {"reassociation": tuple(maps)})

    def pad_tensor(
        self,
        source: int,
        static_low: Sequence[int],
        static_high: Sequence[int],
        low_values: Sequence[int] = (),
        high_values: Sequence[int] = (),
        *,
        pad_value: Optional[int] = None,
        body: Optional[BodyFn] = None,
        result_type: Optional[ShapedType] = None,
    ) -> int:
        """
        Pad `source`. Entries of `static_low`/`static_high` equal to DYNAMIC
        take their value, in order, from `low_values`/`high_values`. The
        padding value comes from `pad_value` or from `body(builder, *ivs)`.
        """
        if sum(1 for v in static_low if v == DYNAMIC) != len(low_values):
            raise IRConstructionError("number of dynamic low pads does not match the low values")
        if sum(1 for v in static_high if v == DYNAMIC) != len(high_values):
            raise IRConstructionError("number of dynamic high pads does not match the high values")
        src_t = self._shaped(source)
        if result_type is None:
            result_type = pad_result_type(src_t, static_low, static_high)
        oid = self.create(
            opset.PAD_TENSOR,
            [source, *low_values, *high_values],
            [result_type],
            {"static_low": tuple(static_low), "static_high": tuple(static_high)},
            num_regions=1,
        )
        bid = self.module.add_region_block(oid, [index] * src_t.rank)
        if body is not None:
            self._build_body(bid, body)
        elif pad_value is not None:
            with self.insertion_guard():
                self.set_insertion_point_to_end(bid)
                self.yield_([pad_value])
        return self.result(oid)

    def pad_high(self, result_type: ShapedType, source: int, pad_value: int) -> int:
        """Pad `source` at the high end of each dim up to the static `result_type`."""
        if not result_type.has_static_shape():
            raise IRConstructionError(f"pad_high needs a static result type, got {result_type}")
        static_high: List[int] = []
        high_values: List[int] = []
        for i, size in enumerate(result_type.shape):
            extent = self.create_or_fold_dim(source, i)
            high = self.create_or_fold_affine_apply(AffineMap(0, 1, (size - AffineSymbolExpr(0),)), [extent])
            known = get_constant_int(self.module, high)
            if known is None:
                static_high.append(DYNAMIC)
                high_values.append(high)
            else:
                static_high.append(known)
        return self.pad_tensor(
            source,
            [0] * result_type.rank,
            static_high,
            (),
            high_values,
            pad_value=pad_value,
            result_type=result_type,
        )

    def init_tensor(
        self,
        static_sizes: Sequence[int],
        element_type: ScalarType | str,
        dynamic_sizes: Sequence[int] = (),
    ) -> int:
        if sum(1 for s in static_sizes if s == DYNAMIC) != len(dynamic_sizes):
            raise IRConstructionError("number of dynamic sizes does not match the dynamic extents")
        result_type = init_tensor_result_type(static_sizes, parse_dtype(element_type))
        return self._single(opset.INIT_TENSOR, dynamic_sizes, result_type, {"static_sizes": tuple(static_sizes)})

    def tiled_loop(
        self,
        lower_bounds: Sequence[int],
        upper_bounds: Sequence[int],
        steps: Sequence[int],
        inputs: Sequence[int],
        outputs: Sequence[int],
        iterator_types: Sequence[str],
        body: Optional[BodyFn] = None,
    ) -> int:
        """Block arguments are the induction variables followed by the inputs and outputs."""
        segments = (len(lower_bounds), len(upper_bounds), len(steps), len(inputs), len(outputs))
        oid = self.create(
            opset.TILED_LOOP,
            [*lower_bounds, *upper_bounds, *steps, *inputs, *outputs],
            self._tensor_result_types(outputs),
            {"operand_segment_sizes": segments, "iterator_types": tuple(iterator_types)},
            num_regions=1,
        )
        arg_types: List[IRType] = [index] * len(lower_bounds)
        arg_types += [self.module.type_of(v) for v in list(inputs) + list(outputs)]
        bid = self.module.add_region_block(oid, arg_types)
        if body is not None:
            self._build_body(bid, body)
        else:
            with self.insertion_guard():
                self.set_insertion_point_to_end(bid)
                self.yield_([])
        return oid


__all__ = ["OpBuilder"]
