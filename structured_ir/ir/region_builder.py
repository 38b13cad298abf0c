"""
Default payload bodies for structured ops built without an explicit region.

Each op kind registers a body builder together with the number of block
arguments it expects. Arithmetic is polymorphic over the closed
`NumericKind` set and inserts the implicit casts needed to bring operands to
the output element type. A cast that cannot be synthesized degrades to the
uncast operand plus an `unsupported-cast` warning; the verifier rejects the
resulting body later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence

from ..diagnostics import Diagnostic, ErrorKind, OpLocation
from ..ops import opset
from .core import IRType
from .interface import num_payload_induction_vars
from .types import IRConstructionError, NumericKind, ScalarType, ShapedType, index

if TYPE_CHECKING:
    from .builder import OpBuilder


logger = logging.getLogger(__name__)


ErrorHandler = Callable[[int, int], None]


class RegionBuilderHelper:
    def __init__(self, builder: "OpBuilder", block: int, op: Optional[int] = None) -> None:
        self.builder = builder
        self.block = block
        self.op = op

    @property
    def module(self):
        return self.builder.module

    def _type(self, vid: int) -> ScalarType:
        t = self.module.type_of(vid)
        if not isinstance(t, ScalarType):
            raise IRConstructionError(f"payload value %{vid} is not a scalar: {t}")
        return t

    def cast(self, to_type: ScalarType, operand: int) -> int:
        """Cast `operand` to `to_type`, or return it unchanged with a warning."""
        from_type = self._type(operand)
        if from_type == to_type:
            return operand
        b = self.builder
        src, dst = from_type.numeric_kind, to_type.numeric_kind
        if dst is NumericKind.INTEGER:
            if src is NumericKind.FLOAT:
                return b.cast(opset.FPTOSI if to_type.signed else opset.FPTOUI, to_type, operand)
            if src is NumericKind.INTEGER:
                if to_type.width > from_type.width:
                    return b.cast(opset.EXTSI if from_type.signed else opset.EXTUI, to_type, operand)
                if to_type.width < from_type.width:
                    return b.cast(opset.TRUNCI, to_type, operand)
        elif dst is NumericKind.FLOAT:
            if src is NumericKind.INTEGER:
                return b.cast(opset.SITOFP if from_type.signed else opset.UITOFP, to_type, operand)
            # bf16 <-> f16 has no defined conversion.
            if src is NumericKind.FLOAT:
                if to_type.width > from_type.width:
                    return b.cast(opset.EXTF, to_type, operand)
                if to_type.width < from_type.width:
                    return b.cast(opset.TRUNCF, to_type, operand)

        message = f"could not cast operand of type {from_type} to {to_type}"
        logger.warning("%s (op #%s)", message, self.op)
        b.diagnostics.emit(
            Diagnostic(
                level="warning",
                kind=ErrorKind.UNSUPPORTED_CAST,
                message=message,
                location=OpLocation(self.op, self.module.op(self.op).kind if self.op is not None else None),
            )
        )
        return operand

    def _numeric_kind(self, vid: int) -> NumericKind:
        kind = self._type(vid).numeric_kind
        if kind is None:
            raise IRConstructionError(f"unsupported non numeric type {self._type(vid)}")
        return kind

    def apply_add(self, lhs: int, rhs: int) -> int:
        kind = self._numeric_kind(lhs)
        if kind is NumericKind.FLOAT:
            return self.builder.addf(lhs, rhs)
        if kind is NumericKind.INTEGER:
            return self.builder.addi(lhs, rhs)
        raise IRConstructionError(f"unhandled numeric kind {kind}")

    def apply_mul(self, lhs: int, rhs: int) -> int:
        kind = self._numeric_kind(lhs)
        if kind is NumericKind.FLOAT:
            return self.builder.mulf(lhs, rhs)
        if kind is NumericKind.INTEGER:
            return self.builder.muli(lhs, rhs)
        raise IRConstructionError(f"unhandled numeric kind {kind}")

    def yield_outputs(self, values: Sequence[int]) -> int:
        if not values:
            raise IRConstructionError("structured ops must yield outputs")
        return self.builder.yield_(values)


BodyBuilder = Callable[[RegionBuilderHelper, List[int], Sequence[int]], None]


@dataclass(frozen=True)
class RegionBuilderSpec:
    num_region_args: int
    build: BodyBuilder


def _copy_body(h: RegionBuilderHelper, args: List[int], captures: Sequence[int]) -> None:
    h.yield_outputs([args[0]])


def _fill_body(h: RegionBuilderHelper, args: List[int], captures: Sequence[int]) -> None:
    if len(captures) != 1:
        raise IRConstructionError(f"fill body expects 1 capture, got {len(captures)}")
    h.yield_outputs(list(captures))


def _mul_acc_body(h: RegionBuilderHelper, args: List[int], captures: Sequence[int]) -> None:
    a, b, acc = args
    out_t = h._type(acc)
    prod = h.apply_mul(h.cast(out_t, a), h.cast(out_t, b))
    h.yield_outputs([h.apply_add(acc, prod)])


def _elemwise_body(apply: str) -> BodyBuilder:
    def build(h: RegionBuilderHelper, args: List[int], captures: Sequence[int]) -> None:
        a, b, out = args
        out_t = h._type(out)
        fn = h.apply_add if apply == "add" else h.apply_mul
        h.yield_outputs([fn(h.cast(out_t, a), h.cast(out_t, b))])

    return build


_REGION_BUILDERS: Dict[str, RegionBuilderSpec] = {
    opset.COPY: RegionBuilderSpec(2, _copy_body),
    opset.FILL: RegionBuilderSpec(1, _fill_body),
    opset.MATMUL: RegionBuilderSpec(3, _mul_acc_body),
    opset.MATVEC: RegionBuilderSpec(3, _mul_acc_body),
    opset.DOT: RegionBuilderSpec(3, _mul_acc_body),
    opset.ELEMWISE_ADD: RegionBuilderSpec(3, _elemwise_body("add")),
    opset.ELEMWISE_MUL: RegionBuilderSpec(3, _elemwise_body("mul")),
}


def num_region_args(kind: str) -> int:
    return _REGION_BUILDERS[kind].num_region_args


def _raise_arity(expected: int, actual: int) -> None:
    raise IRConstructionError(f"expected {expected} region arguments, got {actual}")


def _element_type(t: IRType) -> IRType:
    return t.element_type if isinstance(t, ShapedType) else t


def fill_structured_op_region(
    builder: "OpBuilder",
    op: int,
    input_types: Sequence[IRType],
    output_types: Sequence[IRType],
    captures: Sequence[int] = (),
    error_handler: Optional[ErrorHandler] = None,
) -> Optional[int]:
    """
    Create the payload block of `op` and fill it with the kind's default body.

    Returns the new block, or None when the argument count does not match
    the kind's arity (after `error_handler(expected, actual)` ran); `op` is
    left without a payload block in that case.
    """
    module = builder.module
    kind = module.op(op).kind
    entry = _REGION_BUILDERS.get(kind)
    if entry is None:
        raise IRConstructionError(f"no default region builder for {kind}")
    arg_types: List[IRType] = [index] * num_payload_induction_vars(module.op(op))
    arg_types += [_element_type(t) for t in list(input_types) + list(output_types)]
    actual = len(arg_types)
    if actual != entry.num_region_args:
        (error_handler or _raise_arity)(entry.num_region_args, actual)
        return None

    bid = module.add_region_block(op, arg_types)
    helper = RegionBuilderHelper(builder, bid, op)
    with builder.insertion_guard():
        builder.set_insertion_point_to_end(bid)
        entry.build(helper, list(module.block(bid).args), captures)
    return bid


__all__ = [
    "RegionBuilderHelper",
    "RegionBuilderSpec",
    "num_region_args",
    "fill_structured_op_region",
]
