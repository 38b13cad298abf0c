from .types import (
    DYNAMIC,
    DYNAMIC_STRIDE_OR_OFFSET,
    IRConstructionError,
    NumericKind,
    ScalarType,
    ShapedType,
    StridedLayout,
    memref_type,
    parse_dtype,
    tensor_type,
)
from .affine import AffineExpr, AffineMap, const, dim, symbol
from .core import Block, Module, Operation, Value
from .builder import OpBuilder
from .verifier import verify_module, verify_op
from .canonicalize import CanonicalizeConfig, RewritePattern, apply_patterns_greedily, canonicalize

__all__ = [
    "DYNAMIC",
    "DYNAMIC_STRIDE_OR_OFFSET",
    "IRConstructionError",
    "NumericKind",
    "ScalarType",
    "ShapedType",
    "StridedLayout",
    "memref_type",
    "parse_dtype",
    "tensor_type",
    "AffineExpr",
    "AffineMap",
    "const",
    "dim",
    "symbol",
    "Block",
    "Module",
    "Operation",
    "Value",
    "OpBuilder",
    "verify_module",
    "verify_op",
    "CanonicalizeConfig",
    "RewritePattern",
    "apply_patterns_greedily",
    "canonicalize",
]
