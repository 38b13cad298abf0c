"""
Canonical operation kinds for the structured-op IR.

This module is the single source of truth for op kind names and the groups
the verifier, region builder and canonicalizer dispatch on. It intentionally
does NOT import `structured_ir.ir` (to avoid cycles).
"""

from __future__ import annotations


COPY = "structured.copy"
FILL = "structured.fill"
GENERIC = "structured.generic"
INDEXED_GENERIC = "structured.indexed_generic"
MATMUL = "structured.matmul"
MATVEC = "structured.matvec"
DOT = "structured.dot"
ELEMWISE_ADD = "structured.elemwise_add"
ELEMWISE_MUL = "structured.elemwise_mul"
CONV = "structured.conv"
POOLING_MAX = "structured.pooling_max"
POOLING_MIN = "structured.pooling_min"
POOLING_SUM = "structured.pooling_sum"
RESHAPE = "structured.reshape"
TENSOR_RESHAPE = "structured.tensor_reshape"
PAD_TENSOR = "structured.pad_tensor"
INIT_TENSOR = "structured.init_tensor"
YIELD = "structured.yield"
TILED_LOOP = "structured.tiled_loop"

CONSTANT = "arith.constant"
ADDF = "arith.addf"
ADDI = "arith.addi"
MULF = "arith.mulf"
MULI = "arith.muli"
SITOFP = "arith.sitofp"
UITOFP = "arith.uitofp"
FPTOSI = "arith.fptosi"
FPTOUI = "arith.fptoui"
EXTSI = "arith.extsi"
EXTUI = "arith.extui"
TRUNCI = "arith.trunci"
EXTF = "arith.extf"
TRUNCF = "arith.truncf"
TENSOR_CAST = "tensor.cast"
MEMREF_CAST = "memref.cast"
DIM = "shape.dim"
AFFINE_APPLY = "affine.apply"
RETURN = "func.return"

# Ops whose payload is a pointwise body over an implicit loop nest.
POOLING_OPS: set[str] = {POOLING_MAX, POOLING_MIN, POOLING_SUM}

NAMED_ARITH_OPS: set[str] = {MATMUL, MATVEC, DOT, ELEMWISE_ADD, ELEMWISE_MUL}

GENERIC_OPS: set[str] = {GENERIC, INDEXED_GENERIC}

STRUCTURED_OPS: set[str] = set().union(
    {COPY, FILL, CONV},
    GENERIC_OPS,
    NAMED_ARITH_OPS,
    POOLING_OPS,
)

RESHAPE_OPS: set[str] = {RESHAPE, TENSOR_RESHAPE}

SCALAR_ARITH_OPS: set[str] = {ADDF, ADDI, MULF, MULI}

SCALAR_CAST_OPS: set[str] = {SITOFP, UITOFP, FPTOSI, FPTOUI, EXTSI, EXTUI, TRUNCI, EXTF, TRUNCF}

# Ops with no side effects: erasable once their results are unused.
PURE_OPS: set[str] = set().union(
    {CONSTANT, TENSOR_CAST, MEMREF_CAST, DIM, AFFINE_APPLY, TENSOR_RESHAPE, RESHAPE, PAD_TENSOR, INIT_TENSOR},
    SCALAR_ARITH_OPS,
    SCALAR_CAST_OPS,
)

SUPPORTED_OPS: set[str] = set().union(
    STRUCTURED_OPS,
    RESHAPE_OPS,
    PURE_OPS,
    {YIELD, TILED_LOOP, RETURN},
)

ITERATOR_TYPES: set[str] = {"parallel", "reduction", "window"}


__all__ = [
    "COPY",
    "FILL",
    "GENERIC",
    "INDEXED_GENERIC",
    "MATMUL",
    "MATVEC",
    "DOT",
    "ELEMWISE_ADD",
    "ELEMWISE_MUL",
    "CONV",
    "POOLING_MAX",
    "POOLING_MIN",
    "POOLING_SUM",
    "RESHAPE",
    "TENSOR_RESHAPE",
    "PAD_TENSOR",
    "INIT_TENSOR",
    "YIELD",
    "TILED_LOOP",
    "CONSTANT",
    "ADDF",
    "ADDI",
    "MULF",
    "MULI",
    "SITOFP",
    "UITOFP",
    "FPTOSI",
    "FPTOUI",
    "EXTSI",
    "EXTUI",
    "TRUNCI",
    "EXTF",
    "TRUNCF",
    "TENSOR_CAST",
    "MEMREF_CAST",
    "DIM",
    "AFFINE_APPLY",
    "RETURN",
    "POOLING_OPS",
    "NAMED_ARITH_OPS",
    "GENERIC_OPS",
    "STRUCTURED_OPS",
    "RESHAPE_OPS",
    "SCALAR_ARITH_OPS",
    "SCALAR_CAST_OPS",
    "PURE_OPS",
    "SUPPORTED_OPS",
    "ITERATOR_TYPES",
]
