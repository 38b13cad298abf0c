"""
Numpy-based reference interpreter for the structured-op IR.

Evaluates the top-level block of a `Module` on concrete arrays so rewrites can
be checked for semantic preservation. Tensors are values (outputs are copied
before being written); memrefs are numpy arrays mutated in place, so buffer
reshapes alias their source when numpy can return a view.

Supports constants, scalar arith/casts, tensor/memref casts (with runtime
shape checks), dim, affine.apply, init_tensor, fill, copy, generic /
indexed_generic / named arithmetic ops (by walking the iteration space of the
indexing maps and interpreting the scalar body), both reshapes and pad_tensor.
"""

from __future__ import annotations

from collections import ChainMap
from typing import Any, Dict, List, Mapping, MutableMapping, Sequence

import numpy as np

from structured_ir.ir import interface
from structured_ir.ir.affine import reassociation_to_indices
from structured_ir.ir.core import Module, Operation
from structured_ir.ir.shape_inference import pad_operand_segments
from structured_ir.ir.types import DYNAMIC, ScalarType, ShapedType, numpy_dtype
from structured_ir.ops import opset


NUM_BIN_OPS = {
    opset.ADDF: np.add,
    opset.ADDI: np.add,
    opset.MULF: np.multiply,
    opset.MULI: np.multiply,
}


def _convert(value: Any, t: ScalarType) -> Any:
    # astype wraps on integer truncation instead of raising.
    return np.asarray(value).astype(numpy_dtype(t))[()]


def _check_runtime_shape(arr: np.ndarray, t: ShapedType, what: str) -> None:
    if arr.ndim != t.rank:
        raise ValueError(f"{what}: runtime rank {arr.ndim} does not match {t}")
    for i, (actual, expected) in enumerate(zip(arr.shape, t.shape)):
        if expected != DYNAMIC and actual != expected:
            raise ValueError(f"{what}: runtime extent {actual} of dim {i} does not match {t}")


def execute_module(module: Module, inputs: Mapping[int, Any] | Sequence[Any]) -> List[Any]:
    """
    Run the top-level block. `inputs` binds the module's entry arguments,
    either by value handle or positionally. Returns the operands of the
    `func.return` op (an empty list when there is none).
    """
    args = module.block(module.body).args
    if isinstance(inputs, Mapping):
        env: Dict[int, Any] = dict(inputs)
    else:
        if len(inputs) != len(args):
            raise ValueError(f"module takes {len(args)} arguments, got {len(inputs)}")
        env = dict(zip(args, inputs))
    for a in args:
        if a not in env:
            raise ValueError(f"missing input for entry argument %{a}")

    for oid in module.block(module.body).ops:
        op = module.op(oid)
        if op.kind == opset.RETURN:
            return [env[v] for v in op.operands]
        _execute_op(module, op, env)
    return []


def _run_block(module: Module, bid: int, args: Sequence[Any], env: MutableMapping[int, Any]) -> List[Any]:
    local: MutableMapping[int, Any] = ChainMap(dict(zip(module.block(bid).args, args)), env)
    for oid in module.block(bid).ops:
        op = module.op(oid)
        if op.kind == opset.YIELD:
            return [local[v] for v in op.operands]
        _execute_op(module, op, local)
    raise ValueError(f"block ^{bid} has no terminator")


def _execute_op(module: Module, op: Operation, env: MutableMapping[int, Any]) -> None:
    if op.kind == opset.CONSTANT:
        value = op.attrs["value"]
        env[op.results[0]] = value.copy() if isinstance(value, np.ndarray) else _convert(value, module.type_of(op.results[0]))  # type: ignore[arg-type]
        return
    if op.kind in NUM_BIN_OPS:
        lhs, rhs = env[op.operands[0]], env[op.operands[1]]
        t = module.type_of(op.results[0])
        env[op.results[0]] = _convert(NUM_BIN_OPS[op.kind](lhs, rhs), t)  # type: ignore[arg-type]
        return
    if op.kind in opset.SCALAR_CAST_OPS:
        env[op.results[0]] = _convert(env[op.operands[0]], module.type_of(op.results[0]))  # type: ignore[arg-type]
        return
    if op.kind in (opset.TENSOR_CAST, opset.MEMREF_CAST):
        arr = env[op.operands[0]]
        _check_runtime_shape(arr, module.type_of(op.results[0]), op.kind)  # type: ignore[arg-type]
        env[op.results[0]] = arr
        return
    if op.kind == opset.DIM:
        env[op.results[0]] = np.int64(np.shape(env[op.operands[0]])[op.attrs["index"]])
        return
    if op.kind == opset.AFFINE_APPLY:
        amap = op.attrs["map"]
        operands = [int(env[v]) for v in op.operands]
        env[op.results[0]] = np.int64(amap.evaluate(operands[: amap.num_dims], operands[amap.num_dims :])[0])
        return
    if op.kind == opset.INIT_TENSOR:
        t: ShapedType = module.type_of(op.results[0])  # type: ignore[assignment]
        dynamic = iter(int(env[v]) for v in op.operands)
        shape = [next(dynamic) if s == DYNAMIC else s for s in op.attrs["static_sizes"]]
        env[op.results[0]] = np.zeros(shape, dtype=numpy_dtype(t.element_type))
        return
    if op.kind in opset.RESHAPE_OPS:
        env[op.results[0]] = _reshape(module, op, env)
        return
    if op.kind == opset.PAD_TENSOR:
        env[op.results[0]] = _pad(module, op, env)
        return
    if op.kind == opset.FILL:
        out = _output_buffer(module, op.outputs[0], env)
        out[...] = env[op.extra_operands[0]]
        _bind_tensor_results(module, op, [out], env)
        return
    if op.kind in (opset.COPY,) or op.kind in opset.GENERIC_OPS or op.kind in opset.NAMED_ARITH_OPS:
        _execute_structured(module, op, env)
        return
    raise ValueError(f"Unsupported op: {op.kind}")


def _output_buffer(module: Module, vid: int, env: MutableMapping[int, Any]) -> np.ndarray:
    t = module.type_of(vid)
    arr = env[vid]
    # Tensor outputs are init values; never write through them.
    return np.array(arr, copy=True) if isinstance(t, ShapedType) and t.is_tensor() else arr


def _bind_tensor_results(module: Module, op: Operation, outs: Sequence[np.ndarray], env: MutableMapping[int, Any]) -> None:
    results = iter(op.results)
    for v, arr in zip(op.outputs, outs):
        t = module.type_of(v)
        if isinstance(t, ShapedType) and t.is_tensor():
            env[next(results)] = arr


def _loop_bounds(module: Module, op: Operation, maps, operand_arrays: Sequence[Any]) -> List[int]:
    num_loops = maps[0].num_dims if maps else 0
    bounds: List[int] = [-1] * num_loops
    for amap, arr in zip(maps, operand_arrays):
        positions = amap.dim_positions()
        if positions is None:
            continue
        for r, d in enumerate(positions):
            if bounds[d] < 0:
                bounds[d] = int(np.shape(arr)[r])
    if any(b < 0 for b in bounds):
        raise ValueError(f"cannot infer loop bounds of #{op.id} ({op.kind}) from its operands")
    return bounds


def _execute_structured(module: Module, op: Operation, env: MutableMapping[int, Any]) -> None:
    maps = interface.indexing_maps(module, op)
    if maps is None:
        raise ValueError(f"Unsupported op: {op.kind}")
    ins = [env[v] for v in op.inputs]
    outs = [_output_buffer(module, v, env) for v in op.outputs]
    shaped = [isinstance(module.type_of(v), ShapedType) for v in op.inputs + op.outputs]
    bounds = _loop_bounds(module, op, [m for m, s in zip(maps, shaped) if s], [a for a, s in zip(ins + outs, shaped) if s])
    body = module.region_entry(op.id)
    if body is None:
        raise ValueError(f"#{op.id} ({op.kind}) has no payload")
    indexed = interface.num_payload_induction_vars(op) > 0
    n_in = len(ins)

    for ivs in np.ndindex(*bounds):
        args: List[Any] = [np.int64(i) for i in ivs] if indexed else []
        for amap, arr, is_shaped in zip(maps, ins + outs, shaped):
            args.append(arr[tuple(amap.evaluate(ivs))] if is_shaped else arr)
        yielded = _run_block(module, body, args, env)
        for k, value in enumerate(yielded):
            amap = maps[n_in + k]
            outs[k][tuple(amap.evaluate(ivs))] = value
    _bind_tensor_results(module, op, outs, env)


def _reshape(module: Module, op: Operation, env: MutableMapping[int, Any]) -> np.ndarray:
    src = env[op.operands[0]]
    res_t: ShapedType = module.type_of(op.results[0])  # type: ignore[assignment]
    groups = reassociation_to_indices(op.attrs["reassociation"])
    if res_t.rank < src.ndim:
        shape = [int(np.prod([src.shape[d] for d in g], dtype=np.int64)) for g in groups]
    else:
        shape = list(res_t.shape)
        for collapsed, g in enumerate(groups):
            dynamic = [d for d in g if shape[d] == DYNAMIC]
            if not dynamic:
                continue
            if len(dynamic) > 1:
                raise ValueError(f"cannot expand dim {collapsed} into more than one dynamic extent")
            known = int(np.prod([shape[d] for d in g if d != dynamic[0]], dtype=np.int64))
            shape[dynamic[0]] = src.shape[collapsed] // known if known else 0
    out = np.reshape(src, shape)
    _check_runtime_shape(out, res_t, op.kind)
    return out


def _pad(module: Module, op: Operation, env: MutableMapping[int, Any]) -> np.ndarray:
    src = env[op.operands[0]]
    low_vals, high_vals = pad_operand_segments(op)
    low_it = iter(int(env[v]) for v in low_vals)
    high_it = iter(int(env[v]) for v in high_vals)
    low = [next(low_it) if s == DYNAMIC else s for s in op.attrs["static_low"]]
    high = [next(high_it) if s == DYNAMIC else s for s in op.attrs["static_high"]]
    res_t: ShapedType = module.type_of(op.results[0])  # type: ignore[assignment]
    shape = [d + lo + hi for d, lo, hi in zip(src.shape, low, high)]
    out = np.empty(shape, dtype=numpy_dtype(res_t.element_type))
    body = module.region_entry(op.id)
    for ivs in np.ndindex(*shape):
        inner = tuple(i - lo for i, lo in zip(ivs, low))
        if all(0 <= i < d for i, d in zip(inner, src.shape)):
            out[ivs] = src[inner]
        else:
            out[ivs] = _run_block(module, body, [np.int64(i) for i in ivs], env)[0]  # type: ignore[arg-type]
    _check_runtime_shape(out, res_t, op.kind)
    return out


__all__ = ["execute_module"]
