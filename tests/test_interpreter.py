import numpy as np
import pytest

from structured_ir.ir.affine import AffineMap
from structured_ir.ir.builder import OpBuilder
from structured_ir.ir.core import Module
from structured_ir.ir.types import DYNAMIC, f32, index, memref_type, tensor_type
from structured_ir.ir.verifier import verify_module
from structured_ir.ops import opset
from verify.interpreter import execute_module


def _module(*arg_types):
    m = Module()
    b = OpBuilder(m)
    return m, b, [m.add_argument(t) for t in arg_types]


def test_pad_with_constant_value():
    m, b, (src,) = _module(tensor_type([2], f32))
    pad_value = b.constant(-1.0, f32)
    padded = b.pad_tensor(src, [1], [2], pad_value=pad_value)
    b.return_([padded])
    assert verify_module(m)

    (out,) = execute_module(m, [np.array([5.0, 6.0], dtype=np.float32)])
    np.testing.assert_array_equal(out, np.array([-1, 5, 6, -1, -1], dtype=np.float32))


def test_pad_high_to_static_shape():
    m, b, (src,) = _module(tensor_type([DYNAMIC], f32))
    padded = b.pad_high(tensor_type([5], f32), src, b.constant(0.0, f32))
    b.return_([padded])
    assert verify_module(m)
    assert m.type_of(padded) == tensor_type([5], f32)

    (out,) = execute_module(m, [np.array([1.0, 2.0, 3.0], dtype=np.float32)])
    np.testing.assert_array_equal(out, np.array([1, 2, 3, 0, 0], dtype=np.float32))


def test_indexed_generic_sees_loop_indices():
    m, b, (x, out) = _module(tensor_type([4], index), tensor_type([4], index))
    ident = AffineMap.identity(1)
    g = b.generic([x], [out], [ident, ident], ["parallel"], lambda bb, i, a, o: [bb.addi(i, a)], indexed=True)
    b.return_([b.result(g)])
    assert verify_module(m)

    (res,) = execute_module(m, [np.full(4, 10, dtype=np.int64), np.zeros(4, dtype=np.int64)])
    np.testing.assert_array_equal(res, np.array([10, 11, 12, 13]))


def test_buffer_fill_writes_in_place():
    m, b, (buf,) = _module(memref_type([4], f32))
    b.fill(buf, b.constant(3.0, f32))
    data = np.zeros(4, dtype=np.float32)
    assert execute_module(m, [data]) == []
    np.testing.assert_array_equal(data, np.full(4, 3.0, dtype=np.float32))


def test_tensor_fill_leaves_its_init_untouched():
    m, b, (init,) = _module(tensor_type([4], f32))
    fill = b.fill(init, b.constant(3.0, f32))
    b.return_([b.result(fill)])
    data = np.zeros(4, dtype=np.float32)
    (out,) = execute_module(m, [data])
    np.testing.assert_array_equal(out, np.full(4, 3.0, dtype=np.float32))
    np.testing.assert_array_equal(data, np.zeros(4, dtype=np.float32))


def test_copy_with_input_permutation_transposes():
    m, b, (src, dst) = _module(tensor_type([2, 3], f32), tensor_type([3, 2], f32))
    copy = b.copy(src, dst, input_permutation=AffineMap.permutation([1, 0]))
    b.return_([b.result(copy)])
    data = np.arange(6, dtype=np.float32).reshape(2, 3)
    (out,) = execute_module(m, [data, np.zeros((3, 2), dtype=np.float32)])
    np.testing.assert_array_equal(out, data.T)


def test_dot_reduces_into_rank_zero_output():
    m, b, (x, y, acc) = _module(tensor_type([4], f32), tensor_type([4], f32), tensor_type([], f32))
    dot = b.named(opset.DOT, [x, y], [acc])
    b.return_([b.result(dot)])
    assert verify_module(m)
    a = np.arange(4, dtype=np.float32)
    (out,) = execute_module(m, [a, a, np.array(1.0, dtype=np.float32)])
    assert float(out) == pytest.approx(1.0 + float(a @ a))


def test_reshapes():
    m, b, (src, flat) = _module(tensor_type([2, 3], f32), tensor_type([DYNAMIC], f32))
    collapsed = b.tensor_reshape(src, [[0, 1]])
    expanded = b.tensor_reshape(flat, [[0, 1]], result_type=tensor_type([2, DYNAMIC], f32))
    b.return_([collapsed, expanded])
    data = np.arange(6, dtype=np.float32)
    c, e = execute_module(m, [data.reshape(2, 3), data])
    np.testing.assert_array_equal(c, data)
    assert e.shape == (2, 3)


def test_cast_checks_runtime_shape():
    m, b, (src,) = _module(tensor_type([DYNAMIC], f32))
    b.return_([b.tensor_cast(src, tensor_type([4], f32))])
    with pytest.raises(ValueError, match="runtime extent 3"):
        execute_module(m, [np.zeros(3, dtype=np.float32)])


def test_unsupported_ops_and_missing_inputs():
    m, b, (inp, flt, out) = _module(
        memref_type([1, 1, 4, 4], f32), memref_type([1, 1, 3, 3], f32), memref_type([1, 1, 2, 2], f32)
    )
    b.conv(inp, flt, out)
    with pytest.raises(ValueError, match="takes 3 arguments"):
        execute_module(m, [])
    with pytest.raises(ValueError, match="Unsupported op"):
        execute_module(
            m,
            [np.zeros((1, 1, 4, 4), np.float32), np.zeros((1, 1, 3, 3), np.float32), np.zeros((1, 1, 2, 2), np.float32)],
        )
