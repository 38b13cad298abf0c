import pytest

from structured_ir.ir.builder import OpBuilder
from structured_ir.ir.core import Module
from structured_ir.ir.types import DYNAMIC, f32, i8, memref_type, tensor_type
from structured_ir.library_call import generate_library_call_name


def test_matmul_on_buffers():
    m = Module()
    b = OpBuilder(m)
    lhs = m.add_argument(memref_type([4, DYNAMIC], f32))
    rhs = m.add_argument(memref_type([DYNAMIC, 8], f32))
    out = m.add_argument(memref_type([4, 8], f32))
    oid = b.matmul(lhs, rhs, out)
    assert (
        generate_library_call_name(m, oid)
        == "structured_matmul_view4xsxf32_viewsx8xf32_view4x8xf32"
    )


def test_scalar_operands_use_their_type_name():
    m = Module()
    b = OpBuilder(m)
    buf = m.add_argument(memref_type([16], i8))
    value = m.add_argument(i8)
    oid = b.fill(buf, value)
    assert generate_library_call_name(m, oid) == "structured_fill_view16xi8_i8"


def test_rank_zero_buffer():
    m = Module()
    b = OpBuilder(m)
    src = m.add_argument(memref_type([], f32))
    dst = m.add_argument(memref_type([], f32))
    oid = b.copy(src, dst)
    assert generate_library_call_name(m, oid) == "structured_copy_viewf32_viewf32"


def test_tensor_operands_are_rejected():
    m = Module()
    b = OpBuilder(m)
    t = m.add_argument(tensor_type([4], f32))
    oid = b.copy(t, t)
    with pytest.raises(ValueError):
        generate_library_call_name(m, oid)
