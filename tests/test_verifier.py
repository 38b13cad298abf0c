import pytest

from structured_ir.diagnostics import DiagnosticEngine, ErrorKind, VerificationError
from structured_ir.ir.affine import AffineMap, dim
from structured_ir.ir.builder import OpBuilder
from structured_ir.ir.core import Module
from structured_ir.ir.types import (
    DYNAMIC,
    StridedLayout,
    f16,
    f32,
    i32,
    index,
    memref_type,
    tensor_type,
)
from structured_ir.ir.verifier import verify_module, verify_op
from structured_ir.ops import opset


def _setup(*arg_types):
    m = Module()
    b = OpBuilder(m)
    args = [m.add_argument(t) for t in arg_types]
    return m, b, args


def _error_kind(m, oid):
    with pytest.raises(VerificationError) as e:
        verify_op(m, oid)
    return e.value


def test_valid_matmul_on_buffers():
    m, b, (lhs, rhs, out) = _setup(memref_type([4, 8], f32), memref_type([8, 16], f32), memref_type([4, 16], f32))
    b.matmul(lhs, rhs, out)
    assert verify_module(m)


def test_matmul_operand_ranks():
    m, b, (lhs, rhs, out) = _setup(memref_type([4], f32), memref_type([8, 16], f32), memref_type([4, 16], f32))
    oid = b.matmul(lhs, rhs, out)
    err = _error_kind(m, oid)
    assert err.kind is ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH
    assert err.diagnostic.location.op == oid
    assert str(err).startswith(f"#{oid} ({opset.MATMUL}): '{opset.MATMUL}' op")


def test_reshape_with_malformed_reassociation():
    m, b, (src,) = _setup(tensor_type([2, 3, 4], f32))
    maps = [AffineMap(3, 0, (dim(0), dim(2))), AffineMap(3, 0, (dim(1),))]
    r = b.tensor_reshape(src, maps, result_type=tensor_type([8, 3], f32))
    err = _error_kind(m, m.defining_op(r))
    assert err.kind is ErrorKind.MALFORMED_REASSOCIATION
    assert "reassociation map #0" in str(err)


def test_reshape_with_wrong_number_of_maps():
    m, b, (src,) = _setup(tensor_type([2, 3, 4], f32))
    r = b.tensor_reshape(src, [[0, 1], [2]], result_type=tensor_type([24], f32))
    assert _error_kind(m, m.defining_op(r)).kind is ErrorKind.MALFORMED_REASSOCIATION


def test_reshape_group_extent_mismatch():
    m, b, (src,) = _setup(tensor_type([2, 3, 4], f32))
    r = b.tensor_reshape(src, [[0, 1], [2]], result_type=tensor_type([5, 4], f32))
    err = _error_kind(m, m.defining_op(r))
    assert err.kind is ErrorKind.SHAPE_MISMATCH
    assert "static value of 6" in str(err)


def test_buffer_reshape_must_keep_strided_layout():
    strided = memref_type([2, 3, 4], f32, StridedLayout((24, 4, 1), 0))
    m, b, (src,) = _setup(strided)
    r = b.reshape(src, [[0], [1, 2]], result_type=memref_type([2, 12], f32))
    err = _error_kind(m, m.defining_op(r))
    assert err.kind is ErrorKind.SHAPE_MISMATCH
    assert "expected collapsed type" in str(err)

    inferred = b.reshape(src, [[0], [1, 2]])
    verify_op(m, m.defining_op(inferred))


def test_reshape_container_kind():
    m, b, (src,) = _setup(memref_type([2, 3], f32))
    r = b.tensor_reshape(src, [[0, 1]], result_type=tensor_type([6], f32))
    assert _error_kind(m, m.defining_op(r)).kind is ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH


def test_generic_indexing_map_count():
    m, b, (x, y) = _setup(memref_type([4], f32), memref_type([4], f32))
    oid = b.generic([x], [y], [AffineMap.identity(1)], ["parallel"], lambda _b, a, o: [a])
    err = _error_kind(m, oid)
    assert err.kind is ErrorKind.ATTRIBUTE_ARITY_MISMATCH


def test_generic_unknown_iterator_type_suggests_fix():
    m, b, (x, y) = _setup(memref_type([4], f32), memref_type([4], f32))
    ident = AffineMap.identity(1)
    oid = b.generic([x], [y], [ident, ident], ["paralel"], lambda _b, a, o: [a])
    err = _error_kind(m, oid)
    assert err.kind is ErrorKind.INVALID_OPERATION
    assert "did you mean 'parallel'" in str(err)


def test_generic_map_results_must_match_rank():
    m, b, (x, y) = _setup(memref_type([4, 4], f32), memref_type([4, 4], f32))
    ident = AffineMap.identity(2)
    oid = b.generic([x], [y], [AffineMap(2, 0, (dim(0),)), ident], ["parallel"] * 2, lambda _b, a, o: [a])
    assert _error_kind(m, oid).kind is ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH


def test_yield_type_must_match_output_element_type():
    m, b, (x, y) = _setup(memref_type([4], f32), memref_type([4], f32))
    ident = AffineMap.identity(1)
    b.generic([x], [y], [ident, ident], ["parallel"], lambda bb, a, o: [bb.constant(1, i32)])
    engine = DiagnosticEngine()
    assert not verify_module(m, engine)
    (diag,) = engine.errors
    assert diag.kind is ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH
    assert diag.location.kind == opset.YIELD


def test_sparse_annotations_need_tensors():
    m, b, (x, y) = _setup(memref_type([4], f32), memref_type([4], f32))
    ident = AffineMap.identity(1)
    oid = b.generic([x], [y], [ident, ident], ["parallel"], lambda _b, a, o: [a], sparse=[["S"], ["D"]])
    assert _error_kind(m, oid).kind is ErrorKind.ATTRIBUTE_ARITY_MISMATCH


def test_sparse_output_is_rejected():
    m, b, (x, y) = _setup(tensor_type([4], f32), tensor_type([4], f32))
    ident = AffineMap.identity(1)
    oid = b.generic([x], [y], [ident, ident], ["parallel"], lambda _b, a, o: [a], sparse=[["D"], ["S"]])
    err = _error_kind(m, oid)
    assert "sparse output tensors not supported" in str(err)


def test_unknown_operation_suggests_closest_kind():
    m, b, (x,) = _setup(memref_type([4], f32))
    oid = m.create_op("structured.matmull", [x], [])
    m.insert_op(oid, m.body)
    err = _error_kind(m, oid)
    assert err.kind is ErrorKind.INVALID_OPERATION
    assert f"did you mean '{opset.MATMUL}'" in str(err)


def test_copy_permutation_must_be_permutation():
    m, b, (x, y) = _setup(memref_type([2, 3], f32), memref_type([2, 3], f32))
    oid = b.copy(x, y, input_permutation=AffineMap(2, 0, (dim(0), dim(0))))
    assert _error_kind(m, oid).kind is ErrorKind.INVALID_OPERATION


def test_fill_value_type():
    m, b, (buf,) = _setup(memref_type([4], f32))
    oid = b.fill(buf, b.constant(1, i32))
    err = _error_kind(m, oid)
    assert err.kind is ErrorKind.RANK_OR_ELEMENT_TYPE_MISMATCH
    assert "fill type" in str(err)


def test_conv_window_attributes():
    m, b, (inp, flt, out) = _setup(
        memref_type([1, 3, 8, 8], f32), memref_type([4, 3, 3, 3], f32), memref_type([1, 4, 6, 6], f32)
    )
    good = b.conv(inp, flt, out, strides=[1, 1], dilations=[1, 1], padding=[[0, 0], [0, 0]])
    verify_op(m, good)
    bad = b.conv(inp, flt, out, strides=[1, 1, 1])
    err = _error_kind(m, bad)
    assert err.kind is ErrorKind.ATTRIBUTE_ARITY_MISMATCH
    assert "strides" in str(err)


def test_pooling_window_attributes():
    m, b, (inp, win, out) = _setup(memref_type([8, 8], f32), memref_type([2, 2], f32), memref_type([4, 4], f32))
    verify_op(m, b.pooling(opset.POOLING_MAX, inp, win, out, strides=[2, 2]))
    bad = b.pooling(opset.POOLING_SUM, inp, win, out, dilations=[1])
    assert _error_kind(m, bad).kind is ErrorKind.ATTRIBUTE_ARITY_MISMATCH


def test_pad_declared_type_must_match_inferred():
    m, b, (src,) = _setup(tensor_type([3], f32))
    zero = b.constant(0.0, f32)
    padded = b.pad_tensor(src, [1], [1], pad_value=zero, result_type=tensor_type([6], f32))
    assert _error_kind(m, m.defining_op(padded)).kind is ErrorKind.SHAPE_MISMATCH

    # A static result is allowed where the inferred extent is dynamic.
    n = m.add_argument(index)
    refined = b.pad_tensor(src, [DYNAMIC], [0], [n], pad_value=zero, result_type=tensor_type([5], f32))
    verify_op(m, m.defining_op(refined))


def test_init_tensor_with_dynamic_sizes():
    m, b, (n,) = _setup(index)
    b.init_tensor([4, DYNAMIC, 8], f32, [n])
    assert verify_module(m)


def test_scalar_cast_width_rules():
    m, b, (x,) = _setup(f32)
    narrowed = b.cast(opset.EXTF, f16, x)
    err = _error_kind(m, m.defining_op(narrowed))
    assert err.kind is ErrorKind.UNSUPPORTED_CAST
    verify_op(m, m.defining_op(b.cast(opset.TRUNCF, f16, x)))


def test_top_level_yield_is_rejected():
    m, b, _ = _setup()
    oid = b.yield_()
    assert _error_kind(m, oid).kind is ErrorKind.INVALID_OPERATION


def test_parallel_verification_reports_each_failing_op():
    m, b, (t, x) = _setup(tensor_type([4], f32), f32)
    b.tensor_cast(t, tensor_type([5], f32))
    b.cast(opset.EXTF, f16, x)
    b.tensor_cast(t, tensor_type([DYNAMIC], f32))
    engine = DiagnosticEngine()
    assert not verify_module(m, engine, num_workers=4)
    assert sorted(d.kind.value for d in engine.errors) == sorted(
        [ErrorKind.SHAPE_MISMATCH.value, ErrorKind.UNSUPPORTED_CAST.value]
    )


def test_copy_with_wrong_operand_split_is_reported():
    m, b, (x, y) = _setup(memref_type([4], f32), memref_type([4], f32))
    oid = b.create(opset.COPY, [x, y], [], num_regions=1, num_inputs=0, num_outputs=1)
    engine = DiagnosticEngine()
    assert not verify_module(m, engine)
    (diag,) = engine.errors
    assert diag.kind is ErrorKind.INVALID_OPERATION
    assert diag.location.op == oid
    assert "expects 1 input(s) and 1 output(s), got 0 and 1" in diag.message


def test_conv_with_wrong_operand_split_is_reported():
    m, b, (inp, flt, out) = _setup(
        memref_type([1, 3, 8, 8], f32), memref_type([4, 3, 3, 3], f32), memref_type([1, 4, 6, 6], f32)
    )
    oid = b.create(opset.CONV, [inp, flt, out], [], num_inputs=3, num_outputs=0)
    err = _error_kind(m, oid)
    assert err.kind is ErrorKind.INVALID_OPERATION
    assert "expects 2 input(s) and 1 output(s)" in str(err)


def test_pooling_without_window_is_reported():
    m, b, (inp, out) = _setup(memref_type([8, 8], f32), memref_type([4, 4], f32))
    oid = b.create(opset.POOLING_MAX, [inp, out], [], num_inputs=1, num_outputs=1)
    assert "expects 2 input(s) and 1 output(s), got 1 and 1" in str(_error_kind(m, oid))


def test_result_free_pad_and_init_are_reported():
    m, b, (src,) = _setup(tensor_type([3], f32))
    pad = b.create(opset.PAD_TENSOR, [src], [], {"static_low": (0,), "static_high": (0,)}, num_regions=1)
    init = b.create(opset.INIT_TENSOR, [], [], {"static_sizes": ()})
    engine = DiagnosticEngine()
    assert not verify_module(m, engine)
    assert sorted(d.location.op for d in engine.errors) == sorted([pad, init])
    assert all("expects 1 result(s), got 0" in d.message for d in engine.errors)


def test_scalar_arith_operand_count():
    m, b, (x,) = _setup(f32)
    oid = b.create(opset.ADDF, [x], [f32])
    err = _error_kind(m, oid)
    assert err.kind is ErrorKind.INVALID_OPERATION
    assert "expects 2 operand(s), got 1" in str(err)


@pytest.mark.parametrize(
    "src_shape,reassociation,result_shape,message",
    [
        ([2, 3], [[0], [1]], [3, 2], "expected to collapse or expand dims"),
        ([1, 2], [], [], "non-unit extent dimensions to zero-rank"),
        ([DYNAMIC], [[0, 1]], [DYNAMIC, DYNAMIC], r"single dimension \(0\) expanded into multiple dynamic dims"),
    ],
)
def test_reshape_rank_rules(src_shape, reassociation, result_shape, message):
    m, b, (src,) = _setup(tensor_type(src_shape, f32))
    r = b.tensor_reshape(src, reassociation, result_type=tensor_type(result_shape, f32))
    with pytest.raises(VerificationError, match=message):
        verify_op(m, m.defining_op(r))


def test_rank_zero_copy_takes_no_permutation():
    m, b, (x, y) = _setup(memref_type([], f32), memref_type([], f32))
    oid = b.copy(x, y, input_permutation=AffineMap.empty())
    with pytest.raises(VerificationError, match="expected no input_permutation when rank == 0"):
        verify_op(m, oid)


def test_result_free_fill_needs_a_buffer():
    m, b, (t,) = _setup(tensor_type([4], f32))
    value = b.constant(1.0, f32)
    oid = b.create(opset.FILL, [t, value], [], num_regions=1, num_inputs=0, num_outputs=1)
    with pytest.raises(VerificationError, match="no result value to use memref type"):
        verify_op(m, oid)


@pytest.mark.parametrize(
    "arg_types,message",
    [
        ([index, index], "expected the block to have 1 arguments"),
        ([f32], "expected block argument 1 to be an index"),
    ],
)
def test_pad_region_signature(arg_types, message):
    m, b, (src,) = _setup(tensor_type([3], f32))
    oid = b.create(
        opset.PAD_TENSOR,
        [src],
        [tensor_type([5], f32)],
        {"static_low": (1,), "static_high": (1,)},
        num_regions=1,
    )
    m.add_region_block(oid, arg_types)
    with pytest.raises(VerificationError, match=message):
        verify_op(m, oid)


@pytest.mark.parametrize(
    "body,message",
    [
        (lambda bb, i: [bb.constant(0, i32)], "expected yield type to match shape element type"),
        (lambda bb, i: [bb.constant(0.0, f32)] * 2, r"expected single yield operand \(got 2\)"),
    ],
)
def test_pad_yield_rules(body, message):
    m, b, (src,) = _setup(tensor_type([3], f32))
    padded = b.pad_tensor(src, [1], [1], body=body)
    term = m.terminator(m.region_entry(m.defining_op(padded)))
    with pytest.raises(VerificationError, match=message):
        verify_op(m, term)


@pytest.mark.parametrize(
    "sparse,message",
    [
        ([["X"], ["D"]], "expected sparse annotation at position 0 for tensor 0"),
        ([["D", "D"], ["D"]], "expected sparse annotation with rank 1 for tensor 0"),
    ],
)
def test_sparse_annotation_entries(sparse, message):
    m, b, (x, y) = _setup(tensor_type([4], f32), tensor_type([4], f32))
    ident = AffineMap.identity(1)
    oid = b.generic([x], [y], [ident, ident], ["parallel"], lambda _b, a, o: [a], sparse=sparse)
    with pytest.raises(VerificationError, match=message):
        verify_op(m, oid)


def test_sparse_generic_needs_single_output():
    m, b, (x, y1, y2) = _setup(tensor_type([4], f32), tensor_type([4], f32), tensor_type([4], f32))
    ident = AffineMap.identity(1)
    oid = b.generic(
        [x], [y1, y2], [ident] * 3, ["parallel"], lambda _b, a, o1, o2: [a, a], sparse=[["D"], ["D"], ["D"]]
    )
    with pytest.raises(VerificationError, match="expected single output tensor"):
        verify_op(m, oid)


def test_sparse_annotation_entry_must_be_an_array():
    m, b, (x, y) = _setup(tensor_type([4], f32), tensor_type([4], f32))
    ident = AffineMap.identity(1)
    oid = b.create(
        opset.GENERIC,
        [x, y],
        [tensor_type([4], f32)],
        {"indexing_maps": (ident, ident), "iterator_types": ("parallel",), "sparse": (("D",), 7)},
        num_regions=1,
        num_inputs=1,
        num_outputs=1,
    )
    err = _error_kind(m, oid)
    assert err.kind is ErrorKind.ATTRIBUTE_ARITY_MISMATCH
    assert "expected sparse annotation array for tensor 1" in str(err)
