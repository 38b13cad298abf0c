import pytest

from structured_ir.ir.affine import (
    AffineBinaryExpr,
    AffineMap,
    collapse_reassociation_maps,
    const,
    dim,
    find_invalid_reassociation,
    get_expanded_dim_to_collapsed_dim_map,
    get_symbol_less_affine_maps,
    is_reassociation_valid,
    is_reshapable_dim_band,
    reassociation_to_indices,
    reassociation_to_maps,
    symbol,
)
from structured_ir.ir.types import DYNAMIC, DYNAMIC_STRIDE_OR_OFFSET


def test_constant_folding_and_simplification():
    assert const(2) + const(3) == const(5)
    assert const(4) * const(5) == const(20)
    assert dim(0) + 0 == dim(0)
    assert dim(1) * 1 == dim(1)
    assert dim(0) * 0 == const(0)
    # Constants move to the right of commutative ops.
    assert 2 + dim(0) == dim(0) + 2
    assert isinstance(dim(0) + symbol(0), AffineBinaryExpr)


def test_expression_evaluation():
    expr = dim(0) * 4 + symbol(0)
    assert expr.evaluate([3], [2]) == 14
    assert dim(0).floor_div(4).evaluate([9]) == 2
    assert (10 - dim(0)).evaluate([3]) == 7
    with pytest.raises(ValueError):
        dim(0).floor_div(symbol(0))


def test_map_queries():
    m = AffineMap.identity(3)
    assert m.is_identity() and m.is_permutation()
    perm = AffineMap.permutation([1, 0])
    assert perm.is_permutation() and not perm.is_identity()
    assert perm.evaluate([5, 7]) == [7, 5]
    assert AffineMap(2, 0, (dim(0), dim(0))).is_permutation() is False
    assert AffineMap.get(2, 1, [dim(0) + symbol(0)]).dim_positions() is None
    with pytest.raises(ValueError):
        perm.evaluate([1])


def test_valid_reassociation():
    maps = reassociation_to_maps([[0, 1], [2]])
    assert find_invalid_reassociation(maps) is None
    assert is_reassociation_valid(maps)
    assert reassociation_to_indices(maps) == [[0, 1], [2]]
    assert get_expanded_dim_to_collapsed_dim_map(maps) == {0: 0, 1: 0, 2: 1}


def test_invalid_reassociation_reports_first_bad_map():
    out_of_order = [AffineMap(3, 0, (dim(0), dim(2))), AffineMap(3, 0, (dim(1),))]
    assert find_invalid_reassociation(out_of_order) == 0

    mismatched_dims = [AffineMap(3, 0, (dim(0), dim(1))), AffineMap(4, 0, (dim(2),))]
    assert find_invalid_reassociation(mismatched_dims) == 1

    not_covering = [AffineMap(3, 0, (dim(0),)), AffineMap(3, 0, (dim(1),))]
    assert find_invalid_reassociation(not_covering) == 1

    with_symbols = [AffineMap(1, 1, (dim(0),))]
    assert not is_reassociation_valid(with_symbols)


def test_symbol_less_maps_reject_symbols():
    with pytest.raises(ValueError):
        get_symbol_less_affine_maps([[dim(0), symbol(0)]])
    with pytest.raises(ValueError):
        get_symbol_less_affine_maps([[]])
    maps = get_symbol_less_affine_maps([[dim(0)], [dim(1), dim(2)]])
    assert all(m.num_dims == 3 for m in maps)


def test_reshapable_dim_band():
    assert is_reshapable_dim_band(0, 3, [2, 3, 4], [12, 4, 1])
    assert not is_reshapable_dim_band(0, 2, [2, 3, 4], [24, 4, 1])
    assert is_reshapable_dim_band(1, 2, [2, 3, 4], [24, 4, 1])
    # A single dim is always bandable, even when dynamic.
    assert is_reshapable_dim_band(0, 1, [DYNAMIC], [DYNAMIC_STRIDE_OR_OFFSET])
    assert not is_reshapable_dim_band(0, 2, [DYNAMIC, 4], [4, 1])
    assert not is_reshapable_dim_band(0, 2, [2, 4], [DYNAMIC_STRIDE_OR_OFFSET, 1])
    with pytest.raises(ValueError):
        is_reshapable_dim_band(0, 2, [2, 4], [1])


def test_collapse_reassociation_maps_composes_groups():
    producer = reassociation_to_maps([[0, 1], [2], [3, 4]])
    consumer = reassociation_to_maps([[0, 1], [2]])
    composed = collapse_reassociation_maps(producer, consumer)
    assert composed == reassociation_to_maps([[0, 1, 2], [3, 4]])


def test_collapse_reassociation_maps_rejects_mismatch():
    producer = reassociation_to_maps([[0, 1], [2]])
    consumer = reassociation_to_maps([[0], [1], [2]])
    assert collapse_reassociation_maps(producer, consumer) is None
    assert collapse_reassociation_maps(producer, []) == []
