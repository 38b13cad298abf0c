"""
Affine expressions, affine maps and reassociation helpers.

Everything here is pure: expressions and maps are frozen dataclasses compared
structurally, and the reassociation predicates only look at their arguments.
Expressions are built from dims (`d0`), symbols (`s0`), integer constants,
addition, multiplication and floor division by a positive constant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Literal, Optional, Sequence, Tuple, Union

from .types import DYNAMIC, DYNAMIC_STRIDE_OR_OFFSET


__all__ = [
    "AffineExpr",
    "AffineDimExpr",
    "AffineSymbolExpr",
    "AffineConstantExpr",
    "AffineBinaryExpr",
    "AffineMap",
    "dim",
    "symbol",
    "const",
    "find_invalid_reassociation",
    "is_reassociation_valid",
    "is_reshapable_dim_band",
    "get_symbol_less_affine_maps",
    "reassociation_to_maps",
    "reassociation_to_indices",
    "collapse_reassociation_maps",
    "get_expanded_dim_to_collapsed_dim_map",
]


ExprLike = Union["AffineExpr", int]


class AffineExpr:
    def __add__(self, other: ExprLike) -> "AffineExpr":
        return _make_binary("add", self, _lift(other))

    def __radd__(self, other: ExprLike) -> "AffineExpr":
        return _make_binary("add", _lift(other), self)

    def __mul__(self, other: ExprLike) -> "AffineExpr":
        return _make_binary("mul", self, _lift(other))

    def __rmul__(self, other: ExprLike) -> "AffineExpr":
        return _make_binary("mul", _lift(other), self)

    def __sub__(self, other: ExprLike) -> "AffineExpr":
        return self + _lift(other) * -1

    def __rsub__(self, other: ExprLike) -> "AffineExpr":
        return _lift(other) + self * -1

    def floor_div(self, other: ExprLike) -> "AffineExpr":
        rhs = _lift(other)
        if not isinstance(rhs, AffineConstantExpr) or rhs.value <= 0:
            raise ValueError(f"floordiv requires a positive constant divisor, got {rhs}")
        return _make_binary("floordiv", self, rhs)

    def walk(self) -> Iterator["AffineExpr"]:
        yield self

    def evaluate(self, dims: Sequence[int], symbols: Sequence[int] = ()) -> int:
        raise NotImplementedError


@dataclass(frozen=True)
class AffineDimExpr(AffineExpr):
    position: int

    def evaluate(self, dims: Sequence[int], symbols: Sequence[int] = ()) -> int:
        return int(dims[self.position])

    def __str__(self) -> str:
        return f"d{self.position}"


@dataclass(frozen=True)
class AffineSymbolExpr(AffineExpr):
    position: int

    def evaluate(self, dims: Sequence[int], symbols: Sequence[int] = ()) -> int:
        return int(symbols[self.position])

    def __str__(self) -> str:
        return f"s{self.position}"


@dataclass(frozen=True)
class AffineConstantExpr(AffineExpr):
    value: int

    def evaluate(self, dims: Sequence[int], symbols: Sequence[int] = ()) -> int:
        return self.value

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class AffineBinaryExpr(AffineExpr):
    kind: Literal["add", "mul", "floordiv"]
    lhs: AffineExpr
    rhs: AffineExpr

    def walk(self) -> Iterator[AffineExpr]:
        yield self
        yield from self.lhs.walk()
        yield from self.rhs.walk()

    def evaluate(self, dims: Sequence[int], symbols: Sequence[int] = ()) -> int:
        a = self.lhs.evaluate(dims, symbols)
        b = self.rhs.evaluate(dims, symbols)
        if self.kind == "add":
            return a + b
        if self.kind == "mul":
            return a * b
        return a // b

    def __str__(self) -> str:
        sym = {"add": "+", "mul": "*", "floordiv": "floordiv"}[self.kind]
        return f"({self.lhs} {sym} {self.rhs})"


def dim(position: int) -> AffineDimExpr:
    return AffineDimExpr(position)


def symbol(position: int) -> AffineSymbolExpr:
    return AffineSymbolExpr(position)


def const(value: int) -> AffineConstantExpr:
    return AffineConstantExpr(int(value))


def _lift(x: ExprLike) -> AffineExpr:
    if isinstance(x, AffineExpr):
        return x
    if isinstance(x, int):
        return AffineConstantExpr(x)
    raise TypeError(f"cannot use {type(x).__name__} in an affine expression")


def _make_binary(kind: str, lhs: AffineExpr, rhs: AffineExpr) -> AffineExpr:
    lc = lhs.value if isinstance(lhs, AffineConstantExpr) else None
    rc = rhs.value if isinstance(rhs, AffineConstantExpr) else None
    if lc is not None and rc is not None:
        if kind == "add":
            return AffineConstantExpr(lc + rc)
        if kind == "mul":
            return AffineConstantExpr(lc * rc)
        return AffineConstantExpr(lc // rc)
    # Keep constants on the right-hand side of commutative ops.
    if kind in ("add", "mul") and lc is not None:
        lhs, rhs, lc, rc = rhs, lhs, rc, lc
    if kind == "add" and rc == 0:
        return lhs
    if kind == "mul" and rc == 1:
        return lhs
    if kind == "mul" and rc == 0:
        return AffineConstantExpr(0)
    if kind == "floordiv" and rc == 1:
        return lhs
    return AffineBinaryExpr(kind, lhs, rhs)  # type: ignore[arg-type]


@dataclass(frozen=True)
class AffineMap:
    num_dims: int
    num_symbols: int
    results: Tuple[AffineExpr, ...]

    def __post_init__(self):
        object.__setattr__(self, "results", tuple(self.results))

    @classmethod
    def get(cls, num_dims: int, num_symbols: int, results: Sequence[ExprLike]) -> "AffineMap":
        return cls(num_dims, num_symbols, tuple(_lift(r) for r in results))

    @classmethod
    def identity(cls, rank: int) -> "AffineMap":
        return cls(rank, 0, tuple(AffineDimExpr(i) for i in range(rank)))

    @classmethod
    def permutation(cls, perm: Sequence[int]) -> "AffineMap":
        return cls(len(perm), 0, tuple(AffineDimExpr(int(p)) for p in perm))

    @classmethod
    def empty(cls, num_dims: int = 0) -> "AffineMap":
        return cls(num_dims, 0, ())

    @property
    def num_results(self) -> int:
        return len(self.results)

    def is_identity(self) -> bool:
        if self.num_dims != self.num_results:
            return False
        return all(isinstance(r, AffineDimExpr) and r.position == i for i, r in enumerate(self.results))

    def is_permutation(self) -> bool:
        if self.num_symbols != 0 or self.num_dims != self.num_results:
            return False
        seen = set()
        for r in self.results:
            if not isinstance(r, AffineDimExpr) or r.position in seen or r.position >= self.num_dims:
                return False
            seen.add(r.position)
        return True

    def dim_positions(self) -> Optional[List[int]]:
        """Positions of the results when every result is a plain dim, else None."""
        out: List[int] = []
        for r in self.results:
            if not isinstance(r, AffineDimExpr):
                return None
            out.append(r.position)
        return out

    def evaluate(self, dims: Sequence[int], symbols: Sequence[int] = ()) -> List[int]:
        if len(dims) != self.num_dims or len(symbols) != self.num_symbols:
            raise ValueError(
                f"map {self} expects {self.num_dims} dims and {self.num_symbols} symbols, "
                f"got {len(dims)} and {len(symbols)}"
            )
        return [r.evaluate(dims, symbols) for r in self.results]

    def __str__(self) -> str:
        dims = ", ".join(f"d{i}" for i in range(self.num_dims))
        syms = "".join(f"s{i}" if i == 0 else f", s{i}" for i in range(self.num_symbols))
        sym_part = f"[{syms}]" if self.num_symbols else ""
        return f"({dims}){sym_part} -> ({', '.join(str(r) for r in self.results)})"


def find_invalid_reassociation(reassociation: Sequence[AffineMap]) -> Optional[int]:
    """
    Return the index of the first offending map, or None when valid.

    A valid reassociation uses maps of identical dim count and no symbols whose
    results, read left to right across all maps, are exactly d0, d1, ... d(n-1).
    """
    if not reassociation:
        return None
    n_dims = reassociation[0].num_dims
    next_expected = 0
    for idx, m in enumerate(reassociation):
        if m.num_dims != n_dims or m.num_symbols != 0:
            return idx
        for e in m.results:
            if not isinstance(e, AffineDimExpr) or e.position != next_expected:
                return idx
            next_expected += 1
    if next_expected != n_dims:
        return len(reassociation) - 1
    return None


def is_reassociation_valid(reassociation: Sequence[AffineMap]) -> bool:
    return find_invalid_reassociation(reassociation) is None


def is_reshapable_dim_band(start: int, extent: int, sizes: Sequence[int], strides: Sequence[int]) -> bool:
    """
    Whether dims [start, start + extent) of a row-major strided buffer can be
    merged into one dim without moving data.
    """
    if len(sizes) != len(strides):
        raise ValueError("mismatched ranks between sizes and strides")
    end = start + extent
    if extent <= 1:
        return True
    # Dynamic sizes or strides carry no relation we could check.
    for i in range(start, end):
        if sizes[i] == DYNAMIC or strides[i] == DYNAMIC_STRIDE_OR_OFFSET:
            return False
    for i in range(start, end - 1):
        if strides[i] != strides[i + 1] * sizes[i + 1]:
            return False
    return True


def get_symbol_less_affine_maps(groups: Sequence[Sequence[AffineExpr]]) -> List[AffineMap]:
    max_dim = 0
    for exprs in groups:
        if not exprs:
            raise ValueError("reassociation groups must not be empty")
        for e in exprs:
            for sub in e.walk():
                if isinstance(sub, AffineSymbolExpr):
                    raise ValueError("expected symbol-less reassociation expressions")
                if isinstance(sub, AffineDimExpr):
                    max_dim = max(max_dim, sub.position)
    return [AffineMap(max_dim + 1, 0, tuple(exprs)) for exprs in groups]


def reassociation_to_maps(reassociation: Sequence[Sequence[int]] | Sequence[AffineMap]) -> List[AffineMap]:
    """Accept either index groups (`[[0, 1], [2]]`) or ready-made maps."""
    items = list(reassociation)
    if not items:
        return []
    if all(isinstance(m, AffineMap) for m in items):
        return list(items)  # type: ignore[arg-type]
    groups = [[AffineDimExpr(int(i)) for i in group] for group in items]  # type: ignore[union-attr]
    return get_symbol_less_affine_maps(groups)


def reassociation_to_indices(reassociation: Sequence[AffineMap]) -> List[List[int]]:
    out: List[List[int]] = []
    for m in reassociation:
        positions = m.dim_positions()
        if positions is None:
            raise ValueError(f"reassociation map {m} has non-dim results")
        out.append(positions)
    return out


def collapse_reassociation_maps(
    maps_producer: Sequence[AffineMap], maps_consumer: Sequence[AffineMap]
) -> Optional[List[AffineMap]]:
    """
    Compose the reassociations of two chained reshapes moving in the same
    direction. `maps_producer` relates the largest and intermediate ranks,
    `maps_consumer` the intermediate and smallest ranks.

        producer = [(d0..d4) -> (d0, d1), -> (d2), -> (d3, d4)]
        consumer = [(d0, d1, d2) -> (d0, d1), -> (d2)]
        result   = [(d0..d4) -> (d0, d1, d2), -> (d3, d4)]
    """
    # A rank-0 result composes to the empty reassociation.
    if not maps_consumer and maps_producer:
        return []
    if (
        not maps_producer
        or not maps_consumer
        or maps_producer[0].num_dims < maps_consumer[0].num_dims
        or len(maps_producer) != maps_consumer[0].num_dims
    ):
        return None
    num_lhs_dims = maps_producer[0].num_dims
    curr = 0
    out: List[AffineMap] = []
    for rhs in maps_consumer:
        exprs: List[AffineExpr] = []
        for e in rhs.results:
            if not isinstance(e, AffineDimExpr):
                return None
            for _ in range(maps_producer[e.position].num_results):
                exprs.append(AffineDimExpr(curr))
                curr += 1
        out.append(AffineMap(num_lhs_dims, 0, tuple(exprs)))
    return out


def get_expanded_dim_to_collapsed_dim_map(reassociation: Sequence[AffineMap]) -> Dict[int, int]:
    mapping: Dict[int, int] = {}
    for collapsed, group in enumerate(reassociation_to_indices(reassociation)):
        for d in group:
            mapping[d] = collapsed
    return mapping
