"""
Arena-backed IR graph: values, operations and blocks addressed by handles.

The graph has use lists that look cyclic (an operation points at its operand
values and every value lists the operations using it). Rather than embedding
back pointers, every entity lives in a `Module` dict keyed by an opaque integer
handle and use edges are stored as `(op handle, operand index)` pairs. All
mutation goes through `Module` so the use lists stay consistent.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .types import IRConstructionError, ScalarType, ShapedType


__all__ = [
    "IRType",
    "Value",
    "Block",
    "Operation",
    "Module",
]


IRType = Union[ShapedType, ScalarType]


@dataclass
class Value:
    id: int
    type: IRType
    owner_op: Optional[int] = None
    result_index: int = -1
    owner_block: Optional[int] = None
    arg_index: int = -1
    uses: List[Tuple[int, int]] = field(default_factory=list)

    def is_block_argument(self) -> bool:
        return self.owner_block is not None


@dataclass
class Block:
    id: int
    args: List[int] = field(default_factory=list)
    ops: List[int] = field(default_factory=list)
    parent_op: Optional[int] = None


@dataclass
class Operation:
    id: int
    kind: str
    operands: List[int]
    results: List[int]
    attrs: Mapping[str, Any]
    regions: List[List[int]] = field(default_factory=list)
    # Structured ops lay operands out as inputs, outputs, then extra operands.
    num_inputs: int = 0
    num_outputs: int = 0
    parent_block: Optional[int] = None

    @property
    def inputs(self) -> List[int]:
        return self.operands[: self.num_inputs]

    @property
    def outputs(self) -> List[int]:
        return self.operands[self.num_inputs : self.num_inputs + self.num_outputs]

    @property
    def extra_operands(self) -> List[int]:
        return self.operands[self.num_inputs + self.num_outputs :]


class Module:
    """Owns every value, block and operation of one IR graph."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.values: Dict[int, Value] = {}
        self.blocks: Dict[int, Block] = {}
        self.ops: Dict[int, Operation] = {}
        self.body: int = self.create_block([])

    # ---- lookup -----------------------------------------------------------

    def value(self, vid: int) -> Value:
        v = self.values.get(vid)
        if v is None:
            raise IRConstructionError(f"unknown value handle %{vid}")
        return v

    def op(self, oid: int) -> Operation:
        o = self.ops.get(oid)
        if o is None:
            raise IRConstructionError(f"unknown operation handle #{oid}")
        return o

    def block(self, bid: int) -> Block:
        b = self.blocks.get(bid)
        if b is None:
            raise IRConstructionError(f"unknown block handle ^{bid}")
        return b

    def type_of(self, vid: int) -> IRType:
        return self.value(vid).type

    def defining_op(self, vid: int) -> Optional[int]:
        return self.value(vid).owner_op

    def users(self, vid: int) -> List[int]:
        seen: List[int] = []
        for oid, _ in self.value(vid).uses:
            if oid not in seen:
                seen.append(oid)
        return seen

    def has_uses(self, vid: int) -> bool:
        return bool(self.value(vid).uses)

    def parent_op(self, oid: int) -> Optional[int]:
        bid = self.op(oid).parent_block
        if bid is None:
            return None
        return self.block(bid).parent_op

    def region_entry(self, oid: int, region_index: int = 0) -> Optional[int]:
        regions = self.op(oid).regions
        if region_index >= len(regions) or not regions[region_index]:
            return None
        return regions[region_index][0]

    def terminator(self, bid: int) -> Optional[int]:
        ops = self.block(bid).ops
        return ops[-1] if ops else None

    def walk(self, block: Optional[int] = None) -> Iterator[int]:
        """Pre-order walk over the ops of `block` (default: top level) and nested regions."""
        bid = self.body if block is None else block
        for oid in list(self.block(bid).ops):
            if oid not in self.ops:
                continue
            yield oid
            for region in list(self.ops[oid].regions):
                for inner in list(region):
                    if inner in self.blocks:
                        yield from self.walk(inner)

    # ---- creation ---------------------------------------------------------

    def _new_value(self, t: IRType, **kwargs: Any) -> int:
        vid = next(self._ids)
        self.values[vid] = Value(id=vid, type=t, **kwargs)
        return vid

    def create_block(self, arg_types: Sequence[IRType], parent_op: Optional[int] = None) -> int:
        bid = next(self._ids)
        blk = Block(id=bid, parent_op=parent_op)
        self.blocks[bid] = blk
        for t in arg_types:
            self.add_block_argument(bid, t)
        return bid

    def add_block_argument(self, bid: int, t: IRType) -> int:
        blk = self.block(bid)
        vid = self._new_value(t, owner_block=bid, arg_index=len(blk.args))
        blk.args.append(vid)
        return vid

    def add_argument(self, t: IRType) -> int:
        """Add an argument to the top-level block (a function-like entry value)."""
        return self.add_block_argument(self.body, t)

    def create_op(
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
        """Create a detached operation; use `insert_op` to place it in a block."""
        oid = next(self._ids)
        for vid in operands:
            self.value(vid)
        op = Operation(
            id=oid,
            kind=kind,
            operands=list(operands),
            results=[],
            attrs=MappingProxyType(dict(attrs or {})),
            regions=[[] for _ in range(num_regions)],
            num_inputs=num_inputs,
            num_outputs=num_outputs,
        )
        self.ops[oid] = op
        for idx, vid in enumerate(op.operands):
            self.values[vid].uses.append((oid, idx))
        for i, t in enumerate(result_types):
            op.results.append(self._new_value(t, owner_op=oid, result_index=i))
        return oid

    def add_region_block(self, oid: int, arg_types: Sequence[IRType], region_index: int = 0) -> int:
        op = self.op(oid)
        bid = self.create_block(arg_types, parent_op=oid)
        op.regions[region_index].append(bid)
        return bid

    def insert_op(self, oid: int, bid: int, position: Optional[int] = None) -> None:
        op = self.op(oid)
        if op.parent_block is not None:
            raise IRConstructionError(f"operation #{oid} is already inserted")
        blk = self.block(bid)
        if position is None:
            blk.ops.append(oid)
        else:
            blk.ops.insert(position, oid)
        op.parent_block = bid

    def insert_op_before(self, oid: int, anchor: int) -> None:
        bid = self.op(anchor).parent_block
        if bid is None:
            raise IRConstructionError(f"anchor operation #{anchor} is detached")
        self.insert_op(oid, bid, self.block(bid).ops.index(anchor))

    # ---- mutation ---------------------------------------------------------

    def set_operand(self, oid: int, index: int, new_value: int) -> None:
        op = self.op(oid)
        self.value(new_value)
        old = op.operands[index]
        self.values[old].uses.remove((oid, index))
        op.operands[index] = new_value
        self.values[new_value].uses.append((oid, index))

    def replace_all_uses_with(self, old: int, new: int) -> None:
        if old == new:
            return
        for oid, idx in list(self.value(old).uses):
            self.set_operand(oid, idx, new)

    def replace_op(self, oid: int, new_values: Sequence[int]) -> None:
        op = self.op(oid)
        if len(new_values) != len(op.results):
            raise IRConstructionError(
                f"replacing #{oid} ({op.kind}) needs {len(op.results)} values, got {len(new_values)}"
            )
        for old, new in zip(op.results, new_values):
            self.replace_all_uses_with(old, new)
        self.erase_op(oid)

    def move_regions(self, src: int, dst: int) -> None:
        """Transfer ownership of all regions of `src` to `dst` (which must have none filled)."""
        s, d = self.op(src), self.op(dst)
        if len(d.regions) != len(s.regions) or any(d.regions):
            raise IRConstructionError(f"cannot move regions of #{src} into #{dst}")
        d.regions = s.regions
        s.regions = [[] for _ in d.regions]
        for region in d.regions:
            for bid in region:
                self.blocks[bid].parent_op = dst

    def erase_block_argument(self, bid: int, index: int) -> None:
        blk = self.block(bid)
        vid = blk.args[index]
        if self.values[vid].uses:
            raise IRConstructionError(f"block argument %{vid} still has uses")
        del blk.args[index]
        del self.values[vid]
        for i, a in enumerate(blk.args):
            self.values[a].arg_index = i

    def erase_op(self, oid: int) -> None:
        op = self.op(oid)
        for region in op.regions:
            for bid in reversed(region):
                self._erase_block(bid)
        op.regions = []
        for vid in op.results:
            if self.values[vid].uses:
                users = ", ".join(f"#{u}" for u in self.users(vid))
                raise IRConstructionError(f"cannot erase #{oid} ({op.kind}): result %{vid} used by {users}")
        for idx, vid in enumerate(op.operands):
            self.values[vid].uses.remove((oid, idx))
        for vid in op.results:
            del self.values[vid]
        if op.parent_block is not None and op.parent_block in self.blocks:
            self.blocks[op.parent_block].ops.remove(oid)
        del self.ops[oid]

    def _erase_block(self, bid: int) -> None:
        blk = self.blocks[bid]
        # Users come after producers inside a block, so erase back to front.
        for oid in reversed(list(blk.ops)):
            self.erase_op(oid)
        for vid in blk.args:
            if self.values[vid].uses:
                raise IRConstructionError(f"block argument %{vid} used outside its block")
            del self.values[vid]
        del self.blocks[bid]
