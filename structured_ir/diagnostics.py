"""
Diagnostic utilities for structured-op verification and construction.

This is intentionally lightweight (no color dependencies) but supports:
  - structured diagnostics with a taxonomy kind and an op location
  - notes attached to a diagnostic
  - rich multi-line formatting (Clang-like)
  - a lock-guarded engine so independent ops can be verified concurrently
"""

from __future__ import annotations

import difflib
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, List, Literal, Optional

if TYPE_CHECKING:
    from .ir.core import Module


Level = Literal["error", "warning", "info"]


class ErrorKind(Enum):
    MALFORMED_REASSOCIATION = "malformed-reassociation"
    SHAPE_MISMATCH = "shape-mismatch"
    RANK_OR_ELEMENT_TYPE_MISMATCH = "rank-or-element-type-mismatch"
    REGION_SIGNATURE_MISMATCH = "region-signature-mismatch"
    ATTRIBUTE_ARITY_MISMATCH = "attribute-arity-mismatch"
    UNSUPPORTED_CAST = "unsupported-cast"
    INVALID_OPERATION = "invalid-operation"


@dataclass(frozen=True)
class OpLocation:
    op: Optional[int] = None
    kind: Optional[str] = None

    def __str__(self) -> str:
        if self.op is None:
            return "<unknown>"
        return f"#{self.op} ({self.kind})" if self.kind else f"#{self.op}"


@dataclass
class Diagnostic:
    level: Level
    kind: ErrorKind
    message: str
    location: Optional[OpLocation] = None
    notes: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        loc = f"{self.location}: " if self.location is not None else ""
        return f"{loc}{self.message}"


class DiagnosticEngine:
    def __init__(self) -> None:
        self.items: List[Diagnostic] = []
        self._lock = threading.Lock()

    def emit(self, diag: Diagnostic) -> None:
        with self._lock:
            self.items.append(diag)

    @property
    def errors(self) -> List[Diagnostic]:
        with self._lock:
            return [d for d in self.items if d.level == "error"]

    @property
    def warnings(self) -> List[Diagnostic]:
        with self._lock:
            return [d for d in self.items if d.level == "warning"]

    def format_rich(self, diag: Diagnostic, *, snippet: str | None = None) -> str:
        lines: List[str] = []
        lines.append(f"{diag.level.upper()} [{diag.kind.value}]: {diag}")
        if snippet:
            lines.append(f"  -> {snippet}")
        for n in diag.notes:
            lines.append(f"Note: {n}")
        return "\n".join(lines)


class VerificationError(Exception):
    """Raised on the first violated rule of an operation; carries one diagnostic."""

    def __init__(self, diagnostic: Diagnostic):
        super().__init__(str(diagnostic))
        self.diagnostic = diagnostic

    @property
    def kind(self) -> ErrorKind:
        return self.diagnostic.kind


def closest_match(name: str, candidates: Iterable[str], *, n: int = 1) -> List[str]:
    return list(difflib.get_close_matches(str(name), list(candidates), n=n, cutoff=0.6))


def format_op_snippet(module: "Module", oid: int) -> str:
    """
    Best-effort human-readable op string, e.g.
    `%5 = structured.fill(%3, %4) : tensor<4x?xf32>`.
    """
    op = module.ops.get(oid)
    if op is None:
        return f"#{oid}"
    operands = ", ".join(f"%{v}" for v in op.operands)
    results = ", ".join(f"%{v}" for v in op.results)
    prefix = f"{results} = " if results else ""
    types = ", ".join(str(module.type_of(v)) for v in op.results)
    suffix = f" : {types}" if types else ""
    return f"{prefix}{op.kind}({operands}){suffix}"


def make_error(kind: ErrorKind, message: str, *, op: Any = None, op_kind: str | None = None) -> VerificationError:
    return VerificationError(Diagnostic(level="error", kind=kind, message=message, location=OpLocation(op, op_kind)))


__all__ = [
    "ErrorKind",
    "OpLocation",
    "Diagnostic",
    "DiagnosticEngine",
    "VerificationError",
    "closest_match",
    "format_op_snippet",
    "make_error",
]
