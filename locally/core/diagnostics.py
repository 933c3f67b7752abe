from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    INPUT = "input"
    AUTH = "auth"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    DEPENDENCY = "dependency"
    FATAL = "fatal"


@dataclass(frozen=True)
class DiagnosticEntry:
    # Single error or warning with the component that produced it.
    code: str
    message: str
    component: str
    kind: ErrorKind = ErrorKind.DEPENDENCY
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "component": self.component,
            "kind": self.kind.value,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


@dataclass
class Diagnostics:
    """Accumulates errors and warnings across a call graph.

    Diagnostics are returned alongside results rather than raised. A caller
    that invokes a sub-operation appends the child's diagnostics so the final
    value carries every error plus the chain of operation names that produced
    them. Public boundaries translate the aggregate into an HTTP response or a
    log record.
    """

    name: str
    errors: list[DiagnosticEntry] = field(default_factory=list)
    warnings: list[DiagnosticEntry] = field(default_factory=list)
    path: list[str] = field(default_factory=list)

    def add_error(
        self,
        code: str,
        message: str,
        component: str,
        details: dict[str, Any] | None = None,
        *,
        kind: ErrorKind = ErrorKind.DEPENDENCY,
    ) -> None:
        self.errors.append(
            DiagnosticEntry(code=code, message=message, component=component, kind=kind, details=details)
        )

    def add_warning(
        self,
        code: str,
        message: str,
        component: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.warnings.append(
            DiagnosticEntry(
                code=code,
                message=message,
                component=component,
                kind=ErrorKind.DEPENDENCY,
                details=details,
            )
        )

    def append(self, other: Diagnostics | None) -> None:
        # Merge a child's entries in order and remember where they came from.
        if other is None:
            return
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        if other.errors or other.warnings:
            self.path.append(other.name)
            self.path.extend(other.path)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def first_error(self) -> DiagnosticEntry | None:
        return self.errors[0] if self.errors else None

    def kind(self) -> ErrorKind | None:
        first = self.first_error()
        return first.kind if first else None

    def summary(self) -> str:
        if not self.errors:
            return f"{self.name}: ok"
        messages = "; ".join(f"{entry.code}: {entry.message}" for entry in self.errors)
        return f"{self.name}: {len(self.errors)} error(s): {messages}"

    def to_dict(self) -> dict[str, Any]:
        kind = self.kind()
        return {
            "operation": self.name,
            "kind": kind.value if kind else None,
            "summary": self.summary(),
            "entries": [entry.to_dict() for entry in self.errors],
            "warnings": [entry.to_dict() for entry in self.warnings],
            "path": list(self.path),
        }
