from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from ulazy.models import FetchResult, FetchStatus, is_commit_ref

_COLUMNS = ("NAME", "STATUS", "REF", "ACTIVATION", "DETAIL")


def short_ref(ref: str) -> str:
    if ref.startswith("sha256:"):
        return ref[: len("sha256:") + 12]
    if is_commit_ref(ref):
        return ref[:12]
    return ref


@dataclass(frozen=True)
class StatusRow:
    name: str
    status: str
    ref: str = ""
    activation: str = ""
    detail: str = ""
    failed: bool = False

    @classmethod
    def from_result(cls, result: FetchResult, activation: str = "") -> StatusRow:
        detail = result.error
        if not detail and result.previous_ref and result.previous_ref != result.ref:
            detail = f"was {short_ref(result.previous_ref)}"
        if result.attempts > 1 and not result.failed:
            detail = f"{detail} (after {result.attempts} attempts)".strip()
        return cls(
            name=result.name,
            status=result.status.value,
            ref=result.ref,
            activation=activation,
            detail=detail,
            failed=result.status is FetchStatus.FAILED,
        )


@dataclass
class OperationReport:
    operation: str
    rows: list[StatusRow] = field(default_factory=list)

    @property
    def failed(self) -> list[StatusRow]:
        return [row for row in self.rows if row.failed]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def summary(self) -> str:
        if self.ok:
            return f"{self.operation}: {len(self.rows)} extension(s) ok"
        names = ", ".join(row.name for row in self.failed)
        return f"{self.operation}: {len(self.failed)} of {len(self.rows)} failed ({names})"


def render_table(rows: Iterable[StatusRow]) -> str:
    """Render rows as a fixed-width, plain text table."""
    lines = [
        (row.name, row.status, short_ref(row.ref), row.activation, row.detail)
        for row in rows
    ]
    widths = [len(column) for column in _COLUMNS]
    for line in lines:
        widths = [max(width, len(cell)) for width, cell in zip(widths, line)]

    def _format(cells: tuple[str, ...]) -> str:
        return "  ".join(cell.ljust(width) for cell, width in zip(cells, widths)).rstrip()

    output = [_format(_COLUMNS), _format(tuple("-" * width for width in widths))]
    output.extend(_format(line) for line in lines)
    return "\n".join(output)
