"""Derived statistics and the fixed-column report table.

Columns: Name, % Application Time, Real Time, % CPU Time, CPU Time,
Average time, Calls. Cells that carry no information (CPU time equal to real
time, averages over a single call, calls of a still-open scope) show "-".
"""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from beartype import beartype
from loguru import logger

from scopeprof._merge import MergedNode

PLACEHOLDER = "-"
COLUMNS = (
    "Name",
    "% Application Time",
    "Real Time",
    "% CPU Time",
    "CPU Time",
    "Average time",
    "Calls",
)


@runtime_checkable
class SupportsWrite(Protocol):
    def write(self, text: str, /) -> Any: ...


Sink = str | Path | SupportsWrite


@dataclass(frozen=True)
class ReportRow:
    """One rendered line of the report.

    Attributes:
        percent_cpu: None (rendered "-") when cpu_ns equals real_ns
        cpu_ns: None under the same condition as percent_cpu
        average_ns: cpu_ns // calls, but only for rows with more than one
            call; None otherwise, since for a single call it repeats the
            time columns
        calls: 0 (rendered "-") for a scope that was still open
    """

    name: str
    depth: int
    percent_app: float
    real_ns: int
    percent_cpu: float | None
    cpu_ns: int | None
    average_ns: int | None
    calls: int


@dataclass(frozen=True)
class MergedReport:
    root: MergedNode
    rows: tuple[ReportRow, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": self.root.name,
            "rows": [
                {
                    "name": row.name,
                    "depth": row.depth,
                    "percent_app": row.percent_app,
                    "real_ns": row.real_ns,
                    "percent_cpu": row.percent_cpu,
                    "cpu_ns": row.cpu_ns,
                    "average_ns": row.average_ns,
                    "calls": row.calls,
                }
                for row in self.rows
            ],
        }


def _percent(value: int, total: int) -> float:
    if total == 0:
        return 100.0
    return value / total * 100.0


@beartype
def build_report(root: MergedNode) -> MergedReport:
    """Derive percentages and averages for every node, depth-first.

    % Application Time is relative to the root's real time. % CPU Time is
    relative to the root's CPU time for the root and its direct children,
    and to the summed CPU time of the node and its siblings deeper down.
    """
    rows: list[ReportRow] = []
    # (node, depth, cpu denominator); explicit stack, recursion can be deep
    pending: list[tuple[MergedNode, int, int]] = [(root, 0, root.cpu_ns)]

    while pending:
        node, depth, cpu_total = pending.pop()
        show_cpu = node.has_cpu_time
        rows.append(
            ReportRow(
                name=node.name,
                depth=depth,
                percent_app=_percent(node.real_ns, root.real_ns),
                real_ns=node.real_ns,
                percent_cpu=_percent(node.cpu_ns, cpu_total) if show_cpu else None,
                cpu_ns=node.cpu_ns if show_cpu else None,
                average_ns=node.cpu_ns // node.calls if node.calls > 1 else None,
                calls=node.calls,
            )
        )

        if depth == 0:
            child_total = root.cpu_ns
        else:
            child_total = sum(child.cpu_ns for child in node.children)
        for child in reversed(node.children):
            pending.append((child, depth + 1, child_total))

    return MergedReport(root=root, rows=tuple(rows))


def format_duration(ns: int) -> str:
    """Human-scaled duration: 950ns, 12.34µs, 10.08ms, 1.02s."""
    if ns < 1_000:
        return f"{ns}ns"
    if ns < 1_000_000:
        return f"{ns / 1_000:.2f}µs"
    if ns < 1_000_000_000:
        return f"{ns / 1_000_000:.2f}ms"
    return f"{ns / 1_000_000_000:.2f}s"


def format_percent(value: float) -> str:
    return f"{value:.2f}%"


def _cells(row: ReportRow) -> list[str | None]:
    return [
        "  " * row.depth + row.name,
        format_percent(row.percent_app),
        format_duration(row.real_ns),
        format_percent(row.percent_cpu) if row.percent_cpu is not None else None,
        format_duration(row.cpu_ns) if row.cpu_ns is not None else None,
        f"{format_duration(row.average_ns)}/call" if row.average_ns is not None else None,
        str(row.calls) if row.calls > 0 else None,
    ]


@beartype
def render(report: MergedReport, title: str = "PROFILING RESULTS") -> str:
    """Lay the report out as a fixed-column text table."""
    table = [_cells(row) for row in report.rows]
    widths = [
        max([len(header)] + [len(cells[i]) for cells in table if cells[i] is not None])
        for i, header in enumerate(COLUMNS)
    ]
    width = sum(widths) + 2 * (len(widths) - 1)

    def line(cells: list[str | None]) -> str:
        parts = []
        for i, cell in enumerate(cells):
            if cell is None:
                parts.append(f"{PLACEHOLDER:^{widths[i]}}")
            elif i == 0:
                parts.append(f"{cell:<{widths[i]}}")
            else:
                parts.append(f"{cell:>{widths[i]}}")
        return "  ".join(parts).rstrip()

    lines = [
        "=" * width,
        f"{title:^{width}}".rstrip(),
        "=" * width,
        line(list(COLUMNS)),
        "-" * width,
        *(line(cells) for cells in table),
        "=" * width,
    ]
    return "\n".join(lines) + "\n"


@beartype
def write_report(text: str, sink: Sink) -> None:
    """Write the rendered report once to the sink.

    Args:
        text: Rendered report
        sink: "stdout", "stderr", "log" (loguru, one info line per table line),
            a file path (parents created, file overwritten), or any object
            with a write(str) method
    """
    if isinstance(sink, SupportsWrite):
        sink.write(text)
        return

    if sink == "stdout":
        sys.stdout.write(text)
        sys.stdout.flush()
    elif sink == "stderr":
        sys.stderr.write(text)
        sys.stderr.flush()
    elif sink == "log":
        logger.info("")
        for table_line in text.splitlines():
            logger.info(table_line)
        logger.info("")
    else:
        path = Path(sink)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
