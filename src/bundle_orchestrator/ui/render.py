"""Plain-text rendering for bundle CLI output.

Purpose
- Keep terminal formatting out of the command handlers.
- Respect the ``NO_COLOR`` environment variable and the ``--no-color`` flag.

Functional requirements
- Output is deterministic for a given report so it can be diffed in CI logs.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

from bundle_orchestrator.domain.models import ModuleState

if TYPE_CHECKING:
    from collections.abc import Sequence

    from bundle_orchestrator.control_plane.scheduler import BuildReport

_ANSI_RESET = "\033[0m"
_STATE_COLORS: dict[ModuleState, str] = {
    ModuleState.INSTALLED: "\033[32m",
    ModuleState.FAILED: "\033[31m",
    ModuleState.PENDING: "\033[33m",
}


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Write human-readable command output to ``stream`` (stdout by default)."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)

    def _write(self, line: str = "") -> None:
        self._stream.write(line + "\n")

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._write(line)

    def section(self, title: str) -> None:
        self._write()
        self._write(title)

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print an aligned ASCII table; nothing is printed for zero rows."""

        if not rows:
            return
        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], len(cell))

        def pad(cells: Sequence[str]) -> str:
            padded = [
                (cells[index] if index < len(cells) else "").ljust(width)
                for index, width in enumerate(widths)
            ]
            return "  ".join(padded).rstrip()

        if title:
            self.section(title)
        self._write(f"  {pad(headers)}")
        self._write(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            self._write(f"  {pad(row)}")

    def state(self, state: ModuleState) -> str:
        if not self._color or state not in _STATE_COLORS:
            return state.value
        return f"{_STATE_COLORS[state]}{state.value}{_ANSI_RESET}"

    def report(self, report: BuildReport) -> None:
        """Summarize per-module outcomes of a build run."""

        rows: list[list[str]] = []
        for record in report.records:
            note = ""
            if record.blocked_by:
                note = f"blocked by {', '.join(record.blocked_by)}"
            elif record.error is not None:
                note = type(record.error).__name__
            elif record.warnings:
                note = f"{len(record.warnings)} warning(s)"
            total_ms = sum(record.timings_ms.values())
            rows.append(
                [record.name, self.state(record.state), f"{total_ms / 1000.0:.1f}s", note]
            )
        self.table(["MODULE", "STATE", "TIME", "NOTE"], rows, title="Modules:")

        errors = [
            f"{record.name}: {record.error}" for record in report.records if record.error
        ]
        if errors:
            self.section("Errors:")
            self.items(errors)
        warnings = [
            f"{record.name}: {warning}"
            for record in report.records
            for warning in record.warnings
        ]
        if warnings:
            self.section("Warnings:")
            self.items(warnings)


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
