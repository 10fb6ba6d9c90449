# virus/diagnostic.py
"""
Turn a failing stage's output into a human-facing diagnostic.

Parsers are tried in order until one recognizes the output:
 - StructuredParser: a JSON object line {"message", "line", "column"}
 - LineColumnParser: first line is the message, "line L, column C" is
   searched inside it (1:1 when absent)

The diagnostic is rendered by the toolchain's external formatter on the
host; when it is missing or fails, the raw stage output is used instead.
"""

from __future__ import annotations

import re
import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Union

from virus.logging import get_logger

logger = get_logger("diagnostic")

LINE_COLUMN_RE = re.compile(r"line\s+(\d+)\s*,\s*column\s+(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class Diagnostic:
    source: str
    line: int
    column: int
    message: str


@dataclass(frozen=True)
class DiagnosticReport:
    diagnostic: Diagnostic
    text: str
    formatted: bool  # False when text is the raw stage output


class DiagnosticParser(Protocol):
    def parse(self, output: str, source: str) -> Optional[Diagnostic]:
        ...


class StructuredParser:
    def parse(self, output: str, source: str) -> Optional[Diagnostic]:
        for raw in output.splitlines():
            raw = raw.strip()
            if not (raw.startswith("{") and raw.endswith("}")):
                continue
            try:
                obj = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict) or "message" not in obj:
                continue
            try:
                line = int(obj.get("line", 1))
                column = int(obj.get("column", 1))
            except (TypeError, ValueError):
                continue
            # the tool reports in-sandbox paths; the caller already holds the host path
            return Diagnostic(source=source, line=max(line, 1),
                              column=max(column, 1), message=str(obj["message"]))
        return None


class LineColumnParser:
    """Legacy text scan; always produces a diagnostic."""

    def parse(self, output: str, source: str) -> Optional[Diagnostic]:
        lines = output.splitlines()
        message = lines[0] if lines else ""
        line, column = 1, 1
        m = LINE_COLUMN_RE.search(message)
        if m:
            line, column = int(m.group(1)), int(m.group(2))
        return Diagnostic(source=source, line=line, column=column, message=message)


class DiagnosticReporter:
    def __init__(self, formatter: Optional[Union[str, Path]] = None,
                 parsers: Optional[Sequence[DiagnosticParser]] = None, timeout: int = 30):
        self.formatter = Path(formatter) if formatter else None
        self.parsers: List[DiagnosticParser] = list(parsers) if parsers else [StructuredParser(), LineColumnParser()]
        self.timeout = timeout

    @classmethod
    def from_toolchain(cls, toolchain) -> "DiagnosticReporter":
        formatter = toolchain.host_tool("diagnostic") if toolchain.bin_dir is not None else None
        return cls(formatter=formatter)

    def extract(self, output: Union[str, bytes], source: str) -> Diagnostic:
        text = _as_text(output)
        for parser in self.parsers:
            diag = parser.parse(text, source)
            if diag is not None:
                return diag
        return Diagnostic(source=source, line=1, column=1, message=text.splitlines()[0] if text else "")

    def report(self, output: Union[str, bytes], host_source: Union[str, Path]) -> DiagnosticReport:
        text = _as_text(output)
        diag = self.extract(text, str(host_source))
        rendered = self._render(diag)
        if rendered is None:
            return DiagnosticReport(diagnostic=diag, text=text, formatted=False)
        return DiagnosticReport(diagnostic=diag, text=rendered, formatted=True)

    def _render(self, diag: Diagnostic) -> Optional[str]:
        if self.formatter is None:
            return None
        cmd = [str(self.formatter), "--source", diag.source, "--message", diag.message,
               "--line", str(diag.line), "--column", str(diag.column)]
        try:
            proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                  stdin=subprocess.DEVNULL, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("diagnostic formatter unavailable (%s), showing raw output", e)
            return None
        out = proc.stdout.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            logger.warning("diagnostic formatter exited %d, showing raw output", proc.returncode)
            return None
        return out


def _as_text(output: Union[str, bytes]) -> str:
    return output.decode("utf-8", errors="replace") if isinstance(output, bytes) else output
