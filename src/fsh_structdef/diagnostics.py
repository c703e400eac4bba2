"""Diagnostics sink for user-correctable problems.

The engine reports problems in authored rules (an unresolvable path, a type
mismatch, a widening cardinality) instead of aborting. Each report becomes a
:class:`Diagnostic` carrying the source location of the rule that caused it,
so a whole batch of definitions can be fixed in one pass.

Example:
        collector = DiagnosticCollector()
        collector.error("Cannot resolve element from path: foo", rule.source_info)
        if collector.error_count:
            for diagnostic in collector.errors():
                print(diagnostic.message)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import SourceInfo

SEVERITIES = ("error", "warning", "info", "debug")
_LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


@dataclass
class Diagnostic:
    """A single reported problem.

    Attributes:
        severity: One of ``error``, ``warning``, ``info``, ``debug``.
        message: Human readable description.
        source_info: Where in the authored source the problem originates.
    """

    severity: str
    message: str
    source_info: Optional[SourceInfo] = None

    def __str__(self) -> str:
        location = self.source_info.describe() if self.source_info is not None else ""
        return f"{self.message}\n  {location}" if location else self.message


@dataclass
class DiagnosticCollector:
    """Collect diagnostics and forward them to a logger.

    Attributes:
        logger: Logger that receives every diagnostic at the matching level.
        diagnostics: Everything reported so far, in order.
    """

    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("fsh_structdef"))
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def report(self, severity: str, message: str, source_info: Optional[SourceInfo] = None) -> Diagnostic:
        if severity not in _LEVELS:
            raise ValueError(f"Unknown severity {severity!r}; expected one of {', '.join(SEVERITIES)}")
        diagnostic = Diagnostic(severity, message, source_info)
        self.diagnostics.append(diagnostic)
        self.logger.log(_LEVELS[severity], str(diagnostic))
        return diagnostic

    def error(self, message: str, source_info: Optional[SourceInfo] = None) -> Diagnostic:
        return self.report("error", message, source_info)

    def warning(self, message: str, source_info: Optional[SourceInfo] = None) -> Diagnostic:
        return self.report("warning", message, source_info)

    def info(self, message: str, source_info: Optional[SourceInfo] = None) -> Diagnostic:
        return self.report("info", message, source_info)

    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "error"]

    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "warning"]

    @property
    def error_count(self) -> int:
        return len(self.errors())

    @property
    def warning_count(self) -> int:
        return len(self.warnings())

    def summary(self) -> Dict[str, int]:
        """Counts per severity, like ``{"error": 2, "warning": 0, ...}``."""
        return {severity: sum(1 for d in self.diagnostics if d.severity == severity) for severity in SEVERITIES}

    def since(self, mark: int) -> List[Diagnostic]:
        """Diagnostics reported after ``len(self.diagnostics)`` was ``mark``."""
        return self.diagnostics[mark:]

    def clear(self) -> None:
        self.diagnostics.clear()
