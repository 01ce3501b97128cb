"""Semantic linter.

Rules run independently against one immutable IR and only ever report;
nothing here raises. A rule that crashes is logged and reported as E000 so
the remaining rules still run.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Iterable

from .ir import IR, Provenance

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"


@dataclass(frozen=True)
class Location:
    file: str
    line: int

    @classmethod
    def of(cls, provenance: Provenance) -> "Location":
        return cls(provenance.source_file, provenance.line_number)


@dataclass(frozen=True)
class Finding:
    severity: Severity
    rule: str
    message: str
    location: Location | None = None
    suggestion: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["severity"] = self.severity.value
        return d


@dataclass(frozen=True)
class LintConfig:
    max_nesting_depth: int = 5
    max_chain_length: int = 10


class Rule:
    """Base class for lint rules; subclasses set the class attributes."""

    code: str = ""
    name: str = ""
    severity: Severity = Severity.ERROR

    def check(self, ir: IR, config: LintConfig) -> list[Finding]:
        raise NotImplementedError

    def finding(
        self,
        message: str,
        provenance: Provenance | None = None,
        suggestion: str | None = None,
    ) -> Finding:
        return Finding(
            severity=self.severity,
            rule=self.code,
            message=message,
            location=Location.of(provenance) if provenance else None,
            suggestion=suggestion,
        )


def _sort_key(f: Finding) -> tuple[int, int]:
    return (0 if f.severity is Severity.ERROR else 1, f.location.line if f.location else 0)


class Linter:
    def __init__(self, config: LintConfig | None = None, rules: Iterable[Rule] | None = None):
        from .rules import default_rules

        self.config = config or LintConfig()
        self.rules: list[Rule] = list(rules) if rules is not None else default_rules()

    def add_rule(self, rule: Rule) -> None:
        self.rules.append(rule)

    def lint(self, ir: IR) -> list[Finding]:
        findings: list[Finding] = []
        for rule in self.rules:
            try:
                findings.extend(rule.check(ir, self.config))
            except Exception as e:
                logger.exception("lint rule %s crashed", rule.code)
                findings.append(
                    Finding(
                        severity=Severity.ERROR,
                        rule="E000",
                        message=f"internal error in rule {rule.code} ({rule.name}): {e}",
                    )
                )
        # ERRORs first, then by line
        findings.sort(key=_sort_key)
        return findings


def lint(ir: IR, config: LintConfig | None = None) -> list[Finding]:
    return Linter(config).lint(ir)


def errors(findings: Iterable[Finding]) -> list[Finding]:
    return [f for f in findings if f.severity is Severity.ERROR]


def warnings(findings: Iterable[Finding]) -> list[Finding]:
    return [f for f in findings if f.severity is Severity.WARNING]


def has_errors(findings: Iterable[Finding]) -> bool:
    return any(f.severity is Severity.ERROR for f in findings)


def format_findings(findings: list[Finding]) -> str:
    if not findings:
        return "No issues found ✓"

    lines: list[str] = []
    for f in findings:
        where = f"{f.location.file}:{f.location.line}" if f.location else "unknown"
        lines.append(f"{f.severity.value}: {f.rule} - {f.message}")
        lines.append(f"  at {where}")
        if f.suggestion:
            lines.append(f"  Suggestion: {f.suggestion}")
        lines.append("")
    return "\n".join(lines)
