from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


SEVERITY_ORDER = ["CRITICAL", "HIGH", "MEDIUM", "LOW", "INFO"]

_RANK = {s: len(SEVERITY_ORDER) - i for i, s in enumerate(SEVERITY_ORDER)}

_ALIASES = {
    "CRITICAL": "CRITICAL",
    "HIGH": "HIGH",
    "ERROR": "HIGH",
    "MEDIUM": "MEDIUM",
    "MODERATE": "MEDIUM",
    "WARNING": "MEDIUM",
    "LOW": "LOW",
    "NOTE": "LOW",
    "NEGLIGIBLE": "INFO",
    "INFORMATIONAL": "INFO",
    "INFO": "INFO",
    "NONE": "INFO",
    "UNKNOWN": "INFO",
}


def normalize_severity(value: Optional[str]) -> str:
    return _ALIASES.get(str(value or "").strip().upper(), "INFO")


def severity_at_least(severity: str, threshold: str) -> bool:
    return _RANK[normalize_severity(severity)] >= _RANK[normalize_severity(threshold)]


@dataclass(frozen=True)
class Finding:
    id: str
    severity: str
    target: str = ""
    title: str = ""
    fixed: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity,
            "target": self.target,
            "title": self.title,
            "fixed": self.fixed,
        }


@dataclass
class ScanSummary:
    scanner: str
    findings: List[Finding] = field(default_factory=list)
    ignored_unfixed: int = 0

    @property
    def counts(self) -> Dict[str, int]:
        out = {s: 0 for s in SEVERITY_ORDER}
        for f in self.findings:
            out[f.severity] += 1
        return out

    @property
    def total(self) -> int:
        return len(self.findings)

    def blocking(self, fail_on: str) -> List[Finding]:
        return [f for f in self.findings if severity_at_least(f.severity, fail_on)]

    def to_dict(self, *, fail_on: Optional[str] = None, limit: int = 20) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "scanner": self.scanner,
            "total": self.total,
            "counts": self.counts,
            "ignored_unfixed": self.ignored_unfixed,
        }
        if fail_on:
            blocking = self.blocking(fail_on)
            out["fail_on"] = normalize_severity(fail_on)
            out["blocking"] = [f.to_dict() for f in blocking[:limit]]
            out["blocking_count"] = len(blocking)
        return out


@dataclass(frozen=True)
class ScanEvaluation:
    passed: bool
    reason: str
    blocking_count: int = 0


def evaluate_scan(summary: ScanSummary, fail_on: str) -> ScanEvaluation:
    threshold = normalize_severity(fail_on)
    blocking = summary.blocking(threshold)
    if not blocking:
        return ScanEvaluation(passed=True, reason=f"no findings at or above {threshold}")
    counts: Dict[str, int] = {}
    for f in blocking:
        counts[f.severity] = counts.get(f.severity, 0) + 1
    parts = ", ".join(f"{counts[s]} {s}" for s in SEVERITY_ORDER if s in counts)
    return ScanEvaluation(
        passed=False,
        reason=f"{parts} finding(s) at or above {threshold}",
        blocking_count=len(blocking),
    )
