from .findings import Finding, ScanEvaluation, ScanSummary, evaluate_scan, normalize_severity, severity_at_least
from .parsers import PARSERS, parse_report

__all__ = [
    "Finding",
    "ScanEvaluation",
    "ScanSummary",
    "evaluate_scan",
    "normalize_severity",
    "severity_at_least",
    "PARSERS",
    "parse_report",
]
