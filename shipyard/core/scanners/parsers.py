"""Scanner report parsers.

Each parser takes the raw JSON text a scanner produced and returns a
`ScanSummary` with severities normalized to CRITICAL/HIGH/MEDIUM/LOW/INFO.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict

from shipyard.core.errors import ScanReportError

from .findings import Finding, ScanSummary, normalize_severity


def _load(text: str, scanner: str) -> Any:
    if not (text or "").strip():
        raise ScanReportError(f"{scanner} report is empty", details={"scanner": scanner})
    try:
        return json.loads(text)
    except ValueError as e:
        raise ScanReportError(f"{scanner} report is not valid JSON: {e}", details={"scanner": scanner})


def parse_trivy(text: str, *, ignore_unfixed: bool = False) -> ScanSummary:
    data = _load(text, "trivy")
    # older trivy versions emit a bare list of results
    results = data if isinstance(data, list) else (data.get("Results") if isinstance(data, dict) else None)
    if results is None:
        if isinstance(data, dict) and "SchemaVersion" in data:
            results = []
        else:
            raise ScanReportError("trivy report has no Results", details={"scanner": "trivy"})

    summary = ScanSummary(scanner="trivy")
    for result in results or []:
        target = str(result.get("Target") or "")
        for v in result.get("Vulnerabilities") or []:
            fixed = bool(v.get("FixedVersion"))
            if ignore_unfixed and not fixed:
                summary.ignored_unfixed += 1
                continue
            summary.findings.append(
                Finding(
                    id=str(v.get("VulnerabilityID") or "unknown"),
                    severity=normalize_severity(v.get("Severity")),
                    target=f"{target}:{v.get('PkgName', '')}".rstrip(":"),
                    title=str(v.get("Title") or ""),
                    fixed=fixed,
                )
            )
        for m in result.get("Misconfigurations") or []:
            summary.findings.append(
                Finding(
                    id=str(m.get("ID") or m.get("AVDID") or "unknown"),
                    severity=normalize_severity(m.get("Severity")),
                    target=target,
                    title=str(m.get("Title") or ""),
                )
            )
    return summary


def parse_grype(text: str, *, ignore_unfixed: bool = False) -> ScanSummary:
    data = _load(text, "grype")
    if not isinstance(data, dict) or "matches" not in data:
        raise ScanReportError("grype report has no matches", details={"scanner": "grype"})

    summary = ScanSummary(scanner="grype")
    for match in data.get("matches") or []:
        vuln = match.get("vulnerability") or {}
        artifact = match.get("artifact") or {}
        fixed = str((vuln.get("fix") or {}).get("state") or "").lower() == "fixed"
        if ignore_unfixed and not fixed:
            summary.ignored_unfixed += 1
            continue
        summary.findings.append(
            Finding(
                id=str(vuln.get("id") or "unknown"),
                severity=normalize_severity(vuln.get("severity")),
                target=str(artifact.get("name") or ""),
                title=str(vuln.get("description") or "")[:200],
                fixed=fixed,
            )
        )
    return summary


def _sarif_score_severity(score: Any) -> str:
    try:
        s = float(score)
    except (TypeError, ValueError):
        return ""
    if s >= 9.0:
        return "CRITICAL"
    if s >= 7.0:
        return "HIGH"
    if s >= 4.0:
        return "MEDIUM"
    if s > 0.0:
        return "LOW"
    return "INFO"


def parse_sarif(text: str, *, ignore_unfixed: bool = False) -> ScanSummary:
    data = _load(text, "sarif")
    if not isinstance(data, dict) or not isinstance(data.get("runs"), list):
        raise ScanReportError("sarif report has no runs", details={"scanner": "sarif"})

    summary = ScanSummary(scanner="sarif")
    for run in data["runs"]:
        rules: Dict[str, Dict[str, Any]] = {}
        for rule in ((run.get("tool") or {}).get("driver") or {}).get("rules") or []:
            if rule.get("id"):
                rules[rule["id"]] = rule

        for result in run.get("results") or []:
            rule_id = str(result.get("ruleId") or "unknown")
            rule = rules.get(rule_id, {})
            # security-severity (CVSS-like score) wins over the generic level
            severity = _sarif_score_severity((rule.get("properties") or {}).get("security-severity"))
            if not severity:
                level = result.get("level") or (rule.get("defaultConfiguration") or {}).get("level") or "warning"
                severity = normalize_severity(level)

            target = ""
            locations = result.get("locations") or []
            if locations:
                target = str(
                    ((locations[0].get("physicalLocation") or {}).get("artifactLocation") or {}).get("uri") or ""
                )
            summary.findings.append(
                Finding(
                    id=rule_id,
                    severity=severity,
                    target=target,
                    title=str((result.get("message") or {}).get("text") or "")[:200],
                )
            )
    return summary


_ZAP_RISK = {"3": "HIGH", "2": "MEDIUM", "1": "LOW", "0": "INFO"}


def parse_zap(text: str, *, ignore_unfixed: bool = False) -> ScanSummary:
    data = _load(text, "zap")
    if not isinstance(data, dict) or "site" not in data:
        raise ScanReportError("zap report has no site entries", details={"scanner": "zap"})

    sites = data.get("site") or []
    if isinstance(sites, dict):
        sites = [sites]

    summary = ScanSummary(scanner="zap")
    for site in sites:
        for alert in site.get("alerts") or []:
            summary.findings.append(
                Finding(
                    id=str(alert.get("pluginid") or alert.get("alertRef") or "unknown"),
                    severity=_ZAP_RISK.get(str(alert.get("riskcode")), "INFO"),
                    target=str(site.get("@name") or ""),
                    title=str(alert.get("alert") or alert.get("name") or ""),
                )
            )
    return summary


PARSERS: Dict[str, Callable[..., ScanSummary]] = {
    "trivy": parse_trivy,
    "grype": parse_grype,
    "sarif": parse_sarif,
    "zap": parse_zap,
}


def parse_report(scanner: str, text: str, *, ignore_unfixed: bool = False) -> ScanSummary:
    fn = PARSERS.get(scanner)
    if fn is None:
        raise ScanReportError(f"unknown scanner format: {scanner}", details={"scanner": scanner})
    return fn(text, ignore_unfixed=ignore_unfixed)
