import json

import pytest

from shipyard.core.errors import ScanReportError
from shipyard.core.scanners import evaluate_scan, normalize_severity, parse_report, severity_at_least


def test_severity_normalization_and_order():
    assert normalize_severity("Critical") == "CRITICAL"
    assert normalize_severity("moderate") == "MEDIUM"
    assert normalize_severity("Negligible") == "INFO"
    assert normalize_severity(None) == "INFO"
    assert severity_at_least("CRITICAL", "HIGH")
    assert severity_at_least("HIGH", "HIGH")
    assert not severity_at_least("MEDIUM", "HIGH")


def test_trivy_counts_vulnerabilities_and_misconfigurations():
    report = {
        "SchemaVersion": 2,
        "Results": [
            {
                "Target": "alpine:3.19",
                "Vulnerabilities": [
                    {"VulnerabilityID": "CVE-1", "PkgName": "musl", "Severity": "HIGH", "FixedVersion": "1.2.5"},
                    {"VulnerabilityID": "CVE-2", "PkgName": "zlib", "Severity": "LOW", "FixedVersion": ""},
                    {"VulnerabilityID": "CVE-3", "PkgName": "curl", "Severity": "CRITICAL"},
                ],
            },
            {"Target": "Dockerfile", "Misconfigurations": [{"ID": "DS002", "Severity": "HIGH", "Title": "root user"}]},
            {"Target": "requirements.txt"},
        ],
    }
    summary = parse_report("trivy", json.dumps(report))
    assert summary.counts == {"CRITICAL": 1, "HIGH": 2, "MEDIUM": 0, "LOW": 1, "INFO": 0}

    unfixed_ignored = parse_report("trivy", json.dumps(report), ignore_unfixed=True)
    assert unfixed_ignored.ignored_unfixed == 2
    assert unfixed_ignored.counts["CRITICAL"] == 0

    ev = evaluate_scan(summary, "CRITICAL")
    assert not ev.passed
    assert ev.blocking_count == 1


def test_trivy_clean_report_passes():
    summary = parse_report("trivy", json.dumps({"SchemaVersion": 2, "ArtifactName": "."}))
    assert summary.total == 0
    assert evaluate_scan(summary, "LOW").passed


def test_grype_fix_state():
    report = {
        "matches": [
            {"vulnerability": {"id": "GHSA-1", "severity": "High", "fix": {"state": "fixed", "versions": ["2.0"]}},
             "artifact": {"name": "requests"}},
            {"vulnerability": {"id": "CVE-9", "severity": "Critical", "fix": {"state": "not-fixed"}},
             "artifact": {"name": "glibc"}},
        ]
    }
    summary = parse_report("grype", json.dumps(report))
    assert summary.counts["CRITICAL"] == 1
    assert summary.counts["HIGH"] == 1

    summary = parse_report("grype", json.dumps(report), ignore_unfixed=True)
    assert summary.total == 1
    assert summary.findings[0].target == "requests"


def test_sarif_prefers_security_severity():
    report = {
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": "semgrep",
                        "rules": [
                            {"id": "sqli", "properties": {"security-severity": "9.1"}},
                            {"id": "style", "defaultConfiguration": {"level": "note"}},
                        ],
                    }
                },
                "results": [
                    {"ruleId": "sqli", "level": "warning", "message": {"text": "tainted query"},
                     "locations": [{"physicalLocation": {"artifactLocation": {"uri": "app/db.py"}}}]},
                    {"ruleId": "style", "message": {"text": "naming"}},
                    {"ruleId": "unknown-rule", "level": "error", "message": {"text": "bad"}},
                ],
            }
        ],
    }
    summary = parse_report("sarif", json.dumps(report))
    by_id = {f.id: f for f in summary.findings}
    assert by_id["sqli"].severity == "CRITICAL"
    assert by_id["sqli"].target == "app/db.py"
    assert by_id["style"].severity == "LOW"
    assert by_id["unknown-rule"].severity == "HIGH"
    assert evaluate_scan(summary, "HIGH").reason == "1 CRITICAL, 1 HIGH finding(s) at or above HIGH"
    assert evaluate_scan(summary, "HIGH").blocking_count == 2


def test_zap_riskcodes():
    report = {
        "@version": "2.14.0",
        "site": [
            {
                "@name": "http://app.pre-prod",
                "alerts": [
                    {"pluginid": "40012", "alert": "XSS", "riskcode": "3"},
                    {"pluginid": "10038", "alert": "CSP header not set", "riskcode": "2"},
                    {"pluginid": "10036", "alert": "Server leaks version", "riskcode": "0"},
                ],
            }
        ],
    }
    summary = parse_report("zap", json.dumps(report))
    assert summary.counts["HIGH"] == 1
    assert summary.counts["MEDIUM"] == 1
    assert summary.counts["INFO"] == 1
    assert not evaluate_scan(summary, "HIGH").passed
    assert evaluate_scan(parse_report("zap", json.dumps({"site": []})), "LOW").passed


@pytest.mark.parametrize(
    "scanner, text",
    [
        ("trivy", ""),
        ("trivy", "{not json"),
        ("trivy", json.dumps({"foo": 1})),
        ("grype", json.dumps({"source": {}})),
        ("sarif", json.dumps({"version": "2.1.0"})),
        ("zap", json.dumps([])),
        ("bandit", "{}"),
    ],
)
def test_unusable_reports_raise(scanner, text):
    with pytest.raises(ScanReportError):
        parse_report(scanner, text)


def test_summary_dict_lists_blocking_findings():
    report = {"matches": [{"vulnerability": {"id": f"CVE-{i}", "severity": "High"}} for i in range(30)]}
    d = parse_report("grype", json.dumps(report)).to_dict(fail_on="high", limit=5)
    assert d["fail_on"] == "HIGH"
    assert d["blocking_count"] == 30
    assert len(d["blocking"]) == 5
