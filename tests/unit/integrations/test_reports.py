"""Unit tests for scanner report parsing across the supported report shapes."""

from __future__ import annotations

import json

import pytest

from conduit_ci.domain.models import Severity
from conduit_ci.integrations.reports import ReportFormat, ReportFormatError, detect_format, parse_report


def _pairs(data: object) -> list[tuple[Severity, str]]:
    return [(item.severity, item.id) for item in parse_report(json.dumps(data))]


def test_generic_list_and_object_forms() -> None:
    listing = [{"severity": "Critical", "id": " CVE-1 ", "title": "rce"}, {"severity": "moderate", "id": "CVE-2"}]

    assert _pairs(listing) == [(Severity.CRITICAL, "CVE-1"), (Severity.MEDIUM, "CVE-2")]
    assert _pairs({"findings": listing}) == _pairs(listing)
    assert parse_report(json.dumps(listing))[0].title == "rce"


def test_unknown_severity_spelling_maps_to_unknown() -> None:
    assert _pairs([{"severity": "spicy", "id": "X-1"}, {"id": "X-2"}]) == [
        (Severity.UNKNOWN, "X-1"),
        (Severity.UNKNOWN, "X-2"),
    ]


def test_trivy_results_are_flattened() -> None:
    report = {
        "ArtifactName": "registry.example.invalid/demo-app:abc123",
        "Results": [
            {"Target": "app.jar", "Vulnerabilities": [{"VulnerabilityID": "CVE-2026-10", "Severity": "HIGH", "PkgName": "log4j"}]},
            {"Target": "os", "Vulnerabilities": None},
            {"Target": "base", "Vulnerabilities": [{"VulnerabilityID": "CVE-2026-11", "Severity": "LOW", "Title": "minor"}]},
        ],
    }

    findings = parse_report(json.dumps(report).encode("utf-8"))

    assert detect_format(report) is ReportFormat.TRIVY
    assert [(item.severity, item.id, item.title) for item in findings] == [
        (Severity.HIGH, "CVE-2026-10", "log4j"),
        (Severity.LOW, "CVE-2026-11", "minor"),
    ]


def test_dependency_check_falls_back_to_cvss3_severity() -> None:
    report = {
        "reportSchema": "1.1",
        "dependencies": [
            {
                "fileName": "commons-text-1.9.jar",
                "vulnerabilities": [
                    {"name": "CVE-2022-42889", "severity": "CRITICAL"},
                    {"name": "CVE-2026-3", "cvssv3": {"baseSeverity": "MEDIUM"}},
                ],
            },
            {"fileName": "clean.jar"},
        ],
    }

    findings = parse_report(json.dumps(report))

    assert detect_format(report) is ReportFormat.DEPENDENCY_CHECK
    assert [(item.severity, item.id) for item in findings] == [
        (Severity.CRITICAL, "CVE-2022-42889"),
        (Severity.MEDIUM, "CVE-2026-3"),
    ]
    assert {item.title for item in findings} == {"commons-text-1.9.jar"}


def test_sarif_prefers_security_severity_then_rule_then_level() -> None:
    report = {
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "rules": [{"id": "java/sql-injection", "properties": {"security-severity": "8.8"}}],
                    }
                },
                "results": [
                    {"ruleId": "java/xss", "properties": {"security-severity": "9.6"}, "message": {"text": "xss"}},
                    {"ruleId": "java/sql-injection", "level": "note"},
                    {"ruleId": "java/unused", "level": "note"},
                    {"ruleId": "java/todo"},
                    {"message": {"text": "no rule id"}},
                ],
            }
        ],
    }

    findings = parse_report(json.dumps(report))

    assert detect_format(report) is ReportFormat.SARIF
    assert [(item.severity, item.id) for item in findings] == [
        (Severity.CRITICAL, "java/xss"),
        (Severity.HIGH, "java/sql-injection"),
        (Severity.LOW, "java/unused"),
        (Severity.MEDIUM, "java/todo"),
    ]
    assert findings[0].title == "xss"


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ("not json", "invalid JSON report"),
        ('"just a string"', "must be a JSON array or object"),
        ('{"summary": {}}', "unrecognized report format"),
        ('[{"severity": "high"}]', r"findings\[0\]\.id must be a non-empty string"),
        ('{"findings": {"id": "x"}}', "findings must be a list"),
    ],
)
def test_malformed_reports_raise_format_error(payload: str, message: str) -> None:
    with pytest.raises(ReportFormatError, match=message) as excinfo:
        parse_report(payload, source="scan.json")

    assert str(excinfo.value).startswith("scan.json: ")
