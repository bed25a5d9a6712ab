"""
Scanner report parsing.

Stages that declare a ``report`` produce a JSON file in one of the formats the
CI tools emit. Every format is reduced to a tuple of ``Finding`` records:

- generic: ``[{"severity": ..., "id": ..., "title": ...}]`` or ``{"findings": [...]}``
- Trivy: ``Results[].Vulnerabilities[]``
- OWASP Dependency-Check: ``dependencies[].vulnerabilities[]``
- SARIF (CodeQL and friends): ``runs[].results[]``
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from enum import StrEnum
from typing import Final

from conduit_ci.domain.models import Finding, Severity


class ReportFormat(StrEnum):
    GENERIC = "generic"
    TRIVY = "trivy"
    DEPENDENCY_CHECK = "dependency_check"
    SARIF = "sarif"


class ReportFormatError(ValueError):
    """Raised when a report is not valid JSON or matches no known shape."""


_SARIF_LEVELS: Final[dict[str, Severity]] = {
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "note": Severity.LOW,
    "none": Severity.LOW,
}


def detect_format(payload: object) -> ReportFormat:
    if isinstance(payload, list):
        return ReportFormat.GENERIC
    if not isinstance(payload, Mapping):
        raise ReportFormatError(f"report must be a JSON array or object, got {type(payload).__name__}")
    if "runs" in payload and ("$schema" in payload or "version" in payload):
        return ReportFormat.SARIF
    if "Results" in payload or "ArtifactName" in payload:
        return ReportFormat.TRIVY
    if "dependencies" in payload and ("scanInfo" in payload or "reportSchema" in payload):
        return ReportFormat.DEPENDENCY_CHECK
    if "findings" in payload:
        return ReportFormat.GENERIC
    raise ReportFormatError("unrecognized report format")


def parse_report(data: bytes | str, *, source: str = "<report>") -> tuple[Finding, ...]:
    """Parse report bytes into findings; raises ``ReportFormatError``."""

    text = data.decode("utf-8", errors="strict") if isinstance(data, bytes) else data
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ReportFormatError(f"{source}: invalid JSON report ({exc})") from exc

    try:
        fmt = detect_format(payload)
    except ReportFormatError as exc:
        raise ReportFormatError(f"{source}: {exc}") from exc

    if fmt is ReportFormat.TRIVY:
        return _parse_trivy(payload, source)
    if fmt is ReportFormat.DEPENDENCY_CHECK:
        return _parse_dependency_check(payload, source)
    if fmt is ReportFormat.SARIF:
        return _parse_sarif(payload, source)
    return _parse_generic(payload, source)


def _parse_generic(payload: object, source: str) -> tuple[Finding, ...]:
    items = payload.get("findings") if isinstance(payload, Mapping) else payload
    if not isinstance(items, list):
        raise ReportFormatError(f"{source}: findings must be a list")
    findings: list[Finding] = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            raise ReportFormatError(f"{source}: findings[{index}] must be an object")
        finding_id = item.get("id")
        if not isinstance(finding_id, str) or not finding_id.strip():
            raise ReportFormatError(f"{source}: findings[{index}].id must be a non-empty string")
        title = item.get("title")
        findings.append(
            Finding(
                severity=Severity.coerce(item.get("severity")),
                id=finding_id.strip(),
                title=title if isinstance(title, str) else None,
            )
        )
    return tuple(findings)


def _parse_trivy(payload: Mapping[str, object], source: str) -> tuple[Finding, ...]:
    results = payload.get("Results") or []
    if not isinstance(results, list):
        raise ReportFormatError(f"{source}: Results must be a list")
    findings: list[Finding] = []
    for result in results:
        if not isinstance(result, Mapping):
            continue
        for vuln in result.get("Vulnerabilities") or []:
            if not isinstance(vuln, Mapping):
                continue
            vuln_id = vuln.get("VulnerabilityID")
            if not isinstance(vuln_id, str) or not vuln_id:
                continue
            title = vuln.get("Title") or vuln.get("PkgName")
            findings.append(
                Finding(
                    severity=Severity.coerce(vuln.get("Severity")),
                    id=vuln_id,
                    title=title if isinstance(title, str) else None,
                )
            )
    return tuple(findings)


def _parse_dependency_check(payload: Mapping[str, object], source: str) -> tuple[Finding, ...]:
    dependencies = payload.get("dependencies") or []
    if not isinstance(dependencies, list):
        raise ReportFormatError(f"{source}: dependencies must be a list")
    findings: list[Finding] = []
    for dependency in dependencies:
        if not isinstance(dependency, Mapping):
            continue
        file_name = dependency.get("fileName")
        for vuln in dependency.get("vulnerabilities") or []:
            if not isinstance(vuln, Mapping):
                continue
            vuln_id = vuln.get("name")
            if not isinstance(vuln_id, str) or not vuln_id:
                continue
            severity = vuln.get("severity")
            if severity is None:
                cvss3 = vuln.get("cvssv3")
                if isinstance(cvss3, Mapping):
                    severity = cvss3.get("baseSeverity")
            findings.append(
                Finding(
                    severity=Severity.coerce(severity),
                    id=vuln_id,
                    title=file_name if isinstance(file_name, str) else None,
                )
            )
    return tuple(findings)


def _parse_sarif(payload: Mapping[str, object], source: str) -> tuple[Finding, ...]:
    runs = payload.get("runs")
    if not isinstance(runs, list):
        raise ReportFormatError(f"{source}: runs must be a list")
    findings: list[Finding] = []
    for run in runs:
        if not isinstance(run, Mapping):
            continue
        rule_severity = _sarif_rule_severities(run)
        for result in run.get("results") or []:
            if not isinstance(result, Mapping):
                continue
            rule_id = result.get("ruleId")
            if not isinstance(rule_id, str) or not rule_id:
                continue
            severity = _security_severity(result.get("properties"))
            if severity is None:
                severity = rule_severity.get(rule_id)
            if severity is None:
                level = result.get("level", "warning")
                severity = _SARIF_LEVELS.get(str(level).lower(), Severity.UNKNOWN)
            message = result.get("message")
            title = message.get("text") if isinstance(message, Mapping) else None
            findings.append(
                Finding(severity=severity, id=rule_id, title=title if isinstance(title, str) else None)
            )
    return tuple(findings)


def _sarif_rule_severities(run: Mapping[str, object]) -> dict[str, Severity]:
    tool = run.get("tool")
    driver = tool.get("driver") if isinstance(tool, Mapping) else None
    rules = driver.get("rules") if isinstance(driver, Mapping) else None
    out: dict[str, Severity] = {}
    for rule in rules or []:
        if not isinstance(rule, Mapping) or not isinstance(rule.get("id"), str):
            continue
        severity = _security_severity(rule.get("properties"))
        if severity is not None:
            out[rule["id"]] = severity
    return out


def _security_severity(properties: object) -> Severity | None:
    # CVSS-style score published by CodeQL as a string.
    if not isinstance(properties, Mapping):
        return None
    raw = properties.get("security-severity")
    try:
        score = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if score >= 9.0:
        return Severity.CRITICAL
    if score >= 7.0:
        return Severity.HIGH
    if score >= 4.0:
        return Severity.MEDIUM
    if score > 0.0:
        return Severity.LOW
    return Severity.UNKNOWN


__all__ = [
    "ReportFormat",
    "ReportFormatError",
    "detect_format",
    "parse_report",
]
