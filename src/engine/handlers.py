# src/engine/handlers.py
"""
Pluggable task handlers. A handler processes one target for one job subtype
and reports findings plus per-severity counts. Business-level problems
(host unreachable, nothing found) are reported through TaskResult.status;
only infrastructure errors raise.

The built-in scan handlers are stand-ins for a real scanning engine and are
deterministic per target so repeated scans of the same host agree.
"""
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from engine.models import JobKind
from engine.targets import Target

TARGET_OK = "ok"
TARGET_UNREACHABLE = "unreachable"
TARGET_ERROR = "error"

DEFAULT_PORTS = [22, 80, 443, 3389]

VULNERABILITY_CATALOGUE = [
    {"severity": "critical", "title": "Remote Code Execution", "cve": "CVE-2024-1234", "cvss_score": 9.0},
    {"severity": "high", "title": "SQL Injection", "cve": "CVE-2024-5678", "cvss_score": 7.5},
    {"severity": "medium", "title": "Cross-Site Scripting", "cve": "CVE-2024-9012", "cvss_score": 5.0},
]

COMPLIANCE_CATALOGUE = [
    {"severity": "high", "title": "Password Policy Violation", "framework": "ISO 27001"},
    {"severity": "medium", "title": "Encryption Not Enabled", "framework": "NIST"},
    {"severity": "low", "title": "Audit Logging Disabled", "framework": "SOC 2"},
]

RISK_WEIGHTS = {"critical": 10, "high": 7, "medium": 4, "low": 1}


@dataclass
class TaskResult:
    findings: List[dict] = field(default_factory=list)
    severity_counts: Dict[str, int] = field(default_factory=dict)
    status: str = TARGET_OK


def count_severities(findings: List[dict]) -> Dict[str, int]:
    counts = {}
    for finding in findings:
        severity = finding.get("severity")
        if severity:
            counts[severity] = counts.get(severity, 0) + 1
    return counts


def _stable_pick(target_value: str, key: str, threshold: float) -> bool:
    digest = hashlib.sha256(f"{target_value}:{key}".encode()).digest()
    return digest[0] / 255 > threshold


class TaskHandler(ABC):
    name = "handler"

    @abstractmethod
    def execute(self, target: Target, options: dict) -> TaskResult:
        pass


class NetworkScanHandler(TaskHandler):
    name = "network"

    def execute(self, target, options):
        findings = [{
            "type": "network",
            "severity": "low",
            "title": f"Open Port {port}",
            "description": f"Port {port} is open on {target.value}",
            "target": target.value,
            "port": port,
            "protocol": "tcp",
        } for port in options.get("ports") or DEFAULT_PORTS]
        return TaskResult(findings=findings, severity_counts={"low": len(findings)})


class VulnerabilityScanHandler(TaskHandler):
    name = "vulnerability"

    def execute(self, target, options):
        threshold = 0.4 if options.get("deep_scan") else 0.7
        findings = [{
            "type": "vulnerability",
            "severity": vuln["severity"],
            "title": vuln["title"],
            "description": f"{vuln['title']} vulnerability found on {target.value}",
            "target": target.value,
            "cve": vuln["cve"],
            "cvss_score": vuln["cvss_score"],
        } for vuln in VULNERABILITY_CATALOGUE if _stable_pick(target.value, vuln["cve"], threshold)]
        return TaskResult(findings=findings, severity_counts=count_severities(findings))


class ComplianceScanHandler(TaskHandler):
    name = "compliance"

    def execute(self, target, options):
        frameworks = options.get("frameworks")
        findings = [{
            "type": "compliance",
            "severity": check["severity"],
            "title": check["title"],
            "description": f"{check['title']} detected on {target.value}",
            "target": target.value,
            "framework": check["framework"],
        } for check in COMPLIANCE_CATALOGUE
            if (not frameworks or check["framework"] in frameworks)
            and _stable_pick(target.value, check["title"], 0.6)]
        return TaskResult(findings=findings, severity_counts=count_severities(findings))


class ReportHandler(TaskHandler):
    """Report handlers read the latest scan findings recorded for a target."""

    def __init__(self, store):
        self.store = store

    def _latest(self, target, finding_type=None):
        findings = self.store.latest_findings(target.value)
        if finding_type:
            findings = [f for f in findings if f.get("type") == finding_type]
        return findings


class AssetReportHandler(ReportHandler):
    name = "asset_report"

    def __init__(self, store, asset_store):
        super().__init__(store)
        self.asset_store = asset_store

    def execute(self, target, options):
        asset = self.asset_store.get_asset(target.asset_id) if target.asset_id else None
        findings = self._latest(target)
        row = {
            "type": "asset",
            "target": target.value,
            "asset_id": target.asset_id,
            "name": asset["name"] if asset else target.value,
            "asset_type": asset["type"] if asset else None,
            "criticality": asset["criticality"] if asset else None,
            "operating_system": asset["operating_system"] if asset else None,
            "open_findings": len(findings),
        }
        status = TARGET_OK if asset or not target.asset_id else TARGET_UNREACHABLE
        return TaskResult(findings=[row], status=status)


class VulnerabilityReportHandler(ReportHandler):
    name = "vulnerability_report"

    def execute(self, target, options):
        rows = [{
            "type": "vulnerability",
            "target": target.value,
            "asset_id": target.asset_id,
            "severity": f.get("severity"),
            "title": f.get("title"),
            "cve": f.get("cve"),
            "cvss_score": f.get("cvss_score"),
        } for f in self._latest(target, "vulnerability")]
        return TaskResult(findings=rows, severity_counts=count_severities(rows))


class RiskReportHandler(ReportHandler):
    name = "risk_report"

    def execute(self, target, options):
        counts = count_severities(self._latest(target))
        score = min(100, sum(RISK_WEIGHTS.get(sev, 0) * n for sev, n in counts.items()))
        if score >= 30:
            level = "critical"
        elif score >= 15:
            level = "high"
        elif score >= 5:
            level = "medium"
        else:
            level = "low"
        row = {
            "type": "risk",
            "target": target.value,
            "asset_id": target.asset_id,
            "severity": level,
            "risk_score": score,
            "severity_counts": counts,
        }
        return TaskResult(findings=[row], severity_counts={level: 1})


class ComplianceReportHandler(ReportHandler):
    name = "compliance_report"

    def execute(self, target, options):
        rows = [{
            "type": "compliance",
            "target": target.value,
            "asset_id": target.asset_id,
            "severity": f.get("severity"),
            "title": f.get("title"),
            "framework": f.get("framework"),
        } for f in self._latest(target, "compliance")]
        return TaskResult(findings=rows, severity_counts=count_severities(rows))


class HandlerRegistry:
    def __init__(self):
        self.handlers: Dict[Tuple[str, str], List[TaskHandler]] = {}

    def register(self, kind: str, subtype: str, handlers: List[TaskHandler]):
        self.handlers[(kind, subtype)] = list(handlers)

    def for_job(self, kind: str, subtype: str) -> List[TaskHandler]:
        handlers = self.handlers.get((kind, subtype))
        if not handlers:
            raise LookupError(f"No task handlers registered for {kind} {subtype}")
        return handlers


def default_handlers(store, asset_store) -> HandlerRegistry:
    network = NetworkScanHandler()
    vulnerability = VulnerabilityScanHandler()
    compliance = ComplianceScanHandler()

    registry = HandlerRegistry()
    scan = JobKind.SCAN.value
    registry.register(scan, "NETWORK", [network])
    registry.register(scan, "VULNERABILITY", [vulnerability])
    registry.register(scan, "COMPLIANCE", [compliance])
    registry.register(scan, "FULL", [network, vulnerability, compliance])

    report = JobKind.REPORT.value
    registry.register(report, "ASSETS", [AssetReportHandler(store, asset_store)])
    registry.register(report, "VULNERABILITIES", [VulnerabilityReportHandler(store)])
    registry.register(report, "RISKS", [RiskReportHandler(store)])
    registry.register(report, "COMPLIANCE", [ComplianceReportHandler(store)])
    return registry
