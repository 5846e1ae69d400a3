"""Vulnerability/compliance scan gate for built images.

The scanner shells out to Trivy (or any tool producing Trivy-compatible JSON)
and the ``ScanPolicy`` maps each finding's severity to ``block``, ``warn`` or
``ignore``. A single ``block`` finding rejects the image.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from rollwright.config import BuildConfig, PolicyAction
from rollwright.logging import get_logger
from rollwright.pipeline.builder import BuiltImage


class ScanError(Exception):
    """The scanner itself failed (not a policy rejection)."""


class Finding(BaseModel):
    """One vulnerability or compliance finding."""

    id: str
    severity: str = "UNKNOWN"
    package: str | None = None
    title: str | None = None


class ScanDecision(str, Enum):
    PASS = "pass"
    WARN = "warn"
    BLOCK = "block"


class ScanVerdict(BaseModel):
    """Policy outcome for one image.

    Attributes:
        component: Component the image belongs to
        decision: Overall decision
        counts: Findings per severity
        blocking: Findings whose severity is configured to block
    """

    component: str
    decision: ScanDecision
    counts: dict[str, int] = Field(default_factory=dict)
    blocking: list[Finding] = Field(default_factory=list)


class ScanPolicy:
    """Severity to action mapping with a fallback action.

    Args:
        actions: Severity (upper case) to action
        default_action: Action for severities absent from ``actions``
    """

    def __init__(
        self,
        actions: dict[str, PolicyAction] | None = None,
        default_action: PolicyAction = PolicyAction.WARN,
    ) -> None:
        self.actions = {k.upper(): v for k, v in (actions or {}).items()}
        self.default_action = default_action

    @classmethod
    def from_config(cls, config: BuildConfig) -> ScanPolicy:
        return cls(config.scan_policy, config.default_action)

    def action_for(self, severity: str) -> PolicyAction:
        return self.actions.get(severity.upper(), self.default_action)

    def evaluate(self, component: str, findings: list[Finding]) -> ScanVerdict:
        counts: dict[str, int] = {}
        blocking: list[Finding] = []
        warned = False
        for finding in findings:
            severity = finding.severity.upper()
            counts[severity] = counts.get(severity, 0) + 1
            action = self.action_for(severity)
            if action == PolicyAction.BLOCK:
                blocking.append(finding)
            elif action == PolicyAction.WARN:
                warned = True

        if blocking:
            decision = ScanDecision.BLOCK
        elif warned:
            decision = ScanDecision.WARN
        else:
            decision = ScanDecision.PASS
        return ScanVerdict(component=component, decision=decision, counts=counts, blocking=blocking)


class VulnerabilityScanner(Protocol):
    async def scan(self, image: BuiltImage) -> list[Finding]:
        ...


class TrivyScanner:
    """Runs ``trivy image --format json`` against a local image."""

    def __init__(self, config: BuildConfig) -> None:
        self.config = config
        self.logger = get_logger(__name__)

    async def scan(self, image: BuiltImage) -> list[Finding]:
        """Scan a built image.

        Raises:
            ScanError: If the scanner is missing, times out, or fails
        """
        cmd = [
            self.config.scanner_command,
            "image",
            "--quiet",
            "--format",
            "json",
            "--exit-code",
            "0",
            image.local_tag,
        ]
        self.logger.debug("scan_started", component=image.component, image=image.local_tag)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ScanError(f"Scanner not found: {self.config.scanner_command}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.config.scan_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ScanError(f"Scan timed out after {self.config.scan_timeout_seconds}s") from e

        if proc.returncode != 0:
            raise ScanError(
                f"Scanner exited {proc.returncode}: "
                f"{stderr.decode('utf-8', errors='replace')[:500]}"
            )
        return parse_trivy_report(json.loads(stdout or b"{}"))


def parse_trivy_report(report: dict[str, Any]) -> list[Finding]:
    """Flatten a Trivy JSON report into findings."""
    findings: list[Finding] = []
    for result in report.get("Results") or []:
        for vuln in result.get("Vulnerabilities") or []:
            findings.append(
                Finding(
                    id=vuln.get("VulnerabilityID", "unknown"),
                    severity=(vuln.get("Severity") or "UNKNOWN").upper(),
                    package=vuln.get("PkgName"),
                    title=vuln.get("Title"),
                )
            )
        for misconf in result.get("Misconfigurations") or []:
            findings.append(
                Finding(
                    id=misconf.get("ID", "unknown"),
                    severity=(misconf.get("Severity") or "UNKNOWN").upper(),
                    title=misconf.get("Title"),
                )
            )
    return findings
