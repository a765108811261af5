"""
Detection Base Types

Finding, AggregatedRecord and the Detector interface every pluggable
check implements.

A detector returns zero or more Findings from detect(). Returning an
empty list is success; raising means the detector as a whole failed.
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """0 for critical up to 3 for low."""
        return SEVERITY_ORDER.index(self)


SEVERITY_ORDER: Tuple[Severity, ...] = (
    Severity.CRITICAL,
    Severity.HIGH,
    Severity.MEDIUM,
    Severity.LOW,
)


class DetectorError(Exception):
    """Unrecoverable detector failure."""

    def __init__(self, message: str, category: Optional[str] = None):
        super().__init__(message)
        self.category = category


@dataclass(frozen=True)
class AffectedResource:
    """A directory object a finding refers to."""
    id: str
    name: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "details": self.details}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AffectedResource":
        return cls(id=data["id"], name=data.get("name", ""), details=data.get("details"))


def make_finding_id(kind: str, resource_ids: Iterable[str]) -> str:
    """
    Deterministic finding id.

    Same kind and same set of affected resources always give the same id,
    so re-running a detector upserts rather than duplicates.
    """
    digest = hashlib.sha1("\n".join(sorted(resource_ids)).encode("utf-8")).hexdigest()[:12]
    return f"{kind}-{digest}"


@dataclass(frozen=True)
class Finding:
    """Detector output. Immutable once returned."""
    id: str
    kind: str
    severity: Severity
    title: str
    description: str
    affected_resources: Tuple[AffectedResource, ...] = ()
    remediation_hint: str = ""
    automatable: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "affected_resources": [r.to_dict() for r in self.affected_resources],
            "remediation_hint": self.remediation_hint,
            "automatable": self.automatable,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        return cls(
            id=data["id"],
            kind=data["kind"],
            severity=Severity(data["severity"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            affected_resources=tuple(
                AffectedResource.from_dict(r) for r in data.get("affected_resources", [])
            ),
            remediation_hint=data.get("remediation_hint", ""),
            automatable=bool(data.get("automatable", False)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class AggregatedRecord:
    """
    Canonical, persisted form of a finding.

    category is the registry key of the detector that produced it;
    detected_at is stamped by the orchestrator.
    """
    finding: Finding
    category: str
    detected_at: datetime
    last_checked: Optional[datetime] = None

    @property
    def id(self) -> str:
        return self.finding.id

    @property
    def severity(self) -> Severity:
        return self.finding.severity

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.finding.to_dict(),
            "category": self.category,
            "detected_at": self.detected_at.isoformat(),
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregatedRecord":
        last_checked = data.get("last_checked")
        return cls(
            finding=Finding.from_dict(data),
            category=data["category"],
            detected_at=datetime.fromisoformat(data["detected_at"]),
            last_checked=datetime.fromisoformat(last_checked) if last_checked else None,
        )


class Detector(ABC):
    """
    Base class for all detectors.

    Subclasses implement detect(). Detectors that run several independent
    sub-checks can use run_checks() so one failing sub-check does not
    discard the others.
    """

    name: str = "Detector"

    @abstractmethod
    async def detect(self) -> List[Finding]:
        """Run the detection and return findings."""

    def create_finding(
        self,
        kind: str,
        severity: Severity,
        title: str,
        description: str,
        affected_resources: Sequence[AffectedResource] = (),
        remediation_hint: str = "",
        automatable: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Finding:
        """Create a finding with a deterministic id."""
        resources = tuple(affected_resources)
        finding = Finding(
            id=make_finding_id(kind, (r.id for r in resources)),
            kind=kind,
            severity=Severity(severity),
            title=title,
            description=description,
            affected_resources=resources,
            remediation_hint=remediation_hint,
            automatable=automatable,
            metadata={"count": len(resources), **(metadata or {})},
        )
        logger.info(
            f"[{self.name}] Detection found: {finding.kind} "
            f"({finding.severity.value}, {len(resources)} resources)"
        )
        return finding

    async def run_checks(self, *checks: Awaitable[List[Finding]]) -> List[Finding]:
        """
        Run sub-checks concurrently and merge their findings.

        A failing sub-check is logged and contributes nothing. If every
        sub-check fails, DetectorError is raised.
        """
        if not checks:
            return []

        names = [getattr(check, "__qualname__", repr(check)) for check in checks]
        results = await asyncio.gather(*checks, return_exceptions=True)

        findings: List[Finding] = []
        failures = 0
        for check_name, result in zip(names, results):
            if isinstance(result, Exception):
                failures += 1
                logger.error(f"[{self.name}] Check {check_name} failed: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            findings.extend(result)

        if failures == len(checks):
            raise DetectorError(f"{self.name}: all {failures} checks failed")

        return findings
