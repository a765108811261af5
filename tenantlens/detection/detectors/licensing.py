"""
Licensing Detector

Finds licence spend that buys nothing:
- Purchased seats nobody is assigned
- Licences still assigned to disabled accounts
- Licences assigned to guest users
- Trial subscriptions
- Standalone Exchange on top of a suite that includes it
- Licensed service accounts
"""

import asyncio
import logging
import re
from typing import List

from tenantlens.graph.directory import DirectoryService
from ..base import AffectedResource, Detector, Finding, Severity

logger = logging.getLogger(__name__)

SUITE_SKUS = {"ENTERPRISEPACK", "ENTERPRISEPREMIUM"}  # E3, E5
EXCHANGE_STANDALONE_SKUS = {"EXCHANGESTANDARD", "EXCHANGEENTERPRISE"}

SERVICE_ACCOUNT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"^svc-", r"^service-", r"-service$", r"-service@", r"^system-", r"^admin-", r"service account")
]


class LicensingDetector(Detector):
    """Licence optimisation checks."""

    name = "LicensingDetector"

    def __init__(self, directory: DirectoryService):
        self.directory = directory

    async def detect(self) -> List[Finding]:
        logger.info("Running licensing scan")
        findings = await self.run_checks(
            self.detect_unused_licenses(),
            self.detect_disabled_account_licenses(),
            self.detect_guest_licenses(),
            self.detect_trial_licenses(),
            self.detect_overlapping_licenses(),
            self.detect_service_account_licenses(),
        )
        logger.info(f"Licensing scan complete: {len(findings)} findings")
        return findings

    async def detect_unused_licenses(self) -> List[Finding]:
        licenses = await self.directory.get_licenses()
        unused = [lic for lic in licenses if lic.available > 0]
        if not unused:
            return []

        total = sum(lic.available for lic in unused)
        return [self.create_finding(
            kind="unused_licenses",
            severity=Severity.MEDIUM,
            title="Unused Licenses Detected",
            description=f"{total} purchased license(s) across {len(unused)} SKU(s) are not assigned.",
            affected_resources=[
                AffectedResource(
                    id=lic.sku_id,
                    name=lic.sku_part_number,
                    details={"enabled": lic.enabled, "consumed": lic.consumed, "available": lic.available},
                )
                for lic in unused
            ],
            remediation_hint="Reduce the seat count at the next renewal or reassign the idle seats.",
            automatable=False,
            metadata={"unused_seats": total},
        )]

    async def detect_disabled_account_licenses(self) -> List[Finding]:
        users = await self.directory.get_users()
        disabled = [u for u in users if not u.account_enabled and u.is_licensed]
        if not disabled:
            return []

        return [self.create_finding(
            kind="disabled_account_licenses",
            severity=Severity.HIGH,
            title="Disabled Accounts with Active Licenses",
            description=f"{len(disabled)} disabled account(s) still consume licenses.",
            affected_resources=[
                AffectedResource(
                    id=u.id,
                    name=u.name,
                    details={"license_count": len(u.assigned_licenses)},
                )
                for u in disabled
            ],
            remediation_hint="Remove license assignments from disabled accounts.",
            automatable=True,
        )]

    async def detect_guest_licenses(self) -> List[Finding]:
        users = await self.directory.get_users()
        guests = [u for u in users if u.is_guest and u.is_licensed]
        if not guests:
            return []

        return [self.create_finding(
            kind="guest_licenses",
            severity=Severity.MEDIUM,
            title="Guest Users with Licenses",
            description=f"{len(guests)} guest user(s) have licenses assigned.",
            affected_resources=[
                AffectedResource(
                    id=u.id,
                    name=u.name,
                    details={"license_count": len(u.assigned_licenses)},
                )
                for u in guests
            ],
            remediation_hint="Guests usually work under their home tenant's licenses; review and remove.",
            automatable=True,
        )]

    async def detect_trial_licenses(self) -> List[Finding]:
        licenses = await self.directory.get_licenses()
        trials = [lic for lic in licenses if "TRIAL" in lic.sku_part_number.upper()]
        if not trials:
            return []

        return [self.create_finding(
            kind="expired_trials",
            severity=Severity.LOW,
            title="Trial Licenses Detected",
            description=(
                f"{len(trials)} trial license SKU(s) are subscribed. "
                f"Convert them to paid licenses or remove them."
            ),
            affected_resources=[
                AffectedResource(
                    id=lic.sku_id,
                    name=lic.sku_part_number,
                    details={"enabled": lic.enabled, "consumed": lic.consumed},
                )
                for lic in trials
            ],
            remediation_hint="Review trial subscriptions before they lapse.",
            automatable=False,
        )]

    async def detect_overlapping_licenses(self) -> List[Finding]:
        users, licenses = await asyncio.gather(
            self.directory.get_users(),
            self.directory.get_licenses(),
        )
        part_numbers = {lic.sku_id: lic.sku_part_number for lic in licenses}

        overlapping = []
        for user in users:
            if len(user.assigned_licenses) < 2:
                continue
            assigned = {part_numbers.get(sku_id, sku_id) for sku_id in user.assigned_licenses}
            suites = sorted(assigned & SUITE_SKUS)
            redundant = sorted(assigned & EXCHANGE_STANDALONE_SKUS)
            if suites and redundant:
                overlapping.append(AffectedResource(
                    id=user.id,
                    name=user.name,
                    details={"suites": suites, "redundant": redundant},
                ))

        if not overlapping:
            return []

        return [self.create_finding(
            kind="overlapping_licenses",
            severity=Severity.LOW,
            title="Overlapping License Assignments",
            description=(
                f"{len(overlapping)} user(s) hold a standalone Exchange license "
                f"alongside an E3/E5 suite that already includes Exchange."
            ),
            affected_resources=overlapping,
            remediation_hint="Remove the redundant standalone Exchange assignments.",
            automatable=False,
        )]

    async def detect_service_account_licenses(self) -> List[Finding]:
        users = await self.directory.get_users()
        accounts = [
            u for u in users
            if u.is_licensed and any(
                pattern.search(u.user_principal_name) or pattern.search(u.display_name)
                for pattern in SERVICE_ACCOUNT_PATTERNS
            )
        ]
        if not accounts:
            return []

        return [self.create_finding(
            kind="service_account_licenses",
            severity=Severity.MEDIUM,
            title="Service Accounts with Licenses",
            description=(
                f"{len(accounts)} likely service account(s) have user licenses assigned."
            ),
            affected_resources=[
                AffectedResource(
                    id=u.id,
                    name=u.name,
                    details={"display_name": u.display_name, "license_count": len(u.assigned_licenses)},
                )
                for u in accounts
            ],
            remediation_hint="Use managed identities or app-only authentication instead of licensed accounts.",
            automatable=False,
        )]
