"""
Identity Detector

Identity and privileged access checks:
- Admin and user accounts without MFA registered
- Too many Global Administrators
- Users holding many directory roles
- Disabled accounts that are still present
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from tenantlens.database import utcnow
from tenantlens.graph.directory import DirectoryService, RoleMember
from ..base import AffectedResource, Detector, Finding, Severity

logger = logging.getLogger(__name__)

GLOBAL_ADMIN_ROLE = "Global Administrator"
GLOBAL_ADMIN_TEMPLATE_ID = "62e90394-69f5-4237-9190-012177145e10"
ADMIN_ROLES = (GLOBAL_ADMIN_ROLE, "User Administrator", "Privileged Role Administrator")

MAX_GLOBAL_ADMINS = 5
MAX_ROLES_PER_USER = 3


class IdentityDetector(Detector):
    """Identity and access checks."""

    name = "IdentityDetector"

    def __init__(
        self,
        directory: DirectoryService,
        admin_cache_ttl: float = 60.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.directory = directory
        self.admin_cache_ttl = timedelta(seconds=admin_cache_ttl)
        self._clock = clock or utcnow

        # Admin user ids, reused across scans within the TTL
        self._admin_ids: Optional[Set[str]] = None
        self._admin_loaded_at: Optional[datetime] = None

    async def detect(self) -> List[Finding]:
        logger.info("Running identity security scan")
        findings = await self.run_checks(
            self.detect_mfa_gaps(),
            self.detect_admin_roles(),
            self.detect_disabled_accounts(),
        )
        logger.info(f"Identity scan complete: {len(findings)} findings")
        return findings

    # =========================================================================
    # CHECKS
    # =========================================================================

    async def detect_mfa_gaps(self) -> List[Finding]:
        users = await self.directory.get_users()
        registrations = {r.id: r for r in await self.directory.get_mfa_registration()}
        admin_ids = await self.load_admin_ids()

        admin_gaps: List[AffectedResource] = []
        user_gaps: List[AffectedResource] = []

        for user in users:
            if not user.account_enabled or user.is_guest:
                continue
            registration = registrations.get(user.id)
            if registration is None or registration.is_mfa_registered:
                continue

            is_admin = user.id in admin_ids or registration.is_admin
            resource = AffectedResource(
                id=user.id,
                name=user.name,
                details={"display_name": user.display_name, "is_admin": is_admin},
            )
            (admin_gaps if is_admin else user_gaps).append(resource)

        findings = []
        if admin_gaps:
            findings.append(self.create_finding(
                kind="mfa_admin_gap",
                severity=Severity.CRITICAL,
                title="Admin Accounts Without MFA",
                description=f"{len(admin_gaps)} administrator account(s) do not have MFA registered.",
                affected_resources=admin_gaps,
                remediation_hint="Enforce MFA for all admin accounts immediately, e.g. with Conditional Access.",
                automatable=True,
            ))
        if user_gaps:
            findings.append(self.create_finding(
                kind="mfa_user_gap",
                severity=Severity.HIGH,
                title="Users Without MFA",
                description=f"{len(user_gaps)} user account(s) do not have MFA registered.",
                affected_resources=user_gaps,
                remediation_hint="Enforce MFA registration for all users.",
                automatable=True,
            ))
        return findings

    async def detect_admin_roles(self) -> List[Finding]:
        roles = await self.directory.get_directory_roles()
        global_admin_role = next(
            (
                r for r in roles
                if r.role_template_id == GLOBAL_ADMIN_TEMPLATE_ID or r.display_name == GLOBAL_ADMIN_ROLE
            ),
            None,
        )
        if global_admin_role is None:
            logger.warning("Global Administrator role not found")
            return []

        member_lists = await asyncio.gather(*(self.directory.get_role_members(r.id) for r in roles))
        members_by_role: Dict[str, List[RoleMember]] = {
            role.id: members for role, members in zip(roles, member_lists)
        }

        held: Dict[str, List[str]] = {}
        names: Dict[str, str] = {}
        for role in roles:
            for member in members_by_role[role.id]:
                held.setdefault(member.id, []).append(role.display_name)
                names[member.id] = member.name

        findings = []

        global_admins = members_by_role[global_admin_role.id]
        if len(global_admins) > MAX_GLOBAL_ADMINS:
            findings.append(self.create_finding(
                kind="excessive_global_admins",
                severity=Severity.CRITICAL,
                title="Excessive Global Administrators",
                description=(
                    f"Found {len(global_admins)} Global Administrator(s); "
                    f"no more than {MAX_GLOBAL_ADMINS} is recommended."
                ),
                affected_resources=[
                    AffectedResource(id=m.id, name=m.name, details={"display_name": m.display_name})
                    for m in global_admins
                ],
                remediation_hint="Reduce Global Administrators and assign least-privilege roles instead.",
                automatable=False,
                metadata={"recommended_max": MAX_GLOBAL_ADMINS},
            ))

        excessive = [
            AffectedResource(
                id=user_id,
                name=names[user_id],
                details={"role_count": len(role_names), "roles": role_names},
            )
            for user_id, role_names in held.items()
            if len(role_names) > MAX_ROLES_PER_USER
        ]
        if excessive:
            findings.append(self.create_finding(
                kind="excessive_role_assignments",
                severity=Severity.HIGH,
                title="Users with Excessive Role Assignments",
                description=(
                    f"{len(excessive)} user(s) hold more than {MAX_ROLES_PER_USER} directory roles."
                ),
                affected_resources=excessive,
                remediation_hint="Consolidate role assignments; use just-in-time elevation for rare tasks.",
                automatable=False,
            ))

        return findings

    async def detect_disabled_accounts(self) -> List[Finding]:
        users = await self.directory.get_users()
        disabled = [u for u in users if not u.account_enabled]
        if not disabled:
            return []

        return [self.create_finding(
            kind="disabled_accounts",
            severity=Severity.LOW,
            title="Disabled Accounts",
            description=f"{len(disabled)} account(s) are disabled but still present in the directory.",
            affected_resources=[
                AffectedResource(
                    id=u.id,
                    name=u.name,
                    details={"display_name": u.display_name, "has_licenses": u.is_licensed},
                )
                for u in disabled
            ],
            remediation_hint="Archive or delete disabled accounts after the retention period.",
            automatable=True,
        )]

    # =========================================================================
    # ADMIN LOOKUP CACHE
    # =========================================================================

    async def load_admin_ids(self) -> Set[str]:
        """
        Ids of members of the admin roles, cached for admin_cache_ttl.

        A role whose members cannot be read is skipped.
        """
        now = self._clock()
        if (
            self._admin_ids is not None
            and self._admin_loaded_at is not None
            and now - self._admin_loaded_at < self.admin_cache_ttl
        ):
            logger.debug("Using cached admin users")
            return self._admin_ids

        roles = [r for r in await self.directory.get_directory_roles() if r.display_name in ADMIN_ROLES]
        results = await asyncio.gather(
            *(self.directory.get_role_members(r.id) for r in roles),
            return_exceptions=True,
        )

        admin_ids: Set[str] = set()
        for role, result in zip(roles, results):
            if isinstance(result, Exception):
                logger.debug(f"Could not get members of role {role.display_name}: {result}")
                continue
            admin_ids.update(member.id for member in result)

        self._admin_ids = admin_ids
        self._admin_loaded_at = now
        logger.debug(f"Cached {len(admin_ids)} admin users")
        return admin_ids
