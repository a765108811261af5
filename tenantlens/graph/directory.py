"""
Directory Data Access

Typed, cached reads of the directory API. Every method goes through
PersistentCache.get_or_fetch, so repeated reads are served from storage
and only misses (or background refreshes) reach the network.

The cache stores plain JSON (the asdict form of each dataclass); the
service rebuilds dataclasses on the way out so hits and misses return
the same types.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from tenantlens.cache import PersistentCache
from .client import GraphAPIError, GraphClient

logger = logging.getLogger(__name__)

USER_SELECT = "id,userPrincipalName,displayName,userType,accountEnabled,assignedLicenses"
DEFAULT_PAGE_SIZE = 999

# Rough monthly cost per idle seat, used for the savings estimate
SEAT_COST_ESTIMATE = 12


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class User:
    """Directory user."""
    id: str
    user_principal_name: str = ""
    display_name: str = ""
    user_type: str = "Member"
    account_enabled: bool = True
    assigned_licenses: List[str] = field(default_factory=list)

    @property
    def is_guest(self) -> bool:
        return self.user_type == "Guest"

    @property
    def is_licensed(self) -> bool:
        return len(self.assigned_licenses) > 0

    @property
    def name(self) -> str:
        return self.user_principal_name or self.display_name or self.id

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "User":
        return cls(
            id=item["id"],
            user_principal_name=item.get("userPrincipalName") or "",
            display_name=item.get("displayName") or "",
            user_type=item.get("userType") or "Member",
            account_enabled=bool(item.get("accountEnabled", True)),
            assigned_licenses=[
                lic.get("skuId") for lic in item.get("assignedLicenses") or []
                if isinstance(lic, dict) and lic.get("skuId")
            ],
        )


@dataclass
class License:
    """Subscribed SKU with seat counts."""
    sku_id: str
    sku_part_number: str = ""
    enabled: int = 0
    consumed: int = 0
    available: int = 0

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "License":
        enabled = (item.get("prepaidUnits") or {}).get("enabled") or 0
        consumed = item.get("consumedUnits") or 0
        return cls(
            sku_id=item["skuId"],
            sku_part_number=item.get("skuPartNumber") or "",
            enabled=enabled,
            consumed=consumed,
            available=enabled - consumed,
        )


@dataclass
class DirectoryRole:
    """Activated directory role."""
    id: str
    display_name: str = ""
    role_template_id: Optional[str] = None

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "DirectoryRole":
        return cls(
            id=item["id"],
            display_name=item.get("displayName") or "",
            role_template_id=item.get("roleTemplateId"),
        )


@dataclass
class RoleMember:
    """Member of a directory role."""
    id: str
    display_name: str = ""
    user_principal_name: str = ""

    @property
    def name(self) -> str:
        return self.user_principal_name or self.display_name or self.id

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "RoleMember":
        return cls(
            id=item["id"],
            display_name=item.get("displayName") or "",
            user_principal_name=item.get("userPrincipalName") or "",
        )


@dataclass
class MfaRegistration:
    """Authentication method registration state of one user."""
    id: str
    user_principal_name: str = ""
    is_mfa_registered: bool = False
    is_admin: bool = False
    methods_registered: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "MfaRegistration":
        return cls(
            id=item["id"],
            user_principal_name=item.get("userPrincipalName") or "",
            is_mfa_registered=bool(item.get("isMfaRegistered", False)),
            is_admin=bool(item.get("isAdmin", False)),
            methods_registered=list(item.get("methodsRegistered") or []),
        )


@dataclass
class TenantSummary:
    """Dashboard view of the tenant."""
    user_count: int = 0
    licensed_user_count: int = 0
    guest_user_count: int = 0
    inactive_user_count: int = 0
    mfa_adoption_rate: Optional[float] = None
    sku_summary: List[License] = field(default_factory=list)
    unused_licenses: int = 0
    inactive_accounts: int = 0
    estimated_monthly_savings: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TenantSummary":
        values = dict(data)
        values["sku_summary"] = [License(**sku) for sku in values.get("sku_summary", [])]
        return cls(**values)


# =============================================================================
# SERVICE
# =============================================================================

class DirectoryService:
    """
    Cached access to the directory API.

    Usage:
        directory = DirectoryService(client, cache)
        users = await directory.get_users()
        summary = await directory.get_tenant_summary()
    """

    def __init__(self, client: GraphClient, cache: PersistentCache):
        self.client = client
        self.cache = cache

    async def get_users(
        self,
        top: Optional[int] = None,
        filter: Optional[str] = None,
    ) -> List[User]:
        """Get directory users, optionally limited by page size or OData filter."""
        params = {name: value for name, value in (("top", top), ("filter", filter)) if value is not None}
        key = f"users-{json.dumps(params, sort_keys=True)}"

        async def fetch() -> List[Dict[str, Any]]:
            logger.info(f"Fetching users {params}")
            query: Dict[str, Any] = {"$select": USER_SELECT, "$top": top or DEFAULT_PAGE_SIZE}
            if filter:
                query["$filter"] = filter
            items = await self.client.get_all_pages("/users", query)
            return [asdict(User.from_api(item)) for item in items]

        rows = await self.cache.get_or_fetch(key, "users", fetch)
        return [User(**row) for row in rows]

    async def get_licenses(self) -> List[License]:
        """Get subscribed SKUs."""
        async def fetch() -> List[Dict[str, Any]]:
            logger.info("Fetching licenses")
            items = await self.client.get_all_pages("/subscribedSkus")
            return [asdict(License.from_api(item)) for item in items]

        rows = await self.cache.get_or_fetch("licenses", "licenses", fetch)
        return [License(**row) for row in rows]

    async def get_directory_roles(self) -> List[DirectoryRole]:
        """Get activated directory roles."""
        async def fetch() -> List[Dict[str, Any]]:
            items = await self.client.get_all_pages("/directoryRoles")
            return [asdict(DirectoryRole.from_api(item)) for item in items]

        rows = await self.cache.get_or_fetch("directory-roles", "directoryRoles", fetch)
        return [DirectoryRole(**row) for row in rows]

    async def get_role_members(self, role_id: str) -> List[RoleMember]:
        """Get the members of one directory role."""
        async def fetch() -> List[Dict[str, Any]]:
            items = await self.client.get_all_pages(f"/directoryRoles/{role_id}/members")
            return [asdict(RoleMember.from_api(item)) for item in items]

        rows = await self.cache.get_or_fetch(f"role-members-{role_id}", "roleMembers", fetch)
        return [RoleMember(**row) for row in rows]

    async def get_mfa_registration(self) -> List[MfaRegistration]:
        """Get per-user authentication method registration details."""
        async def fetch() -> List[Dict[str, Any]]:
            items = await self.client.get_all_pages(
                "/reports/authenticationMethods/userRegistrationDetails"
            )
            return [asdict(MfaRegistration.from_api(item)) for item in items]

        rows = await self.cache.get_or_fetch("mfa-registration", "mfaRegistration", fetch)
        return [MfaRegistration(**row) for row in rows]

    async def get_tenant_summary(self) -> TenantSummary:
        """
        Get the tenant summary for the dashboard.

        Built from the (separately cached) user and licence reads. Inactive
        accounts are disabled accounts. MFA adoption is None when the
        registration report is not readable with the current permissions.
        """
        async def fetch() -> Dict[str, Any]:
            logger.info("Building tenant summary")
            users = await self.get_users()
            licenses = await self.get_licenses()

            inactive = sum(1 for u in users if not u.account_enabled)
            unused = sum(max(0, lic.available) for lic in licenses)

            summary = TenantSummary(
                user_count=len(users),
                licensed_user_count=sum(1 for u in users if u.is_licensed),
                guest_user_count=sum(1 for u in users if u.is_guest),
                inactive_user_count=inactive,
                mfa_adoption_rate=await self._mfa_adoption_rate(),
                sku_summary=licenses,
                unused_licenses=unused,
                inactive_accounts=inactive,
                estimated_monthly_savings=(unused + inactive) * SEAT_COST_ESTIMATE,
            )
            logger.info(
                f"Tenant summary: {summary.user_count} users, {summary.unused_licenses} unused licenses, "
                f"estimated savings {summary.estimated_monthly_savings}/month"
            )
            return asdict(summary)

        data = await self.cache.get_or_fetch("tenant-summary", "tenantSummary", fetch)
        return TenantSummary.from_dict(data)

    async def _mfa_adoption_rate(self) -> Optional[float]:
        try:
            registrations = await self.get_mfa_registration()
        except GraphAPIError as e:
            logger.warning(f"MFA registration report unavailable: {e}")
            return None

        if not registrations:
            return None
        registered = sum(1 for r in registrations if r.is_mfa_registered)
        return round(registered / len(registrations), 4)
