"""
Directory API access: retrying HTTP client and cached data-access service.
"""

from .client import (
    GraphAPIError,
    GraphAuthError,
    GraphClient,
    GraphRateLimitError,
    GraphTransientError,
    RetryConfig,
    classify_response,
    parse_retry_after,
)
from .directory import (
    DirectoryRole,
    DirectoryService,
    License,
    MfaRegistration,
    RoleMember,
    TenantSummary,
    User,
)

__all__ = [
    "GraphAPIError",
    "GraphAuthError",
    "GraphClient",
    "GraphRateLimitError",
    "GraphTransientError",
    "RetryConfig",
    "classify_response",
    "parse_retry_after",
    "DirectoryRole",
    "DirectoryService",
    "License",
    "MfaRegistration",
    "RoleMember",
    "TenantSummary",
    "User",
]
