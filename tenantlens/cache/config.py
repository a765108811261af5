"""
Cache Configuration

Centralized configuration for the persistent cache.
TTLs are per cache type: the logical namespace of a cached read.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from tenantlens.utils.config import Settings, get_settings


@dataclass(frozen=True)
class CacheTTL:
    """
    Default cache TTL by cache type.

    Licences and role definitions change rarely; user lists and the
    tenant summary drift faster.
    """

    TENANT_SUMMARY: timedelta = timedelta(minutes=5)
    USERS: timedelta = timedelta(minutes=10)
    LICENSES: timedelta = timedelta(minutes=30)
    DIRECTORY_ROLES: timedelta = timedelta(minutes=30)
    ROLE_MEMBERS: timedelta = timedelta(minutes=10)
    MFA_REGISTRATION: timedelta = timedelta(minutes=10)

    # Anything not listed above
    DEFAULT: timedelta = timedelta(minutes=5)

    @classmethod
    def for_type(cls, cache_type: str) -> timedelta:
        """Get TTL for a cache type."""
        mapping = {
            "tenantSummary": cls.TENANT_SUMMARY,
            "users": cls.USERS,
            "licenses": cls.LICENSES,
            "directoryRoles": cls.DIRECTORY_ROLES,
            "roleMembers": cls.ROLE_MEMBERS,
            "mfaRegistration": cls.MFA_REGISTRATION,
        }
        return mapping.get(cache_type, cls.DEFAULT)


@dataclass
class CacheConfig:
    """
    Persistent cache configuration.

    Attributes:
        refresh_delay: Pause between background refresh tasks (seconds)
        sweep_interval: Period of the expired-entry sweep (seconds)
        refresh_queue_size: Bound of the background refresh queue
        stale_fraction: Age, as a fraction of TTL, after which a hit
            schedules a background refresh
    """

    refresh_delay: float = 0.1
    sweep_interval: float = 300.0
    refresh_queue_size: int = 100
    stale_fraction: float = 0.5

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CacheConfig":
        settings = settings or get_settings()
        return cls(
            refresh_delay=settings.CACHE_REFRESH_DELAY,
            sweep_interval=settings.CACHE_SWEEP_INTERVAL,
            refresh_queue_size=settings.CACHE_REFRESH_QUEUE_SIZE,
        )
