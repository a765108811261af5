"""
Reference detectors.

Usage:
    from tenantlens.detection.detectors import default_registry

    registry = default_registry(directory)
"""

from typing import Optional

from tenantlens.graph.directory import DirectoryService
from tenantlens.utils.config import Settings, get_settings
from ..registry import DetectorRegistry
from .identity import IdentityDetector
from .licensing import LicensingDetector


def default_registry(
    directory: DirectoryService,
    settings: Optional[Settings] = None,
) -> DetectorRegistry:
    """Registry with the built-in detectors."""
    settings = settings or get_settings()
    registry = DetectorRegistry()
    registry.add("licensing", LicensingDetector(directory))
    registry.add("identity", IdentityDetector(directory, admin_cache_ttl=settings.ADMIN_CACHE_TTL))
    return registry


__all__ = [
    "IdentityDetector",
    "LicensingDetector",
    "default_registry",
]
