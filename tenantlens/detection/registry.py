"""Category-keyed registry of detectors."""

import logging
from typing import Dict, Iterator, List, Optional, Tuple

from .base import Detector

logger = logging.getLogger(__name__)


class DetectorRegistry:
    """
    Holds the detectors the orchestrator runs.

    Categories are unique; iteration follows registration order.

    Usage:
        registry = DetectorRegistry()
        registry.add("licensing", LicensingDetector(directory))
    """

    def __init__(self):
        self._detectors: Dict[str, Detector] = {}

    def add(self, category: str, detector: Detector) -> None:
        if not isinstance(detector, Detector):
            raise TypeError(f"{detector!r} is not a Detector")
        if not category:
            raise ValueError("Category must be a non-empty string")
        if category in self._detectors:
            raise ValueError(f"A detector is already registered for category '{category}'")

        self._detectors[category] = detector
        logger.debug(f"Registered detector {detector.name} as '{category}'")

    def remove(self, category: str) -> Optional[Detector]:
        return self._detectors.pop(category, None)

    def get(self, category: str) -> Optional[Detector]:
        return self._detectors.get(category)

    def categories(self) -> List[str]:
        return list(self._detectors)

    def items(self) -> List[Tuple[str, Detector]]:
        return list(self._detectors.items())

    def __len__(self) -> int:
        return len(self._detectors)

    def __contains__(self, category: object) -> bool:
        return category in self._detectors

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._detectors))
