"""
External Collaborator Interfaces
================================
Opaque collaborators the consent engine calls out to. Concrete
implementations live with the hosting application; the engine only
depends on these signatures.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

import structlog

from core.models import RegionalRuleset

logger = structlog.get_logger(__name__)


class RegionLocator(ABC):
    """Geolocation lookup: maps a client IP to a region code."""

    @abstractmethod
    def region_for(self, ip: str) -> Optional[str]:
        """Return a region code (e.g. 'EU', 'US-CA') or None if unknown."""
        pass


class DataDeleter(ABC):
    """Deletes the data collected under a category. Must be idempotent."""

    @abstractmethod
    def delete_data(self, subject: str, category: Optional[str]) -> None:
        """Delete data for one category, or every category when None."""
        pass


class RenewalNotifier(ABC):
    """Sends consent renewal reminders to a subject."""

    @abstractmethod
    def send_renewal_reminder(self, subject: str, ruleset: RegionalRuleset) -> None:
        pass


class CallableRegionLocator(RegionLocator):
    """Adapts a plain ``region_for(ip)`` function."""

    def __init__(self, func: Callable[[str], Optional[str]]):
        self._func = func

    def region_for(self, ip: str) -> Optional[str]:
        return self._func(ip)


class NullRenewalNotifier(RenewalNotifier):
    """Sends nothing; used when the host application has no reminder channel."""

    def send_renewal_reminder(self, subject: str, ruleset: RegionalRuleset) -> None:
        logger.debug("No renewal notifier configured", region=ruleset.region)
