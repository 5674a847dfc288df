"""
Haven Service Base Module.
Lifecycle contract shared by service facades.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class ServiceBase(ABC):
    """
    Abstract base class for service facades.

    Subclasses own a ``_stats`` counter dictionary and an ``_initialized``
    flag; ``get_status`` reports both in a uniform shape.
    """

    service_name: str = "haven-service"

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare collaborators before the first request."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Release collaborators and flush pending work."""
        ...

    @property
    @abstractmethod
    def stats(self) -> dict[str, int]:
        """Service-specific statistics counters."""
        ...

    async def get_status(self) -> dict[str, Any]:
        """
        Get current service status and statistics.

        Returns
        -------
        dict[str, Any]
            ``status`` ("operational" or "initializing"), ``initialized`` and
            ``statistics``.
        """
        return {
            "service": self.service_name,
            "status": "operational" if self.is_initialized else "initializing",
            "initialized": self.is_initialized,
            "statistics": dict(self.stats),
        }

    @property
    def is_initialized(self) -> bool:
        """Check if service is initialized."""
        return getattr(self, "_initialized", False)
