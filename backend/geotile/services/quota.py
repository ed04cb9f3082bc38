"""
Usage quota gate for costly work.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from geotile.config import settings
from geotile.services.errors import QuotaExceededError

logger = logging.getLogger(__name__)

TILE_GENERATION = "tile_generation"


@dataclass
class QuotaDecision:
    """Outcome of a quota check."""
    allowed: bool
    requested: int
    remaining: int


class QuotaService:
    """Per-organization usage counters against a fixed limit."""

    def __init__(self, default_limit: Optional[int] = None):
        self.default_limit = default_limit if default_limit is not None else settings.default_tile_quota
        self._limits: dict[tuple[str, str], int] = {}
        self._used: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def set_limit(self, organization_id: str, limit: int, usage_type: str = TILE_GENERATION) -> None:
        with self._lock:
            self._limits[(organization_id, usage_type)] = limit

    def remaining(self, organization_id: str, usage_type: str = TILE_GENERATION) -> int:
        with self._lock:
            return self._remaining_locked((organization_id, usage_type))

    def _remaining_locked(self, key: tuple[str, str]) -> int:
        limit = self._limits.get(key, self.default_limit)
        return max(0, limit - self._used.get(key, 0))

    def check(self, organization_id: str, quantity: int, usage_type: str = TILE_GENERATION) -> QuotaDecision:
        """Report whether ``quantity`` more units fit in the organization's quota."""
        remaining = self.remaining(organization_id, usage_type)
        return QuotaDecision(allowed=quantity <= remaining, requested=quantity, remaining=remaining)

    def consume(self, organization_id: str, quantity: int, usage_type: str = TILE_GENERATION) -> int:
        """
        Atomically check and record usage.

        Returns:
            Remaining quota after consumption

        Raises:
            QuotaExceededError: If the quantity does not fit
        """
        key = (organization_id, usage_type)
        with self._lock:
            remaining = self._remaining_locked(key)
            if quantity > remaining:
                raise QuotaExceededError(
                    f"Usage limit exceeded: {quantity} {usage_type} units requested, {remaining} remaining",
                    requested=quantity,
                    remaining=remaining,
                )
            self._used[key] = self._used.get(key, 0) + quantity
            remaining -= quantity

        logger.info(f"Organization {organization_id} used {quantity} {usage_type} units ({remaining} remaining)")
        return remaining

    def release(self, organization_id: str, quantity: int, usage_type: str = TILE_GENERATION) -> None:
        """Return units consumed by work that was never started."""
        key = (organization_id, usage_type)
        with self._lock:
            self._used[key] = max(0, self._used.get(key, 0) - quantity)


# Global service instance
quota_service = QuotaService()
