"""
Capacity oracle.
Reports how many live bookings occupy a slot.
"""

import logging
from datetime import date
from typing import Optional

from rinkbook.config import settings
from rinkbook.db.connection import redis_connection
from rinkbook.models.schemas import CapacityReport, SessionType

logger = logging.getLogger(__name__)


class CapacityOracle:
    """Slot occupancy lookups over the per-slot booking sets."""

    SLOT_KEY_PREFIX = "slot:"

    def slot_key(self, session_date: date, time_slot: str, session_type: SessionType) -> str:
        return f"{self.SLOT_KEY_PREFIX}{session_type.value}:{session_date.isoformat()}:{time_slot}"

    async def get_slot_capacity(
        self,
        session_date: date,
        time_slot: str,
        session_type: SessionType,
        max_capacity: Optional[int] = None
    ) -> CapacityReport:
        """
        Current occupancy of one slot.

        The answer can be stale by the time the caller acts on it.
        """
        if max_capacity is None:
            max_capacity = settings.capacity_for(session_type.value)

        r = await redis_connection.get_redis()
        current = await r.scard(self.slot_key(session_date, time_slot, session_type))
        available = max(0, max_capacity - current)

        logger.debug(
            f"Capacity checked: {session_type.value} {session_date} {time_slot}",
            extra={"current_bookings": current, "max_capacity": max_capacity}
        )

        return CapacityReport(
            session_date=session_date,
            time_slot=time_slot,
            session_type=session_type,
            max_capacity=max_capacity,
            current_bookings=current,
            available_spots=available,
            is_available=available > 0
        )


# Global oracle instance
capacity_oracle = CapacityOracle()
