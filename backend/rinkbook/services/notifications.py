"""
Side-channel notifications (parent emails, staff alerts) via an automation webhook.
Failures here never affect the booking or purchase that triggered them.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from rinkbook.config import settings
from rinkbook.models.schemas import RecurringSchedule, SessionBooking

logger = logging.getLogger(__name__)


class NotificationService:
    """Posts notification events to the configured webhook."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def send(self, event: str, owner_id: str, data: Dict[str, Any]) -> bool:
        """Fire one notification. Returns False (after logging) on any failure."""
        if not settings.notification_webhook_url:
            logger.debug(f"Notification skipped, no webhook configured: {event}")
            return False

        payload = {"event": event, "owner_id": owner_id, "data": data}
        try:
            async with httpx.AsyncClient(
                timeout=settings.notification_timeout_seconds,
                transport=self._transport
            ) as client:
                response = await client.post(settings.notification_webhook_url, json=payload)
                response.raise_for_status()
            logger.info(f"Notification sent: {event}", extra={"owner_id": owner_id})
            return True
        except Exception as e:
            logger.warning(
                f"Notification failed: {event}",
                extra={"owner_id": owner_id, "error": str(e)}
            )
            return False

    async def booking_confirmed(self, booking: SessionBooking, credits_remaining: Optional[int]) -> None:
        await self.send("booking_confirmed", booking.owner_id, {
            "booking_id": booking.id,
            "registration_id": booking.registration_id,
            "session_type": booking.session_type.value,
            "session_date": booking.session_date.isoformat(),
            "time_slot": booking.time_slot,
            "credits_used": booking.credits_used,
        })
        if credits_remaining is not None and 0 <= credits_remaining < settings.low_credit_threshold:
            await self.send("credits_low", booking.owner_id, {"credits_remaining": credits_remaining})

    async def booking_cancelled(self, booking: SessionBooking, credits_refunded: int) -> None:
        await self.send("booking_cancelled", booking.owner_id, {
            "booking_id": booking.id,
            "session_type": booking.session_type.value,
            "session_date": booking.session_date.isoformat(),
            "time_slot": booking.time_slot,
            "credits_refunded": credits_refunded,
        })

    async def schedule_created(self, schedule: RecurringSchedule) -> None:
        await self.send("recurring_schedule_created", schedule.owner_id, {
            "schedule_id": schedule.id,
            "registration_id": schedule.registration_id,
            "day_of_week": schedule.day_of_week.value,
            "time_slot": schedule.time_slot,
            "next_booking_date": schedule.next_booking_date.isoformat(),
        })


# Global service instance
notification_service = NotificationService()
