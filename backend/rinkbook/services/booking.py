"""
Booking service for the credit booking saga.
Creates, looks up and cancels session booking records.
"""

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from rinkbook.config import settings
from rinkbook.db.connection import redis_connection
from rinkbook.models.schemas import (
    BookingIntent,
    BookingResult,
    BookingStatus,
    SagaStatus,
    SessionBooking,
    SessionType,
    time_slot_to_24h,
    utcnow,
)
from rinkbook.services.capacity import capacity_oracle

logger = logging.getLogger(__name__)


class BookingCreationError(Exception):
    """The booking row could not be written."""


class BookingService:
    """Creates and manages session bookings."""

    BOOKING_KEY_PREFIX = "booking:"
    CLAIM_KEY_PREFIX = "booking:claim:"
    OWNER_INDEX_PREFIX = "bookings:owner:"
    SIMULATE_FAILURE_KEY = "simulate_failure"

    def _booking_key(self, booking_id: str) -> str:
        return f"{self.BOOKING_KEY_PREFIX}{booking_id}"

    def _claim_key(
        self,
        registration_id: str,
        session_date: date,
        time_slot: str,
        session_type: SessionType
    ) -> str:
        return (
            f"{self.CLAIM_KEY_PREFIX}{registration_id}:{session_date.isoformat()}"
            f":{time_slot}:{session_type.value}"
        )

    async def _failure_simulated(self) -> bool:
        if settings.simulate_booking_failure:
            return True
        r = await redis_connection.get_redis()
        return await r.get(self.SIMULATE_FAILURE_KEY) == "1"

    async def get_booking(self, booking_id: str) -> Optional[SessionBooking]:
        r = await redis_connection.get_redis()
        data = await r.get(self._booking_key(booking_id))
        if data:
            return SessionBooking.model_validate_json(data)
        return None

    async def find_active_booking(
        self,
        registration_id: str,
        session_date: date,
        time_slot: str,
        session_type: SessionType
    ) -> Optional[SessionBooking]:
        """Non-cancelled booking for this exact registration and slot, if any."""
        r = await redis_connection.get_redis()
        booking_id = await r.get(self._claim_key(registration_id, session_date, time_slot, session_type))
        if not booking_id:
            return None
        booking = await self.get_booking(booking_id)
        if booking and booking.status != BookingStatus.CANCELLED:
            return booking
        return None

    async def list_bookings(self, owner_id: str) -> List[SessionBooking]:
        r = await redis_connection.get_redis()
        booking_ids = await r.zrange(f"{self.OWNER_INDEX_PREFIX}{owner_id}", 0, -1)
        bookings = []
        for booking_id in booking_ids:
            booking = await self.get_booking(booking_id)
            if booking:
                bookings.append(booking)
        return bookings

    async def create_booking(self, intent: BookingIntent) -> SessionBooking:
        """
        Write the booking row for a saga that already holds its credit.

        The (registration, date, time slot, session type) claim acts as the
        uniqueness constraint; losing it is a creation failure.

        Raises:
            BookingCreationError on constraint violation or datastore error
        """
        booking = SessionBooking(
            owner_id=intent.owner_id,
            registration_id=intent.registration_id,
            session_type=intent.session_type,
            session_date=intent.session_date,
            time_slot=intent.time_slot,
            credits_used=intent.credits_required,
            credit_purchase_lot_id=intent.credit_lot_id,
            is_recurring=intent.is_recurring,
            recurring_schedule_id=intent.recurring_schedule_id,
            saga_request_id=intent.request_id,
        )

        logger.info(
            f"Creating booking: {intent.request_id}",
            extra={"booking_id": booking.id, "lot_id": intent.credit_lot_id}
        )

        r = await redis_connection.get_redis()
        claim_key = self._claim_key(
            booking.registration_id, booking.session_date, booking.time_slot, booking.session_type
        )

        try:
            if await self._failure_simulated():
                raise BookingCreationError("Simulated booking failure for testing")

            claimed = await r.set(claim_key, booking.id, nx=True)
            if not claimed:
                raise BookingCreationError("A booking already exists for this registration and slot")

            try:
                async with r.pipeline(transaction=True) as pipe:
                    pipe.set(self._booking_key(booking.id), booking.model_dump_json())
                    pipe.sadd(
                        capacity_oracle.slot_key(booking.session_date, booking.time_slot, booking.session_type),
                        booking.id
                    )
                    pipe.zadd(
                        f"{self.OWNER_INDEX_PREFIX}{booking.owner_id}",
                        {booking.id: booking.created_at.timestamp()}
                    )
                    await pipe.execute()
            except Exception:
                await r.delete(claim_key)
                raise

        except BookingCreationError:
            raise
        except Exception as e:
            raise BookingCreationError(f"Datastore error: {str(e)}") from e

        logger.info(
            f"Booking created: {booking.id}",
            extra={"request_id": intent.request_id, "session_date": booking.session_date.isoformat()}
        )
        return booking

    async def mark_cancelled(self, booking: SessionBooking, reason: str) -> Optional[SessionBooking]:
        """
        Cancel a booking and release its slot and duplicate claim.

        Returns None when another request already cancelled it, so only one
        caller ever refunds the credit.
        """
        r = await redis_connection.get_redis()
        if not await r.set(f"{self._booking_key(booking.id)}:cancelled", reason, nx=True):
            logger.info(f"Booking already being cancelled: {booking.id}")
            return None

        booking.status = BookingStatus.CANCELLED
        booking.cancelled_at = utcnow()
        booking.cancellation_reason = reason

        claim_key = self._claim_key(
            booking.registration_id, booking.session_date, booking.time_slot, booking.session_type
        )
        async with r.pipeline(transaction=True) as pipe:
            pipe.set(self._booking_key(booking.id), booking.model_dump_json())
            pipe.srem(
                capacity_oracle.slot_key(booking.session_date, booking.time_slot, booking.session_type),
                booking.id
            )
            await pipe.execute()

        # Only drop the claim if it still points at this booking
        if await r.get(claim_key) == booking.id:
            await r.delete(claim_key)

        logger.info(f"Booking cancelled: {booking.id}", extra={"reason": reason})
        return booking

    async def set_failure_simulation(self, enable: bool) -> None:
        r = await redis_connection.get_redis()
        await r.set(self.SIMULATE_FAILURE_KEY, "1" if enable else "0")

    def session_start(self, booking: SessionBooking) -> datetime:
        """Local start time of the booked session."""
        hour, minute = time_slot_to_24h(booking.time_slot)
        naive = datetime.combine(booking.session_date, datetime.min.time()) + timedelta(hours=hour, minutes=minute)
        return settings.localize(naive)

    def build_result(self, intent: BookingIntent) -> BookingResult:
        """Build the final booking result from saga state."""
        return BookingResult(
            request_id=intent.request_id,
            success=intent.status == SagaStatus.BOOKING_CREATED,
            booking_id=intent.booking_id,
            booking_date=intent.session_date if intent.booking_id else None,
            credits_remaining=intent.credits_remaining,
            error_code=intent.error_code,
            error_message=intent.error_message,
            retryable=intent.status == SagaStatus.CREDIT_REFUNDED,
        )


# Global service instance
booking_service = BookingService()
