"""
Booking cancellation with refund-window handling.
"""

import logging
from datetime import datetime
from typing import Optional

from rinkbook.config import settings
from rinkbook.models.schemas import BookingStatus, CancellationResult, ErrorCode
from rinkbook.services.booking import booking_service
from rinkbook.services.ledger import credit_ledger, RefundOutcome
from rinkbook.services.notifications import notification_service

logger = logging.getLogger(__name__)


class CancellationService:
    """Cancels bookings; credit-funded ones are refunded inside the cancellation window."""

    async def cancel_booking(
        self,
        booking_id: str,
        owner_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> CancellationResult:
        booking = await booking_service.get_booking(booking_id)
        if not booking or booking.owner_id != owner_id:
            return CancellationResult(
                success=False,
                booking_id=booking_id,
                error_code=ErrorCode.NOT_FOUND,
                error_message="Booking not found or access denied",
            )

        if booking.status == BookingStatus.CANCELLED:
            return CancellationResult(
                success=False,
                booking_id=booking_id,
                error_code=ErrorCode.ALREADY_CANCELLED,
                error_message="Booking is already cancelled",
            )
        if booking.status in (BookingStatus.ATTENDED, BookingStatus.NO_SHOW):
            return CancellationResult(
                success=False,
                booking_id=booking_id,
                error_code=ErrorCode.SESSION_ALREADY_OCCURRED,
                error_message="Cannot cancel a session that has already occurred",
            )

        now = now or settings.get_current_time_local()
        hours_until = (booking_service.session_start(booking) - now).total_seconds() / 3600
        can_refund = hours_until >= settings.cancellation_window_hours

        default_reason = "User cancelled (refund eligible)" if can_refund else "User cancelled (late cancellation)"
        if not await booking_service.mark_cancelled(booking, reason or default_reason):
            return CancellationResult(
                success=False,
                booking_id=booking_id,
                error_code=ErrorCode.ALREADY_CANCELLED,
                error_message="Booking is already cancelled",
            )

        credits_refunded = 0
        if can_refund and booking.credits_used > 0:
            if booking.credit_purchase_lot_id:
                outcome, _ = await credit_ledger.refund_credit(
                    owner_id, booking.credit_purchase_lot_id, booking.credits_used
                )
                if outcome == RefundOutcome.APPLIED:
                    credits_refunded = booking.credits_used
                else:
                    # The cancellation stands either way
                    logger.error(
                        f"Cancellation refund not applied: {booking.id}",
                        extra={"lot_id": booking.credit_purchase_lot_id, "outcome": outcome.value}
                    )
            else:
                logger.error(f"Credit-funded booking has no lot reference: {booking.id}")

        if credits_refunded:
            message = f"Booking cancelled. {credits_refunded} credit(s) have been refunded."
        elif not can_refund and booking.credits_used > 0:
            message = (
                f"Booking cancelled. Cancellation was less than {settings.cancellation_window_hours} "
                "hours before the session, so credits cannot be refunded."
            )
        else:
            message = "Booking cancelled."

        await notification_service.booking_cancelled(booking, credits_refunded)

        return CancellationResult(
            success=True,
            booking_id=booking.id,
            credits_refunded=credits_refunded,
            credits_remaining=await credit_ledger.get_balance(owner_id),
            message=message,
        )


# Global service instance
cancellation_service = CancellationService()
