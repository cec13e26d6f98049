"""
SAGA Orchestrator for the credit booking workflow.
Coordinates capacity, credit and booking steps with compensation on failure.
"""

import logging
from typing import Optional

from rinkbook.config import settings
from rinkbook.data.packages import credits_required
from rinkbook.models.schemas import (
    BookingIntent,
    BookingRequest,
    BookingResult,
    ErrorCode,
    EventType,
    SagaStatus,
)
from rinkbook.services.validation import validation_service
from rinkbook.services.capacity import capacity_oracle
from rinkbook.services.ledger import credit_ledger
from rinkbook.services.booking import booking_service, BookingCreationError
from rinkbook.services.notifications import notification_service
from rinkbook.saga.compensation import compensation_handler
from rinkbook.events.publisher import event_publisher

logger = logging.getLogger(__name__)


class BookingSagaOrchestrator:
    """
    Orchestrates the credit booking SAGA.

    Flow:
    1. Capacity check → 2. Duplicate check → 3. Credit debit → 4. Booking

    Steps 1-2 are advisory and touch nothing. Any failure after step 3
    refunds the debited credit before returning.
    """

    async def execute(self, request: BookingRequest) -> BookingResult:
        """
        Execute the complete booking SAGA.

        Args:
            request: The booking request from the client

        Returns:
            BookingResult with success/failure details
        """
        intent = BookingIntent.from_request(request, credits_required(request.session_type))

        logger.info(
            f"SAGA started: {intent.request_id}",
            extra={
                "owner_id": intent.owner_id,
                "registration_id": intent.registration_id,
                "session_type": intent.session_type.value,
                "session_date": intent.session_date.isoformat(),
                "time_slot": intent.time_slot
            }
        )

        is_valid, code, message = await validation_service.validate_booking(
            intent.owner_id, intent.registration_id, intent.session_type
        )
        if not is_valid:
            logger.warning(f"Validation failed: {intent.request_id} - {message}")
            intent.status = SagaStatus.REJECTED
            intent.fail(code, message)
            return booking_service.build_result(intent)

        intent.add_event(
            EventType.BOOKING_REQUESTED,
            f"Booking requested for {intent.session_type.value} on {intent.session_date} at {intent.time_slot}"
        )
        await event_publisher.save_intent(intent)

        try:
            # Step 1: Capacity
            logger.info(f"Step 1 - Capacity Check: {intent.request_id}")
            capacity = await capacity_oracle.get_slot_capacity(
                intent.session_date,
                intent.time_slot,
                intent.session_type,
                settings.capacity_for(intent.session_type.value)
            )
            if not capacity.is_available:
                return await self._reject(
                    intent,
                    EventType.SLOT_FULL,
                    ErrorCode.SLOT_FULL,
                    "This time slot is fully booked. Please select another time.",
                    {"current_bookings": capacity.current_bookings, "max_capacity": capacity.max_capacity}
                )

            # Step 2: Duplicate
            logger.info(f"Step 2 - Duplicate Check: {intent.request_id}")
            existing = await booking_service.find_active_booking(
                intent.registration_id, intent.session_date, intent.time_slot, intent.session_type
            )
            if existing:
                return await self._reject(
                    intent,
                    EventType.DUPLICATE_REJECTED,
                    ErrorCode.DUPLICATE_BOOKING,
                    "This child already has a booking for this session",
                    {"booking_id": existing.id}
                )

            intent.status = SagaStatus.CAPACITY_CHECKED
            intent.add_event(
                EventType.CAPACITY_CHECKED,
                f"Slot available ({capacity.available_spots}/{capacity.max_capacity} spots left)",
                {"available_spots": capacity.available_spots}
            )
            await event_publisher.save_intent(intent)

            # Step 3: Debit
            logger.info(f"Step 3 - Credit Debit: {intent.request_id}")
            lot_id, balance = await credit_ledger.debit_credit(
                intent.owner_id,
                intent.credits_required,
                receipt_key=event_publisher.debit_receipt_key(intent.request_id),
                receipt_ttl=settings.saga_ttl_seconds
            )
            if lot_id is None:
                intent.credits_remaining = balance
                return await self._reject(
                    intent,
                    EventType.CREDIT_INSUFFICIENT,
                    ErrorCode.INSUFFICIENT_CREDIT,
                    f"Insufficient credits. You have {balance} credit(s), "
                    f"but {intent.credits_required} is required.",
                    {"credits_available": balance}
                )

            intent.status = SagaStatus.CREDIT_DEBITED
            intent.credit_debited = True
            intent.credit_lot_id = lot_id
            intent.credits_remaining = balance
            intent.add_event(
                EventType.CREDIT_DEBITED,
                f"{intent.credits_required} credit debited",
                {"lot_id": lot_id, "balance": balance}
            )
            await event_publisher.save_intent(intent)
            await event_publisher.publish_event(
                EventType.CREDIT_DEBITED,
                intent.request_id,
                {"lot_id": lot_id}
            )

            # Step 4: Booking
            logger.info(f"Step 4 - Create Booking: {intent.request_id}")
            try:
                booking = await booking_service.create_booking(intent)
            except BookingCreationError as e:
                logger.warning(f"Booking failed: {intent.request_id} - {e}")
                intent.fail(
                    ErrorCode.BOOKING_CREATION_FAILED,
                    "Failed to create booking. Your credit has been refunded, please try again."
                )
                intent.add_event(EventType.BOOKING_FAILED, f"Booking failed: {e}")
                await self._handle_failure(intent)
                return booking_service.build_result(intent)

            intent.booking_id = booking.id
            intent.status = SagaStatus.BOOKING_CREATED
            intent.add_event(
                EventType.BOOKING_CREATED,
                f"Booking confirmed: {booking.id}",
                {"booking_id": booking.id}
            )
            await event_publisher.save_intent(intent)
            await event_publisher.publish_event(
                EventType.BOOKING_CREATED,
                intent.request_id,
                {"booking_id": booking.id}
            )

            logger.info(
                f"SAGA completed successfully: {intent.request_id}",
                extra={"booking_id": booking.id, "credits_remaining": balance}
            )

            await notification_service.booking_confirmed(booking, balance)
            return booking_service.build_result(intent)

        except Exception as e:
            logger.error(
                f"SAGA exception: {intent.request_id}",
                extra={"error": str(e), "status": intent.status.value},
                exc_info=True
            )

            if intent.booking_id:
                # The booking exists; only bookkeeping after it failed
                intent.status = SagaStatus.BOOKING_CREATED
                return booking_service.build_result(intent)

            if not intent.credit_debited and intent.status == SagaStatus.CAPACITY_CHECKED:
                # The debit may have landed even though its reply never arrived
                try:
                    lot_id = await event_publisher.get_debit_receipt(intent.request_id)
                except Exception as receipt_error:
                    logger.error(
                        f"Debit outcome unknown, leaving saga for recovery: {intent.request_id}",
                        extra={"error": str(receipt_error)}
                    )
                    intent.fail(ErrorCode.DEPENDENCY_ERROR, f"Unexpected error: {str(e)}")
                    return booking_service.build_result(intent)
                if lot_id:
                    intent.status = SagaStatus.CREDIT_DEBITED
                    intent.credit_debited = True
                    intent.credit_lot_id = lot_id

            if intent.credit_debited:
                intent.fail(
                    ErrorCode.BOOKING_CREATION_FAILED,
                    "Failed to create booking. Your credit has been refunded, please try again."
                )
                await self._handle_failure(intent)
                return booking_service.build_result(intent)

            intent.status = SagaStatus.REJECTED
            intent.fail(ErrorCode.DEPENDENCY_ERROR, f"Unexpected error: {str(e)}")
            await event_publisher.save_intent(intent)
            return booking_service.build_result(intent)

    async def _reject(
        self,
        intent: BookingIntent,
        event_type: EventType,
        code: ErrorCode,
        message: str,
        details: Optional[dict] = None
    ) -> BookingResult:
        """Close a saga that failed before touching the ledger."""
        logger.warning(f"SAGA rejected: {intent.request_id} - {message}", extra={"error_code": code.value})
        intent.status = SagaStatus.REJECTED
        intent.fail(code, message)
        intent.add_event(event_type, message, details)
        await event_publisher.save_intent(intent)
        await event_publisher.publish_event(event_type, intent.request_id, details)
        return booking_service.build_result(intent)

    async def _handle_failure(self, intent: BookingIntent) -> None:
        """Handle failure by triggering compensation."""
        logger.info(f"Handling failure, triggering compensation: {intent.request_id}")
        await compensation_handler.compensate(intent)

    async def get_status(self, request_id: str) -> Optional[BookingIntent]:
        """Get current saga state."""
        return await event_publisher.get_intent(request_id)


# Global orchestrator instance
saga_orchestrator = BookingSagaOrchestrator()
