"""
Compensation handlers for the booking saga.
Gives back a debited credit when the booking it paid for was never written.
"""

import logging
from typing import Optional

from rinkbook.config import settings
from rinkbook.models.schemas import (
    BookingIntent,
    ErrorCode,
    EventType,
    SagaReconciliationReport,
    SagaStatus,
)
from rinkbook.services.booking import booking_service
from rinkbook.services.ledger import credit_ledger, RefundOutcome
from rinkbook.events.publisher import event_publisher

logger = logging.getLogger(__name__)


class CompensationHandler:
    """Handles compensation (rollback) operations for failed sagas."""

    async def compensate(self, intent: BookingIntent) -> bool:
        """
        Refund the credit held by a saga whose booking was not created.

        Returns:
            True if the ledger is consistent again
        """
        logger.info(
            f"Starting compensation: {intent.request_id}",
            extra={
                "status": intent.status.value,
                "credit_debited": intent.credit_debited,
                "lot_id": intent.credit_lot_id
            }
        )

        if not intent.credit_debited:
            # Nothing was taken from the ledger
            intent.status = SagaStatus.REJECTED
            await event_publisher.save_intent(intent)
            return True

        intent.status = SagaStatus.COMPENSATING
        intent.add_event(
            EventType.COMPENSATION_STARTED,
            "Refunding the debited credit"
        )
        await event_publisher.save_intent(intent)

        await event_publisher.publish_event(
            EventType.COMPENSATION_STARTED,
            intent.request_id,
            {"lot_id": intent.credit_lot_id}
        )

        try:
            outcome, balance = await credit_ledger.refund_credit(
                intent.owner_id,
                intent.credit_lot_id,
                intent.credits_required,
                receipt_key=event_publisher.debit_receipt_key(intent.request_id)
            )
        except Exception as e:
            outcome, balance = None, None
            logger.critical(
                f"Compensation error: {intent.request_id}",
                extra={"error": str(e), "owner_id": intent.owner_id, "lot_id": intent.credit_lot_id},
                exc_info=True
            )

        if outcome in (RefundOutcome.APPLIED, RefundOutcome.LAPSED, RefundOutcome.ALREADY_REFUNDED):
            intent.status = SagaStatus.CREDIT_REFUNDED
            intent.credit_debited = False
            intent.credits_remaining = balance
            intent.add_event(
                EventType.COMPENSATION_COMPLETED,
                f"Credit refunded ({outcome.value})",
                {"lot_id": intent.credit_lot_id, "balance": balance}
            )
            await event_publisher.save_intent(intent)
            await event_publisher.publish_event(
                EventType.COMPENSATION_COMPLETED,
                intent.request_id,
                {"outcome": outcome.value}
            )
            logger.info(
                f"Compensation completed: {intent.request_id}",
                extra={"outcome": outcome.value, "balance": balance}
            )
            return True

        # Credit spent without a booking: needs manual reconciliation
        intent.status = SagaStatus.COMPENSATION_FAILED
        intent.fail(
            ErrorCode.COMPENSATION_FAILED,
            "Booking failed and the credit could not be refunded automatically. Staff have been alerted."
        )
        intent.add_event(
            EventType.COMPENSATION_FAILED,
            f"Refund failed: {outcome.value if outcome else 'error'}",
            {"lot_id": intent.credit_lot_id}
        )
        await event_publisher.save_intent(intent)
        await event_publisher.publish_event(
            EventType.COMPENSATION_FAILED,
            intent.request_id,
            {"lot_id": intent.credit_lot_id, "owner_id": intent.owner_id}
        )
        logger.critical(
            f"Compensation failed, ledger inconsistent: {intent.request_id}",
            extra={
                "owner_id": intent.owner_id,
                "lot_id": intent.credit_lot_id,
                "outcome": outcome.value if outcome else None
            }
        )
        return False

    async def recover_stale_intents(self, older_than_seconds: Optional[int] = None) -> SagaReconciliationReport:
        """
        Settle sagas that never reached a terminal state (process died mid-saga).

        A debited intent whose booking exists is completed; one without a
        booking gets its credit refunded; one that never debited is closed.
        """
        if older_than_seconds is None:
            older_than_seconds = settings.stale_intent_seconds

        report = SagaReconciliationReport()
        for request_id in await event_publisher.list_stale_intents(older_than_seconds):
            report.examined += 1
            report.request_ids.append(request_id)

            intent = await event_publisher.get_intent(request_id)
            if intent is None:
                await event_publisher.drop_pending(request_id)
                report.closed += 1
                continue

            if not intent.credit_debited:
                # The debit may have landed before the intent was updated
                lot_id = await event_publisher.get_debit_receipt(request_id)
                if lot_id:
                    intent.credit_debited = True
                    intent.credit_lot_id = lot_id

            if intent.credit_debited:
                booking = await booking_service.find_active_booking(
                    intent.registration_id, intent.session_date, intent.time_slot, intent.session_type
                )
                if booking and booking.saga_request_id == intent.request_id:
                    intent.booking_id = booking.id
                    intent.status = SagaStatus.BOOKING_CREATED
                    await event_publisher.save_intent(intent)
                    report.closed += 1
                    continue

                if await self.compensate(intent):
                    report.refunded += 1
                else:
                    report.failed += 1
                    await event_publisher.drop_pending(request_id)
                continue

            intent.status = SagaStatus.REJECTED
            intent.fail(ErrorCode.BOOKING_CREATION_FAILED, "Saga abandoned before the credit was debited")
            await event_publisher.save_intent(intent)
            report.closed += 1

        if report.examined:
            logger.warning(
                "Stale booking sagas reconciled",
                extra={
                    "examined": report.examined,
                    "refunded": report.refunded,
                    "failed": report.failed
                }
            )
        return report


# Global handler instance
compensation_handler = CompensationHandler()
