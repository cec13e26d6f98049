"""
Recurring weekly schedules and the auto-booking run that keeps them filled.
"""

import logging
from datetime import date, timedelta
from typing import List, Optional

from rinkbook.config import settings
from rinkbook.db.connection import redis_connection
from rinkbook.models.schemas import (
    BookingRequest,
    BookingResult,
    DayOfWeek,
    ErrorCode,
    FirstBookingOutcome,
    OperationResult,
    RecurringRunStats,
    RecurringSchedule,
    ScheduleRequest,
    ScheduleResult,
    ScheduleUpdateRequest,
    utcnow,
)
from rinkbook.services.booking import booking_service
from rinkbook.services.notifications import notification_service
from rinkbook.services.validation import validation_service
from rinkbook.saga.orchestrator import saga_orchestrator

logger = logging.getLogger(__name__)

PAUSED_USER = "user_paused"
PAUSED_INSUFFICIENT_CREDITS = "insufficient_credits"
PAUSED_SLOT_UNAVAILABLE = "slot_unavailable"


def next_occurrence(day_of_week: DayOfWeek, today: date, starts_on: Optional[date] = None) -> date:
    """
    Soonest date falling on `day_of_week` strictly after `today` and not
    before `starts_on`. Today itself never qualifies.
    """
    start = today + timedelta(days=1)
    if starts_on and starts_on > start:
        start = starts_on
    return start + timedelta(days=(day_of_week.weekday - start.weekday()) % 7)


class RecurringScheduleManager:
    """Creates, pauses, resumes and processes weekly booking commitments."""

    SCHEDULE_KEY_PREFIX = "schedule:"
    UNIQUE_KEY_PREFIX = "schedule:key:"
    OWNER_INDEX_PREFIX = "schedules:owner:"
    ALL_KEY = "schedules:all"

    def _unique_key(self, registration_id: str, day_of_week: DayOfWeek, time_slot: str) -> str:
        return f"{self.UNIQUE_KEY_PREFIX}{registration_id}:{day_of_week.value}:{time_slot}"

    async def get_schedule(self, schedule_id: str) -> Optional[RecurringSchedule]:
        r = await redis_connection.get_redis()
        data = await r.get(f"{self.SCHEDULE_KEY_PREFIX}{schedule_id}")
        if data:
            return RecurringSchedule.model_validate_json(data)
        return None

    async def save_schedule(self, schedule: RecurringSchedule) -> RecurringSchedule:
        schedule.updated_at = utcnow()
        r = await redis_connection.get_redis()
        async with r.pipeline(transaction=True) as pipe:
            pipe.set(f"{self.SCHEDULE_KEY_PREFIX}{schedule.id}", schedule.model_dump_json())
            pipe.set(self._unique_key(schedule.registration_id, schedule.day_of_week, schedule.time_slot), schedule.id)
            pipe.sadd(f"{self.OWNER_INDEX_PREFIX}{schedule.owner_id}", schedule.id)
            pipe.sadd(self.ALL_KEY, schedule.id)
            await pipe.execute()
        return schedule

    async def list_schedules(self, owner_id: str) -> List[RecurringSchedule]:
        r = await redis_connection.get_redis()
        schedule_ids = await r.smembers(f"{self.OWNER_INDEX_PREFIX}{owner_id}")
        schedules = []
        for schedule_id in schedule_ids:
            schedule = await self.get_schedule(schedule_id)
            if schedule:
                schedules.append(schedule)
        return sorted(schedules, key=lambda s: s.created_at)

    async def create_schedule(self, request: ScheduleRequest, today: Optional[date] = None) -> ScheduleResult:
        """
        Create (or replace) a weekly schedule and try to book its first
        occurrence when it falls inside the auto-booking horizon.

        A failed first booking never fails the schedule itself. Re-creating a
        paused schedule resumes it from the next occurrence.
        """
        today = today or settings.get_today_local()

        is_valid, code, message = validation_service.validate_credit_session(request.session_type)
        if is_valid:
            is_valid, code, message = await validation_service.validate_registration(
                request.owner_id, request.registration_id
            )
        if not is_valid:
            return ScheduleResult(success=False, error_code=code, error_message=message)

        next_date = next_occurrence(request.day_of_week, today, request.starts_on)

        r = await redis_connection.get_redis()
        existing_id = await r.get(self._unique_key(request.registration_id, request.day_of_week, request.time_slot))
        existing = await self.get_schedule(existing_id) if existing_id else None

        schedule = RecurringSchedule(
            owner_id=request.owner_id,
            registration_id=request.registration_id,
            session_type=request.session_type,
            day_of_week=request.day_of_week,
            time_slot=request.time_slot,
            next_booking_date=next_date,
        )
        if existing:
            schedule.id = existing.id
            schedule.created_at = existing.created_at
            schedule.last_booked_date = existing.last_booked_date
        await self.save_schedule(schedule)

        logger.info(
            f"Recurring schedule saved: {schedule.id}",
            extra={
                "owner_id": schedule.owner_id,
                "day_of_week": schedule.day_of_week.value,
                "time_slot": schedule.time_slot,
                "next_booking_date": next_date.isoformat(),
                "replaced": existing is not None,
                "resumed": existing is not None and not existing.is_active
            }
        )

        days_ahead = (next_date - today).days
        if days_ahead > settings.auto_book_horizon_days:
            first_booking = FirstBookingOutcome(
                success=False,
                message=(
                    f"First session on {next_date.isoformat()} is more than "
                    f"{settings.auto_book_horizon_days} days away; auto-booking will start from "
                    f"{next_date.isoformat()}."
                ),
            )
        else:
            first_booking = await self._book_first_occurrence(schedule)

        await notification_service.schedule_created(schedule)

        return ScheduleResult(
            success=True,
            schedule=schedule,
            first_booking=first_booking,
            message=(
                f"Recurring {schedule.day_of_week.value} {schedule.time_slot} schedule created. "
                f"{first_booking.message}"
            ),
        )

    async def _book_first_occurrence(self, schedule: RecurringSchedule) -> FirstBookingOutcome:
        booking_date = schedule.next_booking_date
        result = await self._run_booking(schedule)

        if result.success:
            await self._advance(schedule)
            return FirstBookingOutcome(
                success=True,
                message=f"First session booked for {booking_date.isoformat()}.",
                booking_date=booking_date,
                booking_id=result.booking_id,
            )

        if result.error_code == ErrorCode.DUPLICATE_BOOKING:
            await self._advance(schedule)
            return FirstBookingOutcome(
                success=True,
                message=f"Session on {booking_date.isoformat()} was already booked.",
                booking_date=booking_date,
            )

        logger.info(
            f"First recurring booking not made: {schedule.id}",
            extra={"error_code": result.error_code.value if result.error_code else None}
        )
        return FirstBookingOutcome(
            success=False,
            message=f"{result.error_message} Auto-booking will resume from {booking_date.isoformat()}.",
            error_code=result.error_code,
        )

    async def _run_booking(self, schedule: RecurringSchedule) -> BookingResult:
        return await saga_orchestrator.execute(BookingRequest(
            owner_id=schedule.owner_id,
            registration_id=schedule.registration_id,
            session_type=schedule.session_type,
            session_date=schedule.next_booking_date,
            time_slot=schedule.time_slot,
            is_recurring=True,
            recurring_schedule_id=schedule.id,
        ))

    async def _advance(self, schedule: RecurringSchedule) -> None:
        """Record the booked date and move on exactly one week."""
        schedule.last_booked_date = schedule.next_booking_date
        schedule.next_booking_date = schedule.next_booking_date + timedelta(days=7)
        await self.save_schedule(schedule)

    async def _pause(self, schedule: RecurringSchedule, reason: str) -> None:
        schedule.is_active = False
        schedule.paused_reason = reason
        await self.save_schedule(schedule)
        logger.warning(f"Recurring schedule paused: {schedule.id}", extra={"reason": reason})

    async def update_schedule(
        self,
        schedule_id: str,
        request: ScheduleUpdateRequest,
        today: Optional[date] = None
    ) -> ScheduleResult:
        """Pause or resume. Resuming recomputes the next occurrence from today."""
        schedule = await self.get_schedule(schedule_id)
        if not schedule or schedule.owner_id != request.owner_id:
            return ScheduleResult(
                success=False,
                error_code=ErrorCode.NOT_FOUND,
                error_message="Schedule not found or access denied",
            )

        if request.is_active is None:
            return ScheduleResult(success=True, schedule=schedule, message="No changes.")

        if request.is_active:
            if not schedule.is_active:
                schedule.next_booking_date = next_occurrence(
                    schedule.day_of_week, today or settings.get_today_local()
                )
            schedule.is_active = True
            schedule.paused_reason = None
            message = f"Recurring schedule resumed. Next booking: {schedule.next_booking_date.isoformat()}"
        else:
            schedule.is_active = False
            schedule.paused_reason = request.paused_reason or PAUSED_USER
            message = "Recurring schedule paused."

        await self.save_schedule(schedule)
        logger.info(message, extra={"schedule_id": schedule.id})
        return ScheduleResult(success=True, schedule=schedule, message=message)

    async def delete_schedule(self, schedule_id: str, owner_id: str) -> OperationResult:
        schedule = await self.get_schedule(schedule_id)
        if not schedule or schedule.owner_id != owner_id:
            return OperationResult(
                success=False,
                error_code=ErrorCode.NOT_FOUND,
                error_message="Schedule not found or access denied",
            )

        r = await redis_connection.get_redis()
        unique_key = self._unique_key(schedule.registration_id, schedule.day_of_week, schedule.time_slot)
        async with r.pipeline(transaction=True) as pipe:
            pipe.delete(f"{self.SCHEDULE_KEY_PREFIX}{schedule.id}")
            pipe.delete(unique_key)
            pipe.srem(f"{self.OWNER_INDEX_PREFIX}{schedule.owner_id}", schedule.id)
            pipe.srem(self.ALL_KEY, schedule.id)
            await pipe.execute()

        logger.info(f"Recurring schedule deleted: {schedule.id}")
        return OperationResult(success=True)

    async def process_due_schedules(self, today: Optional[date] = None) -> RecurringRunStats:
        """Book every active schedule whose next occurrence has arrived."""
        today = today or settings.get_today_local()
        stats = RecurringRunStats()

        r = await redis_connection.get_redis()
        for schedule_id in sorted(await r.smembers(self.ALL_KEY)):
            schedule = await self.get_schedule(schedule_id)
            if not schedule or not schedule.is_active or schedule.next_booking_date > today:
                continue

            stats.processed += 1
            try:
                while schedule.next_booking_date < today:
                    # Missed weeks are skipped, never booked retroactively
                    schedule.next_booking_date += timedelta(days=7)

                existing = await booking_service.find_active_booking(
                    schedule.registration_id,
                    schedule.next_booking_date,
                    schedule.time_slot,
                    schedule.session_type
                )
                if existing:
                    await self._advance(schedule)
                    stats.already_booked += 1
                    continue

                result = await self._run_booking(schedule)
                if result.success or result.error_code == ErrorCode.DUPLICATE_BOOKING:
                    await self._advance(schedule)
                    if result.success:
                        stats.booked += 1
                    else:
                        stats.already_booked += 1
                elif result.error_code == ErrorCode.INSUFFICIENT_CREDIT:
                    await self._pause(schedule, PAUSED_INSUFFICIENT_CREDITS)
                    stats.paused_insufficient_credits += 1
                elif result.error_code == ErrorCode.SLOT_FULL:
                    await self._pause(schedule, PAUSED_SLOT_UNAVAILABLE)
                    stats.paused_slot_unavailable += 1
                else:
                    logger.error(
                        f"Recurring booking failed: {schedule.id}",
                        extra={"error_code": result.error_code.value if result.error_code else None}
                    )
                    stats.errors += 1
            except Exception as e:
                logger.error(
                    f"Recurring schedule processing error: {schedule.id}",
                    extra={"error": str(e)},
                    exc_info=True
                )
                stats.errors += 1

        logger.info("Recurring schedule processing complete", extra=stats.model_dump())
        return stats


# Global manager instance
schedule_manager = RecurringScheduleManager()
