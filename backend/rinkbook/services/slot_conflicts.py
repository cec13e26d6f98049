"""
Slot conflict validator for the subscription path.
Final check against already-confirmed registrations before a payment is accepted.
"""

import logging
from typing import List, Optional, Tuple

from rinkbook.config import settings
from rinkbook.models.schemas import (
    ProgramType,
    RegistrationForm,
    RegistrationRecord,
    normalize_time_slot,
)
from rinkbook.services.registrations import registration_repository

logger = logging.getLogger(__name__)

REFUND_NOTICE = "Your payment will be refunded."


def _days(values: List[str]) -> List[str]:
    return [day.strip().lower() for day in values]


def _same_time(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    try:
        return normalize_time_slot(a) == normalize_time_slot(b)
    except ValueError:
        return a.strip() == b.strip()


def _one_on_one_slot(form: RegistrationForm) -> Tuple[List[str], Optional[str]]:
    """Days and time a private or semi-private registration occupies."""
    if form.program_type == ProgramType.PRIVATE:
        return _days(form.private_selected_days), form.private_time_slot
    if form.program_type == ProgramType.SEMI_PRIVATE:
        return _days(form.semi_private_availability), form.semi_private_time()
    return [], None


class SlotConflictValidator:
    """Detects day/time conflicts between a registration and confirmed others."""

    async def validate(self, registration: RegistrationRecord) -> Tuple[bool, str]:
        """
        Check the registration against every *other* confirmed registration.
        The registration being verified is never counted against itself.

        Returns:
            Tuple of (is_valid, message)
        """
        form = registration.form_data
        if not form.program_type:
            return True, "No program type - skipping validation"

        confirmed = [
            other.form_data
            for other in await registration_repository.list_confirmed(exclude_id=registration.id)
        ]

        if form.program_type == ProgramType.GROUP:
            return self._check_group(form, confirmed)
        return self._check_one_on_one(form, confirmed)

    def _check_group(self, form: RegistrationForm, confirmed: List[RegistrationForm]) -> Tuple[bool, str]:
        capacity = settings.max_group_capacity
        for day in form.group_selected_days:
            taken = sum(
                1 for other in confirmed
                if other.program_type == ProgramType.GROUP
                and day.strip().lower() in _days(other.group_selected_days)
            )
            if taken >= capacity:
                logger.warning(f"Group day full: {day}", extra={"taken": taken, "capacity": capacity})
                return False, (
                    f"Group training on {day} is now full ({taken}/{capacity} spots taken). {REFUND_NOTICE}"
                )
        return True, "Slot is available"

    def _check_one_on_one(self, form: RegistrationForm, confirmed: List[RegistrationForm]) -> Tuple[bool, str]:
        days, time_slot = _one_on_one_slot(form)
        if not time_slot:
            return True, "No time slot selected - skipping validation"

        label = "Private" if form.program_type == ProgramType.PRIVATE else "Semi-private"
        for day in days:
            for other in confirmed:
                other_days, other_time = _one_on_one_slot(other)
                if day in other_days and _same_time(time_slot, other_time):
                    logger.warning(
                        f"{label} slot taken: {day} {time_slot}",
                        extra={"conflicting_program": other.program_type.value}
                    )
                    return False, (
                        f"{label} training slot on {day.capitalize()} at {time_slot} "
                        f"is no longer available. {REFUND_NOTICE}"
                    )
        return True, "Slot is available"


# Global validator instance
slot_conflict_validator = SlotConflictValidator()
