"""
Validation service for the booking workflow.
Rejects malformed or unauthorised requests before anything is mutated.
"""

import logging
from typing import Optional, Tuple

from rinkbook.data.packages import credits_required
from rinkbook.models.schemas import ErrorCode, SessionType
from rinkbook.services.registrations import registration_repository

logger = logging.getLogger(__name__)


class ValidationService:
    """Validates ownership and the session-type credit rule."""

    async def validate_registration(
        self,
        owner_id: str,
        registration_id: str
    ) -> Tuple[bool, Optional[ErrorCode], str]:
        """
        Check the registration exists and belongs to the owner.

        Returns:
            Tuple of (is_valid, error_code, message)
        """
        registration = await registration_repository.get_owned(registration_id, owner_id)
        if not registration:
            logger.warning(
                f"Registration not owned: {registration_id}",
                extra={"owner_id": owner_id}
            )
            return False, ErrorCode.NOT_FOUND, "Registration not found or does not belong to this user"
        return True, None, "Registration verified"

    def validate_credit_session(self, session_type: SessionType) -> Tuple[bool, Optional[ErrorCode], str]:
        """Only credit-funded session types can go through the credit booking saga."""
        if credits_required(session_type) == 0:
            return (
                False,
                ErrorCode.VALIDATION_ERROR,
                f"{session_type.value} sessions are purchased directly, not with credits"
            )
        return True, None, "Session type uses credits"

    async def validate_booking(
        self,
        owner_id: str,
        registration_id: str,
        session_type: SessionType
    ) -> Tuple[bool, Optional[ErrorCode], str]:
        """Full pre-saga validation of a credit booking request."""
        is_valid, code, message = self.validate_credit_session(session_type)
        if not is_valid:
            return is_valid, code, message
        return await self.validate_registration(owner_id, registration_id)


# Global service instance
validation_service = ValidationService()
