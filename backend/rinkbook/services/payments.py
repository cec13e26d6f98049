"""
Subscription payment verification.
"""

import logging

from rinkbook.models.schemas import (
    ErrorCode,
    PaymentStatus,
    PaymentVerificationResult,
)
from rinkbook.services.gateway import payment_gateway, PaymentGatewayError
from rinkbook.services.registrations import registration_repository
from rinkbook.services.slot_conflicts import slot_conflict_validator

logger = logging.getLogger(__name__)


class PaymentVerificationService:
    """Confirms a registration's checkout once its slot is re-validated."""

    async def verify_payment(self, checkout_session_id: str) -> PaymentVerificationResult:
        if not checkout_session_id.startswith("cs_"):
            return PaymentVerificationResult(
                success=False,
                error_code=ErrorCode.VALIDATION_ERROR,
                error_message="Invalid session ID",
            )

        try:
            session = await payment_gateway.retrieve_checkout_session(checkout_session_id)
        except PaymentGatewayError as e:
            return PaymentVerificationResult(
                success=False,
                error_code=ErrorCode.INVALID_SESSION,
                error_message=f"Invalid or expired session: {e}",
            )

        if session.status != "complete":
            return PaymentVerificationResult(
                success=False,
                error_code=ErrorCode.INVALID_SESSION,
                error_message=f"Session not complete ({session.status})",
            )
        if session.payment_status != "paid":
            return PaymentVerificationResult(
                success=False,
                error_code=ErrorCode.INVALID_SESSION,
                error_message=f"Payment not completed ({session.payment_status})",
            )

        registration_id = (
            session.client_reference_id
            or session.metadata.get("registrationId")
            or session.metadata.get("registration_id")
        )
        if not registration_id:
            return PaymentVerificationResult(
                success=False,
                error_code=ErrorCode.MALFORMED_METADATA,
                error_message="No registration ID found in session",
            )

        registration = await registration_repository.get(registration_id)
        if not registration:
            return PaymentVerificationResult(
                success=False,
                registration_id=registration_id,
                error_code=ErrorCode.NOT_FOUND,
                error_message="Registration not found",
            )

        is_valid, message = await slot_conflict_validator.validate(registration)
        if not is_valid:
            await registration_repository.update_payment_status(registration, PaymentStatus.SLOT_UNAVAILABLE)
            logger.error(
                f"Slot no longer available for registration {registration_id}",
                extra={"checkout_session_id": checkout_session_id, "refund_required": True}
            )
            return PaymentVerificationResult(
                success=False,
                registration_id=registration_id,
                payment_status=PaymentStatus.SLOT_UNAVAILABLE,
                error_code=ErrorCode.SLOT_UNAVAILABLE,
                error_message=message,
                refund_required=True,
                message=message,
            )

        await registration_repository.update_payment_status(
            registration,
            PaymentStatus.SUCCEEDED,
            customer_ref=session.customer_ref,
            subscription_ref=session.subscription_ref,
        )
        return PaymentVerificationResult(
            success=True,
            registration_id=registration_id,
            payment_status=PaymentStatus.SUCCEEDED,
            message="Payment verified",
        )


# Global service instance
payment_verification_service = PaymentVerificationService()
