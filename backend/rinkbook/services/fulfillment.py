"""
Credit purchase fulfillment.
Turns a paid checkout session into exactly one purchase lot and one balance increment.
"""

import logging

from rinkbook.config import settings
from rinkbook.data.packages import credit_expiry, get_package
from rinkbook.models.schemas import (
    CheckoutSession,
    CreditPurchaseLot,
    ErrorCode,
    FulfillmentResult,
    utcnow,
)
from rinkbook.services.gateway import payment_gateway, PaymentGatewayError
from rinkbook.services.ledger import credit_ledger, DuplicateLotError

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_PREFIX = "cs_"
CREDIT_PURCHASE_TYPE = "credit_purchase"


class FulfillmentService:
    """Idempotent fulfillment of credit package purchases."""

    async def fulfill(self, checkout_session_id: str) -> FulfillmentResult:
        """
        Fulfill a credit purchase. Safe to call any number of times for the
        same checkout session.
        """
        if not checkout_session_id.startswith(CHECKOUT_SESSION_PREFIX):
            return self._fail(ErrorCode.VALIDATION_ERROR, "Invalid checkout session id format")

        logger.info(f"Fulfilling credit purchase: {checkout_session_id}")

        try:
            session = await payment_gateway.retrieve_checkout_session(checkout_session_id)
        except PaymentGatewayError as e:
            return self._fail(ErrorCode.INVALID_SESSION, f"Invalid or expired session: {e}")

        if session.status != "complete":
            return self._fail(ErrorCode.INVALID_SESSION, f"Checkout session not complete ({session.status})")
        if session.payment_status != "paid":
            return self._fail(ErrorCode.INVALID_SESSION, f"Payment not completed ({session.payment_status})")

        purchase_type = session.metadata.get("type")
        if purchase_type != CREDIT_PURCHASE_TYPE:
            logger.warning(
                f"Wrong checkout session type: {checkout_session_id}",
                extra={"received": purchase_type}
            )
            return self._fail(
                ErrorCode.WRONG_SESSION_TYPE,
                f"Invalid session type: expected {CREDIT_PURCHASE_TYPE}, received {purchase_type}"
            )

        existing = await credit_ledger.find_lot_by_checkout(checkout_session_id)
        if existing:
            return await self._already_processed(existing)

        owner_id = session.metadata.get("owner_id") or session.metadata.get("firebase_uid")
        if not owner_id:
            return self._fail(ErrorCode.MALFORMED_METADATA, "Missing user ID in session")

        try:
            package = get_package(session.metadata.get("package_type", ""))
        except ValueError:
            return self._fail(ErrorCode.MALFORMED_METADATA, "Invalid package type in session")

        try:
            credits = int(session.metadata.get("credits", ""))
        except ValueError:
            credits = 0
        if credits <= 0:
            return self._fail(ErrorCode.MALFORMED_METADATA, "Invalid credits in session")

        await credit_ledger.ensure_account(owner_id)

        lot = self._build_lot(session, owner_id, package.package_type, credits)
        try:
            await credit_ledger.insert_lot(lot)
        except DuplicateLotError:
            # A concurrent call for the same session won the insert
            logger.info(f"Duplicate fulfillment detected on insert: {checkout_session_id}")
            existing = await credit_ledger.find_lot_by_checkout(checkout_session_id)
            return await self._already_processed(existing or lot)

        try:
            new_balance = await credit_ledger.increment_balance(owner_id, credits)
        except Exception as e:
            # The lot is the ground truth; reconciliation recovers the aggregate
            logger.error(
                f"Balance increment failed after purchase was recorded: {owner_id}",
                extra={"lot_id": lot.id, "credits": credits, "error": str(e)}
            )
            new_balance = None

        logger.info(
            f"Credit purchase fulfilled: {checkout_session_id}",
            extra={"owner_id": owner_id, "credits": credits, "new_balance": new_balance}
        )

        return FulfillmentResult(
            success=True,
            credits_added=credits,
            new_balance=new_balance,
            package_type=package.package_type,
            amount_paid=lot.price_paid,
            lot_id=lot.id,
            expires_at=lot.expires_at,
        )

    def _build_lot(self, session: CheckoutSession, owner_id: str, package_type, credits: int) -> CreditPurchaseLot:
        now = utcnow()
        return CreditPurchaseLot(
            owner_id=owner_id,
            package_type=package_type,
            credits_purchased=credits,
            credits_remaining=credits,
            price_paid=(session.amount_total or 0) / 100,
            currency=session.currency or settings.default_currency,
            checkout_session_id=session.id,
            payment_reference_id=session.payment_reference_id,
            purchased_at=now,
            expires_at=credit_expiry(now, settings.credit_validity_months),
        )

    async def _already_processed(self, lot: CreditPurchaseLot) -> FulfillmentResult:
        logger.info(f"Already processed: {lot.checkout_session_id}", extra={"lot_id": lot.id})
        return FulfillmentResult(
            success=True,
            already_processed=True,
            credits_added=lot.credits_purchased,
            new_balance=await credit_ledger.get_balance(lot.owner_id),
            package_type=lot.package_type,
            amount_paid=lot.price_paid,
            lot_id=lot.id,
            expires_at=lot.expires_at,
        )

    def _fail(self, code: ErrorCode, message: str) -> FulfillmentResult:
        logger.warning(f"Fulfillment rejected: {message}", extra={"error_code": code.value})
        return FulfillmentResult(success=False, error_code=code, error_message=message)


# Global service instance
fulfillment_service = FulfillmentService()
