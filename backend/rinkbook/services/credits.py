"""
Credit account queries and administrative adjustments.
"""

import logging
from datetime import timedelta
from typing import List

from rinkbook.config import settings
from rinkbook.data.packages import credit_expiry
from rinkbook.db.connection import redis_connection
from rinkbook.models.schemas import (
    AdjustmentResult,
    BalanceReconciliation,
    CreditAdjustmentRecord,
    CreditAdjustmentRequest,
    CreditBalanceSummary,
    CreditPurchaseLot,
    ErrorCode,
    LotStatus,
    utcnow,
)
from rinkbook.services.ledger import credit_ledger, RefundOutcome

logger = logging.getLogger(__name__)


class CreditService:
    """Balance summaries, reconciliation and admin adjustments."""

    ADJUSTMENTS_KEY_PREFIX = "credits:adjustments:"

    async def get_summary(self, owner_id: str) -> CreditBalanceSummary:
        """
        Balance summary for the owner. Lapsed lots are expired first so the
        aggregate never reports credits that can no longer be spent.
        """
        await credit_ledger.reconcile_balance(owner_id)

        now = utcnow()
        warning_cutoff = now + timedelta(days=settings.credit_expiry_warning_days)
        active = [
            lot for lot in await credit_ledger.list_lots(owner_id)
            if lot.status == LotStatus.ACTIVE and lot.credits_remaining > 0 and lot.expires_at > now
        ]
        total = await credit_ledger.get_balance(owner_id)
        lot_sum = sum(lot.credits_remaining for lot in active)

        return CreditBalanceSummary(
            owner_id=owner_id,
            total_credits=total,
            lot_balance=lot_sum,
            in_sync=total == lot_sum,
            expiring_soon=sum(lot.credits_remaining for lot in active if lot.expires_at <= warning_cutoff),
            next_expiry_date=active[0].expires_at if active else None,
            lots=active,
        )

    async def reconcile(self, owner_id: str) -> BalanceReconciliation:
        """Rewrite the aggregate balance from the sum of usable lots."""
        before, after, expired = await credit_ledger.reconcile_balance(owner_id)
        logger.info(
            f"Balance reconciled: {owner_id}",
            extra={"balance_before": before, "balance_after": after, "credits_expired": expired}
        )
        return BalanceReconciliation(
            owner_id=owner_id,
            balance_before=before,
            balance_after=after,
            credits_expired=expired,
        )

    async def adjust(self, request: CreditAdjustmentRequest) -> AdjustmentResult:
        """
        Administrative credit adjustment.

        Grants become a lot of their own so the aggregate stays equal to the
        lot sum. Removals go through the debit primitive one credit at a time.
        """
        owner_id = request.owner_id
        await credit_ledger.ensure_account(owner_id)
        _, before, _ = await credit_ledger.reconcile_balance(owner_id)

        if request.adjustment > 0:
            now = utcnow()
            lot = CreditPurchaseLot(
                owner_id=owner_id,
                credits_purchased=request.adjustment,
                credits_remaining=request.adjustment,
                price_paid=0.0,
                currency=settings.default_currency,
                purchased_at=now,
                expires_at=credit_expiry(now, settings.credit_validity_months),
            )
            await credit_ledger.insert_lot(lot)
            after = await credit_ledger.increment_balance(owner_id, request.adjustment)
        else:
            to_remove = -request.adjustment
            if to_remove > before:
                return AdjustmentResult(
                    success=False,
                    error_code=ErrorCode.VALIDATION_ERROR,
                    error_message=f"Cannot subtract {to_remove} credits. User only has {before} credits.",
                    new_balance=before,
                )

            debited: List[str] = []
            after = before
            for _ in range(to_remove):
                lot_id, after = await credit_ledger.debit_credit(owner_id, 1)
                if lot_id is None:
                    break
                debited.append(lot_id)

            if len(debited) < to_remove:
                # Balance moved underneath us; put back what was taken
                for lot_id in debited:
                    outcome, after = await credit_ledger.refund_credit(owner_id, lot_id, 1)
                    if outcome != RefundOutcome.APPLIED:
                        logger.error(
                            f"Adjustment rollback could not refund lot: {lot_id}",
                            extra={"owner_id": owner_id, "outcome": outcome.value}
                        )
                return AdjustmentResult(
                    success=False,
                    error_code=ErrorCode.INSUFFICIENT_CREDIT,
                    error_message="Balance changed during adjustment; no credits were removed",
                    new_balance=after,
                )

        record = CreditAdjustmentRecord(
            owner_id=owner_id,
            adjustment=request.adjustment,
            balance_before=before,
            balance_after=after,
            reason=request.reason,
            admin_id=request.admin_id,
        )
        r = await redis_connection.get_redis()
        await r.lpush(f"{self.ADJUSTMENTS_KEY_PREFIX}{owner_id}", record.model_dump_json())

        logger.info(
            f"Credits adjusted: {owner_id}",
            extra={
                "adjustment": request.adjustment,
                "balance_before": before,
                "balance_after": after,
                "admin_id": request.admin_id
            }
        )

        verb = "added" if request.adjustment > 0 else "removed"
        return AdjustmentResult(
            success=True,
            new_balance=after,
            message=f"Successfully {verb} {abs(request.adjustment)} credit(s). New balance: {after}",
        )

    async def list_adjustments(self, owner_id: str) -> List[CreditAdjustmentRecord]:
        """Audit trail, newest first."""
        r = await redis_connection.get_redis()
        entries = await r.lrange(f"{self.ADJUSTMENTS_KEY_PREFIX}{owner_id}", 0, -1)
        return [CreditAdjustmentRecord.model_validate_json(entry) for entry in entries]


# Global service instance
credit_service = CreditService()
