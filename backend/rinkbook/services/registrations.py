"""
Registration records for the subscription path.
"""

import logging
from typing import List, Optional

from rinkbook.db.connection import redis_connection
from rinkbook.models.schemas import (
    CONFIRMED_PAYMENT_STATUSES,
    PaymentStatus,
    RegistrationRecord,
    utcnow,
)

logger = logging.getLogger(__name__)


class RegistrationRepository:
    """Keyed storage of registrations plus an index of all of them."""

    REGISTRATION_KEY_PREFIX = "registration:"
    INDEX_KEY = "registrations:all"

    async def get(self, registration_id: str) -> Optional[RegistrationRecord]:
        r = await redis_connection.get_redis()
        data = await r.get(f"{self.REGISTRATION_KEY_PREFIX}{registration_id}")
        if data:
            return RegistrationRecord.model_validate_json(data)
        return None

    async def get_owned(self, registration_id: str, owner_id: str) -> Optional[RegistrationRecord]:
        """The registration, only if it belongs to `owner_id`."""
        registration = await self.get(registration_id)
        if registration and registration.owner_id == owner_id:
            return registration
        return None

    async def save(self, registration: RegistrationRecord) -> RegistrationRecord:
        registration.updated_at = utcnow()
        r = await redis_connection.get_redis()
        async with r.pipeline(transaction=True) as pipe:
            pipe.set(
                f"{self.REGISTRATION_KEY_PREFIX}{registration.id}",
                registration.model_dump_json(by_alias=True)
            )
            pipe.sadd(self.INDEX_KEY, registration.id)
            await pipe.execute()
        return registration

    async def list_confirmed(self, exclude_id: Optional[str] = None) -> List[RegistrationRecord]:
        """Registrations whose payment is succeeded or verified, except `exclude_id`."""
        r = await redis_connection.get_redis()
        registration_ids = await r.smembers(self.INDEX_KEY)
        confirmed = []
        for registration_id in sorted(registration_ids):
            if registration_id == exclude_id:
                continue
            registration = await self.get(registration_id)
            if registration and registration.payment_status in CONFIRMED_PAYMENT_STATUSES:
                confirmed.append(registration)
        return confirmed

    async def update_payment_status(
        self,
        registration: RegistrationRecord,
        status: PaymentStatus,
        customer_ref: Optional[str] = None,
        subscription_ref: Optional[str] = None
    ) -> RegistrationRecord:
        registration.payment_status = status
        if customer_ref:
            registration.customer_ref = customer_ref
        if subscription_ref:
            registration.subscription_ref = subscription_ref
        await self.save(registration)

        logger.info(
            f"Registration payment status updated: {registration.id}",
            extra={"payment_status": status.value}
        )
        return registration


# Global repository instance
registration_repository = RegistrationRepository()
