"""
Saga event publisher and intent store.
Uses Redis Streams for saga events and plain keys for intent records.
"""

import json
import logging
from typing import Dict, Any, List, Optional

from rinkbook.config import settings
from rinkbook.db.connection import redis_connection
from rinkbook.models.schemas import EventType, EventPayload, BookingIntent, utcnow

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes saga events and persists booking intents."""

    STREAM_NAME = "booking:events"
    MAX_STREAM_LENGTH = 1000
    INTENT_KEY_PREFIX = "saga:"
    PENDING_KEY = "saga:pending"

    async def publish_event(
        self,
        event_type: EventType,
        request_id: str,
        data: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Publish an event to the Redis stream.
        Returns the message ID.
        """
        r = await redis_connection.get_redis()

        payload = EventPayload(
            event_type=event_type,
            request_id=request_id,
            data=data or {}
        )

        # Publish to stream with auto-trimming
        message_id = await r.xadd(
            self.STREAM_NAME,
            {
                "event_type": event_type.value,
                "request_id": request_id,
                "data": json.dumps(payload.data, default=str),
                "timestamp": payload.timestamp.isoformat()
            },
            maxlen=self.MAX_STREAM_LENGTH
        )

        logger.info(
            f"Published event: {event_type.value}",
            extra={
                "event_type": event_type.value,
                "request_id": request_id,
                "message_id": message_id
            }
        )

        return message_id

    async def save_intent(self, intent: BookingIntent) -> None:
        """Save booking intent to Redis; non-terminal intents stay in the pending set."""
        r = await redis_connection.get_redis()
        key = f"{self.INTENT_KEY_PREFIX}{intent.request_id}"

        async with r.pipeline(transaction=True) as pipe:
            pipe.set(key, intent.model_dump_json(), ex=settings.saga_ttl_seconds)
            if intent.is_terminal:
                pipe.zrem(self.PENDING_KEY, intent.request_id)
            else:
                pipe.zadd(self.PENDING_KEY, {intent.request_id: intent.created_at.timestamp()})
            await pipe.execute()

        logger.debug(
            f"Saved booking intent: {intent.request_id}",
            extra={"status": intent.status.value}
        )

    async def get_intent(self, request_id: str) -> Optional[BookingIntent]:
        """Retrieve booking intent from Redis."""
        r = await redis_connection.get_redis()
        data = await r.get(f"{self.INTENT_KEY_PREFIX}{request_id}")
        if data:
            return BookingIntent.model_validate_json(data)
        return None

    def debit_receipt_key(self, request_id: str) -> str:
        """Key the ledger writes the debited lot id to, atomically with the debit."""
        return f"{self.INTENT_KEY_PREFIX}{request_id}:debit"

    async def get_debit_receipt(self, request_id: str) -> Optional[str]:
        r = await redis_connection.get_redis()
        return await r.get(self.debit_receipt_key(request_id))

    async def list_stale_intents(self, older_than_seconds: int) -> List[str]:
        """Request ids of pending intents created more than `older_than_seconds` ago."""
        r = await redis_connection.get_redis()
        cutoff = utcnow().timestamp() - older_than_seconds
        return await r.zrangebyscore(self.PENDING_KEY, "-inf", cutoff)

    async def drop_pending(self, request_id: str) -> None:
        r = await redis_connection.get_redis()
        await r.zrem(self.PENDING_KEY, request_id)


# Global publisher instance
event_publisher = EventPublisher()
