"""
Credit ledger primitives.
Every mutation of a credit balance runs as a Lua script so it is atomic on the
Redis server; the rest of the engine orchestrates around these calls.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from rinkbook.db.connection import redis_connection
from rinkbook.models.schemas import CreditAccount, CreditPurchaseLot, LotStatus, utcnow

logger = logging.getLogger(__name__)


# KEYS[1] account hash, KEYS[2] owner lot index (score = expires_ts), KEYS[3] optional debit receipt
# ARGV[1] amount, ARGV[2] now epoch seconds, ARGV[3] lot key prefix, ARGV[4] updated_at, ARGV[5] receipt ttl
# Returns {code, lot_id, balance}: 1 debited, 0 insufficient, 2 balance without a usable lot
DEBIT_SCRIPT = """
local amount = tonumber(ARGV[1])
local balance = tonumber(redis.call('HGET', KEYS[1], 'total_credits') or '0')
if balance < amount then
  return {0, '', balance}
end
local lots = redis.call('ZRANGEBYSCORE', KEYS[2], '(' .. ARGV[2], '+inf')
for _, lot_id in ipairs(lots) do
  local lot_key = ARGV[3] .. lot_id
  local status = redis.call('HGET', lot_key, 'status')
  local remaining = tonumber(redis.call('HGET', lot_key, 'credits_remaining') or '0')
  if status == 'active' and remaining >= amount then
    remaining = remaining - amount
    redis.call('HSET', lot_key, 'credits_remaining', tostring(remaining))
    if remaining == 0 then
      redis.call('HSET', lot_key, 'status', 'exhausted')
    end
    local new_balance = redis.call('HINCRBY', KEYS[1], 'total_credits', tostring(-amount))
    redis.call('HSET', KEYS[1], 'updated_at', ARGV[4])
    if #KEYS >= 3 then
      redis.call('SET', KEYS[3], lot_id, 'EX', ARGV[5])
    end
    return {1, lot_id, new_balance}
  end
end
return {2, '', balance}
"""

# KEYS[1] account hash, KEYS[2] lot hash, KEYS[3] optional debit receipt (consumed)
# ARGV[1] amount, ARGV[2] now epoch seconds, ARGV[3] updated_at
# Returns {code, balance}: 1 applied, 2 lot expired (credit lapses), 3 would exceed purchase,
# 4 receipt already consumed, 0 unknown lot
REFUND_SCRIPT = """
local amount = tonumber(ARGV[1])
local balance = tonumber(redis.call('HGET', KEYS[1], 'total_credits') or '0')
if #KEYS >= 3 and redis.call('EXISTS', KEYS[3]) == 0 then
  return {4, balance}
end
if redis.call('EXISTS', KEYS[2]) == 0 then
  return {0, balance}
end
local remaining = tonumber(redis.call('HGET', KEYS[2], 'credits_remaining'))
local purchased = tonumber(redis.call('HGET', KEYS[2], 'credits_purchased'))
if remaining + amount > purchased then
  return {3, balance}
end
redis.call('HSET', KEYS[2], 'credits_remaining', tostring(remaining + amount))
if #KEYS >= 3 then
  redis.call('DEL', KEYS[3])
end
if tonumber(redis.call('HGET', KEYS[2], 'expires_ts')) <= tonumber(ARGV[2]) then
  redis.call('HSET', KEYS[2], 'status', 'expired')
  return {2, balance}
end
redis.call('HSET', KEYS[2], 'status', 'active')
local new_balance = redis.call('HINCRBY', KEYS[1], 'total_credits', tostring(amount))
redis.call('HSET', KEYS[1], 'updated_at', ARGV[3])
return {1, new_balance}
"""

# KEYS[1] checkout-session claim, KEYS[2] lot hash, KEYS[3] owner lot index
# ARGV[1] lot id, ARGV[2] expires_ts, ARGV[3..] hash field/value pairs
# Returns 1 inserted, 0 checkout session already claimed
INSERT_LOT_SCRIPT = """
if not redis.call('SET', KEYS[1], ARGV[1], 'NX') then
  return 0
end
for i = 3, #ARGV, 2 do
  redis.call('HSET', KEYS[2], ARGV[i], ARGV[i + 1])
end
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
return 1
"""

# KEYS[1] account hash, KEYS[2] owner lot index
# ARGV[1] now epoch seconds, ARGV[2] lot key prefix, ARGV[3] updated_at
# Expires lapsed lots, then rewrites the aggregate from the lot sum.
# Returns {balance_before, balance_after, credits_expired}
RECONCILE_SCRIPT = """
local before = tonumber(redis.call('HGET', KEYS[1], 'total_credits') or '0')
local expired = 0
local expired_ids = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, lot_id in ipairs(expired_ids) do
  local lot_key = ARGV[2] .. lot_id
  if redis.call('HGET', lot_key, 'status') == 'active' then
    expired = expired + tonumber(redis.call('HGET', lot_key, 'credits_remaining') or '0')
    redis.call('HSET', lot_key, 'status', 'expired')
  end
end
local total = 0
local live_ids = redis.call('ZRANGEBYSCORE', KEYS[2], '(' .. ARGV[1], '+inf')
for _, lot_id in ipairs(live_ids) do
  local lot_key = ARGV[2] .. lot_id
  if redis.call('HGET', lot_key, 'status') == 'active' then
    total = total + tonumber(redis.call('HGET', lot_key, 'credits_remaining') or '0')
  end
end
if redis.call('EXISTS', KEYS[1]) == 1 then
  redis.call('HSET', KEYS[1], 'total_credits', tostring(total), 'updated_at', ARGV[3])
end
return {before, total, expired}
"""


class RefundOutcome(str, Enum):
    APPLIED = "applied"
    LAPSED = "lapsed"
    OVER_REFUND = "over_refund"
    UNKNOWN_LOT = "unknown_lot"
    ALREADY_REFUNDED = "already_refunded"


_REFUND_CODES = {
    0: RefundOutcome.UNKNOWN_LOT,
    1: RefundOutcome.APPLIED,
    2: RefundOutcome.LAPSED,
    3: RefundOutcome.OVER_REFUND,
    4: RefundOutcome.ALREADY_REFUNDED,
}


class DuplicateLotError(Exception):
    """The checkout session already has a purchase lot."""

    def __init__(self, checkout_session_id: str):
        super().__init__(f"Checkout session already fulfilled: {checkout_session_id}")
        self.checkout_session_id = checkout_session_id


class CreditLedger:
    """Credit accounts, purchase lots and the atomic debit/refund primitives."""

    ACCOUNT_KEY_PREFIX = "credits:account:"
    LOTS_INDEX_PREFIX = "credits:lots:"
    LOT_KEY_PREFIX = "credits:lot:"
    CHECKOUT_KEY_PREFIX = "credits:checkout:"

    def __init__(self):
        self._client = None
        self._scripts = {}

    async def _script(self, name: str, source: str):
        r = await redis_connection.get_redis()
        # Registered scripts are bound to the client that created them
        if r is not self._client:
            self._client = r
            self._scripts = {}
        if name not in self._scripts:
            self._scripts[name] = r.register_script(source)
        return self._scripts[name]

    def _account_key(self, owner_id: str) -> str:
        return f"{self.ACCOUNT_KEY_PREFIX}{owner_id}"

    def _lots_key(self, owner_id: str) -> str:
        return f"{self.LOTS_INDEX_PREFIX}{owner_id}"

    def _lot_key(self, lot_id: str) -> str:
        return f"{self.LOT_KEY_PREFIX}{lot_id}"

    async def debit_credit(
        self,
        owner_id: str,
        amount: int = 1,
        receipt_key: Optional[str] = None,
        receipt_ttl: int = 7 * 24 * 3600
    ) -> Tuple[Optional[str], int]:
        """
        Atomically take `amount` credits from the owner's earliest-expiring usable lot.

        When `receipt_key` is given, the debited lot id is written there in the
        same atomic step so a crashed caller can still be compensated.

        Returns:
            Tuple of (lot_id or None when insufficient, balance after the call)
        """
        script = await self._script("debit", DEBIT_SCRIPT)
        now = utcnow()
        keys = [self._account_key(owner_id), self._lots_key(owner_id)]
        if receipt_key:
            keys.append(receipt_key)
        code, lot_id, balance = await script(
            keys=keys,
            args=[amount, int(now.timestamp()), self.LOT_KEY_PREFIX, now.isoformat(), receipt_ttl],
        )
        code, balance = int(code), int(balance)

        if code == 1:
            logger.info(
                f"Credit debited: {owner_id}",
                extra={"lot_id": lot_id, "amount": amount, "balance": balance}
            )
            return lot_id, balance

        if code == 2:
            logger.warning(
                f"Balance has no backing lot, reconciliation needed: {owner_id}",
                extra={"balance": balance, "amount": amount}
            )
        else:
            logger.info(
                f"Insufficient credit: {owner_id}",
                extra={"balance": balance, "amount": amount}
            )
        return None, balance

    async def refund_credit(
        self,
        owner_id: str,
        lot_id: str,
        amount: int = 1,
        receipt_key: Optional[str] = None
    ) -> Tuple[RefundOutcome, int]:
        """
        Atomically return `amount` credits to the lot they were taken from.

        With a `receipt_key` the refund happens at most once per debit.

        Returns:
            Tuple of (outcome, balance after the call)
        """
        script = await self._script("refund", REFUND_SCRIPT)
        now = utcnow()
        keys = [self._account_key(owner_id), self._lot_key(lot_id)]
        if receipt_key:
            keys.append(receipt_key)
        code, balance = await script(
            keys=keys,
            args=[amount, int(now.timestamp()), now.isoformat()],
        )
        outcome = _REFUND_CODES[int(code)]

        log = logger.info if outcome == RefundOutcome.APPLIED else logger.warning
        log(
            f"Credit refund {outcome.value}: {owner_id}",
            extra={"lot_id": lot_id, "amount": amount, "balance": int(balance)}
        )
        return outcome, int(balance)

    async def get_account(self, owner_id: str) -> Optional[CreditAccount]:
        r = await redis_connection.get_redis()
        data = await r.hgetall(self._account_key(owner_id))
        if not data:
            return None
        return CreditAccount(
            owner_id=data["owner_id"],
            total_credits=int(data.get("total_credits", 0)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data.get("updated_at") or data["created_at"]),
        )

    async def ensure_account(self, owner_id: str) -> CreditAccount:
        """Create the owner's account with a zero balance if it does not exist yet."""
        r = await redis_connection.get_redis()
        key = self._account_key(owner_id)
        now = utcnow().isoformat()

        created = await r.hsetnx(key, "owner_id", owner_id)
        if created:
            await r.hsetnx(key, "total_credits", 0)
            await r.hsetnx(key, "created_at", now)
            await r.hsetnx(key, "updated_at", now)
            logger.info(f"Credit account created: {owner_id}")

        return await self.get_account(owner_id)

    async def get_balance(self, owner_id: str) -> int:
        r = await redis_connection.get_redis()
        value = await r.hget(self._account_key(owner_id), "total_credits")
        return int(value) if value else 0

    async def increment_balance(self, owner_id: str, amount: int) -> int:
        """Add purchased credits to the aggregate balance."""
        r = await redis_connection.get_redis()
        key = self._account_key(owner_id)
        async with r.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, "total_credits", amount)
            pipe.hset(key, "updated_at", utcnow().isoformat())
            new_balance, _ = await pipe.execute()
        return int(new_balance)

    async def insert_lot(self, lot: CreditPurchaseLot) -> CreditPurchaseLot:
        """
        Insert a purchase lot, enforcing one lot per checkout session.

        Raises:
            DuplicateLotError if the checkout session already has a lot
        """
        script = await self._script("insert_lot", INSERT_LOT_SCRIPT)
        fields = lot.to_redis_hash()
        claim_key = f"{self.CHECKOUT_KEY_PREFIX}{lot.checkout_session_id or lot.id}"

        args = [lot.id, fields["expires_ts"]]
        for name, value in fields.items():
            args.extend([name, value])

        inserted = await script(
            keys=[claim_key, self._lot_key(lot.id), self._lots_key(lot.owner_id)],
            args=args,
        )
        if not int(inserted):
            raise DuplicateLotError(lot.checkout_session_id or lot.id)

        logger.info(
            f"Purchase lot recorded: {lot.id}",
            extra={
                "owner_id": lot.owner_id,
                "credits": lot.credits_purchased,
                "checkout_session_id": lot.checkout_session_id
            }
        )
        return lot

    async def get_lot(self, lot_id: str) -> Optional[CreditPurchaseLot]:
        r = await redis_connection.get_redis()
        data = await r.hgetall(self._lot_key(lot_id))
        if not data:
            return None
        return CreditPurchaseLot.from_redis_hash(data)

    async def find_lot_by_checkout(self, checkout_session_id: str) -> Optional[CreditPurchaseLot]:
        r = await redis_connection.get_redis()
        lot_id = await r.get(f"{self.CHECKOUT_KEY_PREFIX}{checkout_session_id}")
        if not lot_id:
            return None
        return await self.get_lot(lot_id)

    async def list_lots(self, owner_id: str) -> List[CreditPurchaseLot]:
        """All of the owner's lots, earliest expiry first."""
        r = await redis_connection.get_redis()
        lot_ids = await r.zrange(self._lots_key(owner_id), 0, -1)
        lots = []
        for lot_id in lot_ids:
            lot = await self.get_lot(lot_id)
            if lot:
                lots.append(lot)
        return lots

    async def lot_balance(self, owner_id: str) -> int:
        """Credits remaining across active, unexpired lots."""
        now = utcnow()
        return sum(
            lot.credits_remaining
            for lot in await self.list_lots(owner_id)
            if lot.status == LotStatus.ACTIVE and lot.expires_at > now
        )

    async def reconcile_balance(self, owner_id: str) -> Tuple[int, int, int]:
        """
        Expire lapsed lots and rewrite the aggregate balance from the lot sum.

        Returns:
            Tuple of (balance_before, balance_after, credits_expired)
        """
        script = await self._script("reconcile", RECONCILE_SCRIPT)
        now = utcnow()
        before, after, expired = await script(
            keys=[self._account_key(owner_id), self._lots_key(owner_id)],
            args=[int(now.timestamp()), self.LOT_KEY_PREFIX, now.isoformat()],
        )
        before, after, expired = int(before), int(after), int(expired)

        if before != after:
            logger.warning(
                f"Credit balance corrected: {owner_id}",
                extra={"balance_before": before, "balance_after": after, "credits_expired": expired}
            )
        return before, after, expired


# Global ledger instance
credit_ledger = CreditLedger()
