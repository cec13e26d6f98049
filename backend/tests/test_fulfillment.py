"""Credit purchase fulfillment tests."""

import pytest

from rinkbook.models.schemas import CreditPackageType, ErrorCode
from rinkbook.services.fulfillment import fulfillment_service
from rinkbook.services.ledger import credit_ledger

pytestmark = pytest.mark.asyncio

METADATA = {"type": "credit_purchase", "firebase_uid": "parent-1", "package_type": "10_pack", "credits": "10"}


async def test_fulfillment_creates_lot_and_balance(redis_client, gateway):
    gateway.add("cs_test_1", metadata=METADATA, amount_total=35000, currency="cad", payment_reference_id="pi_1")

    result = await fulfillment_service.fulfill("cs_test_1")

    assert result.success
    assert not result.already_processed
    assert result.credits_added == 10
    assert result.new_balance == 10
    assert result.package_type == CreditPackageType.TEN_PACK
    assert result.amount_paid == 350.0

    lot = await credit_ledger.find_lot_by_checkout("cs_test_1")
    assert lot.owner_id == "parent-1"
    assert lot.credits_remaining == 10
    assert lot.payment_reference_id == "pi_1"
    assert (lot.expires_at - lot.purchased_at).days in (365, 366)


async def test_fulfillment_is_idempotent(redis_client, gateway):
    gateway.add("cs_test_1", metadata=METADATA, amount_total=35000)

    first = await fulfillment_service.fulfill("cs_test_1")
    second = await fulfillment_service.fulfill("cs_test_1")

    assert first.success and second.success
    assert second.already_processed
    assert second.new_balance == 10
    assert len(await credit_ledger.list_lots("parent-1")) == 1
    assert await credit_ledger.get_balance("parent-1") == 10


async def test_concurrent_duplicate_treated_as_cache_hit(redis_client, gateway, monkeypatch):
    gateway.add("cs_test_1", metadata=METADATA, amount_total=35000)
    await fulfillment_service.fulfill("cs_test_1")

    real_lookup = credit_ledger.find_lot_by_checkout
    calls = []

    async def miss_first(checkout_session_id):
        # The first lookup races ahead of the other caller's insert
        calls.append(checkout_session_id)
        if len(calls) == 1:
            return None
        return await real_lookup(checkout_session_id)

    monkeypatch.setattr(credit_ledger, "find_lot_by_checkout", miss_first)

    result = await fulfillment_service.fulfill("cs_test_1")

    assert result.success
    assert result.already_processed
    assert await credit_ledger.get_balance("parent-1") == 10


async def test_session_id_format_checked_before_gateway(redis_client, gateway):
    result = await fulfillment_service.fulfill("pi_not_a_session")

    assert result.error_code == ErrorCode.VALIDATION_ERROR
    assert gateway.calls == 0


async def test_unknown_session_is_invalid(redis_client, gateway):
    result = await fulfillment_service.fulfill("cs_missing")
    assert result.error_code == ErrorCode.INVALID_SESSION


@pytest.mark.parametrize("fields", [
    {"status": "open"},
    {"payment_status": "unpaid"},
])
async def test_unpaid_session_is_invalid(redis_client, gateway, fields):
    gateway.add("cs_test_1", metadata=METADATA, **fields)

    result = await fulfillment_service.fulfill("cs_test_1")

    assert result.error_code == ErrorCode.INVALID_SESSION
    assert await credit_ledger.get_account("parent-1") is None


async def test_wrong_session_type(redis_client, gateway):
    gateway.add("cs_test_1", metadata={**METADATA, "type": "session_purchase"})

    result = await fulfillment_service.fulfill("cs_test_1")

    assert result.error_code == ErrorCode.WRONG_SESSION_TYPE


@pytest.mark.parametrize("override", [
    {"firebase_uid": ""},
    {"package_type": "5_pack"},
    {"credits": "0"},
    {"credits": "ten"},
])
async def test_malformed_metadata_mutates_nothing(redis_client, gateway, override):
    gateway.add("cs_test_1", metadata={**METADATA, **override})

    result = await fulfillment_service.fulfill("cs_test_1")

    assert result.error_code == ErrorCode.MALFORMED_METADATA
    assert await credit_ledger.find_lot_by_checkout("cs_test_1") is None
    assert await credit_ledger.get_account("parent-1") is None


async def test_balance_increment_failure_keeps_purchase(redis_client, gateway, monkeypatch):
    gateway.add("cs_test_1", metadata=METADATA, amount_total=35000)

    async def broken_increment(owner_id, amount):
        raise ConnectionError("redis went away")

    monkeypatch.setattr(credit_ledger, "increment_balance", broken_increment)

    result = await fulfillment_service.fulfill("cs_test_1")

    assert result.success
    assert result.new_balance is None
    assert await credit_ledger.find_lot_by_checkout("cs_test_1") is not None

    monkeypatch.undo()
    _, after, _ = await credit_ledger.reconcile_balance("parent-1")
    assert after == 10
