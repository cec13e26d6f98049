"""Booking saga tests: happy path, early rejections, compensation and recovery."""

import pytest

from conftest import NEXT_MONDAY, booking_request
from rinkbook.events.publisher import event_publisher
from rinkbook.models.schemas import (
    BookingIntent,
    ErrorCode,
    SagaStatus,
    SessionType,
)
from rinkbook.saga.compensation import compensation_handler
from rinkbook.saga.orchestrator import saga_orchestrator
from rinkbook.services.booking import booking_service
from rinkbook.services.capacity import capacity_oracle
from rinkbook.services.ledger import credit_ledger

pytestmark = pytest.mark.asyncio


async def test_successful_booking(add_credits, make_registration):
    lot = await add_credits("parent-1", 3)
    registration = await make_registration()

    result = await saga_orchestrator.execute(booking_request(registration))

    assert result.success
    assert result.booking_date == NEXT_MONDAY
    assert result.credits_remaining == 2

    booking = await booking_service.get_booking(result.booking_id)
    assert booking.credits_used == 1
    assert booking.credit_purchase_lot_id == lot.id
    assert booking.saga_request_id == result.request_id

    report = await capacity_oracle.get_slot_capacity(NEXT_MONDAY, "5:45 PM", SessionType.GROUP)
    assert report.current_bookings == 1
    assert report.available_spots == 5

    intent = await saga_orchestrator.get_status(result.request_id)
    assert intent.status == SagaStatus.BOOKING_CREATED
    assert [e["type"] for e in intent.events] == [
        "booking.requested", "capacity.checked", "credit.debited", "booking.created"
    ]
    assert await event_publisher.list_stale_intents(0) == []


async def test_time_slot_is_normalized(add_credits, make_registration):
    await add_credits("parent-1", 3)
    registration = await make_registration()

    first = await saga_orchestrator.execute(booking_request(registration, time_slot="5:45 PM"))
    second = await saga_orchestrator.execute(booking_request(registration, time_slot="05:45 pm"))

    assert first.success
    assert second.error_code == ErrorCode.DUPLICATE_BOOKING


async def test_full_slot_rejected_without_touching_credit(add_credits, make_registration, redis_client):
    await add_credits("parent-1", 3)
    registration = await make_registration()
    slot_key = capacity_oracle.slot_key(NEXT_MONDAY, "5:45 PM", SessionType.GROUP)
    await redis_client.sadd(slot_key, *[f"bk_other_{i}" for i in range(6)])

    result = await saga_orchestrator.execute(booking_request(registration))

    assert result.error_code == ErrorCode.SLOT_FULL
    assert not result.retryable
    assert await credit_ledger.get_balance("parent-1") == 3


async def test_duplicate_booking_rejected_balance_unchanged(add_credits, make_registration):
    await add_credits("parent-1", 3)
    registration = await make_registration()
    await saga_orchestrator.execute(booking_request(registration))

    result = await saga_orchestrator.execute(booking_request(registration))

    assert result.error_code == ErrorCode.DUPLICATE_BOOKING
    assert await credit_ledger.get_balance("parent-1") == 2


async def test_insufficient_credit(make_registration, redis_client):
    registration = await make_registration()

    result = await saga_orchestrator.execute(booking_request(registration))

    assert result.error_code == ErrorCode.INSUFFICIENT_CREDIT
    assert result.credits_remaining == 0
    intent = await saga_orchestrator.get_status(result.request_id)
    assert intent.status == SagaStatus.REJECTED


async def test_booking_failure_refunds_credit(add_credits, make_registration):
    await add_credits("parent-1", 3)
    registration = await make_registration()
    await booking_service.set_failure_simulation(True)

    result = await saga_orchestrator.execute(booking_request(registration))

    assert not result.success
    assert result.error_code == ErrorCode.BOOKING_CREATION_FAILED
    assert result.retryable
    assert await credit_ledger.get_balance("parent-1") == 3
    assert await credit_ledger.lot_balance("parent-1") == 3

    intent = await saga_orchestrator.get_status(result.request_id)
    assert intent.status == SagaStatus.CREDIT_REFUNDED
    assert "compensation.completed" in [e["type"] for e in intent.events]

    # Retrying after compensation is safe
    await booking_service.set_failure_simulation(False)
    retry = await saga_orchestrator.execute(booking_request(registration))
    assert retry.success
    assert await credit_ledger.get_balance("parent-1") == 2


async def test_unexpected_error_after_debit_compensates(add_credits, make_registration, monkeypatch):
    await add_credits("parent-1", 2)
    registration = await make_registration()

    async def exploding_create(intent):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(booking_service, "create_booking", exploding_create)

    result = await saga_orchestrator.execute(booking_request(registration))

    assert result.error_code == ErrorCode.BOOKING_CREATION_FAILED
    assert await credit_ledger.get_balance("parent-1") == 2


async def test_failed_compensation_is_surfaced(add_credits, make_registration, monkeypatch):
    await add_credits("parent-1", 2)
    registration = await make_registration()
    await booking_service.set_failure_simulation(True)

    async def refund_down(*args, **kwargs):
        raise ConnectionError("ledger unavailable")

    monkeypatch.setattr(credit_ledger, "refund_credit", refund_down)

    result = await saga_orchestrator.execute(booking_request(registration))

    assert result.error_code == ErrorCode.COMPENSATION_FAILED
    assert not result.retryable
    intent = await saga_orchestrator.get_status(result.request_id)
    assert intent.status == SagaStatus.COMPENSATION_FAILED


@pytest.mark.parametrize("session_type", [SessionType.SUNDAY, SessionType.PRIVATE, SessionType.SEMI_PRIVATE])
async def test_non_credit_sessions_rejected(add_credits, make_registration, session_type):
    await add_credits("parent-1", 2)
    registration = await make_registration()

    result = await saga_orchestrator.execute(booking_request(registration, session_type=session_type))

    assert result.error_code == ErrorCode.VALIDATION_ERROR
    assert await credit_ledger.get_balance("parent-1") == 2


async def test_registration_must_belong_to_owner(add_credits, make_registration):
    await add_credits("parent-2", 2)
    registration = await make_registration(owner_id="parent-1")
    request = booking_request(registration).model_copy(update={"owner_id": "parent-2"})

    result = await saga_orchestrator.execute(request)

    assert result.error_code == ErrorCode.NOT_FOUND
    assert await credit_ledger.get_balance("parent-2") == 2


async def _crashed_after_debit(registration) -> BookingIntent:
    """Leave an intent the way a process killed right after the debit would."""
    intent = BookingIntent.from_request(booking_request(registration), credits_required=1)
    await event_publisher.save_intent(intent)
    await credit_ledger.debit_credit(
        intent.owner_id, 1, receipt_key=event_publisher.debit_receipt_key(intent.request_id)
    )
    return intent


async def test_recovery_refunds_debit_without_booking(add_credits, make_registration):
    await add_credits("parent-1", 2)
    registration = await make_registration()
    intent = await _crashed_after_debit(registration)
    assert await credit_ledger.get_balance("parent-1") == 1

    report = await compensation_handler.recover_stale_intents(older_than_seconds=0)

    assert report.examined == 1
    assert report.refunded == 1
    assert await credit_ledger.get_balance("parent-1") == 2
    assert (await event_publisher.get_intent(intent.request_id)).status == SagaStatus.CREDIT_REFUNDED
    assert await event_publisher.list_stale_intents(0) == []

    # A second pass finds nothing left to do
    again = await compensation_handler.recover_stale_intents(older_than_seconds=0)
    assert again.examined == 0
    assert await credit_ledger.get_balance("parent-1") == 2


async def test_recovery_completes_saga_whose_booking_exists(add_credits, make_registration):
    await add_credits("parent-1", 2)
    registration = await make_registration()
    intent = await _crashed_after_debit(registration)
    intent.credit_debited = True
    intent.credit_lot_id = await event_publisher.get_debit_receipt(intent.request_id)
    booking = await booking_service.create_booking(intent)

    report = await compensation_handler.recover_stale_intents(older_than_seconds=0)

    assert report.closed == 1
    assert report.refunded == 0
    assert await credit_ledger.get_balance("parent-1") == 1
    recovered = await event_publisher.get_intent(intent.request_id)
    assert recovered.status == SagaStatus.BOOKING_CREATED
    assert recovered.booking_id == booking.id


async def test_recovery_closes_intent_that_never_debited(add_credits, make_registration):
    await add_credits("parent-1", 2)
    registration = await make_registration()
    intent = BookingIntent.from_request(booking_request(registration), credits_required=1)
    await event_publisher.save_intent(intent)

    report = await compensation_handler.recover_stale_intents(older_than_seconds=0)

    assert report.closed == 1
    assert (await event_publisher.get_intent(intent.request_id)).status == SagaStatus.REJECTED
    assert await credit_ledger.get_balance("parent-1") == 2


async def test_recent_intents_left_alone(add_credits, make_registration):
    await add_credits("parent-1", 2)
    registration = await make_registration()
    await _crashed_after_debit(registration)

    report = await compensation_handler.recover_stale_intents(older_than_seconds=3600)

    assert report.examined == 0
    assert await credit_ledger.get_balance("parent-1") == 1


async def test_debit_with_lost_reply_is_compensated(add_credits, make_registration, monkeypatch):
    await add_credits("parent-1", 2)
    registration = await make_registration()
    real_debit = credit_ledger.debit_credit

    async def debit_then_disconnect(*args, **kwargs):
        await real_debit(*args, **kwargs)
        raise ConnectionError("connection reset by peer")

    monkeypatch.setattr(credit_ledger, "debit_credit", debit_then_disconnect)

    result = await saga_orchestrator.execute(booking_request(registration))

    assert result.error_code == ErrorCode.BOOKING_CREATION_FAILED
    assert result.retryable
    assert await credit_ledger.get_balance("parent-1") == 2
    intent = await saga_orchestrator.get_status(result.request_id)
    assert intent.status == SagaStatus.CREDIT_REFUNDED


async def test_unknown_debit_outcome_left_for_recovery(add_credits, make_registration, monkeypatch):
    await add_credits("parent-1", 2)
    registration = await make_registration()
    real_debit = credit_ledger.debit_credit
    real_receipt = event_publisher.get_debit_receipt

    async def debit_then_disconnect(*args, **kwargs):
        await real_debit(*args, **kwargs)
        raise ConnectionError("connection reset by peer")

    async def receipt_unreachable(request_id):
        raise ConnectionError("connection refused")

    monkeypatch.setattr(credit_ledger, "debit_credit", debit_then_disconnect)
    monkeypatch.setattr(event_publisher, "get_debit_receipt", receipt_unreachable)

    result = await saga_orchestrator.execute(booking_request(registration))

    assert result.error_code == ErrorCode.DEPENDENCY_ERROR
    assert await event_publisher.list_stale_intents(0) == [result.request_id]

    monkeypatch.setattr(event_publisher, "get_debit_receipt", real_receipt)
    report = await compensation_handler.recover_stale_intents(older_than_seconds=0)

    assert report.refunded == 1
    assert await credit_ledger.get_balance("parent-1") == 2
