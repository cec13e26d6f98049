"""Slot conflict validator and subscription payment verification tests."""

import pytest

from rinkbook.models.schemas import ErrorCode, PaymentStatus
from rinkbook.services.payments import payment_verification_service
from rinkbook.services.registrations import registration_repository
from rinkbook.services.slot_conflicts import slot_conflict_validator

pytestmark = pytest.mark.asyncio

PRIVATE_TUESDAY = {"programType": "private", "privateSelectedDays": ["Tuesday"], "privateTimeSlot": "6:00 PM"}


async def test_single_registration_never_conflicts_with_itself(make_registration):
    registration = await make_registration(form=PRIVATE_TUESDAY, status=PaymentStatus.SUCCEEDED)

    is_valid, _ = await slot_conflict_validator.validate(registration)

    assert is_valid


async def test_second_private_booking_for_same_slot_conflicts(make_registration):
    await make_registration(owner_id="parent-1", form=PRIVATE_TUESDAY, status=PaymentStatus.SUCCEEDED)
    second = await make_registration(owner_id="parent-2", form=PRIVATE_TUESDAY, status=PaymentStatus.PENDING)

    is_valid, message = await slot_conflict_validator.validate(second)

    assert not is_valid
    assert message.endswith("Your payment will be refunded.")


async def test_pending_registrations_are_not_counted(make_registration):
    await make_registration(owner_id="parent-1", form=PRIVATE_TUESDAY, status=PaymentStatus.PENDING)
    second = await make_registration(owner_id="parent-2", form=PRIVATE_TUESDAY, status=PaymentStatus.PENDING)

    is_valid, _ = await slot_conflict_validator.validate(second)

    assert is_valid


async def test_private_different_time_is_free(make_registration):
    await make_registration(owner_id="parent-1", form=PRIVATE_TUESDAY)
    second = await make_registration(
        owner_id="parent-2",
        form={**PRIVATE_TUESDAY, "privateTimeSlot": "7:00 PM"},
        status=PaymentStatus.PENDING,
    )

    is_valid, _ = await slot_conflict_validator.validate(second)

    assert is_valid


async def test_semi_private_blocks_private_at_same_time(make_registration):
    await make_registration(
        owner_id="parent-1",
        form={
            "programType": "semi-private",
            "semiPrivateAvailability": ["tuesday"],
            "semiPrivateTimeWindows": ["6:00 PM", "7:00 PM"],
        },
        status=PaymentStatus.VERIFIED,
    )
    second = await make_registration(owner_id="parent-2", form=PRIVATE_TUESDAY, status=PaymentStatus.PENDING)

    is_valid, message = await slot_conflict_validator.validate(second)

    assert not is_valid
    assert "Private training slot on Tuesday at 6:00 PM" in message


async def test_private_blocks_semi_private(make_registration):
    await make_registration(owner_id="parent-1", form=PRIVATE_TUESDAY)
    second = await make_registration(
        owner_id="parent-2",
        form={"programType": "semi_private", "semiPrivateAvailability": ["Tuesday"], "semiPrivateTimeSlot": "6:00 pm"},
        status=PaymentStatus.PENDING,
    )

    is_valid, _ = await slot_conflict_validator.validate(second)

    assert not is_valid


async def test_group_day_full_at_capacity(make_registration):
    form = {"programType": "group", "groupSelectedDays": ["Monday", "Wednesday"]}
    for i in range(6):
        await make_registration(owner_id=f"parent-{i}", form={"programType": "group", "groupSelectedDays": ["monday"]})
    candidate = await make_registration(owner_id="parent-new", form=form, status=PaymentStatus.PENDING)

    is_valid, message = await slot_conflict_validator.validate(candidate)

    assert not is_valid
    assert "(6/6 spots taken)" in message


async def test_group_day_with_room(make_registration):
    for i in range(5):
        await make_registration(owner_id=f"parent-{i}", form={"programType": "group", "groupSelectedDays": ["Monday"]})
    candidate = await make_registration(
        owner_id="parent-new",
        form={"programType": "group", "groupSelectedDays": ["Monday"]},
        status=PaymentStatus.PENDING,
    )

    is_valid, _ = await slot_conflict_validator.validate(candidate)

    assert is_valid


async def test_verify_payment_marks_succeeded(make_registration, gateway):
    registration = await make_registration(form=PRIVATE_TUESDAY, status=PaymentStatus.PENDING)
    gateway.add(
        "cs_sub_1",
        client_reference_id=registration.id,
        customer_ref="cus_1",
        subscription_ref="sub_1",
    )

    result = await payment_verification_service.verify_payment("cs_sub_1")

    assert result.success
    stored = await registration_repository.get(registration.id)
    assert stored.payment_status == PaymentStatus.SUCCEEDED
    assert stored.customer_ref == "cus_1"
    assert stored.subscription_ref == "sub_1"


async def test_verify_payment_resolves_registration_from_metadata(make_registration, gateway):
    registration = await make_registration(form=PRIVATE_TUESDAY, status=PaymentStatus.PENDING)
    gateway.add("cs_sub_1", metadata={"registrationId": registration.id})

    result = await payment_verification_service.verify_payment("cs_sub_1")

    assert result.registration_id == registration.id
    assert result.success


async def test_verify_payment_conflict_requires_refund(make_registration, gateway):
    await make_registration(owner_id="parent-1", form=PRIVATE_TUESDAY, status=PaymentStatus.SUCCEEDED)
    second = await make_registration(owner_id="parent-2", form=PRIVATE_TUESDAY, status=PaymentStatus.PENDING)
    gateway.add("cs_sub_2", client_reference_id=second.id)

    result = await payment_verification_service.verify_payment("cs_sub_2")

    assert not result.success
    assert result.error_code == ErrorCode.SLOT_UNAVAILABLE
    assert result.refund_required
    assert result.model_dump(by_alias=True)["refundRequired"] is True
    stored = await registration_repository.get(second.id)
    assert stored.payment_status == PaymentStatus.SLOT_UNAVAILABLE


async def test_verify_payment_unknown_registration(gateway, redis_client):
    gateway.add("cs_sub_3", client_reference_id="reg_missing")

    result = await payment_verification_service.verify_payment("cs_sub_3")

    assert result.error_code == ErrorCode.NOT_FOUND


async def test_verify_payment_requires_paid_session(make_registration, gateway):
    registration = await make_registration(status=PaymentStatus.PENDING)
    gateway.add("cs_sub_4", client_reference_id=registration.id, payment_status="unpaid")

    result = await payment_verification_service.verify_payment("cs_sub_4")

    assert result.error_code == ErrorCode.INVALID_SESSION
    assert (await registration_repository.get(registration.id)).payment_status == PaymentStatus.PENDING


@pytest.mark.parametrize("program_type", ["", "   "])
async def test_blank_program_type_does_not_break_verification(make_registration, gateway, program_type):
    draft = await make_registration(owner_id="parent-1", form={"programType": program_type})
    assert draft.form_data.program_type is None
    pending = await make_registration(owner_id="parent-2", form=PRIVATE_TUESDAY, status=PaymentStatus.PENDING)
    gateway.add("cs_sub_5", client_reference_id=pending.id)
    blank = await make_registration(
        owner_id="parent-3", form={"programType": program_type}, status=PaymentStatus.PENDING
    )
    gateway.add("cs_sub_6", client_reference_id=blank.id)

    first = await payment_verification_service.verify_payment("cs_sub_5")
    second = await payment_verification_service.verify_payment("cs_sub_6")

    assert first.success
    assert second.success
    assert (await registration_repository.get(blank.id)).payment_status == PaymentStatus.SUCCEEDED
