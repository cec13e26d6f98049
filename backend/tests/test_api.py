"""HTTP API tests."""

import pytest
from httpx import AsyncClient

from conftest import NEXT_MONDAY
from rinkbook.config import settings
from rinkbook.models.schemas import PaymentStatus

pytestmark = pytest.mark.asyncio

PRIVATE_TUESDAY = {"programType": "private", "privateSelectedDays": ["Tuesday"], "privateTimeSlot": "6:00 PM"}


def booking_payload(registration) -> dict:
    return {
        "owner_id": registration.owner_id,
        "registration_id": registration.id,
        "session_type": "group",
        "session_date": NEXT_MONDAY.isoformat(),
        "time_slot": "5:45 PM",
    }


async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["redis_connected"] is True


async def test_packages(client: AsyncClient) -> None:
    response = await client.get("/packages")

    assert response.status_code == 200
    assert {p["package_type"]: p["credits"] for p in response.json()} == {
        "single": 1, "10_pack": 10, "20_pack": 20, "50_pack": 50
    }


async def test_booking_flow(client: AsyncClient, add_credits, make_registration) -> None:
    await add_credits("parent-1", 2)
    registration = await make_registration()

    response = await client.post("/bookings", json=booking_payload(registration))
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["booking_date"] == NEXT_MONDAY.isoformat()

    saga = await client.get(f"/bookings/saga/{body['request_id']}")
    assert saga.json()["status"] == "booking_created"

    duplicate = await client.post("/bookings", json=booking_payload(registration))
    assert duplicate.status_code == 409
    assert duplicate.json()["error_code"] == "duplicate_booking"

    bookings = await client.get("/bookings", params={"owner_id": "parent-1"})
    assert [b["id"] for b in bookings.json()] == [body["booking_id"]]

    balance = await client.get("/credits/parent-1")
    assert balance.json()["total_credits"] == 1


async def test_booking_without_credit_is_402(client: AsyncClient, make_registration) -> None:
    registration = await make_registration()

    response = await client.post("/bookings", json=booking_payload(registration))

    assert response.status_code == 402
    assert response.json()["error_code"] == "insufficient_credit"


async def test_compensated_booking_is_503(client: AsyncClient, add_credits, make_registration) -> None:
    await add_credits("parent-1", 2)
    registration = await make_registration()
    await client.post("/admin/simulate-failure", json={"enable": True})

    response = await client.post("/bookings", json=booking_payload(registration))

    assert response.status_code == 503
    assert response.json()["retryable"] is True
    assert (await client.get("/credits/parent-1")).json()["total_credits"] == 2


async def test_invalid_time_slot_rejected(client: AsyncClient, make_registration) -> None:
    registration = await make_registration()
    payload = {**booking_payload(registration), "time_slot": "25:00"}

    response = await client.post("/bookings", json=payload)

    assert response.status_code == 422


async def test_unknown_saga_is_404(client: AsyncClient) -> None:
    response = await client.get("/bookings/saga/NOPE")
    assert response.status_code == 404


async def test_fulfill_endpoint(client: AsyncClient, gateway) -> None:
    gateway.add("cs_api_1", metadata={
        "type": "credit_purchase", "owner_id": "parent-1", "package_type": "single", "credits": "1"
    }, amount_total=4500)

    first = await client.post("/credits/fulfill", json={"checkout_session_id": "cs_api_1"})
    second = await client.post("/credits/fulfill", json={"checkout_session_id": "cs_api_1"})
    bad = await client.post("/credits/fulfill", json={"checkout_session_id": "nope"})

    assert first.status_code == 200
    assert first.json()["new_balance"] == 1
    assert second.json()["already_processed"] is True
    assert bad.status_code == 400


async def test_cancel_endpoint(client: AsyncClient, add_credits, make_registration) -> None:
    await add_credits("parent-1", 2)
    registration = await make_registration()
    booking_id = (await client.post("/bookings", json=booking_payload(registration))).json()["booking_id"]

    cancelled = await client.post(f"/bookings/{booking_id}/cancel", json={"owner_id": "parent-1"})
    again = await client.post(f"/bookings/{booking_id}/cancel", json={"owner_id": "parent-1"})
    missing = await client.post("/bookings/bk_missing/cancel", json={"owner_id": "parent-1"})

    assert cancelled.status_code == 200
    assert again.status_code == 400
    assert missing.status_code == 404


async def test_availability(client: AsyncClient, add_credits, make_registration) -> None:
    await add_credits("parent-1", 2)
    registration = await make_registration()
    await client.post("/bookings", json=booking_payload(registration))

    response = await client.get("/availability", params={
        "session_date": NEXT_MONDAY.isoformat(), "time_slot": "5:45 pm", "session_type": "group"
    })

    assert response.status_code == 200
    assert response.json()["current_bookings"] == 1
    assert response.json()["available_spots"] == settings.max_group_capacity - 1


async def test_schedule_endpoints(client: AsyncClient, make_registration) -> None:
    registration = await make_registration()

    created = await client.post("/schedules", json={
        "owner_id": "parent-1",
        "registration_id": registration.id,
        "session_type": "group",
        "day_of_week": "Monday",
        "time_slot": "5:45 PM",
    })
    assert created.status_code == 200
    schedule_id = created.json()["schedule"]["id"]
    assert created.json()["first_booking"]["success"] is False

    paused = await client.patch(f"/schedules/{schedule_id}", json={"owner_id": "parent-1", "is_active": False})
    assert paused.json()["schedule"]["is_active"] is False

    listed = await client.get("/schedules", params={"owner_id": "parent-1"})
    assert len(listed.json()) == 1

    deleted = await client.delete(f"/schedules/{schedule_id}", params={"owner_id": "parent-1"})
    assert deleted.status_code == 200


async def test_cron_requires_secret(client: AsyncClient, monkeypatch) -> None:
    monkeypatch.setattr(settings, "cron_secret", "s3cret")

    denied = await client.post("/cron/recurring")
    allowed = await client.post("/cron/recurring", headers={"x-cron-secret": "s3cret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["processed"] == 0


async def test_verify_payment_conflict_is_409(client: AsyncClient, make_registration, gateway) -> None:
    await make_registration(owner_id="parent-1", form=PRIVATE_TUESDAY, status=PaymentStatus.SUCCEEDED)
    second = await make_registration(owner_id="parent-2", form=PRIVATE_TUESDAY, status=PaymentStatus.PENDING)
    gateway.add("cs_sub_1", client_reference_id=second.id)

    response = await client.post("/payments/verify", json={"checkout_session_id": "cs_sub_1"})

    assert response.status_code == 409
    assert response.json()["refundRequired"] is True


async def test_admin_adjust_endpoint(client: AsyncClient) -> None:
    ok = await client.post("/admin/credits/adjust", json={
        "owner_id": "parent-1", "adjustment": 2, "reason": "Goodwill credit", "admin_id": "admin-1"
    })
    invalid = await client.post("/admin/credits/adjust", json={
        "owner_id": "parent-1", "adjustment": 0, "reason": "Goodwill credit", "admin_id": "admin-1"
    })

    assert ok.status_code == 200
    assert ok.json()["new_balance"] == 2
    assert invalid.status_code == 422

    audit = await client.get("/admin/credits/parent-1/adjustments")
    assert audit.json()[0]["adjustment"] == 2


async def test_saga_reconcile_endpoint(client: AsyncClient) -> None:
    response = await client.post("/admin/sagas/reconcile", params={"older_than_seconds": 0})

    assert response.status_code == 200
    assert response.json()["examined"] == 0
