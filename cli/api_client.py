"""
API client for the hockey training booking engine CLI.
"""

import httpx
from typing import Optional, Dict, Any, List
from datetime import date


class BookingAPIClient:
    """HTTP client for interacting with the booking backend."""

    def __init__(self, base_url: str = "http://localhost:8080", cron_secret: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(30.0, connect=10.0)
        self.cron_secret = cron_secret

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """
        Send a request and return the JSON body.
        Business failures come back as JSON with an error code, so only
        responses without a JSON body raise.
        """
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.request(method, f"{self.base_url}{path}", **kwargs)
            if response.is_error and "application/json" not in response.headers.get("content-type", ""):
                response.raise_for_status()
            return response.json()

    async def health_check(self) -> Dict[str, Any]:
        """Check backend health."""
        return await self._request("GET", "/health")

    async def get_packages(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/packages")

    async def get_balance(self, owner_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/credits/{owner_id}")

    async def reconcile_balance(self, owner_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/credits/{owner_id}/reconcile")

    async def fulfill_purchase(self, checkout_session_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/credits/fulfill", json={"checkout_session_id": checkout_session_id})

    async def create_booking(
        self,
        owner_id: str,
        registration_id: str,
        session_type: str,
        session_date: date,
        time_slot: str
    ) -> Dict[str, Any]:
        """Submit a booking request."""
        payload = {
            "owner_id": owner_id,
            "registration_id": registration_id,
            "session_type": session_type,
            "session_date": session_date.isoformat(),
            "time_slot": time_slot
        }
        return await self._request("POST", "/bookings", json=payload)

    async def list_bookings(self, owner_id: str) -> List[Dict[str, Any]]:
        return await self._request("GET", "/bookings", params={"owner_id": owner_id})

    async def get_saga(self, request_id: str) -> Dict[str, Any]:
        """Saga intent with its event trail."""
        return await self._request("GET", f"/bookings/saga/{request_id}")

    async def cancel_booking(self, booking_id: str, owner_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/bookings/{booking_id}/cancel",
            json={"owner_id": owner_id, "reason": reason}
        )

    async def run_recurring(self) -> Dict[str, Any]:
        headers = {"x-cron-secret": self.cron_secret} if self.cron_secret else {}
        return await self._request("POST", "/cron/recurring", headers=headers)

    async def reconcile_sagas(self, older_than_seconds: Optional[int] = None) -> Dict[str, Any]:
        params = {"older_than_seconds": older_than_seconds} if older_than_seconds is not None else {}
        return await self._request("POST", "/admin/sagas/reconcile", params=params)

    async def adjust_credits(self, owner_id: str, adjustment: int, reason: str, admin_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/admin/credits/adjust",
            json={"owner_id": owner_id, "adjustment": adjustment, "reason": reason, "admin_id": admin_id}
        )

    async def toggle_failure_simulation(self, enable: bool) -> Dict[str, Any]:
        """Toggle failure simulation (admin)."""
        return await self._request("POST", "/admin/simulate-failure", json={"enable": enable})
