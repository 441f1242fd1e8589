"""HTTP client for the tracking.my courier aggregation API."""
from typing import Optional

import httpx
import structlog

from campusmart.core.config import settings
from campusmart.core.errors import CourierUnavailable

logger = structlog.get_logger(__name__)


class CourierClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = settings.TRACKING_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.TRACKING_API_BASE).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self.transport = transport

    def _client(self) -> httpx.Client:
        if not self.api_key:
            raise CourierUnavailable("Tracking API key not configured")
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Tracking-Api-Key": self.api_key,
            },
        )

    def _request(self, method: str, path: str, **kwargs) -> tuple[int, dict]:
        try:
            with self._client() as client:
                resp = client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.warning("courier_unreachable", path=path, error=str(e))
            raise CourierUnavailable("Courier API unavailable") from e
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}
        return resp.status_code, data

    def get_tracking(self, tracking_number: str, courier_code: Optional[str] = None) -> dict:
        path = f"/trackings/{courier_code}/{tracking_number}" if courier_code else f"/trackings/{tracking_number}"
        status, data = self._request("GET", path)
        if status >= 400:
            logger.warning("courier_lookup_failed", tracking_number=tracking_number, status=status)
            raise CourierUnavailable(f"Courier lookup returned HTTP {status}")
        return data

    def list_trackings(self) -> list[dict]:
        status, data = self._request("GET", "/trackings")
        if status >= 400:
            logger.warning("courier_listing_failed", status=status)
            raise CourierUnavailable(f"Courier listing returned HTTP {status}")
        trackings = data.get("data") or data.get("trackings") or []
        if not isinstance(trackings, list):
            return []
        return [t for t in trackings if isinstance(t, dict)]

    def register_tracking(self, tracking_number: str, courier: str) -> dict:
        status, data = self._request(
            "POST", "/trackings", json={"tracking_number": tracking_number, "courier": courier}
        )
        if status >= 400:
            message = ((data.get("meta") or {}).get("error_message") or "")
            if "already exists" in message:
                return data
            raise CourierUnavailable(message or f"Courier registration returned HTTP {status}")
        return data
