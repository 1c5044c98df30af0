"""Push delivery transports."""

from __future__ import annotations

import abc

import httpx
import structlog

logger = structlog.get_logger(__name__)


class DeliveryError(Exception):
    """One push could not be delivered. ``reason`` is a short tag."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PushTransport(abc.ABC):
    """Send-one-notification primitive."""

    @abc.abstractmethod
    async def send(self, endpoint: str, payload: dict) -> None:
        """Deliver *payload* to *endpoint*. Raises DeliveryError on failure."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release resources (HTTP clients, etc.)."""


class HttpPushTransport(PushTransport):
    """POSTs the JSON payload to the subscriber's push endpoint."""

    def __init__(
        self,
        *,
        user_agent: str,
        timeout_seconds: float,
        ttl_seconds: int,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._user_agent = user_agent
        self._timeout = httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds))
        self._ttl = ttl_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    async def send(self, endpoint: str, payload: dict) -> None:
        headers = {
            "User-Agent": self._user_agent,
            "TTL": str(self._ttl),
            "Urgency": "high" if payload.get("requireInteraction") else "normal",
        }
        try:
            response = await self._get_client().post(
                endpoint, json=payload, headers=headers, timeout=self._timeout
            )
        except httpx.TimeoutException as exc:
            raise DeliveryError("timeout") from exc
        except httpx.RequestError as exc:
            raise DeliveryError(f"request_error:{exc.__class__.__name__}") from exc

        if response.status_code in (404, 410):
            raise DeliveryError("endpoint_gone")
        if not 200 <= response.status_code < 300:
            raise DeliveryError(f"http_{response.status_code}")

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
