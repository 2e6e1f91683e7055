"""Outbound collaborator that scans a user's email and sends reminders.

The scheduler does not know how invoices are found or how users are
notified. It only calls an ``InvoiceCheck`` with the owner's user id.
``HttpInvoiceCheck`` is the production adapter: it calls the message
service's ``/api/send_message/{user_id}`` endpoint.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from invoice_reminder.settings import Settings

logger = logging.getLogger(__name__)


class InvoiceCheck(Protocol):
    """Runs one email scan + notification pass for a user."""

    async def __call__(self, user_id: str) -> Any: ...


class HttpInvoiceCheck:
    """InvoiceCheck backed by the message service's HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._api_key = api_key or None
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpInvoiceCheck:
        return cls(
            settings.invoice_check_url,
            timeout=settings.invoice_check_timeout_seconds,
            api_key=settings.invoice_check_api_key.get_secret_value(),
        )

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create a shared httpx.AsyncClient with connection pooling."""
        if self._client is None:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the shared HTTP client and release connections."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __call__(self, user_id: str) -> str:
        """Ask the message service to check invoices for ``user_id``.

        Returns:
            The service's outcome message, e.g. "Total messages sent: 2"

        Raises:
            httpx.HTTPError: Transport failure or non-2xx response
        """
        client = self._get_http_client()
        response = await client.get(f"/api/send_message/{user_id}")
        response.raise_for_status()
        logger.debug("Message service answered %s for user %s", response.status_code, user_id)
        return response.text
