"""Email delegates used by send_email actions.

HttpEmailSender posts to a transactional email API. LogEmailSender only
logs, and is registered when no API URL is configured.
"""

from __future__ import annotations

import logging

import httpx

from core.errors import ActionError

logger = logging.getLogger(__name__)


class HttpEmailSender:
    """Send emails through an HTTP API with bearer-token auth."""

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        sender: str = "no-reply@leadpilot.local",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_url = api_url
        self._sender = sender
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    @property
    def name(self) -> str:
        return "http_email"

    async def send(self, owner_id: str, to: str, subject: str, body: str, metadata: dict) -> None:
        message = {
            "from": self._sender,
            "to": to,
            "subject": subject,
            "body": body,
            "metadata": {"owner_id": owner_id, **metadata},
        }
        try:
            response = await self._client.post(self._api_url, json=message)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ActionError(f"Email delivery to {to} failed: {exc}") from exc
        logger.info("Email '%s' sent to %s", subject, to)

    async def close(self) -> None:
        await self._client.aclose()


class LogEmailSender:
    """Write emails to the log instead of sending them."""

    def __init__(self, sender: str = "no-reply@leadpilot.local") -> None:
        self._sender = sender

    @property
    def name(self) -> str:
        return "log_email"

    async def send(self, owner_id: str, to: str, subject: str, body: str, metadata: dict) -> None:
        logger.info("[EMAIL] owner=%s from=%s to=%s subject=%s", owner_id, self._sender, to, subject)
