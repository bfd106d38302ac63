"""Webhook delegate used by webhook actions.

Action params:
    {"url": "https://...", "method": "POST", "headers": {...}, ...}

The request body carries the params unmodified next to a JSON snapshot of
the entity:
    {"params": {...}, "entity": {...}}
"""

from __future__ import annotations

import logging

import httpx

from core.errors import ActionError

logger = logging.getLogger(__name__)

_METHODS = {"POST", "PUT", "PATCH"}


class HttpWebhookClient:
    """Deliver webhook actions with httpx."""

    def __init__(
        self,
        timeout: float = 10.0,
        user_agent: str = "leadpilot-webhooks/1.0",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "http_webhook"

    async def send(self, params: dict, entity: dict) -> int:
        url = params.get("url")
        if not url:
            raise ActionError("webhook requires a 'url' param")
        method = str(params.get("method", "POST")).upper()
        if method not in _METHODS:
            raise ActionError(f"Unsupported webhook method: {method}")
        headers = params.get("headers") or {}
        if not isinstance(headers, dict):
            raise ActionError("webhook 'headers' must be an object")

        try:
            response = await self._client.request(
                method,
                url,
                json={"params": params, "entity": entity},
                headers={str(k): str(v) for k, v in headers.items()},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ActionError(f"Webhook {method} {url} failed: {exc}") from exc

        logger.debug("Webhook %s %s -> %d", method, url, response.status_code)
        return response.status_code

    async def close(self) -> None:
        await self._client.aclose()
