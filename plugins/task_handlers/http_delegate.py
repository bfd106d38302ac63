"""HTTP task handler -- hands a task to an external service.

Content generation, publishing, analytics collection and the other business
task types are owned by separate services. Each configured task type gets
one HttpTaskHandler that POSTs the task and maps the reply onto a TaskResult.

Request body:
    {"owner_id": "...", "task_type": "content-generation", "payload": {...}}

Reply: any 2xx JSON. If it carries success/message/data/error keys they are
used as-is; otherwise the whole body becomes TaskResult.data.
"""

from __future__ import annotations

import logging

import httpx

from core.models.tasks import TaskResult

logger = logging.getLogger(__name__)

_RESULT_KEYS = {"success", "message", "data", "error"}


class HttpTaskHandler:
    """Run tasks of one type by calling a remote endpoint."""

    def __init__(
        self,
        task_type: str,
        url: str,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._task_type = task_type
        self._url = url
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Content-Type": "application/json", **(headers or {})},
            transport=transport,
        )

    @property
    def name(self) -> str:
        return self._task_type

    async def run(self, owner_id: str, payload: dict) -> TaskResult:
        body = {"owner_id": owner_id, "task_type": self._task_type, "payload": payload}
        try:
            response = await self._client.post(self._url, json=body)
        except httpx.HTTPError as exc:
            logger.warning("%s delegate unreachable at %s: %s", self._task_type, self._url, exc)
            return TaskResult(success=False, error=f"{type(exc).__name__}: {exc}")

        if response.is_error:
            return TaskResult(
                success=False,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
            )

        try:
            data = response.json()
        except ValueError:
            data = response.text or None

        if isinstance(data, dict) and _RESULT_KEYS & data.keys():
            error = data.get("error")
            message = data.get("message")
            return TaskResult(
                success=bool(data.get("success", error is None)),
                message=str(message) if message is not None else None,
                data=data.get("data"),
                error=str(error) if error is not None else None,
            )
        return TaskResult(success=True, message=f"HTTP {response.status_code}", data=data)

    async def close(self) -> None:
        await self._client.aclose()
