"""Tests for the HTTP-backed plugins, using httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from core.errors import ActionError
from plugins.delegates.email import HttpEmailSender, LogEmailSender
from plugins.delegates.webhook import HttpWebhookClient
from plugins.task_handlers.http_delegate import HttpTaskHandler


class Recorder:
    """Request handler for MockTransport that remembers what it saw."""

    def __init__(self, status: int = 200, body=None, error: Exception | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self._status = status
        self._body = body
        self._error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._error is not None:
            raise self._error
        if isinstance(self._body, str):
            return httpx.Response(self._status, text=self._body)
        return httpx.Response(self._status, json=self._body if self._body is not None else {})

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def task_handler(recorder: Recorder) -> HttpTaskHandler:
    return HttpTaskHandler(
        task_type="content-generation",
        url="https://content.internal/run",
        headers={"X-Api-Key": "k"},
        transport=httpx.MockTransport(recorder),
    )


class TestHttpTaskHandler:
    @pytest.mark.asyncio
    async def test_posts_task(self):
        recorder = Recorder(body={"success": True, "message": "3 posts", "data": {"ids": [1, 2, 3]}})
        handler = task_handler(recorder)

        result = await handler.run("owner_1", {"topic": "crm"})

        assert handler.name == "content-generation"
        assert result.success is True
        assert result.message == "3 posts"
        assert result.data == {"ids": [1, 2, 3]}
        assert recorder.last_json == {
            "owner_id": "owner_1", "task_type": "content-generation", "payload": {"topic": "crm"},
        }
        assert recorder.requests[0].headers["X-Api-Key"] == "k"
        await handler.close()

    @pytest.mark.asyncio
    async def test_reported_failure(self):
        handler = task_handler(Recorder(body={"success": False, "error": "quota exceeded"}))

        result = await handler.run("owner_1", {})

        assert result.success is False
        assert result.error == "quota exceeded"
        await handler.close()

    @pytest.mark.asyncio
    async def test_plain_body_becomes_data(self):
        handler = task_handler(Recorder(body={"posts": 3}))

        result = await handler.run("owner_1", {})

        assert result.success is True
        assert result.data == {"posts": 3}
        await handler.close()

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        handler = task_handler(Recorder(status=503, body="maintenance"))

        result = await handler.run("owner_1", {})

        assert result.success is False
        assert result.error == "HTTP 503: maintenance"
        await handler.close()

    @pytest.mark.asyncio
    async def test_transport_error(self):
        handler = task_handler(Recorder(error=httpx.ConnectError("refused")))

        result = await handler.run("owner_1", {})

        assert result.success is False
        assert "ConnectError" in result.error
        await handler.close()


class TestEmail:
    @pytest.mark.asyncio
    async def test_http_sender(self):
        recorder = Recorder(status=202)
        sender = HttpEmailSender(
            api_url="https://mail.example.com/send",
            api_key="secret",
            sender="hello@example.com",
            transport=httpx.MockTransport(recorder),
        )

        await sender.send("owner_1", "ada@example.com", "Hi", "Body", {"automation_id": "a1"})

        assert recorder.requests[0].headers["Authorization"] == "Bearer secret"
        assert recorder.last_json == {
            "from": "hello@example.com",
            "to": "ada@example.com",
            "subject": "Hi",
            "body": "Body",
            "metadata": {"owner_id": "owner_1", "automation_id": "a1"},
        }
        await sender.close()

    @pytest.mark.asyncio
    async def test_http_sender_failure_raises_action_error(self):
        sender = HttpEmailSender(
            api_url="https://mail.example.com/send",
            transport=httpx.MockTransport(Recorder(status=500)),
        )

        with pytest.raises(ActionError):
            await sender.send("owner_1", "ada@example.com", "Hi", "Body", {})
        await sender.close()

    @pytest.mark.asyncio
    async def test_log_sender(self, caplog):
        sender = LogEmailSender()

        with caplog.at_level("INFO"):
            await sender.send("owner_1", "ada@example.com", "Hi", "Body", {})

        assert "ada@example.com" in caplog.text


class TestWebhook:
    @pytest.mark.asyncio
    async def test_sends_params_and_entity(self):
        recorder = Recorder(status=204)
        client = HttpWebhookClient(user_agent="test-agent", transport=httpx.MockTransport(recorder))
        params = {"url": "https://hooks.example.com/lead", "method": "put", "headers": {"X-Sig": "1"}}

        status = await client.send(params, {"id": "lead_1"})

        request = recorder.requests[0]
        assert status == 204
        assert request.method == "PUT"
        assert request.headers["X-Sig"] == "1"
        assert request.headers["User-Agent"] == "test-agent"
        assert recorder.last_json == {"params": params, "entity": {"id": "lead_1"}}
        await client.close()

    @pytest.mark.asyncio
    async def test_rejects_bad_method(self):
        recorder = Recorder()
        client = HttpWebhookClient(transport=httpx.MockTransport(recorder))

        with pytest.raises(ActionError):
            await client.send({"url": "https://hooks.example.com", "method": "DELETE"}, {})
        assert recorder.requests == []
        await client.close()

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = HttpWebhookClient(transport=httpx.MockTransport(Recorder(status=404)))

        with pytest.raises(ActionError):
            await client.send({"url": "https://hooks.example.com"}, {})
        await client.close()
