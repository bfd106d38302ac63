from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from automation.actions import ActionExecutor
from automation.engine import AutomationEngine
from automation.matcher import TriggerMatcher
from automation.stats import StatsRecorder
from core.bus import AsyncIOBus
from core.clock import FrozenClock
from core.data.store import Store
from core.models.automations import Automation
from core.models.events import Event
from core.models.tasks import TaskResult
from core.registry import PluginRegistry
from crm.repository import EntityRepository
from crm.service import CRMService
from scheduler.dispatcher import TaskDispatcher

# Monday 2024-03-04 09:15 UTC
NOW = datetime(2024, 3, 4, 9, 15, tzinfo=timezone.utc)
OWNER = "owner_1"


class RecordingHandler:
    """Task handler that records calls and returns (or raises) a canned outcome."""

    def __init__(
        self,
        name: str,
        result: TaskResult | None = None,
        error: Exception | None = None,
        log: list | None = None,
    ) -> None:
        self._name = name
        self._result = result or TaskResult(success=True, message="done")
        self._error = error
        self.calls: list[tuple[str, dict]] = []
        self._log = log

    @property
    def name(self) -> str:
        return self._name

    async def run(self, owner_id: str, payload: dict) -> TaskResult:
        self.calls.append((owner_id, payload))
        if self._log is not None:
            self._log.append(self._name)
        if self._error is not None:
            raise self._error
        return self._result


class RecordingEmailSender:
    def __init__(self, error: Exception | None = None, delay: float = 0) -> None:
        self.sent: list[dict] = []
        self._error = error
        self._delay = delay

    @property
    def name(self) -> str:
        return "recording_email"

    async def send(self, owner_id: str, to: str, subject: str, body: str, metadata: dict) -> None:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        self.sent.append({"owner_id": owner_id, "to": to, "subject": subject, "body": body, "metadata": metadata})


class RecordingWebhookClient:
    def __init__(self, status: int = 200) -> None:
        self.calls: list[tuple[dict, dict]] = []
        self._status = status

    @property
    def name(self) -> str:
        return "recording_webhook"

    async def send(self, params: dict, entity: dict) -> int:
        self.calls.append((params, entity))
        return self._status


def make_automation(store: Store, offset: int = 0, **fields) -> Automation:
    """Insert an active automation; `offset` spaces out created_at for ordering."""
    created = NOW - timedelta(days=1) + timedelta(seconds=offset)
    data = {
        "owner_id": OWNER,
        "name": "Rule",
        "status": "active",
        "trigger": {"type": "new_lead", "entity_type": "lead"},
        "actions": [{"type": "add_tag", "params": {"tags": ["auto"]}}],
        "created_at": created,
        "updated_at": created,
    }
    data.update(fields)
    automation = Automation.model_validate(data)
    store.insert_automation(automation)
    return automation


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def store(tmp_path):
    store = Store(tmp_path)
    yield store
    store.close()


@pytest.fixture
def bus() -> AsyncIOBus:
    return AsyncIOBus()


@pytest.fixture
def events(bus) -> list[Event]:
    """Every event published on the bus."""
    seen: list[Event] = []

    async def record(event: Event) -> None:
        seen.append(event)

    bus.subscribe("*", record)
    return seen


@pytest.fixture
def registry() -> PluginRegistry:
    return PluginRegistry()


@pytest.fixture
def entities(store, clock) -> EntityRepository:
    return EntityRepository(store, clock=clock)


@pytest.fixture
def dispatcher(store, registry, bus, clock) -> TaskDispatcher:
    return TaskDispatcher(
        store=store,
        registry=registry,
        bus=bus,
        clock=clock,
        check_interval=0.01,
        drain_timeout=1,
    )


@pytest.fixture
def email_sender(registry) -> RecordingEmailSender:
    sender = RecordingEmailSender()
    registry.register("email", sender)
    return sender


@pytest.fixture
def webhook_client(registry) -> RecordingWebhookClient:
    client = RecordingWebhookClient()
    registry.register("webhook", client)
    return client


@pytest.fixture
def executor(entities, dispatcher, registry, clock) -> ActionExecutor:
    return ActionExecutor(
        entities=entities,
        dispatcher=dispatcher,
        registry=registry,
        clock=clock,
        delayed_priority=3,
    )


@pytest.fixture
def crm(entities, bus, clock, executor) -> CRMService:
    service = CRMService(repo=entities, bus=bus, clock=clock)
    executor.set_converter(service)
    return service


@pytest.fixture
def stats(store) -> StatsRecorder:
    return StatsRecorder(store)


@pytest.fixture
def matcher(store) -> TriggerMatcher:
    return TriggerMatcher(store)


@pytest.fixture
def engine(entities, matcher, executor, stats, bus, clock, crm) -> AutomationEngine:
    engine = AutomationEngine(
        entities=entities,
        matcher=matcher,
        executor=executor,
        stats=stats,
        bus=bus,
        clock=clock,
        sweep_interval=0.01,
    )
    engine.attach()
    return engine
