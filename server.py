"""Lightweight aiohttp server -- the core HTTP API.

Exposes the task queue, the automation rules and the CRM mutations that
drive them. No authentication: the owner is passed explicitly. No framework
magic, no middleware stack; domain errors map to JSON 400/404/409 replies.
"""

from __future__ import annotations

import functools
import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable

from aiohttp import web
from pydantic import BaseModel, Field

from core.errors import (
    AutomationNotFoundError,
    EntityConflictError,
    EntityNotFoundError,
    InvalidTransitionError,
    TaskInProgressError,
    TaskNotFoundError,
)
from core.models.automations import Automation

if TYPE_CHECKING:
    from automation.engine import AutomationEngine
    from automation.stats import StatsRecorder
    from core.clock import Clock
    from core.config import AppConfig
    from core.data.store import Store
    from core.registry import PluginRegistry
    from crm.service import CRMService
    from scheduler.dispatcher import TaskDispatcher

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# Fields a PATCH /automations/{id} may change
_AUTOMATION_EDITABLE = {"name", "description", "status", "trigger", "conditions", "actions", "metadata"}


def create_app(
    config: AppConfig,
    store: Store,
    registry: PluginRegistry,
    dispatcher: TaskDispatcher,
    crm: CRMService,
    engine: AutomationEngine,
    stats: StatsRecorder,
    clock: Clock,
) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application()

    # Store references for route handlers
    app["config"] = config
    app["store"] = store
    app["registry"] = registry
    app["dispatcher"] = dispatcher
    app["crm"] = crm
    app["engine"] = engine
    app["stats"] = stats
    app["clock"] = clock

    # Register routes (static paths before their {id} siblings)
    app.router.add_get("/health", handle_health)

    app.router.add_get("/tasks", handle_list_tasks)
    app.router.add_post("/tasks", handle_create_task)
    app.router.add_post("/tasks/dispatch", handle_dispatch)
    app.router.add_get("/tasks/{task_id}", handle_get_task)
    app.router.add_delete("/tasks/{task_id}", handle_delete_task)
    app.router.add_post("/tasks/{task_id}/retry", handle_retry_task)

    app.router.add_get("/automations", handle_list_automations)
    app.router.add_post("/automations", handle_create_automation)
    app.router.add_get("/automations/stats", handle_automation_stats)
    app.router.add_post("/automations/run-scheduled", handle_run_scheduled)
    app.router.add_get("/automations/{automation_id}", handle_get_automation)
    app.router.add_patch("/automations/{automation_id}", handle_update_automation)
    app.router.add_delete("/automations/{automation_id}", handle_delete_automation)
    app.router.add_post("/automations/{automation_id}/activate", handle_activate_automation)
    app.router.add_post("/automations/{automation_id}/pause", handle_pause_automation)

    app.router.add_get("/leads", handle_list_leads)
    app.router.add_post("/leads", handle_create_lead)
    app.router.add_get("/leads/{lead_id}", handle_get_lead)
    app.router.add_patch("/leads/{lead_id}", handle_update_lead)
    app.router.add_delete("/leads/{lead_id}", handle_delete_lead)
    app.router.add_post("/leads/{lead_id}/convert", handle_convert_lead)

    app.router.add_get("/contacts", handle_list_contacts)
    app.router.add_post("/contacts", handle_create_contact)
    app.router.add_get("/contacts/{contact_id}", handle_get_contact)
    app.router.add_patch("/contacts/{contact_id}", handle_update_contact)
    app.router.add_delete("/contacts/{contact_id}", handle_delete_contact)
    app.router.add_post("/contacts/{contact_id}/purchases", handle_record_purchase)

    app.router.add_get("/email-templates", handle_list_templates)
    app.router.add_post("/email-templates", handle_create_template)

    return app


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def json_errors(handler: Handler) -> Handler:
    """Turn domain exceptions raised by a route handler into JSON errors."""
    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        try:
            return await handler(request)
        except (TaskNotFoundError, AutomationNotFoundError, EntityNotFoundError) as exc:
            return _error(str(exc), 404)
        except (TaskInProgressError, InvalidTransitionError, EntityConflictError) as exc:
            return _error(str(exc), 409)
        except ValueError as exc:  # includes pydantic.ValidationError
            return _error(str(exc), 400)
    return wrapper


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValueError("Invalid JSON") from None
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _int_query(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Query parameter '{name}' must be an integer") from None


def _require_owner(body: dict) -> str:
    owner_id = body.pop("owner_id", None) or body.pop("ownerId", None)
    if not owner_id or not isinstance(owner_id, str):
        raise ValueError("Missing required field: owner_id")
    return owner_id


def _get_automation(request: web.Request) -> Automation:
    store: Store = request.app["store"]
    automation_id = request.match_info["automation_id"]
    automation = store.get_automation(automation_id)
    if automation is None:
        raise AutomationNotFoundError(automation_id)
    return automation


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

async def handle_health(request: web.Request) -> web.Response:
    """GET /health -- health check."""
    registry: PluginRegistry = request.app["registry"]
    dispatcher: TaskDispatcher = request.app["dispatcher"]
    store: Store = request.app["store"]
    return web.json_response({
        "status": "ok",
        "dispatcher_running": dispatcher.running,
        "tasks": {
            "pending": store.count_tasks(status="pending"),
            "in_progress": store.count_tasks(status="in-progress"),
        },
        "plugins": registry.summary(),
    })


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TaskRequest(BaseModel):
    owner_id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    payload: dict = Field(default_factory=dict)
    priority: int = Field(default=1, ge=1, le=5)
    scheduled_for: datetime | None = None


@json_errors
async def handle_list_tasks(request: web.Request) -> web.Response:
    """GET /tasks?owner_id=&status=&type=&page=&limit= -- newest first."""
    dispatcher: TaskDispatcher = request.app["dispatcher"]
    page = dispatcher.list_tasks(
        owner_id=request.query.get("owner_id"),
        status=request.query.get("status"),
        task_type=request.query.get("type"),
        page=_int_query(request, "page", 1),
        limit=_int_query(request, "limit", 10),
    )
    return web.json_response(_dump(page))


@json_errors
async def handle_create_task(request: web.Request) -> web.Response:
    """POST /tasks -- enqueue a task.

    Body: {"owner_id": "...", "type": "content-generation", "payload": {...}, "priority": 3}
    """
    dispatcher: TaskDispatcher = request.app["dispatcher"]
    body = TaskRequest.model_validate(await _json_body(request))
    task = await dispatcher.enqueue(
        owner_id=body.owner_id,
        task_type=body.type,
        payload=body.payload,
        scheduled_for=body.scheduled_for,
        priority=body.priority,
    )
    return web.json_response(_dump(task), status=201)


@json_errors
async def handle_dispatch(request: web.Request) -> web.Response:
    """POST /tasks/dispatch -- run one dispatch tick now."""
    dispatcher: TaskDispatcher = request.app["dispatcher"]
    finished = await dispatcher.tick()
    return web.json_response({"processed": [_dump(t) for t in finished]})


@json_errors
async def handle_get_task(request: web.Request) -> web.Response:
    dispatcher: TaskDispatcher = request.app["dispatcher"]
    task = dispatcher.get_task(request.match_info["task_id"])
    return web.json_response(_dump(task))


@json_errors
async def handle_delete_task(request: web.Request) -> web.Response:
    """DELETE /tasks/{task_id} -- refused while the task is in progress."""
    dispatcher: TaskDispatcher = request.app["dispatcher"]
    task_id = request.match_info["task_id"]
    dispatcher.delete_task(task_id)
    return web.json_response({"deleted": task_id})


@json_errors
async def handle_retry_task(request: web.Request) -> web.Response:
    """POST /tasks/{task_id}/retry -- re-enqueue a failed task as a child task."""
    dispatcher: TaskDispatcher = request.app["dispatcher"]
    task = await dispatcher.retry_task(request.match_info["task_id"])
    return web.json_response(_dump(task), status=201)


# ---------------------------------------------------------------------------
# Automations
# ---------------------------------------------------------------------------

@json_errors
async def handle_list_automations(request: web.Request) -> web.Response:
    """GET /automations?owner_id=&status=&trigger_type=&page=&limit="""
    store: Store = request.app["store"]
    page = store.list_automations(
        owner_id=request.query.get("owner_id"),
        status=request.query.get("status"),
        trigger_type=request.query.get("trigger_type") or request.query.get("triggerType"),
        page=_int_query(request, "page", 1),
        limit=_int_query(request, "limit", 10),
    )
    return web.json_response(_dump(page))


@json_errors
async def handle_create_automation(request: web.Request) -> web.Response:
    """POST /automations -- create a rule (draft unless status is given)."""
    store: Store = request.app["store"]
    clock: Clock = request.app["clock"]
    body = await _json_body(request)
    owner_id = _require_owner(body)
    fields = {k: v for k, v in body.items() if k in _AUTOMATION_EDITABLE}
    now = clock.now()
    automation = Automation.model_validate({
        **fields,
        "owner_id": owner_id,
        "created_at": now,
        "updated_at": now,
    })
    store.insert_automation(automation)
    logger.info("Created automation %s (%s) for %s", automation.id, automation.trigger.type, owner_id)
    return web.json_response(_dump(automation), status=201)


@json_errors
async def handle_get_automation(request: web.Request) -> web.Response:
    return web.json_response(_dump(_get_automation(request)))


@json_errors
async def handle_update_automation(request: web.Request) -> web.Response:
    """PATCH /automations/{automation_id} -- edit rule fields; stats are kept."""
    store: Store = request.app["store"]
    clock: Clock = request.app["clock"]
    current = _get_automation(request)
    body = await _json_body(request)

    unknown = set(body) - _AUTOMATION_EDITABLE
    if unknown:
        raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    updated = Automation.model_validate({
        **current.model_dump(),
        **body,
        "updated_at": clock.now(),
    })
    store.update_automation(updated)
    return web.json_response(_dump(store.get_automation(updated.id) or updated))


@json_errors
async def handle_delete_automation(request: web.Request) -> web.Response:
    store: Store = request.app["store"]
    automation_id = request.match_info["automation_id"]
    if not store.delete_automation(automation_id):
        raise AutomationNotFoundError(automation_id)
    return web.json_response({"deleted": automation_id})


async def _set_status(request: web.Request, status: str) -> web.Response:
    store: Store = request.app["store"]
    clock: Clock = request.app["clock"]
    automation = _get_automation(request)
    store.set_automation_status(automation.id, status, clock.now())
    logger.info("Automation %s is now %s", automation.id, status)
    return web.json_response(_dump(store.get_automation(automation.id) or automation))


@json_errors
async def handle_activate_automation(request: web.Request) -> web.Response:
    return await _set_status(request, "active")


@json_errors
async def handle_pause_automation(request: web.Request) -> web.Response:
    return await _set_status(request, "paused")


@json_errors
async def handle_automation_stats(request: web.Request) -> web.Response:
    """GET /automations/stats?owner_id= -- totals over all (or one owner's) rules."""
    stats: StatsRecorder = request.app["stats"]
    summary = stats.summarize(request.query.get("owner_id"))
    return web.json_response(_dump(summary))


@json_errors
async def handle_run_scheduled(request: web.Request) -> web.Response:
    """POST /automations/run-scheduled -- run one schedule sweep now."""
    engine: AutomationEngine = request.app["engine"]
    runs = await engine.run_scheduled()
    return web.json_response({
        "runs": [{**_dump(run), "success": run.success} for run in runs],
    })


# ---------------------------------------------------------------------------
# Leads & contacts
# ---------------------------------------------------------------------------

@json_errors
async def handle_list_leads(request: web.Request) -> web.Response:
    crm: CRMService = request.app["crm"]
    owner_id = request.query.get("owner_id")
    if not owner_id:
        raise ValueError("Missing required query parameter: owner_id")
    page = crm.list_leads(
        owner_id,
        status=request.query.get("status"),
        page=_int_query(request, "page", 1),
        limit=_int_query(request, "limit", 10),
    )
    return web.json_response(_dump(page))


@json_errors
async def handle_create_lead(request: web.Request) -> web.Response:
    """POST /leads -- create a lead and run its new_lead automations.

    Body: {"owner_id": "...", "name": "...", "email": "...", "source": "website"}
    """
    crm: CRMService = request.app["crm"]
    body = await _json_body(request)
    owner_id = _require_owner(body)
    lead = await crm.create_lead(owner_id, body)
    return web.json_response(_dump(lead), status=201)


@json_errors
async def handle_get_lead(request: web.Request) -> web.Response:
    crm: CRMService = request.app["crm"]
    return web.json_response(_dump(crm.get_lead(request.match_info["lead_id"])))


@json_errors
async def handle_update_lead(request: web.Request) -> web.Response:
    crm: CRMService = request.app["crm"]
    lead = await crm.update_lead(request.match_info["lead_id"], await _json_body(request))
    return web.json_response(_dump(lead))


@json_errors
async def handle_delete_lead(request: web.Request) -> web.Response:
    crm: CRMService = request.app["crm"]
    lead_id = request.match_info["lead_id"]
    await crm.delete_lead(lead_id)
    return web.json_response({"deleted": lead_id})


@json_errors
async def handle_convert_lead(request: web.Request) -> web.Response:
    """POST /leads/{lead_id}/convert -- returns the resulting contact."""
    crm: CRMService = request.app["crm"]
    contact = await crm.convert_lead(request.match_info["lead_id"])
    return web.json_response(_dump(contact))


@json_errors
async def handle_list_contacts(request: web.Request) -> web.Response:
    crm: CRMService = request.app["crm"]
    owner_id = request.query.get("owner_id")
    if not owner_id:
        raise ValueError("Missing required query parameter: owner_id")
    page = crm.list_contacts(
        owner_id,
        status=request.query.get("status"),
        page=_int_query(request, "page", 1),
        limit=_int_query(request, "limit", 10),
    )
    return web.json_response(_dump(page))


@json_errors
async def handle_create_contact(request: web.Request) -> web.Response:
    crm: CRMService = request.app["crm"]
    body = await _json_body(request)
    owner_id = _require_owner(body)
    contact = await crm.create_contact(owner_id, body)
    return web.json_response(_dump(contact), status=201)


@json_errors
async def handle_get_contact(request: web.Request) -> web.Response:
    crm: CRMService = request.app["crm"]
    return web.json_response(_dump(crm.get_contact(request.match_info["contact_id"])))


@json_errors
async def handle_update_contact(request: web.Request) -> web.Response:
    crm: CRMService = request.app["crm"]
    contact = await crm.update_contact(request.match_info["contact_id"], await _json_body(request))
    return web.json_response(_dump(contact))


@json_errors
async def handle_delete_contact(request: web.Request) -> web.Response:
    crm: CRMService = request.app["crm"]
    contact_id = request.match_info["contact_id"]
    await crm.delete_contact(contact_id)
    return web.json_response({"deleted": contact_id})


@json_errors
async def handle_record_purchase(request: web.Request) -> web.Response:
    """POST /contacts/{contact_id}/purchases -- Body: {"amount": 49.0, "metadata": {...}}"""
    crm: CRMService = request.app["crm"]
    body = await _json_body(request)
    amount = body.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValueError("amount must be a number")
    metadata = body.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValueError("metadata must be an object")
    contact = await crm.record_purchase(request.match_info["contact_id"], float(amount), metadata)
    return web.json_response(_dump(contact))


# ---------------------------------------------------------------------------
# Email templates
# ---------------------------------------------------------------------------

@json_errors
async def handle_list_templates(request: web.Request) -> web.Response:
    crm: CRMService = request.app["crm"]
    owner_id = request.query.get("owner_id")
    if not owner_id:
        raise ValueError("Missing required query parameter: owner_id")
    return web.json_response({"items": [_dump(t) for t in crm.list_templates(owner_id)]})


@json_errors
async def handle_create_template(request: web.Request) -> web.Response:
    """POST /email-templates -- Body: {"owner_id", "name", "subject", "body"}

    Subject and body may use {{field}} placeholders, filled in per entity.
    """
    crm: CRMService = request.app["crm"]
    body = await _json_body(request)
    owner_id = _require_owner(body)
    template = crm.create_template(owner_id, body)
    return web.json_response(_dump(template), status=201)
