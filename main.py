"""LeadPilot entrypoint -- wires all components together and starts the server.

Usage:
    python main.py
    python main.py --config /path/to/config.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import get_args

from aiohttp import web

from automation.actions import ActionExecutor
from automation.engine import AutomationEngine
from automation.matcher import TriggerMatcher
from automation.stats import StatsRecorder
from core.bus import AsyncIOBus
from core.clock import Clock, SystemClock
from core.config import AppConfig, load_config
from core.data.store import Store
from core.duration import duration_seconds
from core.models.automations import ActionType
from core.registry import PluginRegistry
from crm.repository import EntityRepository
from crm.service import CRMService
from plugins.delegates.email import HttpEmailSender, LogEmailSender
from plugins.delegates.webhook import HttpWebhookClient
from plugins.task_handlers.delayed_action import DelayedActionHandler
from plugins.task_handlers.http_delegate import HttpTaskHandler
from plugins.task_handlers.maintenance import MaintenanceHandler
from scheduler.dispatcher import TaskDispatcher
from scheduler.recurring import RecurringEnqueuer
from server import create_app


def setup_logging(level: str) -> None:
    """Configure logging for the application."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Quiet down noisy libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="LeadPilot task scheduler and automation engine")
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to config.yaml (default: ~/.leadpilot/config.yaml)",
    )
    parser.add_argument(
        "--env",
        type=str,
        default=None,
        help="Path to .env file (default: ~/.leadpilot/.env)",
    )
    return parser.parse_args()


def _register_plugins(
    config: AppConfig,
    store: Store,
    entities: EntityRepository,
    registry: PluginRegistry,
    executor: ActionExecutor,
    clock: Clock,
) -> None:
    """Instantiate task handlers and action delegates from config."""
    logger = logging.getLogger("leadpilot.plugins")

    # 1. HTTP-delegated business task types
    for task_type, handler_config in config.handlers.items():
        if not handler_config.enabled:
            continue
        if not handler_config.url:
            logger.error("Task handler %s has no url; skipping", task_type)
            continue
        registry.register("task_handler", HttpTaskHandler(
            task_type=task_type,
            url=handler_config.url,
            timeout=duration_seconds(handler_config.timeout),
            headers=handler_config.headers,
        ))

    # 2. Built-in handlers
    if config.maintenance.enabled:
        registry.register("task_handler", MaintenanceHandler(
            store=store,
            clock=clock,
            retention_days=config.maintenance.retention_days,
        ))
    for action_type in get_args(ActionType):
        registry.register("task_handler", DelayedActionHandler(
            action_type=action_type,
            store=store,
            entities=entities,
            executor=executor,
        ))

    # 3. Action delegates
    if config.email.api_url:
        registry.register("email", HttpEmailSender(
            api_url=config.email.api_url,
            api_key=config.email.api_key,
            sender=config.email.sender,
            timeout=duration_seconds(config.email.timeout),
        ))
    else:
        logger.info("No email API configured; emails will only be logged")
        registry.register("email", LogEmailSender(sender=config.email.sender))
    registry.register("webhook", HttpWebhookClient(
        timeout=duration_seconds(config.webhooks.timeout),
        user_agent=config.webhooks.user_agent,
    ))


async def _close_plugins(registry: PluginRegistry) -> None:
    logger = logging.getLogger("leadpilot.plugins")
    for slot, plugin in registry.plugins():
        if not hasattr(plugin, "close"):
            continue
        try:
            await plugin.close()
        except Exception as e:
            logger.error("Error closing %s plugin %s: %s", slot, plugin.name, e)


async def run(config_path: str | None = None, env_path: str | None = None) -> None:
    """Initialize all components and start the server."""
    # Load configuration
    config = load_config(config_path=config_path, env_path=env_path)
    logging.getLogger().setLevel(getattr(logging, config.logging.level.upper(), logging.INFO))
    logger = logging.getLogger("leadpilot")
    logger.info("Configuration loaded from %s", config.home_path)

    # Initialize core infrastructure
    clock = SystemClock()
    store = Store(config.home_path)
    events_dir = config.home_path / "events" if config.logging.audit_events else None
    bus = AsyncIOBus(events_dir=events_dir)
    registry = PluginRegistry()
    entities = EntityRepository(store, clock=clock)

    # Task queue
    dispatcher = TaskDispatcher(
        store=store,
        registry=registry,
        bus=bus,
        clock=clock,
        batch_size=config.dispatcher.batch_size,
        check_interval=duration_seconds(config.dispatcher.check_interval),
        drain_timeout=duration_seconds(config.dispatcher.drain_timeout),
    )
    recurring = RecurringEnqueuer(
        jobs=config.recurring,
        dispatcher=dispatcher,
        bus=bus,
        clock=clock,
        timezone_name=config.automations.timezone,
    )

    # Automation runtime
    executor = ActionExecutor(
        entities=entities,
        dispatcher=dispatcher,
        registry=registry,
        clock=clock,
        delayed_priority=config.dispatcher.delayed_action_priority,
    )
    crm = CRMService(repo=entities, bus=bus, clock=clock)
    executor.set_converter(crm)

    matcher = TriggerMatcher(
        store=store,
        timezone_name=config.automations.timezone,
        resolution=config.automations.schedule_resolution,
    )
    stats = StatsRecorder(store)
    engine = AutomationEngine(
        entities=entities,
        matcher=matcher,
        executor=executor,
        stats=stats,
        bus=bus,
        clock=clock,
        sweep_interval=duration_seconds(config.automations.sweep_interval),
    )
    engine.attach()

    _register_plugins(config, store, entities, registry, executor, clock)
    logger.info("Plugin registry: %s", registry.summary())

    # Create HTTP server
    app = create_app(
        config=config,
        store=store,
        registry=registry,
        dispatcher=dispatcher,
        crm=crm,
        engine=engine,
        stats=stats,
        clock=clock,
    )

    # Start loops
    await dispatcher.start()
    await engine.start()
    await recurring.start()

    # Start server
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.server.host, config.server.port)
    await site.start()

    logger.info(
        "LeadPilot running at http://%s:%d",
        config.server.host,
        config.server.port,
    )
    logger.info("State directory: %s", config.home_path)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt still reaches asyncio.run

    # Run until interrupted
    try:
        await stop.wait()
    except asyncio.CancelledError:
        pass
    finally:
        logger.info("Shutting down...")
        await runner.cleanup()
        await recurring.stop()
        await engine.stop()
        await dispatcher.stop(drain=True)
        await _close_plugins(registry)
        store.close()
        logger.info("Shutdown complete")


def main() -> None:
    args = parse_args()
    setup_logging("INFO")
    try:
        asyncio.run(run(config_path=args.config, env_path=args.env))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
