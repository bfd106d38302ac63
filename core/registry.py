"""Plugin registry -- the slots task handlers and action delegates live in.

main.py fills the registry from config.yaml at startup:

    task_handler   one handler per task type, keyed by the type it serves
    email          the sender used by send_email actions
    webhook        the client used by webhook actions

The dispatcher looks task types up in the "task_handler" slot; the action
executor takes whichever email / webhook delegate was registered.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator

from core.protocols import EmailSender, TaskHandler, WebhookClient

logger = logging.getLogger(__name__)

SLOTS: dict[str, type] = {
    "task_handler": TaskHandler,
    "email": EmailSender,
    "webhook": WebhookClient,
}


class PluginRegistry:
    """Named plugins per slot.

    Usage:
        registry = PluginRegistry()
        registry.register("task_handler", MaintenanceHandler(store=store))

        handler = registry.find("task_handler", task.type)   # None if unknown
        email = registry.first("email")
    """

    def __init__(self) -> None:
        self._slots: dict[str, dict[str, Any]] = {slot: {} for slot in SLOTS}

    def register(self, slot: str, plugin: Any) -> None:
        """Add a plugin under its `name`. A later plugin with the same name replaces the earlier one."""
        protocol = SLOTS.get(slot)
        if protocol is None:
            raise ValueError(f"Unknown plugin slot '{slot}' (expected one of {sorted(SLOTS)})")
        if not isinstance(plugin, protocol):
            raise TypeError(f"{type(plugin).__name__} cannot fill the {slot} slot")

        plugins = self._slots[slot]
        if plugin.name in plugins:
            logger.warning("Replacing %s plugin %s", slot, plugin.name)
        plugins[plugin.name] = plugin
        logger.info("Registered %s plugin: %s", slot, plugin.name)

    def get(self, slot: str, name: str) -> Any:
        plugin = self.find(slot, name)
        if plugin is None:
            raise KeyError(f"No {slot} plugin named '{name}' (registered: {self.names(slot)})")
        return plugin

    def find(self, slot: str, name: str) -> Any | None:
        return self._slots.get(slot, {}).get(name)

    def first(self, slot: str) -> Any | None:
        """The earliest-registered plugin in a slot, if any."""
        for plugin in self._slots.get(slot, {}).values():
            return plugin
        return None

    def names(self, slot: str) -> list[str]:
        return list(self._slots.get(slot, {}))

    def plugins(self) -> Iterator[tuple[str, Any]]:
        """Every registered plugin with its slot, in registration order per slot."""
        for slot, plugins in self._slots.items():
            for plugin in plugins.values():
                yield slot, plugin

    def summary(self) -> dict[str, list[str]]:
        return {slot: list(plugins) for slot, plugins in self._slots.items() if plugins}
