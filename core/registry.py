"""Component registry -- named implementations of the core protocols.

Bootstrap registers the built-in trigger actions and the configured email
sender here. The bus resolves a trigger's ``action_type`` through
`action()`; tests register recording fakes the same way.
"""

from __future__ import annotations

import logging
from typing import Any

from core.protocols import EmailSender, EventBus, TriggerAction

logger = logging.getLogger(__name__)

# Registry key -> protocol its members must satisfy
PROTOCOL_TYPES = {
    "event_bus": EventBus,
    "action": TriggerAction,
    "email_sender": EmailSender,
}


class UnknownComponentError(KeyError):
    pass


class PluginRegistry:
    """Named instances grouped by protocol key.

    Usage:
        registry = PluginRegistry()
        registry.register("action", WebhookAction())
        webhook = registry.action("webhook")
    """

    def __init__(self) -> None:
        self._plugins: dict[str, dict[str, Any]] = {key: {} for key in PROTOCOL_TYPES}

    def register(self, protocol_key: str, instance: Any) -> None:
        """Register an instance under its `name`; it must satisfy the key's protocol."""
        protocol = PROTOCOL_TYPES.get(protocol_key)
        if protocol is None:
            raise ValueError(f"Unknown protocol key {protocol_key!r}. Must be one of: {sorted(PROTOCOL_TYPES)}")
        if not isinstance(instance, protocol):
            raise TypeError(f"{type(instance).__name__} does not implement {protocol.__name__}")

        bucket = self._plugins[protocol_key]
        if instance.name in bucket:
            logger.warning("Replacing %s '%s'", protocol_key, instance.name)
        bucket[instance.name] = instance
        logger.debug("Registered %s: %s", protocol_key, instance.name)

    def get(self, protocol_key: str, name: str) -> Any:
        bucket = self._plugins.get(protocol_key)
        if bucket is None:
            raise UnknownComponentError(f"Unknown protocol key: {protocol_key}")
        try:
            return bucket[name]
        except KeyError:
            raise UnknownComponentError(
                f"No {protocol_key} named '{name}'. Available: {sorted(bucket)}"
            ) from None

    def action(self, name: str) -> TriggerAction:
        return self.get("action", name)

    def get_all(self, protocol_key: str) -> list[Any]:
        return list(self._plugins.get(protocol_key, {}).values())

    def has(self, protocol_key: str, name: str) -> bool:
        return name in self._plugins.get(protocol_key, {})

    def summary(self) -> dict[str, list[str]]:
        """Registered names per non-empty protocol key."""
        return {key: sorted(plugins) for key, plugins in self._plugins.items() if plugins}
