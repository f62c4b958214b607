"""Instrumentation hooks wrapped around publish, dispatch, retry and dead-letter.

Every hookable step runs through :meth:`HookRegistry.execute_all` under an
operation name of the form ``<stage>.<routing_key>``, for example
``consumer.dispatch.product.item.published``. A hook receives the operation,
a dict of span-style attributes and a ``next_handler`` it must await to let
the step (and any inner hooks) proceed.
"""

from __future__ import annotations

import fnmatch
import functools
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .topology import topic_matches, validate_pattern

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

PUBLISH = "publisher.publish"
DISPATCH = "consumer.dispatch"
RETRY = "retry.schedule"
DEAD_LETTER = "dead_letter.route"


def operation_name(stage: str, routing_key: str) -> str:
    return f"{stage}.{routing_key}"


def _routing_key_of(operation: str) -> str | None:
    parts = operation.split(".", 2)
    return parts[2] if len(parts) == 3 else None


@runtime_checkable
class InstrumentationHook(Protocol):
    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any: ...


@dataclass
class HookRegistration:
    """A hook plus the operations and routing keys it applies to.

    ``operations`` are shell-style globs over the full operation name;
    ``routing_keys`` are AMQP topic patterns over the routing-key part.
    Empty lists match everything.
    """

    hook: InstrumentationHook
    priority: int = 0
    operations: list[str] = field(default_factory=list)
    routing_keys: list[str] = field(default_factory=list)
    enabled: bool = True

    def matches(self, operation: str) -> bool:
        if not self.enabled:
            return False
        if self.operations and not any(
            fnmatch.fnmatchcase(operation, pattern) for pattern in self.operations
        ):
            return False
        if not self.routing_keys:
            return True
        routing_key = _routing_key_of(operation)
        return routing_key is not None and any(
            topic_matches(pattern, routing_key) for pattern in self.routing_keys
        )


class HookRegistry:
    """Ordered set of hooks; lower priority wraps outermost."""

    def __init__(self) -> None:
        self._registrations: list[HookRegistration] = []

    def register(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: list[str] | None = None,
        routing_keys: list[str] | None = None,
    ) -> HookRegistration:
        for pattern in routing_keys or []:
            validate_pattern(pattern)
        registration = HookRegistration(
            hook,
            priority=priority,
            operations=list(operations or []),
            routing_keys=list(routing_keys or []),
        )
        self._registrations.append(registration)
        self._registrations.sort(key=lambda r: r.priority)
        return registration

    def unregister(self, registration: HookRegistration) -> None:
        if registration in self._registrations:
            self._registrations.remove(registration)

    async def execute_all(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run *next_handler* wrapped by every hook matching *operation*."""
        call = next_handler
        for registration in reversed(self._registrations):
            if registration.matches(operation):
                call = functools.partial(
                    registration.hook, operation, attributes, call
                )
        return await call()


_registry: ContextVar[HookRegistry | None] = ContextVar(
    "agora_events_hook_registry", default=None
)


def get_hook_registry() -> HookRegistry:
    """Registry for the current context, created on first use."""
    registry = _registry.get()
    if registry is None:
        registry = HookRegistry()
        _registry.set(registry)
    return registry


def set_hook_registry(registry: HookRegistry) -> None:
    _registry.set(registry)
