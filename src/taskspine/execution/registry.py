"""Handler Registry — task type → completion callback and handler lookup.

Two lookups live here.  Completion callbacks are fixed at construction
from an immutable mapping and validated eagerly, so an unknown task type
is caught when a task is created.  Handlers are resolved per dispatch
by ``(type, script_name)``; a miss is an ordinary, recoverable
:class:`HandlerNotFoundError`.

ARCHITECTURE
────────────
::

    HandlerRegistry(callbacks, default_script_name, package)
      ├── .has_type(type)                    ─ callback registered?
      ├── .completion_for(type)              ─ callback or UnknownTaskTypeError
      ├── .register(type, handler, script)   ─ store handler
      ├── .handler(type, script)             ─ decorator form of register
      ├── .resolve(type, script)             ─ handler or HandlerNotFoundError
      └── .list_handlers()                   ─ registered (type, script) keys

    Resolution order:
      1. explicitly registered (type, script)
      2. import "<package>.<type>.<script>" and take its ``run``

Handler signature::

    async def run(host: TaskRecord, settings: TaskSpineSettings, ctx: ExecutionContext) -> Any

Tags:
    task-spine, execution, registry, handler-registry, lookup

Doc-Types:
    api-reference
"""

from __future__ import annotations

import importlib
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from taskspine.core.errors import ConfigError, HandlerNotFoundError, UnknownTaskTypeError
from taskspine.core.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[..., Any]
CompletionCallback = Callable[..., Any]


class HandlerRegistry:
    """Injectable handler registry.

    Example:
        >>> async def on_export(task, result, context):
        ...     notify(task.target_id, result)
        >>>
        >>> registry = HandlerRegistry({"export": on_export})
        >>>
        >>> @registry.handler("export")
        ... async def export(host, settings, ctx):
        ...     return {"ok": True}
        >>>
        >>> registry.resolve("export", "index")
    """

    def __init__(
        self,
        callbacks: Mapping[str, CompletionCallback],
        *,
        default_script_name: str = "index",
        package: str | None = None,
    ) -> None:
        for task_type, callback in callbacks.items():
            if not callable(callback):
                raise ConfigError(
                    f"Completion callback for {task_type!r} is not callable",
                    context={"task_type": task_type},
                )
        self._callbacks: Mapping[str, CompletionCallback] = MappingProxyType(dict(callbacks))
        self._handlers: dict[str, Handler] = {}
        self.default_script_name = default_script_name
        self.package = package

    @staticmethod
    def _key(task_type: str, script_name: str) -> str:
        return f"{task_type}:{script_name}"

    # -- completion callbacks ----------------------------------------------------

    @property
    def types(self) -> frozenset[str]:
        return frozenset(self._callbacks)

    def has_type(self, task_type: str) -> bool:
        return task_type in self._callbacks

    def completion_for(self, task_type: str) -> CompletionCallback:
        """Return the completion callback for *task_type*.

        Raises:
            UnknownTaskTypeError: If no callback was registered.
        """
        try:
            return self._callbacks[task_type]
        except KeyError:
            raise UnknownTaskTypeError(task_type) from None

    # -- handlers ----------------------------------------------------------------

    def register(self, task_type: str, handler: Handler, script_name: str | None = None) -> None:
        """Register *handler* for ``(task_type, script_name)``."""
        if not callable(handler):
            raise ConfigError(f"Handler for {task_type!r} is not callable", context={"task_type": task_type})
        script = script_name or self.default_script_name
        self._handlers[self._key(task_type, script)] = handler
        logger.debug("registry.handler_registered", task_type=task_type, script_name=script)

    def handler(self, task_type: str, script_name: str | None = None) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: Handler) -> Handler:
            self.register(task_type, func, script_name)
            return func

        return decorator

    def has_handler(self, task_type: str, script_name: str | None = None) -> bool:
        return self._key(task_type, script_name or self.default_script_name) in self._handlers

    def resolve(self, task_type: str, script_name: str | None = None) -> Handler:
        """Resolve the handler for ``(task_type, script_name)``.

        Raises:
            HandlerNotFoundError: If neither a registration nor an importable
                module provides the handler.
        """
        script = script_name or self.default_script_name
        handler = self._handlers.get(self._key(task_type, script))
        if handler is not None:
            return handler
        if self.package is None:
            raise HandlerNotFoundError(task_type, script)
        return self._import_handler(task_type, script)

    def _import_handler(self, task_type: str, script: str) -> Handler:
        module_name = f"{self.package}.{task_type}.{script}"
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError as exc:
            # Only a missing target module is a miss; a broken import inside it propagates.
            if exc.name is None or not (module_name == exc.name or module_name.startswith(exc.name + ".")):
                raise
            raise HandlerNotFoundError(task_type, script, cause=exc) from exc
        handler = getattr(module, "run", None)
        if not callable(handler):
            raise HandlerNotFoundError(task_type, script)
        logger.debug("registry.handler_imported", module=module_name)
        return handler

    def list_handlers(self) -> list[tuple[str, str]]:
        """List registered ``(type, script_name)`` pairs."""
        return sorted(tuple(key.split(":", 1)) for key in self._handlers)  # type: ignore[misc]


__all__ = ["CompletionCallback", "Handler", "HandlerRegistry"]
