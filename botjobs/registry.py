"""
Registry of action handlers keyed by job kind.

A handler takes the job's payload dict. Returning normally completes the
job; raising ActionFailed fails it with that reason, and any other exception
fails it with the exception text.
"""
import importlib
import os
from typing import Any, Callable, Dict, Iterator, Optional

from botjobs.exceptions import ConfigError

ActionHandler = Callable[[Dict[str, Any]], Any]


class ActionRegistry:
    """
    Maps job kinds to handlers.

    Example:
        registry = ActionRegistry()

        @registry.action('bot_move')
        def move(payload):
            ...
    """

    def __init__(self, handlers: Optional[Dict[str, ActionHandler]] = None):
        self._handlers: Dict[str, ActionHandler] = {}
        for kind, handler in (handlers or {}).items():
            self.register(kind, handler)

    def register(self, kind: str, handler: ActionHandler, replace: bool = False) -> None:
        if not kind or not str(kind).strip():
            raise ValueError("Action kind cannot be empty")
        if not callable(handler):
            raise TypeError(f"Handler for '{kind}' is not callable")
        if kind in self._handlers and not replace:
            raise ValueError(f"An action is already registered for kind '{kind}'")
        self._handlers[kind] = handler

    def action(self, kind: str, replace: bool = False):
        """Decorator form of register()."""
        def decorator(func: ActionHandler) -> ActionHandler:
            self.register(kind, func, replace=replace)
            return func
        return decorator

    def get(self, kind: str) -> Optional[ActionHandler]:
        return self._handlers.get(kind)

    def kinds(self):
        return sorted(self._handlers)

    def __contains__(self, kind) -> bool:
        return kind in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self.kinds())

    def __len__(self) -> int:
        return len(self._handlers)


def load_registry(spec: Optional[str] = None) -> ActionRegistry:
    """
    Import a registry from a "package.module:attribute" string.

    The attribute may be an ActionRegistry or a zero-argument callable that
    returns one. With no spec, $BOTJOBS_REGISTRY is used; if that is unset
    too, an empty registry is returned and every job fails as an unknown kind.
    """
    spec = spec or os.environ.get("BOTJOBS_REGISTRY")
    if not spec:
        return ActionRegistry()

    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Registry must look like 'package.module:attribute', got '{spec}'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import registry module '{module_name}': {e}") from e

    try:
        target = getattr(module, attr)
    except AttributeError:
        raise ConfigError(f"Module '{module_name}' has no attribute '{attr}'") from None

    if not isinstance(target, ActionRegistry) and callable(target):
        target = target()
    if not isinstance(target, ActionRegistry):
        raise ConfigError(f"'{spec}' did not resolve to an ActionRegistry")
    return target
