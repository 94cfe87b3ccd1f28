"""Job handler registry."""

from collections.abc import Callable
from typing import Dict, List, Optional, Union

from scan_orchestrator.errors import HandlerRegistrationError
from scan_orchestrator.models import JobKind, kind_name


class HandlerRegistry:
    """Registry mapping job kinds to handlers."""

    def __init__(self):
        self._handlers: Dict[str, Callable] = {}

    def handler(self, kind: Union[JobKind, str]):
        """
        Decorator to register a job handler.

        Usage:
            @registry.handler(JobKind.FOLDER_SCAN)
            async def scan_folder(ctx, payload):
                ...
                return [JobSpec.media_analyze(ctx.entity_id, path) for path in found]
        """

        def decorator(func: Callable):
            self.register(kind, func)
            return func

        return decorator

    def register(self, kind: Union[JobKind, str], func: Callable) -> None:
        """Register ``func`` for ``kind``. Each kind has exactly one handler."""
        name = kind_name(kind)
        if name in self._handlers and self._handlers[name] is not func:
            raise HandlerRegistrationError(f"A handler is already registered for {name}")
        self._handlers[name] = func

    def get_handler(self, kind: Union[JobKind, str]) -> Optional[Callable]:
        """Get the handler for a kind."""
        return self._handlers.get(kind_name(kind))

    def kinds(self) -> List[str]:
        return sorted(self._handlers)

    def all_handlers(self) -> Dict[str, Callable]:
        """Get all registered handlers."""
        return self._handlers.copy()

    def __contains__(self, kind: Union[JobKind, str]) -> bool:
        return kind_name(kind) in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


# Global registry instance
handler_registry = HandlerRegistry()
