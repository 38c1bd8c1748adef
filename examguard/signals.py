"""
Lightweight synchronous signal dispatch.

Every sub-service owns a ``SignalBus``; the session controller subscribes to
them and re-emits what the presentation layer needs on its own bus.
"""
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[..., None]
WildcardHandler = Callable[[str, Dict[str, Any]], None]


class SignalBus:
    def __init__(self, source: str):
        self.source = source
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._wildcard: List[WildcardHandler] = []

    def connect(self, name: str, handler: Handler) -> None:
        """Call ``handler(**payload)`` whenever ``name`` is emitted."""
        self._handlers[name].append(handler)

    def connect_all(self, handler: WildcardHandler) -> None:
        """Call ``handler(name, payload)`` for every emitted signal."""
        self._wildcard.append(handler)

    def disconnect_all(self, handler: WildcardHandler) -> None:
        if handler in self._wildcard:
            self._wildcard.remove(handler)

    def emit(self, name: str, **payload: Any) -> None:
        for handler in list(self._handlers.get(name, ())):
            try:
                handler(**payload)
            except Exception:
                logger.exception(f"[{self.source}] handler for '{name}' failed")
        for handler in list(self._wildcard):
            try:
                handler(name, payload)
            except Exception:
                logger.exception(f"[{self.source}] wildcard handler for '{name}' failed")
