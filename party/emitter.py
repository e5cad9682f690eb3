from typing import Callable, Dict, List, Optional

from logging_config import get_logger

logger = get_logger(__name__)


class Emitter:
    """Minimal named-event callback registry."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}

    def on(self, event: str, callback: Callable) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: Optional[Callable] = None) -> None:
        if callback is None:
            self._listeners.pop(event, None)
            return
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def emit(self, event: str, *args) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"{type(self).__name__} {event!r} listener error: {e}", exc_info=True)
