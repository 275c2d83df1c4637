"""
Synchronizer lifecycle events

Listeners subscribe per event and are called synchronously in registration
order. A listener that raises is logged and does not stop the others.
"""

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Union

logger = logging.getLogger(__name__)


class UpdateEvent(str, Enum):
    """Events emitted by the update loop"""

    SCHEDULED = "update:scheduled"
    STARTED = "update:started"
    COMPLETE = "update:complete"
    ERROR = "update:error"


Listener = Callable[..., Any]


class EventEmitter:
    def __init__(self):
        self._listeners: Dict[UpdateEvent, List[Listener]] = defaultdict(list)

    def on(self, event: Union[UpdateEvent, str], callback: Listener) -> None:
        """Register a callback for an event"""
        self._listeners[UpdateEvent(event)].append(callback)

    def off(self, event: Union[UpdateEvent, str], callback: Listener) -> None:
        """Remove a previously registered callback"""
        listeners = self._listeners[UpdateEvent(event)]
        if callback in listeners:
            listeners.remove(callback)

    def emit(self, event: UpdateEvent, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Listener for {event.value} failed")
