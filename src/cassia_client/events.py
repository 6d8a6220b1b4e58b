"""
Typed event channels.

Every Session owns one SessionEvents bundle with a channel per domain event
(scan, notify, connection_state, aps-events, gateway_status, error). Stream
relays publish into these channels; applications subscribe to them.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from .logging_setup import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Any]


class EventChannel(Generic[T]):
    """
    A named publish/subscribe channel carrying values of one type.

    Listeners are called in registration order. Coroutine listeners are
    scheduled as tasks on the running loop. A failing listener is logged and
    never prevents delivery to the remaining listeners.
    """

    def __init__(self, name: str):
        self.name = name
        # (listener, once) in registration order
        self._listeners: list[tuple[Listener, bool]] = []
        self._tasks: set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"<EventChannel {self.name} listeners={len(self._listeners)}>"

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def on(self, listener: Listener) -> Listener:
        """Subscribe a listener; returns it so it can be used as a decorator"""
        self._listeners.append((listener, False))
        return listener

    def once(self, listener: Listener) -> Listener:
        """Subscribe a listener that is removed after its first delivery"""
        self._listeners.append((listener, True))
        return listener

    def off(self, listener: Listener) -> None:
        """Unsubscribe the earliest registration of listener (no-op if absent)"""
        for index, (registered, _) in enumerate(self._listeners):
            if registered == listener:
                del self._listeners[index]
                return

    def clear(self) -> None:
        self._listeners.clear()

    def emit(self, value: T) -> int:
        """Deliver value to all listeners, returns the number of listeners reached"""
        entries = list(self._listeners)
        for entry in entries:
            listener, once = entry
            if once:
                try:
                    self._listeners.remove(entry)
                except ValueError:
                    continue
            try:
                result = listener(value)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception as e:
                logger.error(
                    "Listener %s on '%s' failed: %s",
                    getattr(listener, "__name__", listener), self.name, e, exc_info=True
                )
        return len(entries)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async listener on '%s' failed: %s", self.name, exc, exc_info=exc)


class ErrorChannel(EventChannel[Exception]):
    """Error channel that logs errors nobody is listening for"""

    def emit(self, value: Exception) -> int:
        reached = super().emit(value)
        if reached == 0:
            logger.error("Unhandled %s event: %r", self.name, value)
        return reached


# Wire names used by the remote API mapped to channel attributes
CHANNEL_NAMES = {
    "scan": "scan",
    "notify": "notify",
    "connection_state": "connection_state",
    "aps-events": "aps_events",
    "gateway_status": "gateway_status",
    "error": "error",
}


@dataclass
class SessionEvents:
    """Per-session bundle of domain event channels"""

    scan: EventChannel[dict] = field(default_factory=lambda: EventChannel("scan"))
    notify: EventChannel[dict] = field(default_factory=lambda: EventChannel("notify"))
    connection_state: EventChannel[dict] = field(
        default_factory=lambda: EventChannel("connection_state")
    )
    aps_events: EventChannel[dict] = field(default_factory=lambda: EventChannel("aps-events"))
    gateway_status: EventChannel[dict] = field(
        default_factory=lambda: EventChannel("gateway_status")
    )
    error: ErrorChannel = field(default_factory=lambda: ErrorChannel("error"))

    def channel(self, name: str) -> EventChannel:
        """Look up a channel by its wire name (e.g. 'aps-events')"""
        try:
            return getattr(self, CHANNEL_NAMES[name])
        except KeyError:
            raise KeyError(f"Unknown event channel: {name}") from None

    def clear(self) -> None:
        """Drop every listener on every channel"""
        for attr in CHANNEL_NAMES.values():
            getattr(self, attr).clear()
