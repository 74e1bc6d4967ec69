"""Event bus: the notification channel between a session and its owner."""

from imgate.events import Dispatcher, EventTarget

__all__ = ["Bus", "EventTarget"]


class Bus:
    """Event bus wrapping a dispatcher. The owning connection registers as target."""

    def __init__(self) -> None:
        self._dispatcher = Dispatcher()

    def register(self, target: EventTarget) -> None:
        self._dispatcher.register(target)

    def unregister(self, target: EventTarget) -> None:
        self._dispatcher.unregister(target)

    def publish(self, source: str, evt: object) -> None:
        """Publish event to all targets that accept it."""
        self._dispatcher.dispatch(source, evt)
