"""Observer registry used by the gate, the queue and the network monitor."""

from collections.abc import Callable
from typing import Any, Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

ObserverT = TypeVar("ObserverT")


class ObserverRegistry(Generic[ObserverT]):
    """
    Fan-out of lifecycle callbacks to any number of subscribers.

    Observers only need to implement the hooks they care about. A hook that
    raises is logged and skipped so one subscriber cannot break the pipeline.
    """

    def __init__(self, owner: str) -> None:
        self._observers: list[ObserverT] = []
        self.logger = logger.bind(component="observers", owner=owner)

    def __len__(self) -> int:
        return len(self._observers)

    def subscribe(self, observer: ObserverT) -> Callable[[], None]:
        """Register an observer. Returns a callable that unsubscribes it."""
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: ObserverT) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def clear(self) -> None:
        self._observers.clear()

    def notify(self, hook: str, *args: Any) -> None:
        # Copy so observers may unsubscribe from inside a hook
        for observer in list(self._observers):
            callback = getattr(observer, hook, None)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception as e:
                self.logger.exception(
                    "observer_failed",
                    hook=hook,
                    observer=type(observer).__name__,
                    error=str(e),
                )
