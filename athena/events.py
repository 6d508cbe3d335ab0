from collections import defaultdict
from typing import Callable

from athena.utils.logger import log

class EventBus:
    """Observer hub the controller publishes to.

    Subscribers (dashboards, notifiers, tests) register per event kind or with
    "*" for everything. A failing subscriber is logged and never breaks the
    publisher.
    """

    def __init__(self):
        self._subs: dict[str, list[Callable]] = defaultdict(list)

    def subscribe(self, kind: str, handler: Callable) -> Callable[[], None]:
        self._subs[kind].append(handler)

        def unsubscribe():
            if handler in self._subs[kind]:
                self._subs[kind].remove(handler)
        return unsubscribe

    def publish(self, kind: str, **payload):
        for handler in list(self._subs.get(kind, ())) + list(self._subs.get("*", ())):
            try:
                handler(kind, payload)
            except Exception as e:
                log.warning("Event subscriber for '%s' failed: %s", kind, e)
