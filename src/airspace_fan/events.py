"""
State-change events and a minimal publish/subscribe hub
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], None]


@dataclass(frozen=True)
class FanStateChanged:
    """A controller adopted a new snapshot or changed state"""
    mac_addr: str
    state: Any                      # ControllerState
    characteristics: Optional[Any]  # FanCharacteristics


@dataclass(frozen=True)
class FatalFault:
    """A controller stopped answering and is now considered faulted"""
    mac_addr: str
    consecutive_failures: int


@dataclass(frozen=True)
class RegistryChanged:
    """The house registry published a new fan collection"""
    mac_addrs: tuple
    scanning: bool


@dataclass(frozen=True)
class AlertChanged:
    """The outdoor-temperature alert moved to a new state"""
    previous: Any  # AlertState
    current: Any   # AlertState
    temperature: Optional[float] = None


class Publisher:
    """
    Delivers events to subscribers synchronously, in publish order.
    A failing subscriber is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register callback; returns a function that unsubscribes it"""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Any) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {type(event).__name__}: {e}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
