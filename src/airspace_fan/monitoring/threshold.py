"""
Outdoor temperature alerting against user-configured bounds
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from ..events import Publisher, AlertChanged

logger = logging.getLogger(__name__)


class AlertState(Enum):
    NORMAL = "normal"
    TOO_HOT = "too_hot"
    TOO_COLD = "too_cold"
    UNKNOWN = "unknown"

    @property
    def alarming(self) -> bool:
        return self in (AlertState.TOO_HOT, AlertState.TOO_COLD)


@dataclass(frozen=True)
class ThresholdConfig:
    """User temperature bounds (owned by the preference store)"""
    low_bound: float = 55.0
    high_bound: float = 85.0
    enabled: bool = False


def evaluate(temperature: Optional[float], config: ThresholdConfig) -> AlertState:
    """Single-sample comparison of a reading against the configured bounds"""
    if not config.enabled or temperature is None:
        return AlertState.UNKNOWN
    if temperature > config.high_bound:
        return AlertState.TOO_HOT
    if temperature < config.low_bound:
        return AlertState.TOO_COLD
    return AlertState.NORMAL


@dataclass(frozen=True)
class AlertNotification:
    """What the alert sink is told when the alert state changes"""
    previous: AlertState
    current: AlertState
    temperature: Optional[float]
    running_fans: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def message(self) -> str:
        if self.current == AlertState.TOO_HOT:
            text = f"It's hot outside ({self.temperature:.0f}°)."
        elif self.current == AlertState.TOO_COLD:
            text = f"It's cold outside ({self.temperature:.0f}°)."
        elif self.current == AlertState.NORMAL:
            return "Outdoor temperature is back within your limits."
        else:
            return "Outdoor temperature alerts unavailable."
        if self.running_fans:
            text += " Turn the fan off?"
        return text


class AlertSink:
    """Receives alert transitions for user-visible notification"""

    def notify(self, notification: AlertNotification) -> None:
        raise NotImplementedError


class LoggingAlertSink(AlertSink):
    """Alert sink that records notifications in the log"""

    def __init__(self):
        self.delivered: List[AlertNotification] = []

    def notify(self, notification: AlertNotification) -> None:
        self.delivered.append(notification)
        if notification.current.alarming:
            logger.warning(f"[ALERT] {notification.message}")
        else:
            logger.info(f"[ALERT] {notification.message}")


class ThresholdMonitor:
    """
    Holds the current alert state derived from outdoor readings.

    A missing reading never changes the state. There is no hysteresis here;
    callers that want debouncing should filter readings before observe().
    """

    def __init__(self, config_source, sink: Optional[AlertSink] = None, publisher: Optional[Publisher] = None):
        # config_source: callable returning the current ThresholdConfig
        self.config_source = config_source
        self.sink = sink or LoggingAlertSink()
        self.publisher = publisher or Publisher()
        self.state = AlertState.UNKNOWN
        self.last_temperature: Optional[float] = None
        self.last_evaluated: Optional[datetime] = None

    @property
    def config(self) -> ThresholdConfig:
        return self.config_source()

    def observe(self, temperature: Optional[float]) -> AlertState:
        """Feed one reading; returns the alert state after it"""
        config = self.config
        if temperature is None:
            if not config.enabled:
                self._transition(AlertState.UNKNOWN, None)
            else:
                logger.info("No outdoor reading - alert state unchanged")
            return self.state

        self.last_temperature = temperature
        self.last_evaluated = datetime.now(timezone.utc)
        self._transition(evaluate(temperature, config), temperature)
        return self.state

    def notification_for(self, previous: AlertState, running_fans: Optional[List[str]] = None) -> AlertNotification:
        return AlertNotification(
            previous=previous,
            current=self.state,
            temperature=self.last_temperature,
            running_fans=list(running_fans or [])
        )

    def announce(self, previous: AlertState, running_fans: Optional[List[str]] = None) -> Optional[AlertNotification]:
        """Hand a change into or out of an alarming state to the alert sink"""
        if self.state == previous or not (self.state.alarming or previous.alarming):
            return None
        notification = self.notification_for(previous, running_fans)
        try:
            self.sink.notify(notification)
        except Exception as e:
            logger.error(f"Alert sink failed: {e}")
        return notification

    def _transition(self, new_state: AlertState, temperature: Optional[float]) -> None:
        if new_state == self.state:
            return
        previous = self.state
        self.state = new_state
        logger.info(f"Alert state {previous.value} -> {new_state.value}")
        self.publisher.publish(AlertChanged(previous, new_state, temperature))

    def get_status(self) -> dict:
        config = self.config
        return {
            "state": self.state.value,
            "temperature": self.last_temperature,
            "last_evaluated": self.last_evaluated.isoformat() if self.last_evaluated else None,
            "low_bound": config.low_bound,
            "high_bound": config.high_bound,
            "enabled": config.enabled
        }
