"""
Background monitoring scheduler

While the process is backgrounded, temperature checks only run inside
execution windows granted by a host. The scheduler keeps exactly one window
request pending per identifier, runs one bounded check per granted window,
and asks for the next window after every outcome.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from .threshold import AlertState, ThresholdMonitor

logger = logging.getLogger(__name__)


class LifecyclePhase(Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"
    INACTIVE = "inactive"


class WindowOutcome(Enum):
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"  # expired or over budget
    SKIPPED = "skipped"        # a check was already in flight


@dataclass(frozen=True)
class BackgroundWindow:
    """A window request the host has not granted yet"""
    identifier: str
    earliest_begin: datetime
    submitted_at: datetime


class WindowTask:
    """A granted execution window, as handed to the scheduler by the host"""

    identifier: str
    expiration_handler: Optional[Callable[[], None]] = None

    def set_task_completed(self, success: bool) -> None:
        raise NotImplementedError


class BackgroundHost:
    """Grants time-boxed execution windows while the process is not foregrounded"""

    def request_window(self, identifier: str, earliest_begin: datetime) -> None:
        raise NotImplementedError

    def cancel_window(self, identifier: str) -> None:
        raise NotImplementedError

    def cancel_all(self) -> None:
        raise NotImplementedError


class BackgroundScheduler:
    """Runs threshold checks inside host-granted windows"""

    def __init__(self, host: BackgroundHost, temperature_source, monitor: ThresholdMonitor,
                 registry=None, config: Optional[Dict] = None):
        config = config or {}
        self.host = host
        self.temperature_source = temperature_source
        self.monitor = monitor
        self.registry = registry

        self.identifier = config.get('identifier', 'temperature-out-of-range')
        self.check_budget = float(config.get('check_budget_seconds', 25))
        self.minimum_interval = timedelta(minutes=config.get('minimum_interval_minutes', 15))
        self.scan_on_alert = config.get('scan_on_alert', True)

        self.phase = LifecyclePhase.FOREGROUND
        self.pending: Dict[str, BackgroundWindow] = {}
        self.last_outcome: Optional[WindowOutcome] = None
        self._check_task: Optional[asyncio.Task] = None

        self.stats = {
            'windows_requested': 0,
            'windows_granted': 0,
            'checks_completed': 0,
            'checks_incomplete': 0,
            'checks_skipped': 0
        }

    @property
    def check_in_flight(self) -> bool:
        return self._check_task is not None and not self._check_task.done()

    # ================== LIFECYCLE ==================

    def enter_background(self) -> BackgroundWindow:
        """Process moved to the background: hand scheduling over to the host"""
        self.phase = LifecyclePhase.BACKGROUND
        logger.info("[BACKGROUND] Entering background - switching to windowed checks")
        return self.schedule()

    def enter_foreground(self) -> None:
        """Process is foregrounded again: drop every pending window"""
        self.phase = LifecyclePhase.FOREGROUND
        self.host.cancel_all()
        self.pending.clear()
        logger.info("[FOREGROUND] Entering foreground - background windows cancelled")

    def next_check_time(self) -> datetime:
        """No sooner than the minimum interval, nor before the next weather refresh"""
        earliest = datetime.now(timezone.utc) + self.minimum_interval
        source_next = self.temperature_source.next_check_time()
        return max(earliest, source_next)

    def schedule(self, earliest_begin: Optional[datetime] = None) -> BackgroundWindow:
        """Submit the window request, superseding any pending one for the same identifier"""
        if earliest_begin is None:
            earliest_begin = self.next_check_time()

        self.host.cancel_window(self.identifier)
        self.pending.pop(self.identifier, None)

        self.host.request_window(self.identifier, earliest_begin)
        window = BackgroundWindow(self.identifier, earliest_begin, datetime.now(timezone.utc))
        self.pending[self.identifier] = window
        self.stats['windows_requested'] += 1
        logger.info(f"[BACKGROUND] Requested window '{self.identifier}' no earlier than {earliest_begin.isoformat()}")
        return window

    # ================== WINDOW EXECUTION ==================

    async def on_window_granted(self, task: WindowTask) -> WindowOutcome:
        """Host callback: run one bounded check, report completion, ask for the next window"""
        self.pending.pop(task.identifier, None)
        self.stats['windows_granted'] += 1

        if self.check_in_flight:
            logger.warning(f"[BACKGROUND] Window '{task.identifier}' granted while a check is running - skipping")
            outcome = WindowOutcome.SKIPPED
            task.set_task_completed(False)
            self._finish(outcome)
            return outcome

        expired = False
        check: Optional[asyncio.Task] = None

        def on_expiration():
            nonlocal expired
            expired = True
            logger.warning(f"[BACKGROUND] Window '{task.identifier}' expiring - stopping check")
            if check is not None:
                check.cancel()

        # Registered before any work starts
        task.expiration_handler = on_expiration
        check = asyncio.create_task(self.run_check())
        self._check_task = check

        try:
            await asyncio.wait_for(check, timeout=self.check_budget)
            outcome = WindowOutcome.COMPLETED
        except asyncio.TimeoutError:
            logger.warning(f"[BACKGROUND] Check exceeded {self.check_budget:.0f}s budget - reporting incomplete")
            outcome = WindowOutcome.INCOMPLETE
        except asyncio.CancelledError:
            if not expired:
                task.set_task_completed(False)
                raise
            outcome = WindowOutcome.INCOMPLETE
        except Exception as e:
            logger.error(f"[BACKGROUND] Check failed: {e}")
            outcome = WindowOutcome.INCOMPLETE
        finally:
            task.expiration_handler = None

        task.set_task_completed(outcome == WindowOutcome.COMPLETED)
        self._finish(outcome)
        return outcome

    def _finish(self, outcome: WindowOutcome) -> None:
        self.last_outcome = outcome
        if outcome == WindowOutcome.COMPLETED:
            self.stats['checks_completed'] += 1
        elif outcome == WindowOutcome.INCOMPLETE:
            self.stats['checks_incomplete'] += 1
        else:
            self.stats['checks_skipped'] += 1

        if self.phase == LifecyclePhase.BACKGROUND:
            self.schedule()

    async def check_now(self) -> AlertState:
        """Run a check outside the window protocol unless one is already running"""
        if self.check_in_flight:
            return self.monitor.state
        self._check_task = asyncio.create_task(self.run_check())
        return await self._check_task

    async def run_check(self) -> AlertState:
        """Fetch the outdoor reading, evaluate it, and hand alert changes to the sink"""
        try:
            temperature = await self.temperature_source.current_reading()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Temperature fetch failed: {e}")
            temperature = None

        previous = self.monitor.state
        state = self.monitor.observe(temperature)

        scanned = False
        try:
            if state != previous and state.alarming and self.scan_on_alert and self.registry is not None:
                scanned = True
                try:
                    await self.registry.scan()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Scan during alert check failed: {e}")
        finally:
            # The new state is already recorded, so the change is announced even if the scan is cut short
            running_fans = [c.mac_addr for c in self.registry.running_fans()] if scanned else []
            self.monitor.announce(previous, running_fans)
        return state

    def get_status(self) -> dict:
        return {
            "phase": self.phase.value,
            "identifier": self.identifier,
            "pending": {
                identifier: window.earliest_begin.isoformat()
                for identifier, window in self.pending.items()
            },
            "check_in_flight": self.check_in_flight,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "stats": dict(self.stats)
        }
