"""
Per-fan controller: owns one fan's live state and serializes every exchange with it

States:
    UNKNOWN          no successful observation yet
    SYNCHRONIZED     holds a valid snapshot
    COMMAND_PENDING  a command was sent, acknowledgment not yet received
    FAULTED          sustained transport failure; sticky until a fresh observation
    STALE            not seen in the latest scan session; terminal, rejects commands
"""

import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..discovery.models import FanCharacteristics, DeviceAddress, ScanResult
from ..discovery.transport import DeviceTransport, FanCommand, CommandKind, TransportError
from ..events import Publisher, FanStateChanged, FatalFault

logger = logging.getLogger(__name__)

FAULT_THRESHOLD = 3


class ControllerState(Enum):
    UNKNOWN = "unknown"
    SYNCHRONIZED = "synchronized"
    COMMAND_PENDING = "command_pending"
    FAULTED = "faulted"
    STALE = "stale"


class RefreshOutcome(Enum):
    UPDATED = "updated"
    FAILED = "failed"
    FATAL_FAULT = "fatal_fault"  # this refresh pushed the controller into FAULTED
    BUSY = "busy"
    STALE = "stale"


class CommandRejected(Exception):
    """A command was refused before anything was sent to the device"""

    def __init__(self, mac_addr: str, reason: str):
        super().__init__(f"{mac_addr}: {reason}")
        self.mac_addr = mac_addr
        self.reason = reason


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a command that reached the transport"""
    mac_addr: str
    command: FanCommand
    success: bool
    characteristics: Optional[FanCharacteristics]
    error: Optional[str] = None


class FanController:
    """Live state and command single-flight for one fan"""

    def __init__(self, mac_addr: str, address: DeviceAddress, transport: DeviceTransport,
                 characteristics: Optional[FanCharacteristics] = None, observed_at: Optional[float] = None,
                 max_speed: int = 7, max_timer_hours: int = 12, fault_threshold: int = FAULT_THRESHOLD,
                 publisher: Optional[Publisher] = None):
        self.mac_addr = mac_addr
        self.address = address
        self.transport = transport
        self.max_speed = max_speed
        self.max_timer_hours = max_timer_hours
        self.fault_threshold = fault_threshold
        self.publisher = publisher or Publisher()

        self._characteristics = characteristics
        self._last_observed_at = observed_at
        self._state = ControllerState.SYNCHRONIZED if characteristics is not None else ControllerState.UNKNOWN
        self._in_flight = False
        self._failures = 0

    @classmethod
    def from_scan_result(cls, result: ScanResult, transport: DeviceTransport, **kwargs) -> "FanController":
        return cls(
            result.mac_addr,
            result.address,
            transport,
            characteristics=result.characteristics,
            observed_at=result.observed_at,
            **kwargs
        )

    # ================== READ-ONLY VIEW ==================

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def characteristics(self) -> Optional[FanCharacteristics]:
        return self._characteristics

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def fatal_fault(self) -> bool:
        return self._state == ControllerState.FAULTED

    @property
    def stale(self) -> bool:
        return self._state == ControllerState.STALE

    def to_dict(self) -> Dict[str, Any]:
        chars = self._characteristics
        return {
            "mac_addr": self.mac_addr,
            "address": str(self.address),
            "state": self._state.value,
            "max_speed": self.max_speed,
            "model": chars.model if chars else None,
            "speed": chars.speed if chars else None,
            "damper": chars.damper.value if chars else None,
            "interlock1": chars.interlock1 if chars else None,
            "interlock2": chars.interlock2 if chars else None,
            "timer_hours_remaining": chars.timer_hours_remaining if chars else None,
            "house_temp": chars.house_temp if chars else None,
            "attic_temp": chars.attic_temp if chars else None,
            "outside_temp": chars.outside_temp if chars else None,
            "consecutive_failures": self._failures
        }

    # ================== OBSERVATIONS ==================

    async def refresh(self) -> RefreshOutcome:
        """Probe the device once and adopt what it reports"""
        if self._state == ControllerState.STALE:
            return RefreshOutcome.STALE
        if self._in_flight:
            return RefreshOutcome.BUSY

        self._in_flight = True
        characteristics = None
        error = None
        try:
            characteristics = await self.transport.probe(self.address)
            if characteristics is None:
                error = f"no fan answering at {self.address}"
            elif characteristics.mac_addr != self.mac_addr:
                error = f"{self.address} now answers as {characteristics.mac_addr}"
        except TransportError as e:
            error = str(e)
        finally:
            self._in_flight = False

        if self._state == ControllerState.STALE:
            return RefreshOutcome.STALE

        if error is None:
            self._apply(characteristics, time.monotonic())
            return RefreshOutcome.UPDATED

        logger.warning(f"Refresh failed for fan {self.mac_addr}: {error}")
        return self._record_failure()

    def observe(self, result: ScanResult) -> bool:
        """
        Adopt a passively observed scan result.
        Ignored while an exchange is in flight (its acknowledgment wins) or when
        older than what the controller already holds.
        """
        if result.mac_addr != self.mac_addr:
            raise ValueError(f"scan result for {result.mac_addr} offered to controller {self.mac_addr}")
        if self._state == ControllerState.STALE:
            return False
        if self._in_flight:
            logger.debug(f"Ignoring scan observation of {self.mac_addr}: exchange in flight")
            return False
        if self._last_observed_at is not None and result.observed_at < self._last_observed_at:
            return False

        if result.address != self.address:
            logger.info(f"Fan {self.mac_addr} moved from {self.address} to {result.address}")
            self.address = result.address
        self._apply(result.characteristics, result.observed_at)
        return True

    def mark_stale(self) -> None:
        """Not seen in the latest scan session: stop accepting commands for good"""
        if self._state == ControllerState.STALE:
            return
        logger.info(f"Fan {self.mac_addr} not seen in latest scan - marking stale")
        self._set_state(ControllerState.STALE)

    # ================== COMMANDS ==================

    async def set_speed(self, level: int) -> CommandResult:
        """Request a new fan speed (0 = off)"""
        self._check_accepts_command()
        if level < 0 or level > self.max_speed:
            raise CommandRejected(self.mac_addr, f"speed {level} outside 0..{self.max_speed}")
        if level > 0 and self._characteristics.interlocked:
            raise CommandRejected(self.mac_addr, "interlock asserted - only speed 0 is allowed")
        return await self._dispatch(FanCommand.set_speed(level))

    async def set_timer(self, hours: int) -> CommandResult:
        """Request a shut-off timer in hours (0 clears it)"""
        self._check_accepts_command()
        if hours < 0 or hours > self.max_timer_hours:
            raise CommandRejected(self.mac_addr, f"timer {hours}h outside 0..{self.max_timer_hours}")
        return await self._dispatch(FanCommand.set_timer(hours))

    def _check_accepts_command(self) -> None:
        if self._state == ControllerState.STALE:
            raise CommandRejected(self.mac_addr, "fan not seen in latest scan")
        if self._state == ControllerState.FAULTED:
            raise CommandRejected(self.mac_addr, "fan is faulted - waiting for a successful refresh")
        if self._characteristics is None:
            raise CommandRejected(self.mac_addr, "fan state not known yet")
        if self._in_flight:
            raise CommandRejected(self.mac_addr, "busy - another exchange is in flight")

    async def _dispatch(self, command: FanCommand) -> CommandResult:
        self._in_flight = True
        self._set_state(ControllerState.COMMAND_PENDING)

        ack = None
        error = None
        try:
            ack = await self.transport.send(self.address, command)
            if ack.characteristics.mac_addr != self.mac_addr:
                error = f"acknowledgment came from {ack.characteristics.mac_addr}"
        except TransportError as e:
            error = str(e)
        except BaseException:
            # Cancelled mid-exchange: subscribers go back to the last snapshot
            self._in_flight = False
            if self._state == ControllerState.COMMAND_PENDING:
                self._set_state(ControllerState.SYNCHRONIZED)
            raise
        finally:
            self._in_flight = False

        if self._state == ControllerState.STALE:
            return CommandResult(self.mac_addr, command, False, self._characteristics,
                                 error or "fan marked stale while the command was in flight")

        if error is not None:
            logger.warning(f"Command {command.params()} failed for fan {self.mac_addr}: {error}")
            # Back to the last snapshot; published below or by the fault
            self._state = ControllerState.SYNCHRONIZED
            if self._record_failure() != RefreshOutcome.FATAL_FAULT:
                self._publish_state()
            return CommandResult(self.mac_addr, command, False, self._characteristics, error)

        reported = ack.characteristics
        if command.kind == CommandKind.SPEED and reported.speed != command.value:
            logger.info(f"Fan {self.mac_addr} acknowledged speed {reported.speed} (requested {command.value})")
        self._apply(reported, ack.received_at)
        return CommandResult(self.mac_addr, command, True, reported)

    # ================== STATE TRANSITIONS ==================

    def _apply(self, characteristics: FanCharacteristics, observed_at: float) -> None:
        """Replace the snapshot as a whole and clear any failure state"""
        previous_state = self._state
        previous = self._characteristics

        if previous_state == ControllerState.FAULTED:
            logger.info(f"Fan {self.mac_addr} answering again - clearing fault")

        self._characteristics = characteristics
        self._last_observed_at = observed_at
        self._failures = 0
        self._state = ControllerState.SYNCHRONIZED

        if previous != characteristics or previous_state != self._state:
            self._publish_state()

    def _record_failure(self) -> RefreshOutcome:
        self._failures += 1
        if self._state == ControllerState.FAULTED:
            return RefreshOutcome.FAILED

        if self._characteristics is not None and self._failures >= self.fault_threshold:
            logger.error(f"Fan {self.mac_addr} failed {self._failures} consecutive exchanges - fatal fault")
            self._set_state(ControllerState.FAULTED)
            self.publisher.publish(FatalFault(self.mac_addr, self._failures))
            return RefreshOutcome.FATAL_FAULT

        return RefreshOutcome.FAILED

    def _set_state(self, state: ControllerState) -> None:
        if state == self._state:
            return
        self._state = state
        self._publish_state()

    def _publish_state(self) -> None:
        self.publisher.publish(FanStateChanged(self.mac_addr, self._state, self._characteristics))
