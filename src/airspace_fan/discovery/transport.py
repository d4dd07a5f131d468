"""
Request/response exchanges with a single fan controller

Controllers answer GET /fanspd.cgi with a status document made of
<tag>value</tag> pairs. A command is the same request carrying one query
parameter (speed=N or timer=H); the reply is the post-command status.
"""

import re
import math
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

import aiohttp

from .models import FanCharacteristics, DeviceAddress, DamperState
from ..http_helper import create_fan_session

logger = logging.getLogger(__name__)

STATUS_PATH = "/fanspd.cgi"

_TAG_PATTERN = re.compile(r"<(\w+)>([^<]*)</\1>")


class TransportErrorKind(Enum):
    """Why an exchange failed"""
    UNREACHABLE = "unreachable"   # nothing answered: treated as absence
    MALFORMED = "malformed"       # something answered badly: fault candidate


class TransportError(Exception):
    """A single exchange with a controller failed"""

    def __init__(self, address: DeviceAddress, kind: TransportErrorKind, message: str):
        super().__init__(f"{address}: {kind.value}: {message}")
        self.address = address
        self.kind = kind
        self.message = message

    @property
    def unreachable(self) -> bool:
        return self.kind == TransportErrorKind.UNREACHABLE


class CommandKind(Enum):
    SPEED = "speed"
    TIMER = "timer"


@dataclass(frozen=True)
class FanCommand:
    """One outbound command for a controller"""
    kind: CommandKind
    value: int

    @classmethod
    def set_speed(cls, level: int) -> "FanCommand":
        return cls(CommandKind.SPEED, level)

    @classmethod
    def set_timer(cls, hours: int) -> "FanCommand":
        return cls(CommandKind.TIMER, hours)

    def params(self) -> Dict[str, str]:
        return {self.kind.value: str(self.value)}


@dataclass(frozen=True)
class Acknowledgment:
    """Device reply to a command: the state the device reports after applying it"""
    command: FanCommand
    characteristics: FanCharacteristics
    received_at: float


def parse_status_document(text: str) -> Dict[str, str]:
    """Extract <tag>value</tag> pairs from a controller status reply"""
    return {tag.lower(): value.strip() for tag, value in _TAG_PATTERN.findall(text)}


def _optional_int(fields: Dict[str, str], key: str) -> Optional[int]:
    value = fields.get(key)
    if value in (None, ""):
        return None
    return int(float(value))


def _optional_float(fields: Dict[str, str], key: str) -> Optional[float]:
    value = fields.get(key)
    if value in (None, ""):
        return None
    return float(value)


def characteristics_from_status(fields: Dict[str, str]) -> FanCharacteristics:
    """
    Build a FanCharacteristics from parsed status fields.
    Raises KeyError/ValueError when required fields are missing or invalid.
    """
    speed = int(fields['fanspd'])
    if speed < 0:
        raise ValueError(f"negative fan speed {speed}")

    door = fields.get('doorinprocess')
    if door is None or door == "":
        damper = DamperState.UNKNOWN
    elif int(door) == 1:
        damper = DamperState.OPERATING
    else:
        damper = DamperState.NOT_OPERATING

    # Controller reports the timer in minutes
    minutes = _optional_int(fields, 'timeremaining') or 0
    timer_hours = math.ceil(minutes / 60) if minutes > 0 else 0

    mac_addr = fields['macaddr'].upper()
    if not mac_addr:
        raise ValueError("empty macaddr")

    return FanCharacteristics(
        mac_addr=mac_addr,
        model=fields.get('model') or "Unknown",
        speed=speed,
        damper=damper,
        interlock1=fields.get('interlock1', '0') == '1',
        interlock2=fields.get('interlock2', '0') == '1',
        timer_hours_remaining=timer_hours,
        ip_addr=fields.get('ipaddr') or None,
        software_version=fields.get('softver') or None,
        cfm=_optional_int(fields, 'cfm'),
        power_watts=_optional_int(fields, 'power'),
        house_temp=_optional_float(fields, 'house_temp'),
        attic_temp=_optional_float(fields, 'attic_temp'),
        outside_temp=_optional_float(fields, 'oa_temp'),
    )


class DeviceTransport:
    """Single-exchange HTTP transport to fan controllers"""

    def __init__(self, request_timeout: float = 3):
        self.request_timeout = request_timeout
        # One outstanding exchange per address; overlapping calls queue here.
        # Each entry is (lock, callers holding or waiting) and goes away at zero.
        self._locks: Dict[DeviceAddress, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _exclusive(self, address: DeviceAddress):
        lock, users = self._locks.get(address, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[address] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[address]
            if users == 1:
                del self._locks[address]
            else:
                self._locks[address] = (lock, users - 1)

    async def probe(self, address: DeviceAddress) -> Optional[FanCharacteristics]:
        """
        Read the current status of the controller at address.
        Returns None when no fan controller lives there.
        """
        text = await self._exchange(address)
        if text is None:
            return None

        fields = parse_status_document(text)
        if 'macaddr' not in fields:
            # Something answered, but it is not one of ours
            return None

        try:
            return characteristics_from_status(fields)
        except (KeyError, ValueError) as e:
            raise TransportError(address, TransportErrorKind.MALFORMED, f"bad status document: {e}")

    async def send(self, address: DeviceAddress, command: FanCommand) -> Acknowledgment:
        """Send one command and return the device's acknowledgment"""
        logger.info(f"Command sent to fan {address} payload={command.params()}")
        text = await self._exchange(address, command.params())
        if text is None:
            raise TransportError(address, TransportErrorKind.MALFORMED, "command endpoint not found")

        fields = parse_status_document(text)
        try:
            characteristics = characteristics_from_status(fields)
        except (KeyError, ValueError) as e:
            raise TransportError(address, TransportErrorKind.MALFORMED, f"bad acknowledgment: {e}")

        return Acknowledgment(command=command, characteristics=characteristics, received_at=time.monotonic())

    async def _exchange(self, address: DeviceAddress, params: Optional[Dict[str, str]] = None) -> Optional[str]:
        """GET the status endpoint once. None means HTTP 404."""
        async with self._exclusive(address):
            try:
                async with create_fan_session(self.request_timeout) as session:
                    async with session.get(address.url(STATUS_PATH), params=params) as response:
                        if response.status == 404:
                            return None
                        if response.status != 200:
                            raise TransportError(address, TransportErrorKind.MALFORMED, f"HTTP {response.status}")
                        return await response.text()
            except TransportError:
                raise
            except asyncio.TimeoutError:
                raise TransportError(address, TransportErrorKind.UNREACHABLE, "timed out")
            except (aiohttp.ClientResponseError, aiohttp.ClientPayloadError, UnicodeDecodeError) as e:
                raise TransportError(address, TransportErrorKind.MALFORMED, str(e))
            except (aiohttp.ClientError, OSError) as e:
                raise TransportError(address, TransportErrorKind.UNREACHABLE, str(e))
