"""
Shared fixtures for the fan server test suite.

Provides:
- FakeTransport: scripted stand-in for DeviceTransport that records calls
  and the peak number of overlapping exchanges per address
- Characteristics/scan result builders
- A registry wired to a FakeTransport over a small address list
"""

import asyncio
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

import pytest

SRC = Path(__file__).resolve().parent.parent / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from airspace_fan.devices.house import HouseRegistry
from airspace_fan.discovery.models import DamperState, DeviceAddress, FanCharacteristics, ScanResult
from airspace_fan.discovery.scanner import DeviceScanner
from airspace_fan.discovery.transport import Acknowledgment, CommandKind, FanCommand, TransportError, TransportErrorKind
from airspace_fan.events import Publisher

logging.getLogger("airspace_fan").setLevel(logging.WARNING)


def make_chars(mac_addr: str = "AA:BB:CC:00:00:01", **overrides) -> FanCharacteristics:
    values = dict(
        mac_addr=mac_addr,
        model="2.5eWHF",
        speed=0,
        damper=DamperState.NOT_OPERATING,
        interlock1=False,
        interlock2=False,
        timer_hours_remaining=0,
    )
    values.update(overrides)
    return FanCharacteristics(**values)


def make_result(chars: FanCharacteristics, host: str = "10.0.0.1", observed_at: Optional[float] = None) -> ScanResult:
    return ScanResult(
        characteristics=chars,
        address=DeviceAddress(host),
        observed_at=time.monotonic() if observed_at is None else observed_at
    )


def unreachable(address: DeviceAddress) -> TransportError:
    return TransportError(address, TransportErrorKind.UNREACHABLE, "timed out")


def malformed(address: DeviceAddress) -> TransportError:
    return TransportError(address, TransportErrorKind.MALFORMED, "garbage")


class FakeTransport:
    """
    Scripted transport.

    devices maps host -> FanCharacteristics (the device's current state).
    errors maps host -> list of exceptions raised by upcoming exchanges, in order.
    delay holds every exchange open for that many seconds (host_delays
    overrides it per host); gate, when set, holds exchanges until the event
    fires.
    """

    def __init__(self, devices: Optional[Dict[str, FanCharacteristics]] = None, delay: float = 0):
        self.devices: Dict[str, FanCharacteristics] = dict(devices or {})
        self.errors: Dict[str, List[Exception]] = {}
        self.delay = delay
        self.host_delays: Dict[str, float] = {}
        self.gate: Optional[asyncio.Event] = None
        self.probes: List[DeviceAddress] = []
        self.sent: List[tuple] = []
        self.active: Dict[str, int] = {}
        self.peak: Dict[str, int] = {}
        self.peak_total = 0
        self._total = 0
        # Applied to the reported state after a command, e.g. to clamp speed
        self.ack_override: Optional[Dict] = None

    def fail_next(self, host: str, *errors: Exception) -> None:
        self.errors.setdefault(host, []).extend(errors)

    async def _enter(self, address: DeviceAddress):
        host = address.host
        self.active[host] = self.active.get(host, 0) + 1
        self.peak[host] = max(self.peak.get(host, 0), self.active[host])
        self._total += 1
        self.peak_total = max(self.peak_total, self._total)
        try:
            delay = self.host_delays.get(host, self.delay)
            if delay:
                await asyncio.sleep(delay)
            if self.gate is not None:
                await self.gate.wait()
            pending = self.errors.get(host)
            if pending:
                raise pending.pop(0)
        finally:
            self.active[host] -= 1
            self._total -= 1

    async def probe(self, address: DeviceAddress) -> Optional[FanCharacteristics]:
        self.probes.append(address)
        await self._enter(address)
        return self.devices.get(address.host)

    async def send(self, address: DeviceAddress, command: FanCommand) -> Acknowledgment:
        self.sent.append((address, command))
        await self._enter(address)
        chars = self.devices.get(address.host)
        if chars is None:
            raise malformed(address)
        if command.kind == CommandKind.SPEED:
            chars = replace(chars, speed=command.value)
        else:
            chars = replace(chars, timer_hours_remaining=command.value)
        if self.ack_override:
            chars = replace(chars, **self.ack_override)
        self.devices[address.host] = chars
        return Acknowledgment(command=command, characteristics=chars, received_at=time.monotonic())


@pytest.fixture()
def publisher():
    return Publisher()


@pytest.fixture()
def events(publisher):
    received = []
    publisher.subscribe(received.append)
    return received


@pytest.fixture()
def fake_transport():
    return FakeTransport({
        "10.0.0.1": make_chars("AA:BB:CC:00:00:01"),
        "10.0.0.2": make_chars("AA:BB:CC:00:00:02", model="4.3eWHF"),
    })


@pytest.fixture()
def scanner(fake_transport):
    return DeviceScanner(fake_transport, ["10.0.0.1-10.0.0.4"], max_workers=4)


@pytest.fixture()
def registry_config():
    return {
        'fans': {
            'default_speed_levels': 7,
            'speed_levels': {'4.3eWHF': 10},
            'max_timer_hours': 12,
            'fault_threshold': 3
        }
    }


@pytest.fixture()
def registry(scanner, fake_transport, registry_config, publisher):
    return HouseRegistry(scanner, fake_transport, registry_config, publisher)
