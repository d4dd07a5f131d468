import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from airspace_fan.discovery.models import DamperState, DeviceAddress
from airspace_fan.discovery.transport import (
    DeviceTransport,
    FanCommand,
    TransportError,
    TransportErrorKind,
    characteristics_from_status,
    parse_status_document,
)

STATUS = (
    "<fanspd>{speed}</fanspd>\n"
    "<doorinprocess>0</doorinprocess>\n"
    "<timeremaining>{minutes}</timeremaining>\n"
    "<macaddr>60:8a:10:aa:bb:cc</macaddr>\n"
    "<ipaddr>192.168.1.40</ipaddr>\n"
    "<model>2.5eWHF</model>\n"
    "<softver>2.15.1</softver>\n"
    "<interlock1>0</interlock1>\n"
    "<interlock2>{interlock2}</interlock2>\n"
    "<cfm>1500</cfm>\n"
    "<power>120</power>\n"
    "<house_temp>74</house_temp>\n"
    "<attic_temp>96</attic_temp>\n"
    "<oa_temp>81</oa_temp>\n"
)


def status_text(speed=0, minutes=0, interlock2=0):
    return STATUS.format(speed=speed, minutes=minutes, interlock2=interlock2)


class FanDevice:
    """Minimal fan controller web app"""

    def __init__(self, delay: float = 0):
        self.speed = 0
        self.minutes = 0
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.requests = []
        self.app = web.Application()
        self.app.router.add_get("/fanspd.cgi", self.handle)

    async def handle(self, request):
        self.requests.append(dict(request.query))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if "speed" in request.query:
                self.speed = int(request.query["speed"])
            if "timer" in request.query:
                self.minutes = int(request.query["timer"]) * 60
            return web.Response(text=status_text(self.speed, self.minutes))
        finally:
            self.active -= 1


def fixed(**response):
    async def handler(request):
        return web.Response(**response)

    return handler


def run_against(device, scenario):
    async def main():
        async with TestServer(device.app) as server:
            address = DeviceAddress(server.host, server.port)
            return await scenario(address)

    return asyncio.run(main())


# ---------------------------------------------------------------------------
# Status document parsing
# ---------------------------------------------------------------------------


def test_parse_status_document_extracts_tags():
    fields = parse_status_document(status_text(speed=3, minutes=90))
    assert fields["fanspd"] == "3"
    assert fields["macaddr"] == "60:8a:10:aa:bb:cc"
    assert fields["oa_temp"] == "81"


def test_characteristics_from_status_normalizes_fields():
    chars = characteristics_from_status(parse_status_document(status_text(speed=3, minutes=90)))
    assert chars.mac_addr == "60:8A:10:AA:BB:CC"
    assert chars.speed == 3
    assert chars.damper == DamperState.NOT_OPERATING
    # 90 minutes rounds up to 2 hours
    assert chars.timer_hours_remaining == 2
    assert chars.cfm == 1500
    assert chars.outside_temp == 81.0
    assert not chars.interlocked


def test_characteristics_interlock_and_damper():
    text = status_text(interlock2=1).replace("<doorinprocess>0", "<doorinprocess>1")
    chars = characteristics_from_status(parse_status_document(text))
    assert chars.interlocked
    assert chars.damper == DamperState.OPERATING


def test_characteristics_missing_speed_is_rejected():
    fields = parse_status_document(status_text())
    del fields["fanspd"]
    with pytest.raises(KeyError):
        characteristics_from_status(fields)


def test_characteristics_negative_speed_is_rejected():
    with pytest.raises(ValueError):
        characteristics_from_status(parse_status_document(status_text(speed=-1)))


def test_fan_command_params():
    assert FanCommand.set_speed(4).params() == {"speed": "4"}
    assert FanCommand.set_timer(2).params() == {"timer": "2"}


# ---------------------------------------------------------------------------
# Exchanges against a live HTTP server
# ---------------------------------------------------------------------------


def test_probe_reads_status():
    device = FanDevice()
    device.speed = 2

    chars = run_against(device, lambda address: DeviceTransport(2).probe(address))

    assert chars.mac_addr == "60:8A:10:AA:BB:CC"
    assert chars.speed == 2


def test_send_returns_acknowledged_state():
    device = FanDevice()

    ack = run_against(device, lambda address: DeviceTransport(2).send(address, FanCommand.set_speed(5)))

    assert ack.characteristics.speed == 5
    assert ack.command == FanCommand.set_speed(5)
    assert device.requests == [{"speed": "5"}]


def test_probe_404_means_no_device():
    app = web.Application()

    async def main():
        async with TestServer(app) as server:
            return await DeviceTransport(2).probe(DeviceAddress(server.host, server.port))

    assert asyncio.run(main()) is None


def test_probe_foreign_device_means_no_device():
    app = web.Application()
    app.router.add_get("/fanspd.cgi", fixed(text="<html>router login</html>"))

    async def main():
        async with TestServer(app) as server:
            return await DeviceTransport(2).probe(DeviceAddress(server.host, server.port))

    assert asyncio.run(main()) is None


def test_server_error_is_malformed():
    app = web.Application()
    app.router.add_get("/fanspd.cgi", fixed(status=500, text="boom"))

    async def main():
        async with TestServer(app) as server:
            await DeviceTransport(2).probe(DeviceAddress(server.host, server.port))

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(main())
    assert excinfo.value.kind == TransportErrorKind.MALFORMED


def test_bad_acknowledgment_is_malformed():
    app = web.Application()
    app.router.add_get("/fanspd.cgi", fixed(text="<macaddr>60:8a:10:aa:bb:cc</macaddr>"))

    async def main():
        async with TestServer(app) as server:
            await DeviceTransport(2).send(DeviceAddress(server.host, server.port), FanCommand.set_speed(1))

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(main())
    assert excinfo.value.kind == TransportErrorKind.MALFORMED


def test_timeout_is_unreachable():
    device = FanDevice(delay=1.0)

    with pytest.raises(TransportError) as excinfo:
        run_against(device, lambda address: DeviceTransport(0.1).probe(address))
    assert excinfo.value.unreachable


def test_connection_refused_is_unreachable():
    async def main():
        async with TestServer(web.Application()) as server:
            address = DeviceAddress(server.host, server.port)
        # Server is closed now; nothing listens on that port
        await DeviceTransport(1).probe(address)

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(main())
    assert excinfo.value.unreachable


def test_exchanges_to_one_address_never_overlap_and_release_the_lock():
    device = FanDevice(delay=0.05)
    held = []

    async def scenario(address):
        transport = DeviceTransport(2)
        await asyncio.gather(
            transport.probe(address),
            transport.send(address, FanCommand.set_speed(1)),
            transport.probe(address),
        )
        held.append(dict(transport._locks))

    run_against(device, scenario)

    assert len(device.requests) == 3
    assert device.peak == 1
    assert held == [{}]
