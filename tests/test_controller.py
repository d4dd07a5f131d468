import asyncio
import time

import pytest
from conftest import FakeTransport, make_chars, make_result, malformed, unreachable

from airspace_fan.devices.controller import (
    CommandRejected,
    ControllerState,
    FanController,
    RefreshOutcome,
)
from airspace_fan.discovery.models import DeviceAddress
from airspace_fan.events import FanStateChanged, FatalFault

MAC = "AA:BB:CC:00:00:01"
ADDRESS = DeviceAddress("10.0.0.1")


def build(transport=None, chars=None, publisher=None, **kwargs):
    if chars is None:
        chars = make_chars(MAC)
    transport = transport or FakeTransport({"10.0.0.1": chars})
    controller = FanController(MAC, ADDRESS, transport, characteristics=chars, observed_at=time.monotonic(),
                               publisher=publisher, **kwargs)
    return controller, transport


# ---------------------------------------------------------------------------
# Construction and refresh
# ---------------------------------------------------------------------------


def test_controller_without_snapshot_is_unknown():
    controller = FanController(MAC, ADDRESS, FakeTransport())
    assert controller.state == ControllerState.UNKNOWN
    assert controller.characteristics is None


def test_from_scan_result_is_synchronized():
    result = make_result(make_chars(MAC, speed=3))
    controller = FanController.from_scan_result(result, FakeTransport())
    assert controller.state == ControllerState.SYNCHRONIZED
    assert controller.characteristics.speed == 3
    assert controller.address == result.address


def test_refresh_adopts_device_state(events, publisher):
    controller, transport = build(publisher=publisher)
    transport.devices["10.0.0.1"] = make_chars(MAC, speed=4)

    outcome = asyncio.run(controller.refresh())

    assert outcome == RefreshOutcome.UPDATED
    assert controller.characteristics.speed == 4
    assert isinstance(events[-1], FanStateChanged)
    assert events[-1].characteristics.speed == 4


def test_refresh_without_change_publishes_nothing(events, publisher):
    controller, _ = build(publisher=publisher)
    asyncio.run(controller.refresh())
    assert events == []


def test_refresh_rejects_different_device_at_address():
    controller, transport = build()
    transport.devices["10.0.0.1"] = make_chars("AA:BB:CC:99:99:99")

    outcome = asyncio.run(controller.refresh())

    assert outcome == RefreshOutcome.FAILED
    assert controller.characteristics.mac_addr == MAC
    assert controller.consecutive_failures == 1


def test_refresh_of_unknown_controller_never_faults():
    transport = FakeTransport()
    controller = FanController(MAC, ADDRESS, transport, fault_threshold=2)

    async def scenario():
        return [await controller.refresh() for _ in range(5)]

    outcomes = asyncio.run(scenario())
    assert outcomes == [RefreshOutcome.FAILED] * 5
    assert controller.state == ControllerState.UNKNOWN


# ---------------------------------------------------------------------------
# Fault handling
# ---------------------------------------------------------------------------


def test_consecutive_failures_fault_exactly_once(events, publisher):
    controller, transport = build(publisher=publisher, fault_threshold=3)
    transport.fail_next("10.0.0.1", *[unreachable(ADDRESS) for _ in range(5)])

    async def scenario():
        return [await controller.refresh() for _ in range(5)]

    outcomes = asyncio.run(scenario())

    assert outcomes == [
        RefreshOutcome.FAILED,
        RefreshOutcome.FAILED,
        RefreshOutcome.FATAL_FAULT,
        RefreshOutcome.FAILED,
        RefreshOutcome.FAILED,
    ]
    assert controller.state == ControllerState.FAULTED
    assert controller.fatal_fault
    faults = [e for e in events if isinstance(e, FatalFault)]
    assert faults == [FatalFault(MAC, 3)]
    # Last good snapshot is kept
    assert controller.characteristics.mac_addr == MAC


def test_successful_refresh_clears_fault():
    controller, transport = build(fault_threshold=2)
    transport.fail_next("10.0.0.1", malformed(ADDRESS), malformed(ADDRESS))

    async def scenario():
        await controller.refresh()
        await controller.refresh()
        faulted = controller.state
        outcome = await controller.refresh()
        return faulted, outcome

    faulted, outcome = asyncio.run(scenario())

    assert faulted == ControllerState.FAULTED
    assert outcome == RefreshOutcome.UPDATED
    assert controller.state == ControllerState.SYNCHRONIZED
    assert controller.consecutive_failures == 0


def test_success_between_failures_resets_count():
    controller, transport = build(fault_threshold=3)

    async def scenario():
        transport.fail_next("10.0.0.1", unreachable(ADDRESS), unreachable(ADDRESS))
        await controller.refresh()
        await controller.refresh()
        await controller.refresh()
        transport.fail_next("10.0.0.1", unreachable(ADDRESS), unreachable(ADDRESS))
        await controller.refresh()
        await controller.refresh()

    asyncio.run(scenario())
    assert controller.state == ControllerState.SYNCHRONIZED
    assert controller.consecutive_failures == 2


def test_faulted_controller_rejects_commands():
    controller, transport = build(fault_threshold=1)
    transport.fail_next("10.0.0.1", unreachable(ADDRESS))
    asyncio.run(controller.refresh())

    with pytest.raises(CommandRejected):
        asyncio.run(controller.set_speed(1))
    assert transport.sent == []


def test_failed_commands_count_toward_fault():
    controller, transport = build(fault_threshold=2)
    transport.fail_next("10.0.0.1", unreachable(ADDRESS), unreachable(ADDRESS))

    async def scenario():
        first = await controller.set_speed(1)
        second = await controller.set_speed(1)
        return first, second

    first, second = asyncio.run(scenario())

    assert not first.success and not second.success
    assert controller.state == ControllerState.FAULTED


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def test_set_speed_applies_acknowledgment():
    controller, transport = build()

    result = asyncio.run(controller.set_speed(3))

    assert result.success
    assert result.characteristics.speed == 3
    assert controller.characteristics.speed == 3
    assert controller.state == ControllerState.SYNCHRONIZED
    assert [c.params() for _, c in transport.sent] == [{"speed": "3"}]


def test_acknowledged_state_wins_over_request():
    controller, transport = build()
    transport.ack_override = {"speed": 2}

    result = asyncio.run(controller.set_speed(5))

    assert result.success
    assert controller.characteristics.speed == 2


def test_set_timer():
    controller, transport = build()
    result = asyncio.run(controller.set_timer(4))
    assert result.success
    assert controller.characteristics.timer_hours_remaining == 4


def test_out_of_range_commands_are_rejected():
    controller, transport = build(max_speed=7, max_timer_hours=12)
    with pytest.raises(CommandRejected):
        asyncio.run(controller.set_speed(8))
    with pytest.raises(CommandRejected):
        asyncio.run(controller.set_speed(-1))
    with pytest.raises(CommandRejected):
        asyncio.run(controller.set_timer(13))
    assert transport.sent == []


def test_interlock_allows_only_speed_zero():
    chars = make_chars(MAC, speed=2, interlock1=True)
    controller, transport = build(chars=chars)

    with pytest.raises(CommandRejected):
        asyncio.run(controller.set_speed(3))
    assert transport.sent == []
    assert controller.characteristics.speed == 2

    result = asyncio.run(controller.set_speed(0))
    assert result.success
    assert controller.characteristics.speed == 0


def test_command_without_snapshot_is_rejected():
    controller = FanController(MAC, ADDRESS, FakeTransport())
    with pytest.raises(CommandRejected):
        asyncio.run(controller.set_speed(1))


def test_failed_command_keeps_prior_snapshot(events, publisher):
    controller, transport = build(publisher=publisher)
    transport.fail_next("10.0.0.1", malformed(ADDRESS))

    result = asyncio.run(controller.set_speed(4))

    assert not result.success
    assert result.characteristics.speed == 0
    assert controller.characteristics.speed == 0
    assert controller.state == ControllerState.SYNCHRONIZED
    assert controller.consecutive_failures == 1
    assert not controller.in_flight


def test_unchanged_acknowledgment_still_ends_pending_for_subscribers(events, publisher):
    controller, _ = build(publisher=publisher)

    result = asyncio.run(controller.set_speed(0))

    assert result.success
    assert [e.state for e in events] == [ControllerState.COMMAND_PENDING, ControllerState.SYNCHRONIZED]
    assert events[-1].state == controller.state
    assert events[-1].characteristics.speed == 0


def test_failed_command_publishes_return_to_snapshot(events, publisher):
    controller, transport = build(publisher=publisher)
    transport.fail_next("10.0.0.1", unreachable(ADDRESS))

    asyncio.run(controller.set_speed(4))

    assert events[-1].state == ControllerState.SYNCHRONIZED == controller.state


def test_cancelled_command_publishes_return_to_snapshot(events, publisher):
    controller, transport = build(publisher=publisher)

    async def scenario():
        transport.gate = asyncio.Event()
        command = asyncio.create_task(controller.set_speed(2))
        await asyncio.sleep(0.01)
        command.cancel()
        with pytest.raises(asyncio.CancelledError):
            await command

    asyncio.run(scenario())

    assert controller.state == ControllerState.SYNCHRONIZED
    assert not controller.in_flight
    assert events[-1].state == ControllerState.SYNCHRONIZED


def test_command_pending_while_in_flight():
    controller, transport = build()

    async def scenario():
        transport.gate = asyncio.Event()
        command = asyncio.create_task(controller.set_speed(2))
        await asyncio.sleep(0.01)
        pending_state = controller.state
        transport.gate.set()
        await command
        return pending_state

    assert asyncio.run(scenario()) == ControllerState.COMMAND_PENDING
    assert controller.state == ControllerState.SYNCHRONIZED


def test_single_flight_per_controller():
    controller, transport = build()

    async def scenario():
        transport.gate = asyncio.Event()
        command = asyncio.create_task(controller.set_speed(2))
        await asyncio.sleep(0.01)

        with pytest.raises(CommandRejected):
            await controller.set_speed(3)
        with pytest.raises(CommandRejected):
            await controller.set_timer(1)
        busy = await controller.refresh()

        transport.gate.set()
        await command
        return busy

    assert asyncio.run(scenario()) == RefreshOutcome.BUSY
    assert len(transport.sent) == 1
    assert transport.peak["10.0.0.1"] == 1


# ---------------------------------------------------------------------------
# Passive observation and staleness
# ---------------------------------------------------------------------------


def test_observe_adopts_newer_result_and_follows_address():
    controller, _ = build()
    result = make_result(make_chars(MAC, speed=6), host="10.0.0.9")

    assert controller.observe(result)
    assert controller.characteristics.speed == 6
    assert controller.address == DeviceAddress("10.0.0.9")


def test_observe_ignores_older_result():
    controller, _ = build()
    old = make_result(make_chars(MAC, speed=6), observed_at=0.0)

    assert not controller.observe(old)
    assert controller.characteristics.speed == 0


def test_observe_rejects_other_mac():
    controller, _ = build()
    with pytest.raises(ValueError):
        controller.observe(make_result(make_chars("AA:BB:CC:99:99:99")))


def test_observe_ignored_while_command_in_flight():
    controller, transport = build()

    async def scenario():
        transport.gate = asyncio.Event()
        command = asyncio.create_task(controller.set_speed(2))
        await asyncio.sleep(0.01)
        accepted = controller.observe(make_result(make_chars(MAC, speed=5)))
        transport.gate.set()
        await command
        return accepted

    assert asyncio.run(scenario()) is False
    assert controller.characteristics.speed == 2


def test_stale_controller_rejects_everything(events, publisher):
    controller, transport = build(publisher=publisher)
    controller.mark_stale()

    assert controller.state == ControllerState.STALE
    assert events[-1].state == ControllerState.STALE
    with pytest.raises(CommandRejected):
        asyncio.run(controller.set_speed(0))
    assert asyncio.run(controller.refresh()) == RefreshOutcome.STALE
    assert not controller.observe(make_result(make_chars(MAC, speed=4)))
    assert transport.sent == []
    assert transport.probes == []


def test_to_dict():
    controller, _ = build()
    view = controller.to_dict()
    assert view["mac_addr"] == MAC
    assert view["address"] == "10.0.0.1:80"
    assert view["state"] == "synchronized"
    assert view["damper"] == "not_operating"
