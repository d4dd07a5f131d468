"""
House registry: the single owner of the fan controllers found by the latest scan session
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..config_loader import speed_levels_for_model
from ..discovery.models import ScanProgress, ScanResult
from ..discovery.scanner import DeviceScanner, ScanRun
from ..discovery.transport import DeviceTransport
from ..events import Publisher, RegistryChanged
from .controller import CommandRejected, CommandResult, FanController, RefreshOutcome, FAULT_THRESHOLD

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoDevice:
    """Lookup miss"""


@dataclass(frozen=True)
class Device:
    """Lookup hit"""
    controller: FanController


DeviceSlot = Union[NoDevice, Device]

NO_DEVICE = NoDevice()


@dataclass
class ScanSession:
    """Devices accumulated during one scan pass, in arrival order"""
    results: Dict[str, ScanResult] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None
    cancelled: bool = False


class HouseRegistry:
    """Owns the collection of known fan controllers and mediates scan requests"""

    def __init__(self, scanner: DeviceScanner, transport: DeviceTransport, config: Optional[Dict] = None,
                 publisher: Optional[Publisher] = None):
        self.scanner = scanner
        self.transport = transport
        self.config = config or {}
        self.publisher = publisher or Publisher()

        fans_config = self.config.get('fans', {})
        self.max_timer_hours = fans_config.get('max_timer_hours', 12)
        self.fault_threshold = fans_config.get('fault_threshold', FAULT_THRESHOLD)

        # Replaced as a whole on every change; readers never see a partial update
        self._controllers: Mapping[str, FanController] = MappingProxyType({})
        self._active_run: Optional[ScanRun] = None
        self._scan_task: Optional[asyncio.Task] = None
        self.last_session: Optional[ScanSession] = None
        self.scan_count = 0

    # ================== READERS ==================

    def fans(self) -> List[FanController]:
        """Controllers observed by the latest scan session"""
        return [c for c in self._controllers.values() if not c.stale]

    def all_fans(self) -> List[FanController]:
        """Live controllers plus the stale ones kept for continuity"""
        return list(self._controllers.values())

    def lookup(self, mac_addr: str) -> DeviceSlot:
        controller = self._controllers.get(mac_addr.upper())
        if controller is None:
            return NO_DEVICE
        return Device(controller)

    def subscribe(self, callback: Callable[[Any], None]) -> Callable[[], None]:
        return self.publisher.subscribe(callback)

    @property
    def scanning(self) -> bool:
        return self._scan_task is not None and not self._scan_task.done()

    @property
    def scan_progress(self) -> Optional[ScanProgress]:
        if self._active_run is None:
            return None
        return self._active_run.progress

    # ================== SCANNING ==================

    async def scan(self) -> List[ScanResult]:
        """
        Run one scan session and return what it found.
        A caller arriving while a scan is running shares that scan.
        """
        joining = self.scanning
        if joining:
            logger.debug("Scan already running - joining it")
        task = self.start_scan()
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not joining:
                self.cancel_scan()
            raise

    def start_scan(self) -> asyncio.Task:
        """Start a scan session in the background (or return the running one)"""
        if not self.scanning:
            self._scan_task = asyncio.create_task(self._run_scan())
        return self._scan_task

    def cancel_scan(self) -> bool:
        """Stop the running scan; results already ingested stay"""
        if self._active_run is None:
            if self.scanning:
                # Session task created but not started yet
                self._scan_task.cancel()
                return True
            return False
        if self._active_run.finished:
            return False
        self._active_run.cancel()
        return True

    async def _run_scan(self) -> List[ScanResult]:
        run = self.scanner.scan()
        session = ScanSession()
        self._active_run = run
        self.scan_count += 1
        logger.info(f"[SCAN] Starting scan session #{self.scan_count}")
        self._publish_collection(scanning=True)

        try:
            async for result in run:
                session.results[result.mac_addr] = result
                self._ingest(result)
        finally:
            if not run.finished:
                run.cancel()
            session.cancelled = run.cancelled
            session.finished_at = time.monotonic()
            self._active_run = None
            self._reconcile(session)

        return list(run.results)

    def _ingest(self, result: ScanResult) -> None:
        existing = self._controllers.get(result.mac_addr)
        if existing is not None and not existing.stale:
            existing.observe(result)
            return

        model = result.characteristics.model
        controller = FanController.from_scan_result(
            result,
            self.transport,
            max_speed=speed_levels_for_model(self.config, model),
            max_timer_hours=self.max_timer_hours,
            fault_threshold=self.fault_threshold,
            publisher=self.publisher
        )
        controllers = dict(self._controllers)
        controllers[result.mac_addr] = controller
        self._controllers = MappingProxyType(controllers)
        logger.info(f"[DEVICE] Registered fan {result.mac_addr} ({model}) at {result.address}")
        self._publish_collection(scanning=True)

    def _reconcile(self, session: ScanSession) -> None:
        """Controllers not seen this session go stale; ones already stale are dropped"""
        controllers = {}
        dropped = []
        for mac_addr, controller in self._controllers.items():
            if mac_addr in session.results:
                controllers[mac_addr] = controller
            elif controller.stale:
                dropped.append(mac_addr)
            else:
                controller.mark_stale()
                controllers[mac_addr] = controller

        self._controllers = MappingProxyType(controllers)
        self.last_session = session

        outcome = "cancelled" if session.cancelled else "complete"
        logger.info(
            f"[SCAN] Session {outcome}: {len(session.results)} fans observed, "
            f"{len(controllers) - len(session.results)} stale, {len(dropped)} dropped"
        )
        self._publish_collection(scanning=False)

    def _publish_collection(self, scanning: bool) -> None:
        self.publisher.publish(RegistryChanged(tuple(self._controllers.keys()), scanning))

    # ================== COMMANDS ==================

    def _controller_for_command(self, mac_addr: str) -> FanController:
        slot = self.lookup(mac_addr)
        if isinstance(slot, NoDevice):
            raise CommandRejected(mac_addr, "unknown fan")
        return slot.controller

    async def set_speed(self, mac_addr: str, level: int) -> CommandResult:
        return await self._controller_for_command(mac_addr).set_speed(level)

    async def set_timer(self, mac_addr: str, hours: int) -> CommandResult:
        return await self._controller_for_command(mac_addr).set_timer(hours)

    async def refresh_all(self) -> Dict[str, RefreshOutcome]:
        """Refresh every live controller concurrently"""
        controllers = self.fans()
        outcomes = await asyncio.gather(*(c.refresh() for c in controllers), return_exceptions=True)

        results = {}
        for controller, outcome in zip(controllers, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"Refresh of {controller.mac_addr} raised: {outcome}")
                outcome = RefreshOutcome.FAILED
            results[controller.mac_addr] = outcome
        return results

    def running_fans(self) -> List[FanController]:
        return [c for c in self.fans() if c.characteristics is not None and c.characteristics.running]
