"""
Address-range scanning for fan controllers
"""

import time
import asyncio
import ipaddress
import logging
from typing import Callable, Iterable, List, Optional

from .models import DeviceAddress, ScanResult, ScanProgress
from .transport import DeviceTransport, TransportError

logger = logging.getLogger(__name__)

_DONE = object()


class ScanRun:
    """
    One scan pass over a list of candidate addresses.

    Async-iterate it to receive ScanResults in completion order. cancel()
    stops new probes, cancels in-flight ones and ends the iteration without
    yielding anything further.
    """

    def __init__(self, transport: DeviceTransport, addresses: List[DeviceAddress], max_workers: int = 16,
                 progress_callback: Optional[Callable[[ScanProgress], None]] = None):
        self.transport = transport
        self.addresses = list(addresses)
        self.max_workers = max_workers
        self.progress_callback = progress_callback
        self.progress = ScanProgress(candidate_count=len(self.addresses))
        self.results: List[ScanResult] = []
        self.started_at: Optional[float] = None
        self.completed = False
        self.cancelled = False

        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._supervisor: Optional[asyncio.Task] = None

    @property
    def finished(self) -> bool:
        return self.completed or self.cancelled

    def __aiter__(self):
        return self

    async def __anext__(self) -> ScanResult:
        if self.finished:
            raise StopAsyncIteration
        self._start()

        item = await self._queue.get()
        if self.cancelled:
            raise StopAsyncIteration
        if item is _DONE:
            self.completed = True
            duration = time.monotonic() - self.started_at
            logger.info(
                f"Scan complete: {len(self.results)} fans in {self.progress.candidate_count} addresses "
                f"({duration:.1f}s)"
            )
            raise StopAsyncIteration

        self.results.append(item)
        return item

    def cancel(self) -> None:
        """Stop the scan without waiting for in-flight probes to unwind"""
        if self.finished:
            return
        self.cancelled = True
        for task in self._tasks:
            task.cancel()
        if self._queue is not None:
            # Wake a consumer blocked on the queue
            self._queue.put_nowait(_DONE)
        logger.info(f"Scan cancelled after {self.progress.probed}/{self.progress.candidate_count} addresses")

    async def collect(self) -> List[ScanResult]:
        """Run the scan to the end and return everything it yielded"""
        async for _ in self:
            pass
        return list(self.results)

    def _start(self) -> None:
        if self._queue is not None:
            return
        self.started_at = time.monotonic()
        self._queue = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.max_workers)

        logger.info(f"Scanning {len(self.addresses)} addresses with {self.max_workers} workers...")
        self._tasks = [asyncio.create_task(self._probe_one(address, semaphore)) for address in self.addresses]
        self._supervisor = asyncio.create_task(self._supervise())

    async def _supervise(self) -> None:
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if not self.cancelled:
            self._queue.put_nowait(_DONE)

    async def _probe_one(self, address: DeviceAddress, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            if self.cancelled:
                return

            characteristics = None
            try:
                characteristics = await self.transport.probe(address)
            except TransportError as e:
                if e.unreachable:
                    logger.debug(f"No answer from {address}: {e.message}")
                else:
                    logger.warning(f"Dropping {address} from scan: {e.message}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error probing {address}: {e}")

            self.progress.probed += 1
            if characteristics is not None:
                self.progress.found += 1
                logger.info(f"Found fan {characteristics.mac_addr} ({characteristics.model}) at {address}")
                self._queue.put_nowait(ScanResult(
                    characteristics=characteristics,
                    address=address,
                    observed_at=time.monotonic()
                ))

            if self.progress_callback:
                try:
                    self.progress_callback(self.progress)
                except Exception as e:
                    logger.error(f"Scan progress callback failed: {e}")


class DeviceScanner:
    """Probes every configured address for fan controllers"""

    def __init__(self, transport: DeviceTransport, ip_ranges: Iterable[str], port: int = 80, max_workers: int = 16):
        self.transport = transport
        self.ip_ranges = list(ip_ranges)
        self.port = port
        self.max_workers = max_workers

    @classmethod
    def from_config(cls, network_config: dict, transport: DeviceTransport) -> "DeviceScanner":
        return cls(
            transport,
            ip_ranges=network_config['ip_ranges'],
            port=network_config.get('port', 80),
            max_workers=network_config.get('max_workers', 16)
        )

    def scan(self, addresses: Optional[List[DeviceAddress]] = None,
             progress_callback: Optional[Callable[[ScanProgress], None]] = None) -> ScanRun:
        """Start a scan pass over the configured range (or the given addresses)"""
        if addresses is None:
            addresses = self.generate_addresses()
        return ScanRun(self.transport, addresses, self.max_workers, progress_callback)

    def generate_addresses(self) -> List[DeviceAddress]:
        """Generate candidate addresses from the configured IP ranges"""
        return [DeviceAddress(ip, self.port) for ip in self.generate_ip_range()]

    def generate_ip_range(self) -> List[str]:
        """Expand 'a.b.c.d-a.b.c.e' ranges and CIDR blocks into host IPs"""
        all_ips = []
        seen = set()
        for ip_range in self.ip_ranges:
            try:
                if '-' in ip_range:
                    start_ip, end_ip = ip_range.split('-')
                    start = ipaddress.IPv4Address(start_ip.strip())
                    end = ipaddress.IPv4Address(end_ip.strip())
                    ips = []
                    current = start
                    while current <= end:
                        ips.append(str(current))
                        current += 1
                else:
                    network = ipaddress.IPv4Network(ip_range.strip(), strict=False)
                    if network.num_addresses == 1:
                        ips = [str(network.network_address)]
                    else:
                        ips = [str(ip) for ip in network.hosts()]
            except ValueError:
                logger.warning(f"Invalid IP range: {ip_range}")
                continue

            for ip in ips:
                if ip not in seen:
                    seen.add(ip)
                    all_ips.append(ip)
        return all_ips
