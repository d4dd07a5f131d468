"""
In-process background window host backed by the asyncio event loop

Grants each requested window once its earliest-begin time has passed and
enforces a hard expiration: the window's expiration handler is called when
time runs out, and the work is cancelled if it still has not reported
completion after a short grace period.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .background import BackgroundHost, WindowTask

logger = logging.getLogger(__name__)

LaunchHandler = Callable[[WindowTask], Awaitable]


class AsyncioWindowTask(WindowTask):
    """Window handed to a launch handler"""

    def __init__(self, identifier: str):
        self.identifier = identifier
        self.expiration_handler = None
        self.success: Optional[bool] = None
        self._done = asyncio.Event()

    @property
    def completed(self) -> bool:
        return self._done.is_set()

    def set_task_completed(self, success: bool) -> None:
        if self._done.is_set():
            logger.debug(f"Window '{self.identifier}' already completed - ignoring second report")
            return
        self.success = success
        self._done.set()

    async def wait(self) -> None:
        await self._done.wait()


class AsyncioWindowHost(BackgroundHost):
    """Host that grants windows on the running event loop"""

    def __init__(self, expiration_seconds: float = 30, grace_seconds: float = 1):
        self.expiration_seconds = expiration_seconds
        self.grace_seconds = grace_seconds
        self._handlers: Dict[str, LaunchHandler] = {}
        self._requests: Dict[str, asyncio.Task] = {}
        self._granted: Set[asyncio.Task] = set()
        self.history: List[Tuple[str, bool]] = []

    def register(self, identifier: str, launch_handler: LaunchHandler) -> None:
        """Associate an identifier with the coroutine that runs its windows"""
        self._handlers[identifier] = launch_handler

    def pending_identifiers(self) -> List[str]:
        return list(self._requests.keys())

    def request_window(self, identifier: str, earliest_begin: datetime) -> None:
        if identifier not in self._handlers:
            raise ValueError(f"No launch handler registered for '{identifier}'")

        # A new request for the same identifier replaces the old one
        self.cancel_window(identifier)

        delay = max(0.0, (earliest_begin - datetime.now(timezone.utc)).total_seconds())
        self._requests[identifier] = asyncio.create_task(self._run_window(identifier, delay))
        logger.debug(f"Window '{identifier}' scheduled in {delay:.0f}s")

    def cancel_window(self, identifier: str) -> None:
        request = self._requests.pop(identifier, None)
        if request is not None and not request.done():
            request.cancel()
            logger.debug(f"Window request '{identifier}' cancelled")

    def cancel_all(self) -> None:
        for identifier in list(self._requests.keys()):
            self.cancel_window(identifier)

    async def close(self) -> None:
        """Cancel pending requests and any window still running"""
        self.cancel_all()
        for task in list(self._granted):
            task.cancel()
        if self._granted:
            await asyncio.gather(*self._granted, return_exceptions=True)

    async def _run_window(self, identifier: str, delay: float) -> None:
        await asyncio.sleep(delay)

        # Granted: no longer pending
        if self._requests.get(identifier) is asyncio.current_task():
            del self._requests[identifier]
        self._granted.add(asyncio.current_task())

        window = AsyncioWindowTask(identifier)
        logger.info(f"Granting window '{identifier}' ({self.expiration_seconds:.0f}s)")
        work = asyncio.create_task(self._handlers[identifier](window))

        try:
            try:
                await asyncio.wait_for(window.wait(), timeout=self.expiration_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"Window '{identifier}' expired")
                if window.expiration_handler is not None:
                    window.expiration_handler()
                try:
                    await asyncio.wait_for(window.wait(), timeout=self.grace_seconds)
                except asyncio.TimeoutError:
                    logger.error(f"Window '{identifier}' did not report completion - terminating work")
                    work.cancel()
                    window.set_task_completed(False)

            self.history.append((identifier, bool(window.success)))
            # Let the handler finish whatever follows its completion report
            await asyncio.gather(work, return_exceptions=True)
        finally:
            if not work.done():
                work.cancel()
            self._granted.discard(asyncio.current_task())
