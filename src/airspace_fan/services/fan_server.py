"""
Fan Server - Main orchestrator for all services
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

import uvicorn

from ..api.main_api import FanAPI
from ..config_loader import load_config, setup_logging
from ..devices.controller import ControllerState, RefreshOutcome
from ..devices.house import HouseRegistry
from ..discovery.scanner import DeviceScanner
from ..discovery.transport import DeviceTransport
from ..events import AlertChanged, FanStateChanged, FatalFault, Publisher
from ..monitoring.background import BackgroundScheduler, LifecyclePhase
from ..monitoring.threshold import LoggingAlertSink, ThresholdMonitor
from ..monitoring.window_host import AsyncioWindowHost
from ..preferences import PreferenceStore
from ..weather_service import WeatherService

logger = logging.getLogger(__name__)


class FanServer:
    """Main server wiring discovery, fan control, alerting and the local API together"""

    def __init__(self, config_path: str = "config/config.yaml", config: Optional[dict] = None):
        self.config = config if config is not None else load_config(config_path)
        setup_logging(self.config)

        network = self.config['network']
        self.publisher = Publisher()
        self.transport = DeviceTransport(request_timeout=network['request_timeout'])
        self.scanner = DeviceScanner.from_config(network, self.transport)
        self.registry = HouseRegistry(self.scanner, self.transport, self.config, self.publisher)

        # Weather service for the outdoor temperature
        self.weather = WeatherService(self.config)

        self.preferences = PreferenceStore(self.config['preferences']['file'])
        self.alert_sink = LoggingAlertSink()
        self.monitor = ThresholdMonitor(self.preferences.threshold_config, self.alert_sink, self.publisher)

        background = self.config['background']
        self.window_host = AsyncioWindowHost(expiration_seconds=background['host_expiration_seconds'])
        self.scheduler = BackgroundScheduler(
            self.window_host,
            self.weather,
            self.monitor,
            registry=self.registry,
            config=background
        )
        self.window_host.register(self.scheduler.identifier, self.scheduler.on_window_granted)

        self.api = FanAPI(
            self.registry,
            self.preferences,
            self.monitor,
            self.weather,
            self.scheduler,
            lifecycle=self.set_phase
        )

        self.phase = LifecyclePhase.INACTIVE
        self.running = False
        self.tasks: List[asyncio.Task] = []
        self._unsubscribe = self.publisher.subscribe(self._log_event)

    async def start(self):
        """Start all server services"""
        logger.info("Starting Airspace Fan Local Server...")

        try:
            await self.weather.start()
            logger.info("Weather service initialized")

            self.running = True
            await self.set_phase(LifecyclePhase.FOREGROUND)

            # Initial scan so the API has fans to show immediately
            await self.registry.scan()
            logger.info(f"[SUCCESS] Initial discovery complete: {len(self.registry.fans())} fans ready")

            await self._start_api_server()

        except Exception as e:
            logger.error(f"Server startup failed: {e}")
            await self.stop()
            raise

    async def stop(self):
        """Stop all server services gracefully"""
        if not self.running and not self.tasks:
            return
        logger.info("Stopping server...")
        self.running = False

        self.registry.cancel_scan()
        self.scheduler.enter_foreground()
        await self._stop_foreground_services()
        await self.window_host.close()
        await self.weather.stop()
        self._unsubscribe()
        logger.info("Server stopped")

    # ================== LIFECYCLE ==================

    async def set_phase(self, phase: LifecyclePhase) -> None:
        """Apply a lifecycle signal from the client"""
        if phase == self.phase:
            return
        logger.info(f"[LIFECYCLE] {self.phase.value} -> {phase.value}")
        self.phase = phase

        if phase == LifecyclePhase.FOREGROUND:
            self.scheduler.enter_foreground()
            self._start_foreground_services()
        elif phase == LifecyclePhase.BACKGROUND:
            await self._stop_foreground_services()
            self.scheduler.enter_background()
        else:
            # Inactive is transient: pause polling, leave window requests alone
            await self._stop_foreground_services()

    def _start_foreground_services(self):
        if self.tasks:
            return
        self.tasks = [
            asyncio.create_task(self._discovery_service()),
            asyncio.create_task(self._refresh_service()),
            asyncio.create_task(self._weather_service())
        ]
        logger.info(f"Foreground services started ({len(self.tasks)} background tasks)")

    async def _stop_foreground_services(self):
        tasks, self.tasks = self.tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ================== SERVICE LOOPS ==================

    async def _discovery_service(self):
        """Periodic rescans while foregrounded"""
        scan_interval = self.config['network']['scan_interval_minutes'] * 60
        logger.info(f"Discovery service started (every {scan_interval/60} minutes)")

        while self.running:
            try:
                await asyncio.sleep(scan_interval)
                if not self.running:
                    break

                logger.info("[REFRESH] Running periodic discovery...")
                results = await self.registry.scan()
                logger.debug(f"Periodic discovery found {len(results)} fans")

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Discovery service error: {e}")

    async def _refresh_service(self):
        """Continuous refresh cadence for every live fan"""
        refresh_interval = self.config['fans']['refresh_interval_seconds']
        logger.info(f"Refresh service started (every {refresh_interval} seconds)")

        while self.running:
            try:
                await asyncio.sleep(refresh_interval)
                if not self.running:
                    break

                outcomes = await self.registry.refresh_all()
                failed = [
                    mac for mac, outcome in outcomes.items()
                    if outcome in (RefreshOutcome.FAILED, RefreshOutcome.FATAL_FAULT)
                ]
                if failed:
                    logger.debug(f"Refresh failed for {len(failed)} fan(s): {', '.join(failed)}")

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Refresh service error: {e}")

    async def _weather_service(self):
        """Periodic weather updates and alert evaluation while foregrounded"""
        if not self.weather.enabled:
            logger.info("Weather service disabled")
            return

        update_interval = self.weather.update_interval
        logger.info(f"Weather service started (every {update_interval//60} minutes)")

        while self.running:
            try:
                state = await self.scheduler.check_now()
                weather_status = self.weather.get_status()
                if weather_status['current_temp'] is not None:
                    logger.info(f"Weather service: {weather_status['current_temp']:.1f}°F outside, alert state {state.value}")

                await asyncio.sleep(update_interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Weather service error: {e}")
                await asyncio.sleep(update_interval)

    # ================== EVENTS ==================

    def _log_event(self, event):
        if isinstance(event, FatalFault):
            logger.error(f"[FAULT] Fan {event.mac_addr} faulted after {event.consecutive_failures} failed exchanges")
        elif isinstance(event, FanStateChanged) and event.state == ControllerState.STALE:
            logger.info(f"[DEVICE] Fan {event.mac_addr} went stale")
        elif isinstance(event, AlertChanged):
            logger.info(f"[ALERT] {event.previous.value} -> {event.current.value}")

    # ================== API ==================

    async def _start_api_server(self):
        """Start the FastAPI server"""
        config = uvicorn.Config(
            self.api.app,
            host=self.config['api']['host'],
            port=self.config['api']['port'],
            log_level="info",
            access_log=False  # We handle our own logging
        )

        server = uvicorn.Server(config)

        logger.info(f"Starting API server on {self.config['api']['host']}:{self.config['api']['port']}")
        logger.info(f"API documentation: http://localhost:{self.config['api']['port']}/docs")

        if self.weather.enabled:
            logger.info(f"Weather integration enabled for zip code {self.weather.zip_code}")
        else:
            logger.info("Weather integration disabled - alert checks will report unknown")

        await server.serve()

    def get_status(self) -> dict:
        return {
            "phase": self.phase.value,
            "running": self.running,
            "fans": [c.to_dict() for c in self.registry.all_fans()],
            "scanning": self.registry.scanning,
            "alerts": self.monitor.get_status(),
            "background": self.scheduler.get_status(),
            "weather": self.weather.get_status(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
