"""
Local HTTP API for the Airspace Fan server
Provides REST endpoints for fan control, discovery, alerts and lifecycle signals
"""

from fastapi import FastAPI
import logging

from .fan_routes import create_fan_routes
from .system_routes import create_system_routes

logger = logging.getLogger(__name__)


class FanAPI:
    """Local HTTP API for fan control and outdoor temperature alerts"""

    def __init__(self, registry, preferences, monitor, weather_service=None, scheduler=None, lifecycle=None):
        self.registry = registry
        self.preferences = preferences
        self.monitor = monitor
        self.weather = weather_service
        self.scheduler = scheduler
        self.lifecycle = lifecycle
        self.app = FastAPI(
            title="Airspace Fan Local Server",
            description="Local API for whole-house fan control, discovery and outdoor temperature alerts",
            version="1.0.0"
        )
        self._setup_routes()

    def _setup_routes(self):
        """Setup FastAPI routes using modular approach"""
        fan_router = create_fan_routes(self.registry, self.preferences)
        system_router = create_system_routes(
            self.registry,
            self.preferences,
            self.monitor,
            self.weather,
            self.scheduler,
            self.lifecycle
        )

        self.app.include_router(fan_router)
        self.app.include_router(system_router)
