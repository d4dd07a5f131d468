"""
ASGI entry point for uvicorn
This module exposes the FastAPI app for use with uvicorn command line
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from .monitoring.background import LifecyclePhase
from .services.fan_server import FanServer

# Ensure logs directory exists
Path("logs").mkdir(exist_ok=True)

server = FanServer(config_path=os.environ.get('CONFIG_FILE', 'config/config.yaml'))

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    """Start foreground services with the app and stop them on shutdown"""
    logger.info("Starting up application...")
    await server.weather.start()
    server.running = True
    await server.set_phase(LifecyclePhase.FOREGROUND)
    server.registry.start_scan()
    yield
    logger.info("Shutting down application...")
    await server.stop()
    logger.info("Application shut down complete")


# Expose the FastAPI app for uvicorn
app = server.api.app
app.router.lifespan_context = lifespan

logger.info("ASGI app ready for uvicorn")
