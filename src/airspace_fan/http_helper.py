# HTTP Helper for fan controller and weather connections

import aiohttp
import logging

logger = logging.getLogger(__name__)

def create_fan_session(timeout_seconds: float = 3) -> aiohttp.ClientSession:
    """
    Create properly configured aiohttp session for local fan controller connections (always HTTP)
    Prevents connection leaks with proper cleanup and limits
    """
    connector = aiohttp.TCPConnector(
        limit_per_host=1,           # Controllers handle one request at a time
        ssl=False,                  # Local controllers use HTTP only
        force_close=True,           # Force connection cleanup
        enable_cleanup_closed=True
    )

    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds)
    )

def create_weather_session(timeout_seconds: float = 10) -> aiohttp.ClientSession:
    """
    Create aiohttp session for the public weather API
    """
    connector = aiohttp.TCPConnector(
        limit=4,
        force_close=False,          # Keep connections alive between updates
        enable_cleanup_closed=True
    )

    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds)
    )
