"""
Weather Service Module
Fetches the outdoor temperature for the site's zip code from the OpenWeatherMap API
"""

import asyncio
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any
import aiohttp

from .http_helper import create_weather_session

logger = logging.getLogger(__name__)

OPENWEATHERMAP_URL = "https://api.openweathermap.org/data/2.5/weather"

class WeatherService:
    """Outdoor temperature source for threshold alerts"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config['weather']

        # API configuration
        self.api_key = self.config.get('api_key')
        self.zip_code = self.config.get('zip_code')
        self.country_code = self.config.get('country_code', 'US')
        self.base_url = self.config.get('base_url', OPENWEATHERMAP_URL)
        self.update_interval = self.config.get('update_interval_minutes', 15) * 60
        self.timeout_seconds = self.config.get('timeout_seconds', 10)
        self.retry_attempts = self.config.get('retry_attempts', 3)
        self.retry_base_delay = self.config.get('retry_base_delay_seconds', 1)

        # State tracking
        self.current_temp: Optional[float] = None
        self.last_update: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.update_count = 0
        self.error_count = 0

        # Session for HTTP requests
        self.session: Optional[aiohttp.ClientSession] = None
        self.enabled = self.config.get('enabled', True)

        if not self.enabled:
            logger.info("Weather service disabled in configuration")
        elif not self.api_key or self.api_key == "YOUR_API_KEY_HERE":
            logger.warning("Weather service disabled: no API key configured")
            self.enabled = False
        elif not self.zip_code:
            logger.warning("Weather service disabled: no zip code configured")
            self.enabled = False

    async def start(self):
        """Initialize weather service"""
        if not self.enabled:
            return

        logger.info(f"Starting weather service for zip code {self.zip_code}")
        self.session = create_weather_session(self.timeout_seconds)
        logger.info(f"Weather service started - updating every {self.update_interval//60} minutes")

    async def stop(self):
        """Stop weather service"""
        if self.session:
            await self.session.close()
            self.session = None
        logger.info("Weather service stopped")

    def reading_is_fresh(self) -> bool:
        if self.last_update is None or self.current_temp is None:
            return False
        age = (datetime.now(timezone.utc) - self.last_update).total_seconds()
        return age <= self.update_interval

    async def current_reading(self) -> Optional[float]:
        """
        Current outdoor temperature, or None when unavailable.
        Returns the cached reading while it is recent, otherwise fetches new data.
        """
        if not self.enabled:
            return None

        if not self.reading_is_fresh():
            if not await self.update_temperature():
                return None

        return self.current_temp

    def next_check_time(self) -> datetime:
        """Earliest time a new reading can differ from the cached one"""
        now = datetime.now(timezone.utc)
        if self.last_update is None:
            return now
        return max(now, self.last_update + timedelta(seconds=self.update_interval))

    async def update_temperature(self) -> bool:
        """Fetch current temperature from OpenWeatherMap API"""
        if not self.enabled:
            return False
        if not self.session:
            await self.start()

        for attempt in range(self.retry_attempts):
            try:
                params = {
                    'zip': f"{self.zip_code},{self.country_code}",
                    'appid': self.api_key,
                    'units': 'imperial'  # Fahrenheit temperatures
                }

                logger.debug(f"Fetching weather data for {self.zip_code} (attempt {attempt + 1})")

                async with self.session.get(self.base_url, params=params) as response:
                    if response.status == 200:
                        data = await response.json()

                        self.current_temp = float(data['main']['temp'])
                        self.last_update = datetime.now(timezone.utc)
                        self.last_error = None
                        self.update_count += 1

                        if attempt > 0:
                            logger.info(f"Weather update succeeded on attempt {attempt + 1}")

                        city_name = data.get('name', self.zip_code)
                        logger.info(f"Outdoor weather: {self.current_temp:.1f}°F in {city_name}")
                        return True

                    elif response.status == 401:
                        self._record_error("Invalid API key for weather service")
                        return False  # Don't retry on auth errors

                    elif response.status == 404:
                        self._record_error(f"Invalid zip code: {self.zip_code}")
                        return False  # Don't retry on invalid zip

                    else:
                        error_text = await response.text()
                        logger.warning(f"Weather API error {response.status}: {error_text[:100]}")

            except aiohttp.ClientConnectorError as e:
                logger.warning(f"Weather API connection error (attempt {attempt + 1}): {e}")

            except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, ValueError, TypeError) as e:
                logger.warning(f"Weather update attempt {attempt + 1} failed: {e}")

            if attempt < self.retry_attempts - 1:
                await asyncio.sleep(self.retry_base_delay * 2 ** attempt)  # Exponential backoff

        # All attempts failed
        self._record_error(f"Failed to fetch weather data after {self.retry_attempts} attempts")
        return False

    def _record_error(self, message: str) -> None:
        logger.error(message)
        self.last_error = message
        self.error_count += 1

    def get_status(self) -> Dict[str, Any]:
        """Get weather service status for monitoring"""
        return {
            "enabled": self.enabled,
            "zip_code": self.zip_code,
            "current_temp": self.current_temp,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "last_error": self.last_error,
            "update_count": self.update_count,
            "error_count": self.error_count,
            "next_update": (
                (self.last_update + timedelta(seconds=self.update_interval)).isoformat()
                if self.last_update else None
            )
        }
