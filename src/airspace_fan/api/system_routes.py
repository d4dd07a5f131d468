"""
Alerting, weather and lifecycle API routes
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, model_validator
from typing import Optional
from datetime import datetime, timezone
import logging

from ..monitoring.background import LifecyclePhase
from ..monitoring.threshold import ThresholdConfig

logger = logging.getLogger(__name__)

# Response models
class WeatherStatusResponse(BaseModel):
    enabled: bool
    zip_code: Optional[str]
    current_temp: Optional[float]
    last_update: Optional[datetime]
    last_error: Optional[str]
    update_count: int
    error_count: int
    next_update: Optional[datetime]

class ThresholdRequest(BaseModel):
    low_bound: float
    high_bound: float
    enabled: bool = True

    @model_validator(mode="after")
    def check_bounds(self):
        if self.low_bound >= self.high_bound:
            raise ValueError("low_bound must be below high_bound")
        return self

class PhaseRequest(BaseModel):
    phase: LifecyclePhase

def create_system_routes(registry, preferences, monitor, weather_service=None, scheduler=None, lifecycle=None):
    """Create alerting and system routes"""
    router = APIRouter(prefix="/api", tags=["system"])

    @router.get("/alerts")
    async def get_alert_state():
        """Current outdoor temperature alert state"""
        return monitor.get_status()

    @router.get("/alerts/thresholds")
    async def get_thresholds():
        """Configured alert thresholds"""
        config = preferences.threshold_config()
        return {"low_bound": config.low_bound, "high_bound": config.high_bound, "enabled": config.enabled}

    @router.put("/alerts/thresholds")
    async def set_thresholds(request: ThresholdRequest):
        """Update alert thresholds and re-evaluate the last reading against them"""
        preferences.set_threshold_config(ThresholdConfig(
            low_bound=request.low_bound,
            high_bound=request.high_bound,
            enabled=request.enabled
        ))
        previous = monitor.state
        monitor.observe(monitor.last_temperature)
        monitor.announce(previous, [c.mac_addr for c in registry.running_fans()])
        return monitor.get_status()

    @router.get("/weather/status", response_model=WeatherStatusResponse)
    async def get_weather_status():
        """Get weather service status and current conditions"""
        if not weather_service:
            return WeatherStatusResponse(
                enabled=False,
                zip_code=None,
                current_temp=None,
                last_update=None,
                last_error="Weather service not initialized",
                update_count=0,
                error_count=0,
                next_update=None
            )

        status = weather_service.get_status()
        return WeatherStatusResponse(
            enabled=status['enabled'],
            zip_code=status['zip_code'],
            current_temp=status['current_temp'],
            last_update=datetime.fromisoformat(status['last_update']) if status['last_update'] else None,
            last_error=status['last_error'],
            update_count=status['update_count'],
            error_count=status['error_count'],
            next_update=datetime.fromisoformat(status['next_update']) if status['next_update'] else None
        )

    @router.post("/system/phase")
    async def set_phase(request: PhaseRequest):
        """Lifecycle signal: foreground, background or inactive"""
        if lifecycle is None:
            raise HTTPException(status_code=503, detail="Lifecycle control not available")
        await lifecycle(request.phase)
        return {"phase": request.phase.value}

    @router.get("/system/background")
    async def background_status():
        """Background window scheduler status"""
        if scheduler is None:
            raise HTTPException(status_code=503, detail="Background scheduler not available")
        return scheduler.get_status()

    @router.get("/system/health")
    async def system_health():
        """System health check"""
        fans = registry.all_fans()
        return {
            "status": "healthy",
            "fans": {
                "live_count": len(registry.fans()),
                "stale_count": len([c for c in fans if c.stale]),
                "faulted": [c.mac_addr for c in fans if c.fatal_fault]
            },
            "scanning": registry.scanning,
            "alert_state": monitor.state.value,
            "weather_service": weather_service.get_status() if weather_service else {"enabled": False},
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return router
