"""
Fan control and discovery API routes
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
import logging

from ..devices.controller import CommandRejected, CommandResult, FanController
from ..devices.house import HouseRegistry, NoDevice

logger = logging.getLogger(__name__)

# Request models
class SpeedRequest(BaseModel):
    level: int = Field(..., ge=0)

class TimerRequest(BaseModel):
    hours: int = Field(..., ge=0)

class NameRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)

class CommandResponse(BaseModel):
    mac_addr: str
    success: bool
    state: str
    speed: Optional[int] = None
    timer_hours_remaining: Optional[int] = None
    error: Optional[str] = None


def create_fan_routes(registry: HouseRegistry, preferences):
    """Create fan control routes"""
    router = APIRouter(prefix="/api", tags=["fans"])

    def _fan_view(controller: FanController) -> dict:
        view = controller.to_dict()
        view["name"] = preferences.fan_name(controller.mac_addr, default=view["model"])
        return view

    def _controller_or_404(mac_addr: str) -> FanController:
        slot = registry.lookup(mac_addr)
        if isinstance(slot, NoDevice):
            raise HTTPException(status_code=404, detail="Fan not found")
        return slot.controller

    def _command_response(controller: FanController, result: CommandResult) -> CommandResponse:
        chars = result.characteristics
        if not result.success:
            logger.warning(f"Command failed for {controller.mac_addr}: {result.error}")
            raise HTTPException(status_code=502, detail=result.error or "Fan did not acknowledge")
        return CommandResponse(
            mac_addr=controller.mac_addr,
            success=True,
            state=controller.state.value,
            speed=chars.speed if chars else None,
            timer_hours_remaining=chars.timer_hours_remaining if chars else None
        )

    @router.get("/fans")
    async def list_fans():
        """List fans from the latest scan session (stale ones included)"""
        return [_fan_view(c) for c in registry.all_fans()]

    @router.get("/fans/{mac_addr}")
    async def get_fan(mac_addr: str):
        """Get current state for one fan"""
        return _fan_view(_controller_or_404(mac_addr))

    @router.post("/fans/{mac_addr}/speed", response_model=CommandResponse)
    async def set_fan_speed(mac_addr: str, request: SpeedRequest):
        """Set fan speed (0 = off)"""
        controller = _controller_or_404(mac_addr)
        try:
            result = await registry.set_speed(controller.mac_addr, request.level)
        except CommandRejected as e:
            raise HTTPException(status_code=409, detail=e.reason)
        return _command_response(controller, result)

    @router.post("/fans/{mac_addr}/timer", response_model=CommandResponse)
    async def set_fan_timer(mac_addr: str, request: TimerRequest):
        """Set shut-off timer in hours (0 clears it)"""
        controller = _controller_or_404(mac_addr)
        try:
            result = await registry.set_timer(controller.mac_addr, request.hours)
        except CommandRejected as e:
            raise HTTPException(status_code=409, detail=e.reason)
        return _command_response(controller, result)

    @router.put("/fans/{mac_addr}/name")
    async def rename_fan(mac_addr: str, request: NameRequest):
        """Set the display name for a fan"""
        controller = _controller_or_404(mac_addr)
        try:
            preferences.set_fan_name(controller.mac_addr, request.name)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return _fan_view(controller)

    @router.post("/fans/{mac_addr}/refresh")
    async def refresh_fan(mac_addr: str):
        """Poll one fan now"""
        controller = _controller_or_404(mac_addr)
        outcome = await controller.refresh()
        return {"outcome": outcome.value, "fan": _fan_view(controller)}

    @router.post("/discovery/scan")
    async def trigger_discovery(wait: bool = False):
        """Trigger device discovery; wait=true returns the session's results"""
        if not wait:
            registry.start_scan()
            return {"message": "Discovery scan initiated"}

        results = await registry.scan()
        return {
            "message": "Discovery scan finished",
            "found": [
                {"mac_addr": r.mac_addr, "address": str(r.address), "model": r.characteristics.model}
                for r in results
            ]
        }

    @router.post("/discovery/cancel")
    async def cancel_discovery():
        """Cancel the running discovery scan"""
        return {"cancelled": registry.cancel_scan()}

    @router.get("/discovery/progress")
    async def discovery_progress():
        """Progress of the running scan"""
        progress = registry.scan_progress
        if progress is None:
            return {"scanning": False, "fraction": None}
        return {
            "scanning": True,
            "fraction": progress.fraction,
            "probed": progress.probed,
            "candidate_count": progress.candidate_count,
            "found": progress.found
        }

    return router
