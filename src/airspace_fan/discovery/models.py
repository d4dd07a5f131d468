"""
Discovery data structures and models
"""

from typing import Optional
from dataclasses import dataclass
from enum import Enum

class DamperState(Enum):
    """Mechanical air-damper state reported by the controller"""
    OPERATING = "operating"
    NOT_OPERATING = "not_operating"
    UNKNOWN = "unknown"

@dataclass(frozen=True)
class FanCharacteristics:
    """Point-in-time snapshot of one fan controller's state"""
    mac_addr: str
    model: str
    speed: int = 0
    damper: DamperState = DamperState.UNKNOWN
    interlock1: bool = False
    interlock2: bool = False
    timer_hours_remaining: int = 0
    ip_addr: Optional[str] = None
    software_version: Optional[str] = None
    cfm: Optional[int] = None
    power_watts: Optional[int] = None
    house_temp: Optional[float] = None
    attic_temp: Optional[float] = None
    outside_temp: Optional[float] = None

    @property
    def interlocked(self) -> bool:
        """True when an asserted interlock forbids running above zero speed"""
        return self.interlock1 or self.interlock2

    @property
    def running(self) -> bool:
        return self.speed > 0

@dataclass(frozen=True)
class DeviceAddress:
    """Network address of one physical controller"""
    host: str
    port: int = 80

    def url(self, path: str = "/") -> str:
        if self.port == 80:
            return f"http://{self.host}{path}"
        return f"http://{self.host}:{self.port}{path}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

@dataclass(frozen=True)
class ScanResult:
    """One observed fan tagged with where and when it was seen"""
    characteristics: FanCharacteristics
    address: DeviceAddress
    observed_at: float  # time.monotonic()

    @property
    def mac_addr(self) -> str:
        return self.characteristics.mac_addr

@dataclass
class ScanProgress:
    """Progress of one scan pass"""
    probed: int = 0
    candidate_count: int = 0
    found: int = 0

    @property
    def fraction(self) -> float:
        if self.candidate_count == 0:
            return 1.0
        return self.probed / self.candidate_count
