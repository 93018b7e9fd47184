import time
from typing import Optional
from pydantic import BaseModel, Field

from printfarm.models.core import DeviceStatusEnum


class DeviceSnapshot(BaseModel):
    """
    Normalized result of one device poll, before it is persisted.
    An unreachable device yields an offline snapshot with zero metrics.
    """
    device_id: int
    status: DeviceStatusEnum
    temperature_extruder: float = 0.0
    temperature_bed: float = 0.0
    progress: float = Field(default=0.0, ge=0, le=100)
    fan_speed: int = 0
    power_draw_estimate: float = 0.0
    is_reachable: bool = True
    error: Optional[str] = None
    vendor_state: Optional[str] = None
    polled_at: float = Field(default_factory=time.time)

    @classmethod
    def unreachable(cls, device_id: int, error: str) -> "DeviceSnapshot":
        return cls(
            device_id=device_id,
            status=DeviceStatusEnum.OFFLINE,
            is_reachable=False,
            error=error,
        )
