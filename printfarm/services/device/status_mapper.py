from typing import Any, Dict, Optional, Protocol

from printfarm.models.core import Device, DeviceStatusEnum
from printfarm.schemas.telemetry import DeviceSnapshot

# Klipper print_stats.state -> canonical status. Unknown states map to OFFLINE.
VENDOR_STATE_MAP = {
    "printing": DeviceStatusEnum.PRINTING,
    "paused": DeviceStatusEnum.PAUSED,
    "standby": DeviceStatusEnum.IDLE,
    "complete": DeviceStatusEnum.IDLE,
    "cancelled": DeviceStatusEnum.IDLE,
    "error": DeviceStatusEnum.ERROR,
}

FAN_MAX_RPM = 5000


def map_vendor_state(state: Optional[str]) -> DeviceStatusEnum:
    if not state:
        return DeviceStatusEnum.OFFLINE
    return VENDOR_STATE_MAP.get(str(state).lower(), DeviceStatusEnum.OFFLINE)


class PowerModel(Protocol):
    def estimate(self, temperature_extruder: float, temperature_bed: float, rating_kw: float) -> float:
        ...


class HeaterPowerModel:
    """
    Heuristic draw estimate from heater temperatures and nominal rating.
    Non-decreasing in both temperatures, with a standby floor when the
    heaters are near ambient.
    """

    def __init__(
        self,
        standby_kw: float = 0.05,
        ambient_extruder: float = 50.0,
        ambient_bed: float = 30.0,
        hot_extruder: float = 150.0,
        hot_bed: float = 50.0,
        rating_share: float = 0.6,
    ):
        self.standby_kw = standby_kw
        self.ambient_extruder = ambient_extruder
        self.ambient_bed = ambient_bed
        self.hot_extruder = hot_extruder
        self.hot_bed = hot_bed
        self.rating_share = rating_share

    def estimate(self, temperature_extruder: float, temperature_bed: float, rating_kw: float) -> float:
        if temperature_extruder < self.ambient_extruder and temperature_bed < self.ambient_bed:
            return self.standby_kw

        extruder_load = 0.25 if temperature_extruder > self.hot_extruder else 0.05
        bed_load = 0.15 if temperature_bed > self.hot_bed else 0.02
        estimate = rating_kw * self.rating_share + extruder_load + bed_load
        return round(max(estimate, self.standby_kw), 3)


def _object_block(status_payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    block = status_payload.get(key) or {}
    if not isinstance(block, dict):
        raise TypeError(f"{key} is {type(block).__name__}, expected object")
    return block


def build_snapshot(device: Device, status_payload: Dict[str, Any], power_model: PowerModel) -> DeviceSnapshot:
    """
    Maps a Moonraker `objects/query` status block onto a DeviceSnapshot.
    Raises ValueError/TypeError on malformed numeric fields or object blocks.
    """
    if not isinstance(status_payload, dict):
        raise TypeError(f"status block is {type(status_payload).__name__}, expected object")
    extruder = _object_block(status_payload, "extruder")
    bed = _object_block(status_payload, "heater_bed")
    print_stats = _object_block(status_payload, "print_stats")
    fan = _object_block(status_payload, "fan")

    temperature_extruder = float(extruder.get("temperature") or 0.0)
    temperature_bed = float(bed.get("temperature") or 0.0)
    progress = float(print_stats.get("progress") or 0.0) * 100
    vendor_state = print_stats.get("state")

    status = map_vendor_state(vendor_state)
    if device.maintenance_mode:
        status = DeviceStatusEnum.MAINTENANCE

    return DeviceSnapshot(
        device_id=device.id,
        status=status,
        temperature_extruder=temperature_extruder,
        temperature_bed=temperature_bed,
        progress=min(max(progress, 0.0), 100.0),
        fan_speed=round(float(fan.get("speed") or 0.0) * FAN_MAX_RPM),
        power_draw_estimate=power_model.estimate(temperature_extruder, temperature_bed, device.power_rating_kw),
        vendor_state=vendor_state,
    )
