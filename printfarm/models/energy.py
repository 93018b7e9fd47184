from typing import Optional
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field
from pydantic import BaseModel

from printfarm.utils.timeutils import utc_now

SETTINGS_ID = 1


class EnergySourceEnum(str, Enum):
    METER = "meter"
    CALCULATED = "calculated"


class PowerEventTypeEnum(str, Enum):
    PEAK_TRIGGERED = "PEAK_TRIGGERED"
    OVERLOAD_PREVENTED = "OVERLOAD_PREVENTED"


class EnergySettings(SQLModel, table=True):
    """Singleton row (id=1), mutable by the operator."""
    __tablename__ = "energy_settings"

    id: int = Field(default=SETTINGS_ID, primary_key=True)
    max_load_kw: float = Field(default=6.0)
    peak_protection_enabled: bool = Field(default=True)
    stagger_enabled: bool = Field(default=True)
    stagger_delay_sec: int = Field(default=300)
    base_load_kw: float = Field(default=1.2)

    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class EnergyReading(SQLModel, table=True):
    """Append-only, bounded time series of aggregate load."""
    __tablename__ = "energy_readings"

    id: Optional[int] = Field(default=None, primary_key=True)
    current_kw: float
    max_kw: float
    active_device_count: int = Field(default=0)
    source: EnergySourceEnum = Field(default=EnergySourceEnum.CALCULATED)

    recorded_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )


class PowerEvent(SQLModel, table=True):
    """Audit row for every admission rejection or threshold breach."""
    __tablename__ = "power_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: PowerEventTypeEnum
    current_kw: float
    limit_kw: float
    action: Optional[str] = None

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class EnergySettingsUpdate(BaseModel):
    max_load_kw: Optional[float] = None
    peak_protection_enabled: Optional[bool] = None
    stagger_enabled: Optional[bool] = None
    stagger_delay_sec: Optional[int] = None
    base_load_kw: Optional[float] = None


class EnergyState(BaseModel):
    settings: EnergySettings
    latest_reading: Optional[EnergyReading] = None
    threshold_kw: float
    load_percentage: Optional[float] = None
    admission_allowed: bool
