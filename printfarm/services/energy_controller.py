import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import delete, func
from sqlalchemy.orm import sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.exceptions import InvalidSettingsError, MeterUnavailable
from printfarm.models.core import Device, DeviceStatusEnum
from printfarm.models.energy import (
    SETTINGS_ID,
    EnergyReading,
    EnergySettings,
    EnergySettingsUpdate,
    EnergySourceEnum,
    EnergyState,
    PowerEvent,
    PowerEventTypeEnum,
)
from printfarm.schemas.events import EventTopic
from printfarm.services.device.meter import MeterClient
from printfarm.services.events import EventBus
from printfarm.services.periodic import PeriodicWorker
from printfarm.utils.timeutils import utc_now

logger = logging.getLogger("EnergyAdmissionController")


@dataclass
class AdmissionDecision:
    allowed: bool
    reason: Optional[str] = None
    reading: Optional[EnergyReading] = None
    threshold_kw: Optional[float] = None
    limit_kw: Optional[float] = None

    @property
    def current_kw(self) -> Optional[float]:
        return self.reading.current_kw if self.reading else None


async def get_or_create_settings(session: AsyncSession) -> EnergySettings:
    energy_settings = await session.get(EnergySettings, SETTINGS_ID)
    if energy_settings is None:
        energy_settings = EnergySettings(id=SETTINGS_ID)
        session.add(energy_settings)
        await session.commit()
        await session.refresh(energy_settings)
    return energy_settings


class EnergyAdmissionController(PeriodicWorker):
    """
    Samples aggregate load and owns the single admission gate that every
    assignment path has to pass.
    """

    name = "EnergyAdmissionController"

    def __init__(
        self,
        session_maker: sessionmaker,
        event_bus: EventBus,
        meter_client: Optional[MeterClient] = None,
        sample_interval: float = 30.0,
        history_cap: int = 1000,
        threshold_ratio: float = 0.9,
    ):
        super().__init__(sample_interval)
        self.session_maker = session_maker
        self.event_bus = event_bus
        self.meter_client = meter_client
        self.history_cap = history_cap
        self.threshold_ratio = threshold_ratio
        self._peak_active = False

    def threshold_for(self, energy_settings: EnergySettings) -> float:
        return energy_settings.max_load_kw * self.threshold_ratio

    async def run_cycle(self) -> None:
        await self.sample()

    async def sample(self) -> EnergyReading:
        async with self.session_maker() as session:
            energy_settings = await get_or_create_settings(session)

            current_kw, source = await self._measure(session, energy_settings)
            active_count = (await session.exec(
                select(func.count())
                .select_from(Device)
                .where(Device.is_active == True)  # noqa: E712
                .where(Device.current_status == DeviceStatusEnum.PRINTING)
            )).one()

            reading = EnergyReading(
                current_kw=current_kw,
                max_kw=energy_settings.max_load_kw,
                active_device_count=active_count,
                source=source,
            )
            session.add(reading)
            await session.flush()
            await self._evict_history(session)

            peak_event = self._check_peak(energy_settings, current_kw)
            if peak_event:
                session.add(peak_event)

            await session.commit()
            await session.refresh(reading)

        await self.event_bus.publish(EventTopic.ENERGY_READING, {
            "current_kw": reading.current_kw,
            "max_kw": reading.max_kw,
            "percentage": round(reading.current_kw / reading.max_kw * 100, 1) if reading.max_kw else None,
            "active_device_count": reading.active_device_count,
            "source": reading.source.value,
            "recorded_at": reading.recorded_at.isoformat(),
        })
        if peak_event:
            await self._publish_power_event(peak_event)
        return reading

    async def _measure(self, session: AsyncSession, energy_settings: EnergySettings):
        if self.meter_client:
            try:
                return await self.meter_client.read_kw(), EnergySourceEnum.METER
            except MeterUnavailable as e:
                logger.warning(f"Power meter unavailable, falling back to calculated load: {e}")

        device_load = (await session.exec(
            select(func.coalesce(func.sum(Device.current_power_kw), 0.0))
            .where(Device.is_active == True)  # noqa: E712
        )).one()
        return round(energy_settings.base_load_kw + float(device_load), 2), EnergySourceEnum.CALCULATED

    async def _evict_history(self, session: AsyncSession) -> int:
        count = (await session.exec(select(func.count()).select_from(EnergyReading))).one()
        overflow = count - self.history_cap
        if overflow <= 0:
            return 0

        oldest_ids = (await session.exec(
            select(EnergyReading.id)
            .order_by(EnergyReading.recorded_at.asc(), EnergyReading.id.asc())
            .limit(overflow)
        )).all()
        await session.execute(delete(EnergyReading).where(EnergyReading.id.in_(oldest_ids)))
        return len(oldest_ids)

    def _check_peak(self, energy_settings: EnergySettings, current_kw: float) -> Optional[PowerEvent]:
        """Records the transition into the over-threshold region only."""
        if not energy_settings.peak_protection_enabled:
            self._peak_active = False
            return None

        over = current_kw >= self.threshold_for(energy_settings)
        if over and not self._peak_active:
            self._peak_active = True
            logger.warning(f"Peak threshold reached: {current_kw} kW of {energy_settings.max_load_kw} kW.")
            return PowerEvent(
                type=PowerEventTypeEnum.PEAK_TRIGGERED,
                current_kw=current_kw,
                limit_kw=energy_settings.max_load_kw,
                action="New job assignment blocked by peak protection",
            )
        if not over:
            self._peak_active = False
        return None

    async def current_load(self, session: AsyncSession) -> Optional[EnergyReading]:
        return (await session.exec(
            select(EnergyReading).order_by(EnergyReading.recorded_at.desc(), EnergyReading.id.desc())
        )).first()

    async def check_admission(self, session: AsyncSession, action: str = "Job assignment blocked") -> AdmissionDecision:
        """
        The single admission gate. Reads the latest sample and the settings;
        a block is logged as an OVERLOAD_PREVENTED power event.
        """
        energy_settings = await get_or_create_settings(session)
        threshold = self.threshold_for(energy_settings)

        if not energy_settings.peak_protection_enabled:
            return AdmissionDecision(allowed=True, threshold_kw=threshold, limit_kw=energy_settings.max_load_kw)

        reading = await self.current_load(session)
        if reading is None or reading.current_kw < threshold:
            return AdmissionDecision(
                allowed=True,
                reading=reading,
                threshold_kw=threshold,
                limit_kw=energy_settings.max_load_kw,
            )

        reason = (
            f"Load {reading.current_kw} kW is at or above {threshold:.2f} kW "
            f"({self.threshold_ratio:.0%} of {energy_settings.max_load_kw} kW)"
        )
        event = PowerEvent(
            type=PowerEventTypeEnum.OVERLOAD_PREVENTED,
            current_kw=reading.current_kw,
            limit_kw=energy_settings.max_load_kw,
            action=action,
        )
        session.add(event)
        await session.commit()
        logger.info(f"Admission blocked: {reason}")
        await self._publish_power_event(event)

        return AdmissionDecision(
            allowed=False,
            reason=reason,
            reading=reading,
            threshold_kw=threshold,
            limit_kw=energy_settings.max_load_kw,
        )

    async def _publish_power_event(self, event: PowerEvent) -> None:
        await self.event_bus.publish(EventTopic.POWER_EVENT, event.model_dump(mode="json"))

    async def get_settings(self, session: AsyncSession) -> EnergySettings:
        return await get_or_create_settings(session)

    async def update_settings(self, session: AsyncSession, update: EnergySettingsUpdate) -> EnergySettings:
        changes = update.model_dump(exclude_unset=True, exclude_none=True)
        self._validate(changes)

        energy_settings = await get_or_create_settings(session)
        for key, value in changes.items():
            setattr(energy_settings, key, value)
        energy_settings.updated_at = utc_now()
        session.add(energy_settings)
        await session.commit()
        await session.refresh(energy_settings)

        logger.info(f"Energy settings updated: {changes}")
        await self.event_bus.publish(EventTopic.ENERGY_READING, {
            "type": "SETTINGS_UPDATED",
            "settings": energy_settings.model_dump(mode="json"),
        })
        return energy_settings

    @staticmethod
    def _validate(changes: dict) -> None:
        if "max_load_kw" in changes and changes["max_load_kw"] <= 0:
            raise InvalidSettingsError("max_load_kw", changes["max_load_kw"], "must be positive")
        if "stagger_delay_sec" in changes and changes["stagger_delay_sec"] <= 0:
            raise InvalidSettingsError("stagger_delay_sec", changes["stagger_delay_sec"], "must be positive")
        if "base_load_kw" in changes and changes["base_load_kw"] < 0:
            raise InvalidSettingsError("base_load_kw", changes["base_load_kw"], "must not be negative")

    async def get_energy_state(self, session: AsyncSession) -> EnergyState:
        energy_settings = await get_or_create_settings(session)
        reading = await self.current_load(session)
        threshold = self.threshold_for(energy_settings)
        allowed = (
            not energy_settings.peak_protection_enabled
            or reading is None
            or reading.current_kw < threshold
        )
        percentage = None
        if reading and energy_settings.max_load_kw:
            percentage = round(reading.current_kw / energy_settings.max_load_kw * 100, 1)
        return EnergyState(
            settings=energy_settings,
            latest_reading=reading,
            threshold_kw=round(threshold, 3),
            load_percentage=percentage,
            admission_allowed=allowed,
        )

    async def list_readings(self, session: AsyncSession, limit: int = 100) -> List[EnergyReading]:
        readings = (await session.exec(
            select(EnergyReading)
            .order_by(EnergyReading.recorded_at.desc(), EnergyReading.id.desc())
            .limit(limit)
        )).all()
        # Chronological for charting
        return list(reversed(readings))

    async def list_power_events(self, session: AsyncSession, limit: int = 50) -> List[PowerEvent]:
        return list((await session.exec(
            select(PowerEvent).order_by(PowerEvent.created_at.desc(), PowerEvent.id.desc()).limit(limit)
        )).all())
