import argparse
import asyncio
import logging

from sqlalchemy import func, select

from printfarm.core.config import settings
from printfarm.core.context import FleetContext
from printfarm.models import Device
from printfarm.services.energy_controller import get_or_create_settings

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("SeedFleet")

MODELS = ["Voron 2.4", "Prusa MK4", "RatRig V-Core 3"]


async def seed_devices(count: int, subnet: str):
    logger.info("Starting Fleet Seeding...")

    fleet = FleetContext.build(settings)
    await fleet.create_schema()

    try:
        async with fleet.session_maker() as session:
            # Check if DB is already populated
            existing = (await session.execute(select(func.count()).select_from(Device))).scalar_one()
            if existing > 0:
                logger.info(f"Database already contains {existing} devices. Skipping seed.")
                return

            devices = [
                Device(
                    name=f"Farm Printer #{i:02d}",
                    ip_address=f"{subnet}.{100 + i}",
                    port=7125,
                    model=MODELS[i % len(MODELS)],
                )
                for i in range(1, count + 1)
            ]
            session.add_all(devices)
            await session.commit()

            energy_settings = await get_or_create_settings(session)
            logger.info(
                f"Successfully seeded {len(devices)} devices. "
                f"Energy limit {energy_settings.max_load_kw} kW, stagger {energy_settings.stagger_delay_sec}s."
            )
    finally:
        await fleet.shutdown()
        await fleet.engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the device registry with Moonraker printers.")
    parser.add_argument("--count", type=int, default=10)
    parser.add_argument("--subnet", default="10.0.0")
    args = parser.parse_args()
    asyncio.run(seed_devices(args.count, args.subnet))
