import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import text

from printfarm.core.config import settings
from printfarm.core.context import FleetContext
from printfarm.routers import devices, energy, events, jobs, queue

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    fleet = FleetContext.build(settings)

    # Startup: Check DB connectivity
    logger.info("Checking database connectivity...")
    try:
        async with fleet.engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        await fleet.create_schema()
        logger.info("Database connectivity verified.")
    except Exception as e:
        logger.error(f"DATABASE CONNECTION REFUSED: {str(e)}")
        raise RuntimeError("Could not connect to database on startup.") from e

    fleet.event_bus.subscribe(events.connection_manager.broadcast)
    app.state.fleet = fleet

    # Startup: reconcile interrupted assignments, then start the periodic drivers
    await fleet.run(start_loops=settings.ENABLE_BACKGROUND_LOOPS)

    yield

    logger.info("Shutting down application...")
    await fleet.shutdown()
    await fleet.engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

# Enable CORS for frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Unified API Prefix: /api
app.include_router(devices.router, prefix="/api")
app.include_router(queue.router, prefix="/api")
app.include_router(jobs.router, prefix="/api")
app.include_router(energy.router, prefix="/api")
app.include_router(events.router, prefix="/api")


@app.get("/health")
async def health_check():
    return {"status": "ok", "project": settings.PROJECT_NAME}
