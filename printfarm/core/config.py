from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field


class Settings(BaseSettings):
    # App Config
    PROJECT_NAME: str = "PrintFarm Fleet Core"
    ENVIRONMENT: Literal["dev", "prod"] = "dev"

    # Database Settings
    POSTGRES_USER: str = "printfarm"
    POSTGRES_PASSWORD: str = "printfarm"
    POSTGRES_DB: str = "printfarm"
    POSTGRES_HOST: str = "127.0.0.1"
    POSTGRES_PORT: str = "5432"
    DATABASE_URL: Optional[str] = None
    DATABASE_ECHO: bool = False

    @computed_field
    @property
    def ASYNC_DATABASE_URL(self) -> str:
        """Returns the async connection string, preferring DATABASE_URL when set."""
        if self.DATABASE_URL:
            if self.DATABASE_URL.startswith("postgresql://"):
                return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
            return self.DATABASE_URL

        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # Device telemetry
    TELEMETRY_POLL_INTERVAL_SEC: float = 7.0
    DEVICE_QUERY_TIMEOUT_SEC: float = 3.0
    TELEMETRY_HISTORY_CAP: int = 500
    STALE_IDLE_READINGS: int = 3

    # Energy
    ENERGY_SAMPLE_INTERVAL_SEC: float = 30.0
    ENERGY_HISTORY_CAP: int = 1000
    ENERGY_METER_URL: Optional[str] = None
    ENERGY_METER_TIMEOUT_SEC: float = 2.0
    PEAK_THRESHOLD_RATIO: float = 0.9

    # Scheduler
    SCHEDULER_INTERVAL_SEC: float = 15.0

    # Event sinks (both optional)
    REDIS_URL: Optional[str] = None
    EVENT_CHANNEL: str = "printfarm:events"
    MQTT_BROKER_HOST: Optional[str] = None
    MQTT_BROKER_PORT: int = 1883

    # Lifespan starts the periodic drivers; disabled in tests
    ENABLE_BACKGROUND_LOOPS: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


# Globally accessible settings instance
settings = Settings()
