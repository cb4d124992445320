from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Shopfloor"
    debug: bool = True
    database_url: str = Field("sqlite:///./shopfloor.db", validation_alias="DATABASE_URL")

    # Display timezone: explicit offset wins, then the runtime's local offset, then the fallback
    display_offset_hours: Optional[float] = Field(None, validation_alias="DISPLAY_OFFSET_HOURS")
    use_runtime_timezone: bool = Field(True, validation_alias="USE_RUNTIME_TIMEZONE")
    fallback_offset_hours: float = -5.0

    search_horizon_days: int = 14
    workday_start_hour: int = 8
    workday_end_hour: int = 17
    slot_granularity_minutes: int = 30

    gantt_project_statuses: List[str] = ["ACTIVE", "COMPLETED"]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
