from pydantic_settings import BaseSettings
from pydantic import ConfigDict

class Settings(BaseSettings):
    PORT: int = 8000
    DATABASE_URL: str = ""
    FIRESTORE_DATABASE_ID: str = "rides"
    CREDENTIALS_PATH: str = "credentials.json"

    # Empty disables the ride cache
    REDIS_URL: str = ""
    CACHE_TTL_SECONDS: int = 300

    GRACE_MINUTES: int = 15
    WATCHDOG_INTERVAL_SECONDS: int = 60
    WATCHDOG_ENABLED: bool = True
    START_REQUIRES_GRACE: bool = False

    CONFLICT_WINDOW_MINUTES: int = 15
    MIN_LEAD_MINUTES: int = 60
    MAX_SEATS: int = 4
    REMINDER_LEAD_MINUTES: int = 30
    RIDE_UPDATE_RETRIES: int = 3
    SEARCH_PAGE_SIZE: int = 30

    model_config = ConfigDict(env_file='.env', extra='ignore')

settings = Settings()
