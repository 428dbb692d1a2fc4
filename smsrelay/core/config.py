from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "local"
    APP_NAME: str = "sms-relay-desk"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str
    REDIS_URL: str

    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    OPERATOR_JWT_SECRET: str = "change_me_operator"
    OPERATOR_JWT_TTL_MINUTES: int = 720
    WORKER_JWT_SECRET: str = "change_me_worker"
    WORKER_SESSION_TTL_HOURS: int = 24
    WORKER_COOKIE_NAME: str = "relay_session"

    ACCESS_CODE_LENGTH: int = 6

    # Delay between submit and automatic activation of a pending request
    ACTIVATION_DELAY_SECONDS: int = 240
    ACTIVATION_POLL_SECONDS: float = 5.0
    ACTIVATION_MAX_ATTEMPTS: int = 5
    ACTIVATION_BATCH_SIZE: int = 100

    CHANGE_FEED_CHANNEL: str = "relay:changes"
    CHANGE_FEED_REDIS_ENABLED: bool = True

    SUBMIT_RATE_LIMIT: int = 10
    SUBMIT_RATE_LIMIT_WINDOW_SECONDS: int = 300

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

settings = Settings()
