from typing import List, Literal, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "Duet"
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    BACKEND_CORS_ORIGINS: Union[List[str], str] = []
    LOG_LEVEL: str = "INFO"

    # Database
    SQLALCHEMY_DATABASE_URI: str = "sqlite+aiosqlite:///duet.db"

    # Auth
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/api/v1/auth/callback/google"

    # Presence store
    PRESENCE_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    PRESENCE_LEASE_SECONDS: float = 30.0
    PRESENCE_SWEEP_INTERVAL_SECONDS: float = 5.0

    # Pairing
    INVITE_CODE_LENGTH: int = 6
    INVITE_CODE_TTL_MINUTES: int = 10
    INVITE_CODE_GRACE_SECONDS: int = 60
    PARTNER_REQUEST_TTL_MINUTES: int = 5
    USER_SEARCH_MIN_LENGTH: int = 2
    USER_SEARCH_LIMIT: int = 10

    # Retry policy
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_INITIAL_DELAY_SECONDS: float = 1.0
    OPERATION_TIMEOUT_SECONDS: float = 15.0
    PRESENCE_RETRY_ATTEMPTS: int = 3
    PRESENCE_RETRY_DELAY_SECONDS: float = 5.0
    RECONCILER_MAX_SETUP_RETRIES: int = 3
    RECONCILER_SETUP_RETRY_DELAY_SECONDS: float = 5.0


    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, env_ignore_empty=True, extra="ignore"
    )

settings = Settings()
