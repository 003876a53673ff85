from typing import Annotated, Any, Literal

from pydantic import AnyUrl, BeforeValidator, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "chatrelay"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    SENTRY_DSN: AnyUrl | None = None

    BACKEND_CORS_ORIGINS: Annotated[list[AnyUrl] | str, BeforeValidator(parse_cors)] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    # Storage
    SQLALCHEMY_DATABASE_URI: str = "sqlite:///./chatrelay.db"
    # Local store backing the delivery queue; kept apart from the conversation store
    DELIVERY_QUEUE_DATABASE_URI: str = "sqlite:///./delivery_queue.db"

    # Idempotency cache
    REDIS_URL: str | None = None
    IDEMPOTENCY_TTL_SECONDS: int = 600

    # Usage accounting callback
    USAGE_CALLBACK_URL: str | None = None
    USAGE_CALLBACK_AUTH: str | None = None

    # Upstream providers
    PROVIDER_TIMEOUT_SECONDS: float = 60.0
    PROVIDER_CONNECT_TIMEOUT_SECONDS: float = 10.0
    STREAM_TIMEOUT_SECONDS: int = 300
    DEFAULT_TEMPERATURE: float = 0.7
    DEFAULT_MAX_TOKENS: int = 1000
    OPENROUTER_REFERER: str = "https://chatrelay.local"
    OPENROUTER_TITLE: str = "chatrelay"

    # Finished generations stay addressable (state, retry) for this long
    FINISHED_GENERATION_TTL_SECONDS: int = 3600
    FINISHED_GENERATION_LIMIT: int = 10000

    # Delivery queue
    DELIVERY_MAX_RETRIES: int = 3
    DELIVERY_BASE_DELAY_SECONDS: float = 1.0
    DELIVERY_MAX_DELAY_SECONDS: float = 30.0
    DELIVERY_MAX_QUEUE_SIZE: int = 100
    DELIVERY_TICK_SECONDS: float = 30.0
    DELIVERY_DEAD_LETTER_LIMIT: int = 50

    # Rewrites
    REWRITE_TIMEOUT_SECONDS: float = 30.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


settings = Settings()  # type: ignore
