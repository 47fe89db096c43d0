import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # API Configuration
    api_base_url: str = Field(default="http://localhost:5000/api", alias="KRIOS_API_URL")
    request_timeout: float = Field(default=30.0, alias="KRIOS_REQUEST_TIMEOUT")

    # Retry Configuration
    max_retries: int = Field(default=2, alias="KRIOS_MAX_RETRIES")
    retry_base_delay: float = Field(default=1.0, alias="KRIOS_RETRY_BASE_DELAY")
    rate_limit_retry_delay: float = Field(
        default=3.0, alias="KRIOS_RATE_LIMIT_RETRY_DELAY"
    )
    default_cooldown: float = Field(default=30.0, alias="KRIOS_DEFAULT_COOLDOWN")

    # Cache Configuration
    cache_max_size: int = Field(default=100, alias="KRIOS_CACHE_MAX_SIZE")
    cache_dir: str | None = Field(default=None, alias="KRIOS_CACHE_DIR")
    persisted_max_age: float = Field(default=86400.0, alias="KRIOS_PERSISTED_MAX_AGE")
    persisted_max_entry_bytes: int = Field(
        default=100_000, alias="KRIOS_PERSISTED_MAX_ENTRY_BYTES"
    )

    debug: bool = Field(default=False, alias="KRIOS_DEBUG")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (after .env loading)."""
        values = {
            name: value for name, value in os.environ.items() if name.startswith("KRIOS_")
        }
        return cls.model_validate(values)


global_settings = Settings.from_env()
