import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseModel):
    """Service configuration, built once at startup and passed to each component."""

    model_config = ConfigDict(frozen=True)

    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_timeout_seconds: float = Field(default=30.0, gt=0)

    default_currency: str = "usd"
    minimum_amount: int = Field(default=50, gt=0)
    maximum_amount: int = Field(default=99_999_999, gt=0)

    webhook_tolerance_seconds: int = Field(default=300, gt=0)
    seen_events_capacity: int = Field(default=1000, gt=0)

    database_url: str = "sqlite:///./checkout.db"
    cors_origins: tuple[str, ...] = ("*",)

    log_level: str = "INFO"
    environment: str = "development"
    service_name: str = "checkout-service"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        # Force-load .env (Windows-safe, reload-safe)
        load_dotenv(dotenv_path=env_file or BASE_DIR / ".env")

        values = {}
        for name in cls.model_fields:
            raw = os.getenv(name.upper())
            if raw is None or raw == "":
                continue
            if name == "cors_origins":
                values[name] = tuple(o.strip() for o in raw.split(",") if o.strip())
            else:
                values[name] = raw
        return cls(**values)
