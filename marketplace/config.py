"""
Configuration — environment-driven settings shared by every service.

Each service reads one Settings instance at startup and builds its own
engine / Redis / HTTP clients from it inside the FastAPI lifespan.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PricingMode(str, Enum):
    FLAT = "flat"
    DISTANCE = "distance"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Infrastructure ───────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./marketplace.db"
    redis_url: str = "redis://localhost:6379"

    # ── Delivery pricing ─────────────────────────────
    pricing_mode: PricingMode = PricingMode.FLAT
    flat_delivery_fee: int = Field(default=200, ge=0)
    base_fee: float = Field(default=150, ge=0)
    per_km_fee: float = Field(default=30, ge=0)
    discount_threshold: float = 5000
    discount_rate: float = Field(default=0.2, ge=0, le=1)
    strict_coordinates: bool = False

    # ── Ratings ──────────────────────────────────────
    rating_max_attempts: int = Field(default=5, ge=1)

    # ── External collaborators ───────────────────────
    textgen_url: str = "https://generativelanguage.googleapis.com/v1beta"
    textgen_model: str = "gemini-2.0-flash"
    textgen_api_key: str | None = None
    storage_url: str = "https://api.cloudinary.com/v1_1/demo/image/upload"
    storage_upload_preset: str = "marketplace"
    push_url: str | None = None
    push_api_key: str | None = None
    http_timeout: float = 10.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
