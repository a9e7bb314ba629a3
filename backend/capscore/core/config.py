from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    app_name: str = "Freeway Cap Site API"
    debug: bool = False

    # API settings
    api_v1_prefix: str = "/api/v1"

    # CORS settings
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Dataset settings
    data_dir: str = "data_ready"
    catalog_filename: str = "datasets_catalog.json"

    # Segmentation settings
    segment_width_ft: float = 20.0
    stitch_tolerance_deg: float = 0.0001  # ~11 meters

    # Analysis settings
    progress_hints_enabled: bool = True
    analysis_workers: int = 2

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
