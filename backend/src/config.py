"""
Glucose Ensemble Configuration
Loads settings from environment variables with validation.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # App
    app_name: str = "Glucose Ensemble"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000"  # comma-separated
    rate_limit_per_minute: int = 60

    # Nightscout (live source)
    nightscout_url: str = Field(default="", description="Nightscout base URL")
    nightscout_api_secret: str = Field(default="", description="Plain text API secret")
    nightscout_api_token: str = Field(default="", description="Access token for token auth")
    nightscout_timeout_seconds: float = 30.0

    # Azure CosmosDB (prediction ledger + local cache)
    cosmos_endpoint: str = Field(default="", description="Empty uses in-memory stores")
    cosmos_key: str = ""
    cosmos_database: str = "GlucoseEnsembleDB"
    patient_id: str = "default"
    cache_retention_days: int = Field(default=30, ge=0)  # 0 = keep cached samples forever

    # ML Settings
    model_device: str = "cpu"  # cpu or cuda
    models_dir: str = "./models"

    # Feature window
    window_timesteps: int = Field(default=24, ge=1)
    window_step_minutes: int = Field(default=5, ge=1)
    local_timezone: str = "UTC"
    default_heart_rate: float = 70.0
    default_glucose_mgdl: float = 100.0
    glucose_min_valid: float = 20.0
    glucose_max_valid: float = 600.0

    # Decay engine
    insulin_window_hours: float = 4.0
    carb_window_hours: float = 3.0
    decay_epsilon: float = 0.01
    decay_min_threshold: float = 0.01
    recent_decay_rate_per_hour: float = 0.028
    max_insulin_on_board: float = 10.0
    max_carbs_on_board: float = 100.0

    # Ensemble
    model_timeout_seconds: float = 5.0
    cycle_timeout_seconds: float = 60.0
    max_concurrency: int = Field(default=0, ge=0)  # 0 = all models at once
    min_full_ensemble_models: int = 3

    # Ledger / backfill / export
    prediction_horizon_minutes: int = 20
    backfill_tolerance_minutes: float = 5.0
    backfill_min_minutes: float = 15.0
    backfill_max_minutes: float = 25.0
    export_timezone: str = "UTC"
    carb_lookback_hours: float = 5.0
    insulin_lookback_hours: float = 4.0

    # Delivery / scheduling
    notification_webhook_url: str = ""
    schedule_interval_minutes: int = 0  # 0 disables the background scheduler

    @property
    def max_concurrency_or_none(self) -> Optional[int]:
        """Concurrency bound for the orchestrator (None means unbounded)."""
        return self.max_concurrency or None

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def cosmos_enabled(self) -> bool:
        return bool(self.cosmos_endpoint and self.cosmos_key)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
