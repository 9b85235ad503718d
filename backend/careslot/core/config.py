"""
Configuration management using Pydantic Settings.
Loads environment variables from .env file.
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )
    
    # Application
    app_name: str = "Careslot"
    app_version: str = "0.1.0"
    debug: bool = False
    
    # Supabase Configuration
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = "local-anon-key"
    supabase_service_role_key: Optional[str] = None  # For admin operations
    
    # CORS Settings (for Frontend)
    cors_origins: str = "http://localhost:5173"
    
    # Wall-clock zone for every availability rule and reservation
    clinic_timezone: str = "Asia/Kolkata"
    
    # Booking Settings
    default_slot_duration_minutes: int = 15
    booking_horizon_days: int = 7  # Default listing window
    booking_lock_timeout_seconds: float = 5.0  # Fail fast with a retryable error
    
    # Cutoff (minimum notice) Settings
    default_min_notice_hours: float = 4
    min_notice_hours_video_consult: Optional[float] = None
    min_notice_hours_sample_collection: Optional[float] = None
    
    # No-show tracking
    no_show_alert_threshold: int = 2  # Admin alert at this many no-shows
    
    # Notification dispatch (fire-and-forget)
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 3.0
    
    # Scheduler Settings
    enable_scheduler: bool = True
    scheduler_timezone: str = "UTC"
    escalation_scan_interval_seconds: int = 30
    
    # Only ONE worker should run the scan loop in multi-worker deployments
    run_scheduler: bool = False
    
    # Operations Team Fallback
    ops_escalation_email: Optional[str] = None
    
    # Job Monitoring
    job_failure_alert_threshold: int = 2  # Pause a job after this many failures
    
    @property
    def cors_origin_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]
    
    @property
    def webhook_enabled(self) -> bool:
        """Check if the notification webhook is configured."""
        return bool(self.notification_webhook_url)


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.
    Call this function to get application settings.
    """
    return Settings()


# Global settings instance
settings = get_settings()
