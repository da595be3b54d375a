"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/funnel"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (task wake-ups + worker heartbeats)
    redis_url: str = "redis://localhost:6379/0"

    # External AI inference service
    ai_worker_url: str = "http://localhost:8001"
    ai_worker_api_key: str = ""
    ai_timeout_seconds: float = 30.0
    ai_context_window: int = 20

    # Vision analysis service (empty = disabled, neutral fallback)
    vision_service_url: str = ""
    vision_timeout_seconds: float = 30.0

    # Channels
    telegram_bot_token: str = ""
    telegram_webhook_secret: str = ""
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_api_url: str = "https://graph.facebook.com/v18.0"
    whatsapp_verify_token: str = ""
    web_chat_push_url: str = ""
    channel_timeout_seconds: float = 15.0

    # Consent + intake flow
    consent_link_url: str = ""
    intake_form_url: str = ""
    form_webhook_secret: str = ""

    # Photos
    media_storage_dir: str = "./media"
    photo_template_base_url: str = ""
    photo_debounce_seconds: float = 5.0

    # Follow-ups
    followup_intervals_hours: list[int] = Field(default_factory=lambda: [2, 24, 72])
    followup_max_attempts: int = 3
    followup_use_ai_timing: bool = True
    send_window_start_hour: int = 9
    send_window_end_hour: int = 21
    send_window_avoid_weekends: bool = True

    # Delivery pacing (milliseconds)
    typing_base_delay_ms: int = 1000
    typing_per_char_ms: int = 50
    typing_min_delay_ms: int = 2000
    typing_max_delay_ms: int = 15000
    typing_long_message_chars: int = 100
    typing_long_message_bonus_ms: int = 2000

    # Workers
    channel_send_concurrency: int = 5

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
