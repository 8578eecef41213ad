from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    APP_ENV: str = "local"

    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""

    # Empty disables the distributed cache tier
    REDIS_URL: str = ""

    GOOGLE_API_KEY: str = ""
    SUMMARY_MODEL: str = "gemini-2.5-flash"

    WHISPER_MODEL: str = "small"
    WHISPER_DEVICE: str = "auto"  # auto, cuda, cpu
    WHISPER_BEAM_SIZE: int = 5

    SESSION_PATH: str = "./data/sessions"
    TEMP_PATH: str = "./data/temp"
    DEFAULT_LANGUAGE: str = "fr"

    PAIRING_POLL_ATTEMPTS: int = 15
    PAIRING_POLL_INTERVAL_SECONDS: float = 1.0

    PIPELINE_CONCURRENCY: int = 4
    PIPELINE_MAX_ATTEMPTS: int = 3
    PIPELINE_RETRY_BASE_DELAY_SECONDS: float = 2.0

    DOWNLOAD_TIMEOUT_SECONDS: float = 60
    TRANSCRIPTION_TIMEOUT_SECONDS: float = 300
    SUMMARY_TIMEOUT_SECONDS: float = 60
    FFMPEG_TIMEOUT_SECONDS: float = 120
    FFPROBE_TIMEOUT_SECONDS: float = 10

    DASHBOARD_URL: str = "https://voxnote.app/dashboard"

    # "package.module:callable" returning a MessagingClientFactory
    MESSAGING_CLIENT_FACTORY: str = ""

    def validate_for_api(self) -> list[str]:
        errors = []
        if not self.SUPABASE_URL:
            errors.append("SUPABASE_URL is required")
        if not self.SUPABASE_SERVICE_ROLE_KEY:
            errors.append("SUPABASE_SERVICE_ROLE_KEY is required")
        if not self.MESSAGING_CLIENT_FACTORY:
            errors.append("MESSAGING_CLIENT_FACTORY is required")
        return errors


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
